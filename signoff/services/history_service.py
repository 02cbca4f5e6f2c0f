"""Approval history: the append-only trail of workflow transitions."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from signoff.domain.enums import ApprovalAction, ApprovalStatus
from signoff.models.approval_history import ApprovalHistory

logger = structlog.get_logger()


async def append_history(
    session: AsyncSession,
    approval_id: uuid.UUID,
    action: ApprovalAction,
    from_status: Optional[ApprovalStatus],
    to_status: ApprovalStatus,
    actor_id: Optional[uuid.UUID],
    comments: Optional[str] = None,
    source: str = "api",
    metadata: Optional[dict] = None,
    is_system_action: bool = False,
) -> ApprovalHistory:
    """
    Add one history row for a transition.

    Uses session.flush(); the caller owns the transaction.
    """
    entry = ApprovalHistory(
        approval_id=approval_id,
        action=ApprovalAction(action),
        from_status=ApprovalStatus(from_status) if from_status is not None else None,
        to_status=ApprovalStatus(to_status),
        actor_id=actor_id,
        comments=comments,
        source=source,
        extra_metadata=metadata or {},
        is_system_action=is_system_action,
        created_at=datetime.utcnow(),
    )
    session.add(entry)
    await session.flush()

    logger.info(
        "approval_history_appended",
        approval_id=str(approval_id),
        action=entry.action.value,
        from_status=entry.from_status.value if entry.from_status else None,
        to_status=entry.to_status.value,
        actor_id=str(actor_id) if actor_id else None,
    )
    return entry


async def list_history(session: AsyncSession, approval_id: uuid.UUID) -> list[ApprovalHistory]:
    result = await session.execute(
        select(ApprovalHistory)
        .where(ApprovalHistory.approval_id == approval_id)
        .order_by(ApprovalHistory.created_at, ApprovalHistory.id)
    )
    return list(result.scalars().all())
