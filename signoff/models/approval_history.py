import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from signoff.database import Base, JSONType, enum_column
from signoff.domain.enums import ApprovalAction, ApprovalStatus
from signoff.exceptions import ImmutableRecordError


class ApprovalHistory(Base):
    """One row per workflow transition. Rows are never updated or deleted."""

    __tablename__ = "approval_history"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    approval_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("approvals.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[ApprovalAction] = mapped_column(
        enum_column(ApprovalAction), nullable=False
    )
    from_status: Mapped[Optional[ApprovalStatus]] = mapped_column(
        enum_column(ApprovalStatus)
    )
    to_status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus), nullable=False
    )
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    comments: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[Optional[str]] = mapped_column(String(50))
    extra_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType)
    is_system_action: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_approval_history_approval", "approval_id", "created_at"),
        Index("idx_approval_history_actor", "actor_id"),
    )


@event.listens_for(ApprovalHistory, "before_update")
def prevent_history_update(mapper, connection, target):
    raise ImmutableRecordError(
        "Approval history is append-only and cannot be modified",
        details={"history_id": str(target.id)},
    )


@event.listens_for(ApprovalHistory, "before_delete")
def prevent_history_delete(mapper, connection, target):
    raise ImmutableRecordError(
        "Approval history is append-only and cannot be deleted",
        details={"history_id": str(target.id)},
    )
