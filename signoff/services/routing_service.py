"""
Approver routing.

``build_route`` is pure: given the request and the organisation's users it
returns the ordered candidate list. ``route`` loads the users, normalises
the amount to the organisation's base currency and delegates to it.

Priority bands:
    1..n     HR approvers, then amount-tier approvers (one running sequence)
    11..     managers in the requester's branch
    21..     organisation admins and owners
"""

import uuid
from datetime import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from signoff.config import settings
from signoff.domain.enums import HR_APPROVAL_TYPES, ApprovalType, Role, role_rank
from signoff.models.organisation import Organisation
from signoff.models.user import User
from signoff.services.currency_service import convert_amount

logger = structlog.get_logger()

BRANCH_PRIORITY_OFFSET = 10
ORGANISATION_PRIORITY_OFFSET = 20

_APPROVER_ROLES = (Role.OWNER, Role.ADMIN, Role.MANAGER)


@dataclass(frozen=True)
class RouteCandidate:
    approver_id: uuid.UUID
    priority: int
    reason: str
    role: Role


def _ordered(users: Iterable[User]) -> list[User]:
    """Highest role first; ties by seniority (created_at) then id."""
    return sorted(
        users,
        key=lambda u: (-role_rank(u.role), u.created_at or datetime.min, str(u.id)),
    )


def required_role_for_amount(amount: Decimal) -> Role:
    if amount <= settings.ROUTING_MANAGER_LIMIT:
        return Role.MANAGER
    if amount <= settings.ROUTING_ADMIN_LIMIT:
        return Role.ADMIN
    return Role.OWNER


def build_route(
    approval_type,
    amount: Optional[Decimal],
    requester,
    users: Sequence[User],
) -> list[RouteCandidate]:
    approval_type = ApprovalType(approval_type)
    pool = [
        u
        for u in users
        if u.is_active
        and str(u.id) != str(requester.user_id)
        and str(u.organisation_id) == str(requester.organisation_id)
    ]
    candidates: list[RouteCandidate] = []

    if approval_type in HR_APPROVAL_TYPES:
        hr = _ordered(u for u in pool if Role(u.role) in _APPROVER_ROLES)
        for user in hr:
            candidates.append(
                RouteCandidate(user.id, len(candidates) + 1, "hr_approver", Role(user.role))
            )

    if amount is not None and amount > 0:
        required = required_role_for_amount(amount)
        tier = _ordered(u for u in pool if role_rank(u.role) >= role_rank(required))
        for user in tier:
            candidates.append(
                RouteCandidate(
                    user.id,
                    len(candidates) + 1,
                    f"amount_tier_{required.value}",
                    Role(user.role),
                )
            )

    if requester.branch_id is not None:
        managers = _ordered(
            u
            for u in pool
            if Role(u.role) == Role.MANAGER and str(u.branch_id) == str(requester.branch_id)
        )
        for index, user in enumerate(managers):
            candidates.append(
                RouteCandidate(
                    user.id, BRANCH_PRIORITY_OFFSET + index + 1, "branch_manager", Role(user.role)
                )
            )

    admins = _ordered(u for u in pool if Role(u.role) in (Role.OWNER, Role.ADMIN))
    for index, user in enumerate(admins):
        candidates.append(
            RouteCandidate(
                user.id,
                ORGANISATION_PRIORITY_OFFSET + index + 1,
                "organisation_admin",
                Role(user.role),
            )
        )

    seen: set[str] = set()
    unique: list[RouteCandidate] = []
    for candidate in candidates:
        key = str(candidate.approver_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    unique.sort(key=lambda c: c.priority)

    if not unique:
        fallback = _ordered(u for u in pool if role_rank(u.role) >= role_rank(Role.MANAGER))
        if fallback:
            user = fallback[0]
            unique.append(RouteCandidate(user.id, 1, "fallback_manager", Role(user.role)))

    return unique


async def normalise_amount(
    db: AsyncSession,
    organisation_id: uuid.UUID,
    amount: Optional[Decimal],
    currency: Optional[str],
) -> Optional[Decimal]:
    """Amount in the organisation's base currency; nominal amount when no rate exists."""
    if amount is None or not currency:
        return amount

    result = await db.execute(
        select(Organisation.base_currency).where(Organisation.id == organisation_id)
    )
    base_currency = result.scalar() or settings.BASE_CURRENCY

    converted = await convert_amount(db, organisation_id, amount, currency, base_currency)
    if converted is None:
        logger.warning(
            "routing_fx_rate_missing",
            organisation_id=str(organisation_id),
            currency=currency,
            base_currency=base_currency,
        )
        return amount
    return converted


async def route(
    db: AsyncSession,
    approval_type,
    amount: Optional[Decimal],
    requester,
    currency: Optional[str] = None,
) -> list[RouteCandidate]:
    """Ordered approver candidates for a new request by ``requester`` (an Actor)."""
    result = await db.execute(
        select(User).where(
            User.organisation_id == requester.organisation_id,
            User.is_active.is_(True),
        )
    )
    users = result.scalars().all()

    normalised = await normalise_amount(db, requester.organisation_id, amount, currency)
    candidates = build_route(approval_type, normalised, requester, users)

    logger.info(
        "approval_routed",
        approval_type=ApprovalType(approval_type).value,
        amount=str(normalised) if normalised is not None else None,
        candidates=len(candidates),
        approver_id=str(candidates[0].approver_id) if candidates else None,
    )
    return candidates
