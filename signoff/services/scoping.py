"""
Visibility predicate for approvals.

The same rule is expressed twice: as a SQL filter for list queries
(``scope_query``) and as a Python check for rows that were fetched by key
or served from cache (``is_visible``). Both must stay in step.
"""

from sqlalchemy import Select, or_

from signoff.domain.actor import Actor
from signoff.domain.enums import Lifecycle
from signoff.exceptions import NotFoundError
from signoff.models.approval import Approval


def scope_query(stmt: Select, actor: Actor, include_deleted: bool = False) -> Select:
    stmt = stmt.where(Approval.organisation_id == actor.organisation_id)

    if not include_deleted:
        stmt = stmt.where(Approval.lifecycle != Lifecycle.DELETED)

    if not actor.is_elevated:
        if actor.branch_id is not None:
            stmt = stmt.where(Approval.branch_id == actor.branch_id)
        stmt = stmt.where(
            or_(
                Approval.requester_id == actor.user_id,
                Approval.approver_id == actor.user_id,
                Approval.delegated_to_id == actor.user_id,
            )
        )
    return stmt


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def is_visible(approval: Approval, actor: Actor, include_deleted: bool = False) -> bool:
    if not _same(approval.organisation_id, actor.organisation_id):
        return False
    if not include_deleted and Lifecycle(approval.lifecycle) == Lifecycle.DELETED:
        return False
    if actor.is_elevated:
        return True
    if actor.branch_id is not None and not _same(approval.branch_id, actor.branch_id):
        return False
    return any(
        _same(party, actor.user_id)
        for party in (approval.requester_id, approval.approver_id, approval.delegated_to_id)
    )


def ensure_visible(approval, actor: Actor, include_deleted: bool = False) -> Approval:
    """Return the approval, or raise NotFoundError exactly as for a missing row."""
    if approval is None or not is_visible(approval, actor, include_deleted):
        raise NotFoundError("Approval not found")
    return approval
