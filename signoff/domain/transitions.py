"""
Approval state machine.

Pure value objects and checks, no I/O. The workflow service calls
``validate_transition`` before touching the approval; every check raises
before any field is mutated.

    action        from                                   to                         actor
    SUBMIT        DRAFT                                  PENDING                    requester
    APPROVE       PENDING, UNDER_REVIEW                  APPROVED                   decider
    REJECT        PENDING, UNDER_REVIEW                  REJECTED                   decider
    REQUEST_INFO  PENDING, UNDER_REVIEW                  ADDITIONAL_INFO_REQUIRED   decider
    DELEGATE      PENDING, UNDER_REVIEW                  (unchanged)                decider
    ESCALATE      PENDING, UNDER_REVIEW                  ESCALATED                  decider
    SIGN          APPROVED                               SIGNED                     any visible actor
    WITHDRAW      PENDING, UNDER_REVIEW, ADDITIONAL_INFO WITHDRAWN                  requester or admin/owner

"decider" is the assigned approver, the current delegatee, or an admin/owner.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from signoff.domain.actor import Actor
from signoff.domain.enums import ApprovalAction, ApprovalStatus, Lifecycle
from signoff.exceptions import ConflictError, PermissionDeniedError


class ActorRequirement(str, Enum):
    REQUESTER = "requester"
    DECIDER = "decider"
    REQUESTER_OR_ADMIN = "requester_or_admin"
    ANY_VISIBLE = "any_visible"


@dataclass(frozen=True)
class Guard:
    """A condition on the approval itself that must hold before a transition fires."""

    name: str
    description: str


REQUIRES_SIGNATURE = Guard(
    name="requires_signature",
    description="Approval must be flagged as requiring a signature",
)


@dataclass(frozen=True)
class TransitionRule:
    action: ApprovalAction
    from_states: frozenset
    to_state: Optional[ApprovalStatus]  # None leaves the status unchanged
    actor: ActorRequirement
    guard: Optional[Guard] = None


_DECIDABLE = frozenset({ApprovalStatus.PENDING, ApprovalStatus.UNDER_REVIEW})

TRANSITIONS: dict[ApprovalAction, TransitionRule] = {
    rule.action: rule
    for rule in (
        TransitionRule(
            ApprovalAction.SUBMIT,
            frozenset({ApprovalStatus.DRAFT}),
            ApprovalStatus.PENDING,
            ActorRequirement.REQUESTER,
        ),
        TransitionRule(
            ApprovalAction.APPROVE, _DECIDABLE, ApprovalStatus.APPROVED, ActorRequirement.DECIDER
        ),
        TransitionRule(
            ApprovalAction.REJECT, _DECIDABLE, ApprovalStatus.REJECTED, ActorRequirement.DECIDER
        ),
        TransitionRule(
            ApprovalAction.REQUEST_INFO,
            _DECIDABLE,
            ApprovalStatus.ADDITIONAL_INFO_REQUIRED,
            ActorRequirement.DECIDER,
        ),
        TransitionRule(ApprovalAction.DELEGATE, _DECIDABLE, None, ActorRequirement.DECIDER),
        TransitionRule(
            ApprovalAction.ESCALATE, _DECIDABLE, ApprovalStatus.ESCALATED, ActorRequirement.DECIDER
        ),
        TransitionRule(
            ApprovalAction.SIGN,
            frozenset({ApprovalStatus.APPROVED}),
            ApprovalStatus.SIGNED,
            ActorRequirement.ANY_VISIBLE,
            guard=REQUIRES_SIGNATURE,
        ),
        TransitionRule(
            ApprovalAction.WITHDRAW,
            frozenset({
                ApprovalStatus.PENDING,
                ApprovalStatus.UNDER_REVIEW,
                ApprovalStatus.ADDITIONAL_INFO_REQUIRED,
            }),
            ApprovalStatus.WITHDRAWN,
            ActorRequirement.REQUESTER_OR_ADMIN,
        ),
    )
}

TERMINAL_STATUSES = frozenset({
    ApprovalStatus.SIGNED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.WITHDRAWN,
    ApprovalStatus.CANCELLED,
    ApprovalStatus.COMPLETED,
})


def is_terminal(status, requires_signature: bool) -> bool:
    status = ApprovalStatus(status)
    if status == ApprovalStatus.APPROVED:
        return not requires_signature
    return status in TERMINAL_STATUSES


def get_rule(action) -> TransitionRule:
    action = ApprovalAction(action)
    rule = TRANSITIONS.get(action)
    if rule is None:
        raise ConflictError(
            f"Action {action.value} is not permitted by the approval workflow",
            details={"action": action.value},
        )
    return rule


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def is_decider(approval, actor: Actor) -> bool:
    return (
        _same(approval.approver_id, actor.user_id)
        or _same(approval.delegated_to_id, actor.user_id)
        or actor.is_elevated
    )


def authorize(rule: TransitionRule, approval, actor: Actor) -> None:
    is_requester = _same(approval.requester_id, actor.user_id)

    if rule.actor == ActorRequirement.REQUESTER:
        allowed = is_requester
    elif rule.actor == ActorRequirement.DECIDER:
        allowed = is_decider(approval, actor)
    elif rule.actor == ActorRequirement.REQUESTER_OR_ADMIN:
        allowed = is_requester or actor.is_elevated
    else:
        allowed = True

    if not allowed:
        raise PermissionDeniedError(
            f"You are not authorized to {rule.action.value} this approval",
            details={"action": rule.action.value, "required": rule.actor.value},
        )


def check_source_state(rule: TransitionRule, approval) -> None:
    current = ApprovalStatus(approval.status)
    if current not in rule.from_states:
        raise ConflictError(
            f"Cannot {rule.action.value} an approval with status {current.value}",
            details={
                "action": rule.action.value,
                "status": current.value,
                "allowed_from": sorted(s.value for s in rule.from_states),
            },
        )


def check_guard(rule: TransitionRule, approval) -> None:
    if rule.guard is REQUIRES_SIGNATURE and not approval.requires_signature:
        raise ConflictError(
            "This approval does not require a signature",
            code="SIGNATURE_NOT_REQUIRED",
            details={"guard": rule.guard.name},
        )


def check_active(approval) -> None:
    lifecycle = Lifecycle(approval.lifecycle)
    if lifecycle != Lifecycle.ACTIVE:
        raise ConflictError(
            f"Approval is {lifecycle.value} and can no longer change",
            code="LIFECYCLE_CONFLICT",
            details={"lifecycle": lifecycle.value},
        )


def validate_transition(approval, action, actor: Actor) -> TransitionRule:
    """Run every check for ``action`` against ``approval``; return the rule to apply."""
    rule = get_rule(action)
    check_active(approval)
    authorize(rule, approval, actor)
    check_source_state(rule, approval)
    check_guard(rule, approval)
    return rule


def target_status(rule: TransitionRule, approval) -> ApprovalStatus:
    return rule.to_state or ApprovalStatus(approval.status)


# ---------- lifecycle ----------

LIFECYCLE_TRANSITIONS = {
    Lifecycle.ACTIVE: frozenset({Lifecycle.ARCHIVED, Lifecycle.DELETED}),
    Lifecycle.ARCHIVED: frozenset({Lifecycle.DELETED}),
    Lifecycle.DELETED: frozenset(),
}


def validate_lifecycle_change(approval, target: Lifecycle, actor: Actor) -> None:
    current = Lifecycle(approval.lifecycle)
    if target not in LIFECYCLE_TRANSITIONS[current]:
        raise ConflictError(
            f"Cannot move approval from {current.value} to {target.value}",
            code="LIFECYCLE_CONFLICT",
            details={"lifecycle": current.value, "target": target.value},
        )

    if target == Lifecycle.ARCHIVED:
        if not is_terminal(approval.status, approval.requires_signature):
            raise ConflictError(
                "Only approvals in a terminal status can be archived",
                code="LIFECYCLE_CONFLICT",
                details={"status": ApprovalStatus(approval.status).value},
            )
        return

    if not (_same(approval.requester_id, actor.user_id) or actor.is_elevated):
        raise PermissionDeniedError("Only the requester or an administrator can delete this approval")
