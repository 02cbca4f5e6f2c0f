"""
Notification service: template rendering + dispatch via email.

``NotificationDispatcher`` subscribes to the workflow's domain events. Each
event maps to a template kind and a set of recipients; delivery runs as a
background task after the transition has committed, so a slow or failing
mail provider never affects the request that triggered it.
"""

import asyncio
from dataclasses import dataclass
from html import escape
from typing import Awaitable, Callable, Optional

import structlog

from signoff.config import settings
from signoff.domain.enums import ApprovalAction
from signoff.domain.events import (
    ApprovalActionPerformed,
    ApprovalCreated,
    ApprovalUpdated,
    DomainEvent,
    EventBus,
)
from signoff.models.approval import Approval
from signoff.services.directory import DirectoryContext, IdentityDirectory
from signoff.services.email_service import send_email

logger = structlog.get_logger()

# ---------- Template registry ----------

TEMPLATES = {
    "approval_created": {
        "subject": "[Signoff] {reference}: New approval request",
        "html": (
            "<h2>New Approval Request</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{requester_name}</strong> created <strong>{title}</strong> "
            "({reference}) and it has been routed to you.</p>"
            "<p><strong>Type:</strong> {type} &middot; <strong>Priority:</strong> {priority}</p>"
            "<p><strong>Amount:</strong> {amount_display}</p>"
            "<p><a href='{link}'>Open the request</a></p>"
        ),
    },
    "approval_submitted": {
        "subject": "[Signoff] {reference}: Your approval required",
        "html": (
            "<h2>Approval Required</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{title}</strong> ({reference}) from {requester_name} "
            "is waiting for your decision.</p>"
            "<p><strong>Amount:</strong> {amount_display}</p>"
            "<p><strong>Deadline:</strong> {deadline}</p>"
            "<p><a href='{link}'>Review and decide</a></p>"
        ),
    },
    "approval_approved": {
        "subject": "[Signoff] {reference}: Approved",
        "html": (
            "<h2>Request Approved</h2>"
            "<p>Hi {name},</p>"
            "<p>Your request <strong>{title}</strong> ({reference}) has been "
            "<span style='color:green'>approved</span> by {actor_name}.</p>"
            "<p><strong>Comments:</strong> {comments}</p>"
        ),
    },
    "approval_rejected": {
        "subject": "[Signoff] {reference}: Rejected",
        "html": (
            "<h2>Request Rejected</h2>"
            "<p>Hi {name},</p>"
            "<p>Your request <strong>{title}</strong> ({reference}) has been "
            "<span style='color:red'>rejected</span> by {actor_name}.</p>"
            "<p><strong>Reason:</strong> {comments}</p>"
        ),
    },
    "approval_escalated": {
        "subject": "[Signoff] {reference}: Escalated to you",
        "html": (
            "<h2>Approval Escalated</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{title}</strong> ({reference}) was escalated to you by "
            "{actor_name}.</p>"
            "<p><strong>Reason:</strong> {comments}</p>"
            "<p><a href='{link}'>Review and decide</a></p>"
        ),
    },
    "approval_delegated": {
        "subject": "[Signoff] {reference}: Delegated to you",
        "html": (
            "<h2>Approval Delegated</h2>"
            "<p>Hi {name},</p>"
            "<p>{actor_name} delegated <strong>{title}</strong> ({reference}) to you.</p>"
            "<p><a href='{link}'>Review and decide</a></p>"
        ),
    },
    "approval_info_requested": {
        "subject": "[Signoff] {reference}: More information needed",
        "html": (
            "<h2>Additional Information Required</h2>"
            "<p>Hi {name},</p>"
            "<p>{actor_name} needs more information on <strong>{title}</strong> "
            "({reference}).</p>"
            "<p><strong>Comments:</strong> {comments}</p>"
        ),
    },
    "approval_withdrawn": {
        "subject": "[Signoff] {reference}: Withdrawn",
        "html": (
            "<h2>Request Withdrawn</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{title}</strong> ({reference}) was withdrawn by {actor_name}. "
            "No further action is needed.</p>"
        ),
    },
    "approval_signed": {
        "subject": "[Signoff] {reference}: Signed",
        "html": (
            "<h2>Request Signed</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{title}</strong> ({reference}) was signed by {actor_name}.</p>"
        ),
    },
    "approval_updated": {
        "subject": "[Signoff] {reference}: Updated",
        "html": (
            "<h2>Approval Request Updated</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{title}</strong> ({reference}) was edited by {actor_name}.</p>"
            "<p><a href='{link}'>View the latest version</a></p>"
        ),
    },
    "approval_deleted": {
        "subject": "[Signoff] {reference}: Deleted",
        "html": (
            "<h2>Approval Request Deleted</h2>"
            "<p>Hi {name},</p>"
            "<p><strong>{title}</strong> ({reference}) was deleted by {actor_name}.</p>"
        ),
    },
}

# Which parties hear about each action
_ACTION_ROUTING = {
    ApprovalAction.SUBMIT: ("approval_submitted", ("approver_id",)),
    ApprovalAction.APPROVE: ("approval_approved", ("requester_id",)),
    ApprovalAction.REJECT: ("approval_rejected", ("requester_id",)),
    ApprovalAction.ESCALATE: ("approval_escalated", ("escalated_to_id",)),
    ApprovalAction.DELEGATE: ("approval_delegated", ("delegated_to_id",)),
    ApprovalAction.REQUEST_INFO: ("approval_info_requested", ("requester_id",)),
    ApprovalAction.WITHDRAW: ("approval_withdrawn", ("approver_id",)),
    ApprovalAction.SIGN: ("approval_signed", ("requester_id",)),
}

_CHANGE_ROUTING = {
    "edited": ("approval_updated", ("requester_id", "approver_id")),
    "deleted": ("approval_deleted", ("requester_id", "approver_id")),
}


@dataclass(frozen=True)
class NotificationPlan:
    kind: str
    parties: tuple[str, ...]


def plan_for(event: DomainEvent) -> Optional[NotificationPlan]:
    """Template kind and recipient roles for an event, or None when nobody is told."""
    if not getattr(event, "notify", False):
        return None
    if isinstance(event, ApprovalCreated):
        return NotificationPlan("approval_created", ("approver_id",))
    if isinstance(event, ApprovalActionPerformed):
        routing = _ACTION_ROUTING.get(ApprovalAction(event.action))
        return NotificationPlan(*routing) if routing else None
    if isinstance(event, ApprovalUpdated):
        routing = _CHANGE_ROUTING.get(event.change)
        return NotificationPlan(*routing) if routing else None
    return None


def _format_amount(approval: Approval) -> str:
    if approval.amount is None:
        return "n/a"
    return f"{approval.currency or settings.BASE_CURRENCY} {approval.amount:,.2f}"


def build_context(approval: Approval, event: DomainEvent, directory: DirectoryContext) -> dict:
    requester = directory.user(approval.requester_id)
    actor = directory.user(event.actor_id)
    return {
        "reference": approval.approval_reference,
        "title": approval.title,
        "type": approval.type.value if approval.type else "",
        "priority": approval.priority.value if approval.priority else "",
        "amount_display": _format_amount(approval),
        "deadline": approval.deadline.strftime("%Y-%m-%d %H:%M") if approval.deadline else "n/a",
        "requester_name": requester.full_name if requester else "",
        "actor_name": actor.full_name if actor else "System",
        "comments": getattr(event, "comments", None) or "n/a",
        "organisation": directory.organisation.name if directory.organisation else "",
        "branch": directory.branch.name if directory.branch else "",
        "link": f"{settings.CLIENT_URL}/approvals/{approval.id}",
    }


def render(kind: str, context: dict) -> Optional[tuple[str, str]]:
    template = TEMPLATES.get(kind)
    if not template:
        logger.warning("notification_template_not_found", template_id=kind)
        return None
    # user-supplied text lands in markup; the subject is plain text
    markup = {k: escape(v) if isinstance(v, str) else v for k, v in context.items()}
    try:
        return template["subject"].format(**context), template["html"].format(**markup)
    except KeyError as e:
        logger.error("notification_template_render_error", template_id=kind, missing_key=str(e))
        return None


Sender = Callable[..., Awaitable[bool]]


class NotificationDispatcher:
    def __init__(self, directory: IdentityDirectory, sender: Sender = send_email):
        self.directory = directory
        self.sender = sender
        self._tasks: set[asyncio.Task] = set()

    def register(self, bus: EventBus) -> None:
        for event_type in (ApprovalCreated, ApprovalUpdated, ApprovalActionPerformed):
            bus.subscribe(event_type, self.handle)

    async def handle(self, event: DomainEvent) -> None:
        plan = plan_for(event)
        if plan is None:
            return
        task = asyncio.create_task(self._deliver(event, plan))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, event: DomainEvent, plan: NotificationPlan) -> bool:
        try:
            return await self.dispatch(event, plan)
        except Exception as exc:
            logger.error(
                "notification_dispatch_failed",
                event_name=event.name,
                approval_id=str(event.approval_id),
                kind=plan.kind,
                error=str(exc),
            )
            return False

    async def dispatch(self, event: DomainEvent, plan: NotificationPlan) -> bool:
        approval = await self.directory.get_approval(event.approval_id)
        if approval is None:
            logger.warning("notification_approval_missing", approval_id=str(event.approval_id))
            return False

        recipient_ids = [getattr(approval, party) for party in plan.parties]
        context_ids = recipient_ids + [approval.requester_id, event.actor_id]
        directory = await self.directory.resolve(
            context_ids, approval.organisation_id, approval.branch_id
        )

        recipients = []
        for user_id in recipient_ids:
            user = directory.user(user_id)
            # the actor never notifies themselves
            if user is None or not user.email or str(user.id) == str(event.actor_id):
                continue
            if user not in recipients:
                recipients.append(user)

        if not recipients:
            logger.info("notification_no_recipients", kind=plan.kind, approval_id=str(approval.id))
            return False

        context = build_context(approval, event, directory)
        delivered = True
        for user in recipients:
            rendered = render(plan.kind, {**context, "name": user.full_name})
            if rendered is None:
                return False
            subject, html = rendered
            sent = await self.sender([user.email], subject, html, tags=[plan.kind])
            delivered = delivered and sent

        logger.info(
            "notification_sent",
            template_id=plan.kind,
            recipients=[u.email for u in recipients],
            success=delivered,
        )
        return delivered
