"""
Unit tests for signoff/services/notification_service.py

Tests: event -> template/recipient plan, rendering, dispatch to the right
       parties, actor self-notification suppression, failure isolation.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from signoff.domain.enums import ApprovalPriority, ApprovalType
from signoff.domain.events import (
    ApprovalActionPerformed,
    ApprovalCreated,
    ApprovalUpdated,
    EventBus,
)
from signoff.services.directory import DirectoryContext
from signoff.services.notification_service import (
    TEMPLATES,
    NotificationDispatcher,
    plan_for,
    render,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ORG = uuid.uuid4()


def _user(first: str, email: str):
    return SimpleNamespace(id=uuid.uuid4(), email=email, full_name=f"{first} Person")


def _parties():
    return SimpleNamespace(
        requester=_user("Rita", "rita@acme.test"),
        approver=_user("Manny", "manny@acme.test"),
        escalation=_user("Esme", "esme@acme.test"),
    )


def _approval(parties):
    return SimpleNamespace(
        id=uuid.uuid4(),
        organisation_id=ORG,
        branch_id=None,
        approval_reference="INV-KBGT6XY-H4P",
        title="Q3 hosting invoice",
        type=ApprovalType.INVOICE,
        priority=ApprovalPriority.HIGH,
        amount=Decimal("1250.50"),
        currency="EUR",
        deadline=datetime(2026, 11, 1, 17, 0),
        requester_id=parties.requester.id,
        approver_id=parties.approver.id,
        escalated_to_id=parties.escalation.id,
        delegated_to_id=None,
    )


def _action(approval, action: str, actor_id, **extra):
    return ApprovalActionPerformed(
        approval_id=approval.id,
        organisation_id=ORG,
        actor_id=actor_id,
        reference=approval.approval_reference,
        action=action,
        from_status="pending",
        to_status="approved",
        **extra,
    )


def _dispatcher(approval, parties, sender=None):
    directory = AsyncMock()
    directory.get_approval.return_value = approval
    directory.resolve.return_value = DirectoryContext(
        users={str(u.id): u for u in vars(parties).values()},
        organisation=SimpleNamespace(name="Acme"),
    )
    return NotificationDispatcher(directory, sender=sender or AsyncMock(return_value=True))


# ---------------------------------------------------------------------------
# Planning and rendering
# ---------------------------------------------------------------------------


def test_plan_routes_each_action_to_its_audience():
    approval = _approval(_parties())
    actor = uuid.uuid4()

    assert plan_for(_action(approval, "approve", actor)).parties == ("requester_id",)
    assert plan_for(_action(approval, "submit", actor)).kind == "approval_submitted"
    assert plan_for(_action(approval, "escalate", actor)).parties == ("escalated_to_id",)
    assert plan_for(_action(approval, "delegate", actor)).parties == ("delegated_to_id",)


def test_plan_honours_send_notification_flag():
    approval = _approval(_parties())
    assert plan_for(_action(approval, "approve", uuid.uuid4(), notify=False)) is None


def test_archive_and_overdue_changes_are_silent():
    for change in ("archived", "overdue"):
        event = ApprovalUpdated(
            approval_id=uuid.uuid4(), organisation_id=ORG, actor_id=None,
            reference="R", change=change,
        )
        assert plan_for(event) is None


def test_every_planned_kind_has_a_template():
    approval = _approval(_parties())
    for action in ("submit", "approve", "reject", "escalate", "delegate",
                   "request_info", "withdraw", "sign"):
        assert plan_for(_action(approval, action, None)).kind in TEMPLATES


def test_render_reports_missing_placeholders():
    assert render("approval_approved", {"reference": "X"}) is None
    assert render("no_such_template", {}) is None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approve_emails_the_requester():
    parties = _parties()
    approval = _approval(parties)
    sender = AsyncMock(return_value=True)
    dispatcher = _dispatcher(approval, parties, sender)

    event = _action(approval, "approve", parties.approver.id, comments="Looks right")
    delivered = await dispatcher.dispatch(event, plan_for(event))

    assert delivered is True
    sender.assert_awaited_once()
    to, subject, html = sender.call_args.args
    assert to == ["rita@acme.test"]
    assert "INV-KBGT6XY-H4P" in subject
    assert "Manny Person" in html
    assert "Looks right" in html
    assert sender.call_args.kwargs["tags"] == ["approval_approved"]


@pytest.mark.asyncio
async def test_user_text_is_escaped_in_the_email_body():
    parties = _parties()
    approval = _approval(parties)
    approval.title = "<script>alert(1)</script> & co"
    sender = AsyncMock(return_value=True)
    dispatcher = _dispatcher(approval, parties, sender)

    event = _action(approval, "approve", parties.approver.id, comments="<b>ok</b>")
    await dispatcher.dispatch(event, plan_for(event))

    _, subject, html = sender.call_args.args
    assert "<script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt; &amp; co" in html
    assert "&lt;b&gt;ok&lt;/b&gt;" in html
    assert "<b>ok</b>" not in html


@pytest.mark.asyncio
async def test_created_event_emails_the_approver_with_amount():
    parties = _parties()
    approval = _approval(parties)
    sender = AsyncMock(return_value=True)
    dispatcher = _dispatcher(approval, parties, sender)

    event = ApprovalCreated(
        approval_id=approval.id, organisation_id=ORG, actor_id=parties.requester.id,
        reference=approval.approval_reference, status="draft",
    )
    await dispatcher.dispatch(event, plan_for(event))

    to, _, html = sender.call_args.args
    assert to == ["manny@acme.test"]
    assert "EUR 1,250.50" in html


@pytest.mark.asyncio
async def test_actor_is_not_notified_about_own_action():
    parties = _parties()
    approval = _approval(parties)
    sender = AsyncMock(return_value=True)
    dispatcher = _dispatcher(approval, parties, sender)

    # edits go to requester and approver; the requester made this one
    event = ApprovalUpdated(
        approval_id=approval.id, organisation_id=ORG, actor_id=parties.requester.id,
        reference=approval.approval_reference, change="edited",
    )
    await dispatcher.dispatch(event, plan_for(event))

    recipients = [call.args[0] for call in sender.call_args_list]
    assert recipients == [["manny@acme.test"]]


@pytest.mark.asyncio
async def test_missing_approval_is_logged_not_raised():
    parties = _parties()
    dispatcher = _dispatcher(None, parties)

    event = _action(_approval(parties), "approve", uuid.uuid4())
    assert await dispatcher.dispatch(event, plan_for(event)) is False


@pytest.mark.asyncio
async def test_delivery_failure_never_escapes_the_handler():
    parties = _parties()
    approval = _approval(parties)
    sender = AsyncMock(side_effect=RuntimeError("provider down"))
    dispatcher = _dispatcher(approval, parties, sender)
    bus = EventBus()
    dispatcher.register(bus)

    await bus.publish(_action(approval, "reject", parties.approver.id))
    await dispatcher.drain()

    sender.assert_awaited_once()
