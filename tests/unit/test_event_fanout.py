"""
Unit tests for signoff/domain/events.py and signoff/services/broadcast.py

Tests: EventBus ordering and failure isolation, event payloads,
       BroadcastHub organisation fan-out and dead-socket pruning.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from signoff.domain.events import (
    ApprovalActionPerformed,
    ApprovalCreated,
    ApprovalUpdated,
    BroadcastEnvelope,
    DomainEvent,
    EventBus,
    HighPriorityApprovalAction,
)
from signoff.services.broadcast import BroadcastHub


ORG = uuid.uuid4()


def _created(org=ORG) -> ApprovalCreated:
    return ApprovalCreated(
        approval_id=uuid.uuid4(),
        organisation_id=org,
        actor_id=uuid.uuid4(),
        reference="GEN-1-ABC",
        status="draft",
    )


def _socket() -> MagicMock:
    ws = MagicMock()
    ws.send_json = AsyncMock()
    return ws


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_handlers_run_in_registration_order():
    bus = EventBus()
    calls = []

    async def first(event):
        calls.append("first")

    async def second(event):
        calls.append("second")

    bus.subscribe(ApprovalCreated, first)
    bus.subscribe(ApprovalCreated, second)

    await bus.publish(_created())

    assert calls == ["first", "second"]


@pytest.mark.asyncio
async def test_base_class_subscription_sees_every_event():
    bus = EventBus()
    seen = []

    async def record(event):
        seen.append(type(event))

    bus.subscribe(DomainEvent, record)
    await bus.publish_all([
        _created(),
        ApprovalUpdated(
            approval_id=uuid.uuid4(), organisation_id=ORG, actor_id=None,
            reference="R", change="edited",
        ),
    ])

    assert seen == [ApprovalCreated, ApprovalUpdated]


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_the_rest():
    bus = EventBus()
    after = AsyncMock()

    async def broken(event):
        raise RuntimeError("smtp down")

    bus.subscribe(ApprovalCreated, broken)
    bus.subscribe(ApprovalCreated, after)

    await bus.publish(_created())

    after.assert_awaited_once()


def test_payload_is_json_ready():
    event = ApprovalActionPerformed(
        approval_id=uuid.uuid4(),
        organisation_id=ORG,
        actor_id=uuid.uuid4(),
        reference="INV-1-AAA",
        action="approve",
        from_status="pending",
        to_status="approved",
    )
    payload = event.payload()

    assert payload["event"] == "approval.action.performed"
    assert payload["organisation_id"] == str(ORG)
    assert isinstance(payload["occurred_at"], str)
    assert payload["target_user_id"] is None


# ---------------------------------------------------------------------------
# BroadcastHub
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_frames_reach_only_the_same_organisation():
    hub = BroadcastHub()
    ours, theirs = _socket(), _socket()
    hub.connect(ORG, ours)
    hub.connect(uuid.uuid4(), theirs)

    await hub.handle(_created())

    ours.send_json.assert_awaited_once()
    frame = ours.send_json.call_args.args[0]
    assert frame["event"] == "approval:created"
    assert frame["data"]["reference"] == "GEN-1-ABC"
    theirs.send_json.assert_not_awaited()


@pytest.mark.asyncio
async def test_high_priority_frame_name():
    hub = BroadcastHub()
    ws = _socket()
    hub.connect(ORG, ws)

    await hub.handle(
        HighPriorityApprovalAction(
            approval_id=uuid.uuid4(), organisation_id=ORG, actor_id=None,
            reference="CON-1-AAA", action="approve", from_status="pending",
            to_status="approved", priority="critical",
        )
    )

    assert ws.send_json.call_args.args[0]["event"] == "approval:high-priority"


@pytest.mark.asyncio
async def test_envelope_is_sent_under_its_own_name():
    hub = BroadcastHub()
    ws = _socket()
    hub.connect(ORG, ws)

    await hub.handle(
        BroadcastEnvelope(
            approval_id=uuid.uuid4(), organisation_id=ORG, actor_id=None,
            event_name="approval:overdue", data={"count": 2},
        )
    )

    frame = ws.send_json.call_args.args[0]
    assert frame == {"event": "approval:overdue", "data": {"count": 2, "organisation_id": str(ORG)}}


@pytest.mark.asyncio
async def test_dead_socket_is_pruned():
    hub = BroadcastHub()
    dead = _socket()
    dead.send_json.side_effect = RuntimeError("closed")
    hub.connect(ORG, dead)

    delivered = await hub.publish("approval:created", {"organisation_id": str(ORG)})

    assert delivered == 0
    assert hub.listener_count(ORG) == 0


@pytest.mark.asyncio
async def test_register_wires_hub_to_bus():
    bus = EventBus()
    hub = BroadcastHub()
    ws = _socket()
    hub.connect(ORG, ws)
    hub.register(bus)

    await bus.publish(_created())

    ws.send_json.assert_awaited_once()
