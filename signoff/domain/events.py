"""
Typed domain events and the in-process bus that fans them out.

One frozen dataclass per event kind. Handlers subscribe by event class and
are awaited in registration order; a failing handler is logged and skipped so
that notifications and broadcasts can never undo a committed transition.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Optional

import structlog

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DomainEvent:
    name: ClassVar[str] = "domain.event"

    approval_id: uuid.UUID
    organisation_id: uuid.UUID
    actor_id: Optional[uuid.UUID]
    occurred_at: datetime = field(default_factory=_now, kw_only=True)

    def payload(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, uuid.UUID):
                data[key] = str(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        data["event"] = self.name
        return data


@dataclass(frozen=True)
class ApprovalCreated(DomainEvent):
    name: ClassVar[str] = "approval.created"

    reference: str
    status: str
    approver_id: Optional[uuid.UUID] = None
    notify: bool = True


@dataclass(frozen=True)
class ApprovalUpdated(DomainEvent):
    name: ClassVar[str] = "approval.updated"

    reference: str
    change: str  # "edited", "archived", "deleted", "overdue"
    notify: bool = True


@dataclass(frozen=True)
class ApprovalActionPerformed(DomainEvent):
    name: ClassVar[str] = "approval.action.performed"

    reference: str
    action: str
    from_status: str
    to_status: str
    comments: Optional[str] = None
    target_user_id: Optional[uuid.UUID] = None
    notify: bool = True


@dataclass(frozen=True)
class HighPriorityApprovalAction(DomainEvent):
    name: ClassVar[str] = "approval.high.priority.action"

    reference: str
    action: str
    from_status: str
    to_status: str
    priority: str
    amount: Optional[str] = None


@dataclass(frozen=True)
class BroadcastEnvelope(DomainEvent):
    """Transport-agnostic fan-out of another event to real-time listeners."""

    name: ClassVar[str] = "websocket.broadcast"

    event_name: str
    data: dict = field(default_factory=dict)


Handler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event: DomainEvent) -> list[Handler]:
        found: list[Handler] = []
        for event_type in type(event).__mro__:
            found.extend(self._handlers.get(event_type, []))
        return found

    async def publish(self, event: DomainEvent) -> None:
        for handler in self.handlers_for(event):
            try:
                await handler(event)
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_name=event.name,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    approval_id=str(event.approval_id),
                    error=str(exc),
                )

    async def publish_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)
