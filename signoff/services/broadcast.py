"""
Real-time fan-out of approval events to connected WebSocket clients.

Connections are grouped by organisation; a frame only reaches listeners in
the organisation the approval belongs to.
"""

import uuid
from collections import defaultdict
from typing import Any, Optional

from fastapi import WebSocket
import structlog

from signoff.domain.events import (
    ApprovalActionPerformed,
    ApprovalCreated,
    ApprovalUpdated,
    BroadcastEnvelope,
    DomainEvent,
    EventBus,
    HighPriorityApprovalAction,
)

logger = structlog.get_logger()

FRAME_NAMES = {
    ApprovalCreated: "approval:created",
    ApprovalUpdated: "approval:updated",
    ApprovalActionPerformed: "approval:action",
    HighPriorityApprovalAction: "approval:high-priority",
}


class BroadcastHub:
    def __init__(self):
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    def connect(self, organisation_id: uuid.UUID, websocket: WebSocket) -> None:
        self._connections[str(organisation_id)].add(websocket)
        logger.info("ws_client_connected", organisation_id=str(organisation_id))

    def disconnect(self, organisation_id: uuid.UUID, websocket: WebSocket) -> None:
        listeners = self._connections.get(str(organisation_id))
        if listeners is not None:
            listeners.discard(websocket)
            if not listeners:
                self._connections.pop(str(organisation_id), None)
        logger.info("ws_client_disconnected", organisation_id=str(organisation_id))

    def listener_count(self, organisation_id: Optional[uuid.UUID] = None) -> int:
        if organisation_id is not None:
            return len(self._connections.get(str(organisation_id), ()))
        return sum(len(v) for v in self._connections.values())

    async def publish(self, event: str, payload: dict[str, Any]) -> int:
        """Send ``{"event", "data"}`` to the payload's organisation. Returns frames delivered."""
        organisation_id = payload.get("organisation_id")
        listeners = list(self._connections.get(str(organisation_id), ()))
        delivered = 0
        for websocket in listeners:
            try:
                await websocket.send_json({"event": event, "data": payload})
                delivered += 1
            except Exception as exc:
                logger.warning("ws_send_failed", event_name=event, error=str(exc))
                self.disconnect(organisation_id, websocket)
        return delivered

    async def handle(self, event: DomainEvent) -> None:
        if isinstance(event, BroadcastEnvelope):
            await self.publish(
                event.event_name,
                {**event.data, "organisation_id": str(event.organisation_id)},
            )
            return
        frame = FRAME_NAMES.get(type(event))
        if frame is None:
            return
        await self.publish(frame, event.payload())

    def register(self, bus: EventBus) -> None:
        for event_type in (*FRAME_NAMES, BroadcastEnvelope):
            bus.subscribe(event_type, self.handle)
