"""
Process-wide collaborators and the FastAPI dependencies that hand them out.

The cache, event bus and subscribers are module-level singletons, the same
way the HTTP clients are; each request gets its own ``ApprovalWorkflow``
bound to the request's session.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from signoff.database import AsyncSessionLocal, get_db
from signoff.domain.events import EventBus
from signoff.services.approval_service import ApprovalWorkflow
from signoff.services.broadcast import BroadcastHub
from signoff.services.cache import ApprovalCache, create_backend
from signoff.services.directory import IdentityDirectory
from signoff.services.notification_service import NotificationDispatcher

approval_cache = ApprovalCache(create_backend())
event_bus = EventBus()
directory = IdentityDirectory(AsyncSessionLocal)
notifications = NotificationDispatcher(directory)
broadcast_hub = BroadcastHub()

notifications.register(event_bus)
broadcast_hub.register(event_bus)


async def get_workflow(db: AsyncSession = Depends(get_db)) -> ApprovalWorkflow:
    return ApprovalWorkflow(db, approval_cache, event_bus)
