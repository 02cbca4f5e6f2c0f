"""
Read-only lookups against the identity tables.

Used after commit to build notification payloads. Every lookup opens its own
session so independent lookups can run concurrently.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from signoff.models.approval import Approval
from signoff.models.branch import Branch
from signoff.models.organisation import Organisation
from signoff.models.user import User

logger = structlog.get_logger()


@dataclass
class DirectoryContext:
    users: dict[str, User] = field(default_factory=dict)
    organisation: Optional[Organisation] = None
    branch: Optional[Branch] = None

    def user(self, user_id) -> Optional[User]:
        if user_id is None:
            return None
        return self.users.get(str(user_id))


class IdentityDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def get_approval(self, approval_id: uuid.UUID) -> Optional[Approval]:
        async with self.session_factory() as session:
            return await session.get(Approval, approval_id)

    async def get_users(self, user_ids: Iterable[uuid.UUID]) -> dict[str, User]:
        ids = list({uid for uid in user_ids if uid is not None})
        if not ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.id.in_(ids)))
            return {str(u.id): u for u in result.scalars().all()}

    async def get_organisation(self, organisation_id: uuid.UUID) -> Optional[Organisation]:
        async with self.session_factory() as session:
            return await session.get(Organisation, organisation_id)

    async def get_branch(self, branch_id: Optional[uuid.UUID]) -> Optional[Branch]:
        if branch_id is None:
            return None
        async with self.session_factory() as session:
            return await session.get(Branch, branch_id)

    async def resolve(
        self,
        user_ids: Iterable[uuid.UUID],
        organisation_id: uuid.UUID,
        branch_id: Optional[uuid.UUID] = None,
    ) -> DirectoryContext:
        users, organisation, branch = await asyncio.gather(
            self.get_users(user_ids),
            self.get_organisation(organisation_id),
            self.get_branch(branch_id),
        )
        return DirectoryContext(users=users, organisation=organisation, branch=branch)


async def find_active_member(
    session: AsyncSession, organisation_id: uuid.UUID, user_id: uuid.UUID
) -> Optional[User]:
    """Active user in the organisation, looked up on the caller's session."""
    result = await session.execute(
        select(User).where(
            User.id == user_id,
            User.organisation_id == organisation_id,
            User.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()
