"""
Identity lookups used by the assignment store.

Only existence matters here: an assignment to a user the identity store does
not know is rejected with UnknownSubject.
"""
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scopeauth.features.users.models import User


class IdentityStore(Protocol):
    async def exists(self, session: AsyncSession, user_id: str) -> bool:
        ...


class SqlIdentityStore:
    """Looks users up in the users table. Inactive users count as unknown."""

    async def exists(self, session: AsyncSession, user_id: str) -> bool:
        result = await session.execute(
            select(User.id).where(User.id == user_id, User.is_active.is_(True))
        )
        return result.scalar_one_or_none() is not None


class StaticIdentityStore:
    """Fixed set of known user ids, for embedding and tests."""

    def __init__(self, user_ids: Iterable[str] = ()):
        self.user_ids = set(user_ids)

    def add(self, user_id: str) -> None:
        self.user_ids.add(user_id)

    async def exists(self, session: AsyncSession, user_id: str) -> bool:
        return user_id in self.user_ids
