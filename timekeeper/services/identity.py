"""
Identity resolution: session principal to internal user id.

Employees authenticate against ``employees`` but their attendance is keyed
by the ``users`` row carrying the same email (role ``employee``). Admins
authenticate against ``users`` directly. The lookup runs once per request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from timekeeper.core.exceptions import NotFoundError
from timekeeper.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    id: int
    email: str
    kind: str  # admin | employee


@dataclass(frozen=True)
class Actor:
    """The resolved caller every service operation acts as."""

    user_id: int
    is_admin: bool = False


class IdentityResolver:
    def __init__(self, db: AsyncSession):
        self._db = db

    async def resolve(self, principal: Principal) -> int:
        if principal.kind == "admin":
            return principal.id

        result = await self._db.execute(
            select(User.id).where(
                User.email == principal.email.lower(),
                User.role == "employee",
            )
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            logger.warning("No user record for employee principal %d", principal.id)
            raise NotFoundError("User record not found", code="USER_NOT_FOUND")
        return user_id

    async def actor_for(self, principal: Principal) -> Actor:
        return Actor(
            user_id=await self.resolve(principal),
            is_admin=principal.kind == "admin",
        )
