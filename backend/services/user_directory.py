"""
User directory and request principal.

Users and sessions are owned by the auth service; this module only defines
what the order flow needs from it: who is calling, and how to reach a
customer by email.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class Principal(BaseModel):
    """Authenticated caller, as established by the auth layer"""
    user_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPERADMIN)

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.user_id == owner_id


class UserRecord(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str
    phone: Optional[str] = None
    role: Role = Role.CUSTOMER

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class IUserDirectory(ABC):
    """Read-only view of the user store"""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserRecord]:
        pass


class InMemoryUserDirectory(IUserDirectory):
    def __init__(self, users: Optional[list[UserRecord]] = None):
        self._users: dict[str, UserRecord] = {u.id: u for u in users or []}
        self._lock = asyncio.Lock()

    async def add(self, user: UserRecord) -> UserRecord:
        async with self._lock:
            self._users[user.id] = user
            return user

    async def get(self, user_id: str) -> Optional[UserRecord]:
        async with self._lock:
            return self._users.get(user_id)
