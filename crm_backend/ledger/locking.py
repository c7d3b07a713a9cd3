"""
Ledger Locks

Read-modify-write of derived aggregates happens under an exclusive lock on
the owning row. A lock is named by a LockScope (kind + primary key) and is
taken in two layers:

1. an in-process asyncio.Lock from the LockRegistry, which serializes
   coroutines of this worker; and
2. ``SELECT ... FOR UPDATE`` on the row, which serializes transactions of
   other workers on PostgreSQL (rendered as a plain SELECT on SQLite).

Both are held until the enclosing unit of work commits or rolls back.
Locks are always acquired purchase before customer.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Optional, Type, TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm_backend.database.models import Base, Customer, ProductVariant, Purchase

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class LockKind(str, Enum):
    """Rows that carry ledger state guarded by a lock"""
    PURCHASE = "purchase"
    CUSTOMER = "customer"
    VARIANT = "variant"


_MODELS: Dict[LockKind, Type[Base]] = {
    LockKind.PURCHASE: Purchase,
    LockKind.CUSTOMER: Customer,
    LockKind.VARIANT: ProductVariant,
}


@dataclass(frozen=True)
class LockScope:
    """Exclusive lock on one ledger row."""
    kind: LockKind
    key: int

    @classmethod
    def purchase(cls, purchase_id: int) -> "LockScope":
        return cls(LockKind.PURCHASE, purchase_id)

    @classmethod
    def customer(cls, customer_id: int) -> "LockScope":
        return cls(LockKind.CUSTOMER, customer_id)

    @classmethod
    def variant(cls, variant_id: int) -> "LockScope":
        return cls(LockKind.VARIANT, variant_id)

    @property
    def model(self) -> Type[Base]:
        return _MODELS[self.kind]

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.key}"


class LockRegistry:
    """
    In-process exclusive locks keyed by LockScope.

    Entries are created on demand and dropped once nobody holds or waits
    for them, so the registry stays bounded by the number of rows in flight.
    """

    def __init__(self):
        self._locks: Dict[LockScope, asyncio.Lock] = {}
        self._users: Dict[LockScope, int] = {}

    @asynccontextmanager
    async def hold(self, scope: LockScope) -> AsyncIterator[None]:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        self._users[scope] = self._users.get(scope, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[scope] -= 1
            if self._users[scope] == 0:
                del self._users[scope]
                del self._locks[scope]

    def is_locked(self, scope: LockScope) -> bool:
        lock = self._locks.get(scope)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every unit of work of this process
default_registry = LockRegistry()


async def lock_row(session: AsyncSession, model: Type[ModelT], pk: int) -> Optional[ModelT]:
    """Re-read a row with SELECT ... FOR UPDATE, refreshing any cached instance."""
    result = await session.execute(
        select(model)
        .where(model.id == pk)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
