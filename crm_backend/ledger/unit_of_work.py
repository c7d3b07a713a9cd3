"""
Ledger Unit of Work

One transaction scope per application-service call. Everything the call
writes (item, purchase, customer) commits together or not at all, and every
lock taken inside the scope is released only after the commit or rollback.
"""

from contextlib import AsyncExitStack
from typing import Any, Optional, Set, Type

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_backend.ledger.errors import DuplicateValue, LedgerError, ReferentialFailure
from crm_backend.ledger.locking import LockRegistry, LockScope, ModelT, default_registry, lock_row

logger = structlog.get_logger(__name__)


class LedgerUnitOfWork:
    """
    Async context manager owning one session transaction and its locks.

    Example:
        async with LedgerUnitOfWork(session_factory) as uow:
            purchase = await uow.lock(LockScope.purchase(purchase_id))
            ...
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[LockRegistry] = None,
    ):
        self._session_factory = session_factory
        self._locks = locks if locks is not None else default_registry
        self._stack: Optional[AsyncExitStack] = None
        self._held: Set[LockScope] = set()
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "LedgerUnitOfWork":
        self._stack = AsyncExitStack()
        self._held = set()
        self.session = self._session_factory()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self.session.commit()
            else:
                if not isinstance(exc, LedgerError):
                    logger.error(
                        "Ledger transaction failed, rolling back",
                        error=str(exc),
                        error_type=exc_type.__name__,
                    )
                await self.session.rollback()
        finally:
            await self.session.close()
            # after commit/rollback so waiters read the settled state
            await self._stack.aclose()
            self._held.clear()

    async def lock(self, scope: LockScope, model: Optional[Type[ModelT]] = None) -> Optional[ModelT]:
        """
        Take the exclusive lock for ``scope`` and return the freshly read row.

        Returns None if the row does not exist. For a scope this unit of work
        already holds, the session's copy is returned as is, pending changes
        included.
        """
        model = model or scope.model
        if scope in self._held:
            return await self.session.get(model, scope.key)

        await self._stack.enter_async_context(self._locks.hold(scope))
        self._held.add(scope)
        logger.debug("Lock acquired", scope=str(scope))
        return await lock_row(self.session, model, scope.key)

    def holds(self, scope: LockScope) -> bool:
        return scope in self._held

    async def flush_unique(self, field: str, value: Any) -> None:
        """
        Flush, reporting a unique-constraint conflict on ``field`` as
        DuplicateValue. Covers a writer that committed the same value after
        this one's availability check.
        """
        try:
            await self.session.flush()
        except IntegrityError as e:
            if "unique" not in str(e.orig).lower():
                raise
            logger.warning("Unique value taken by a concurrent writer", field=field, value=value)
            raise DuplicateValue(field, value) from e

    async def flush_delete(self, entity: str, entity_id: Any) -> None:
        """Flush a delete, reporting a foreign-key conflict as ReferentialFailure."""
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ReferentialFailure(
                f"{entity} {entity_id} is still referenced",
                {"entity": entity, "entity_id": entity_id},
            ) from e
