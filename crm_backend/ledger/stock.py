"""
Stock Adjustment Path

Bulk, explicit stock writes on product variants. Each entry is its own
transaction under an exclusive variant lock, so one bad entry never blocks
the others and two writers of the same variant never interleave. Purchases
do not reserve or decrement stock.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_backend.config import get_settings
from crm_backend.database.models import ProductVariant
from crm_backend.ledger.errors import LedgerError, NotFound, ValidationFailure
from crm_backend.ledger.locking import LockRegistry, LockScope
from crm_backend.ledger.unit_of_work import LedgerUnitOfWork

logger = structlog.get_logger(__name__)
settings = get_settings()

MAX_STOCK = 999999


@dataclass(frozen=True)
class StockUpdate:
    """Requested stock level for one variant"""
    variant_id: int
    new_stock: Any


@dataclass
class StockUpdateResult:
    """Outcome of one bulk stock entry"""
    variant_id: int
    success: bool
    stock: Optional[int] = None
    previous_stock: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "success": self.success,
            "stock": self.stock,
            "previous_stock": self.previous_stock,
            "error": self.error,
            "error_code": self.error_code,
        }


def validate_stock(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailure("new_stock", "must be an integer", value)
    if value < 0:
        raise ValidationFailure("new_stock", "must be >= 0", value)
    if value > MAX_STOCK:
        raise ValidationFailure("new_stock", f"must be <= {MAX_STOCK}", value)
    return value


class StockAdjuster:
    """Applies stock levels to variants with per-entry failure isolation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[LockRegistry] = None,
        concurrency: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._locks = locks
        self._concurrency = concurrency or settings.ledger.stock_update_concurrency

    async def set_stock(self, variant_id: int, new_stock: Any) -> StockUpdateResult:
        """
        Set one variant's stock in its own transaction.

        Raises:
            ValidationFailure: stock negative, too large or not an integer
            NotFound: variant absent
        """
        stock = validate_stock(new_stock)
        async with LedgerUnitOfWork(self._session_factory, self._locks) as uow:
            variant = await uow.lock(LockScope.variant(variant_id))
            if variant is None:
                raise NotFound("ProductVariant", variant_id)
            previous = variant.stock
            variant.stock = stock

        logger.info("Variant stock set", variant_id=variant_id, previous_stock=previous, stock=stock)
        return StockUpdateResult(variant_id=variant_id, success=True, stock=stock, previous_stock=previous)

    async def _apply(self, update: StockUpdate) -> StockUpdateResult:
        try:
            return await self.set_stock(update.variant_id, update.new_stock)
        except LedgerError as e:
            logger.warning(
                "Stock update rejected",
                variant_id=update.variant_id,
                error_code=e.code,
                error=e.message,
            )
            return StockUpdateResult(
                variant_id=update.variant_id, success=False, error=e.message, error_code=e.code
            )
        except Exception as e:
            # reported per entry; the batch keeps going
            logger.exception("Stock update failed", variant_id=update.variant_id)
            return StockUpdateResult(
                variant_id=update.variant_id,
                success=False,
                error=str(e),
                error_code="INTERNAL_ERROR",
            )

    async def bulk_set_stock(self, updates: Sequence[StockUpdate]) -> List[StockUpdateResult]:
        """
        Apply every entry independently and report one result per entry,
        in input order.

        Different variants are written concurrently; entries for the same
        variant are applied in input order, so the last one wins.
        """
        results: List[Optional[StockUpdateResult]] = [None] * len(updates)
        by_variant: "OrderedDict[Any, List[int]]" = OrderedDict()
        for index, update in enumerate(updates):
            by_variant.setdefault(update.variant_id, []).append(index)

        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_variant(indexes: List[int]) -> None:
            async with semaphore:
                for index in indexes:
                    results[index] = await self._apply(updates[index])

        await asyncio.gather(*(run_variant(indexes) for indexes in by_variant.values()))

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            "Bulk stock update completed",
            entries=len(updates),
            succeeded=succeeded,
            failed=len(updates) - succeeded,
        )
        return results

    async def low_stock_variants(self, threshold: int = 10) -> List[ProductVariant]:
        """Variants whose stock is below ``threshold``, lowest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProductVariant)
                .where(ProductVariant.stock < threshold)
                .order_by(ProductVariant.stock, ProductVariant.id)
            )
            return list(result.scalars().all())
