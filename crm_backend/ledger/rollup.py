"""
Customer Statistics Rollup

Maintains Customer.total_purchases, total_spent and last_purchase_date as
additive deltas applied under an exclusive customer lock. The rollup is
never recomputed on read; ``purchase_stats`` and ``rebuild`` derive the
same figures from stored purchases for reporting and repair.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import func, select

from crm_backend.database.models import Customer, Purchase
from crm_backend.ledger.errors import ConsistencyFailure, NotFound
from crm_backend.ledger.locking import LockScope
from crm_backend.ledger.pricing import ZERO, quantize_money
from crm_backend.ledger.unit_of_work import LedgerUnitOfWork

logger = structlog.get_logger(__name__)


@dataclass
class PurchaseStats:
    """Customer statistics derived from stored purchases"""
    customer_id: int
    total_purchases: int
    total_spent: Decimal
    average_purchase: Decimal
    last_purchase_date: Optional[datetime]


class CustomerStatisticsRollup:
    """Applies purchase-level changes to the owning customer's statistics."""

    def __init__(self, uow: LedgerUnitOfWork):
        self.uow = uow

    async def _lock_customer(self, customer_id: int) -> Customer:
        customer = await self.uow.lock(LockScope.customer(customer_id))
        if customer is None:
            raise NotFound("Customer", customer_id)
        return customer

    def _add_spent(self, customer: Customer, delta: Decimal) -> None:
        new_total = quantize_money(Decimal(customer.total_spent) + delta)
        if new_total < 0:
            # spend cannot legitimately go negative; an upstream delta is wrong
            logger.error(
                "Customer total_spent would go negative, clamping to zero",
                customer_id=customer.id,
                total_spent=str(customer.total_spent),
                delta=str(delta),
            )
            new_total = ZERO
        customer.total_spent = new_total

    async def apply_new_purchase(self, customer_id: int, final_amount: Decimal, purchase_date: datetime) -> Customer:
        """Count a newly created purchase; latest create wins last_purchase_date."""
        customer = await self._lock_customer(customer_id)
        customer.total_purchases += 1
        self._add_spent(customer, final_amount)
        customer.last_purchase_date = purchase_date
        await self.uow.session.flush()

        logger.info(
            "Customer rollup: purchase added",
            customer_id=customer_id,
            final_amount=str(final_amount),
            total_purchases=customer.total_purchases,
            total_spent=str(customer.total_spent),
        )
        return customer

    async def apply_purchase_delta(self, customer_id: int, delta: Decimal) -> Customer:
        """Shift total_spent by a change in one purchase's final amount."""
        customer = await self._lock_customer(customer_id)
        self._add_spent(customer, delta)
        await self.uow.session.flush()

        logger.info(
            "Customer rollup: purchase amount changed",
            customer_id=customer_id,
            delta=str(delta),
            total_spent=str(customer.total_spent),
        )
        return customer

    async def apply_purchase_removal(self, customer_id: int, final_amount: Decimal) -> Customer:
        """Reverse a deleted purchase."""
        customer = await self._lock_customer(customer_id)
        if customer.total_purchases <= 0:
            logger.error(
                "Customer total_purchases would go negative, clamping to zero",
                customer_id=customer_id,
            )
            customer.total_purchases = 0
        else:
            customer.total_purchases -= 1
        self._add_spent(customer, -final_amount)
        await self.uow.session.flush()

        logger.info(
            "Customer rollup: purchase removed",
            customer_id=customer_id,
            final_amount=str(final_amount),
            total_purchases=customer.total_purchases,
            total_spent=str(customer.total_spent),
        )
        return customer

    async def purchase_stats(self, customer_id: int) -> PurchaseStats:
        """Derive count, spend, average and latest date from stored purchases."""
        row = (await self.uow.session.execute(
            select(
                func.count(Purchase.id).label("total_purchases"),
                func.coalesce(func.sum(Purchase.final_amount), 0).label("total_spent"),
                func.max(Purchase.purchase_date).label("last_purchase_date"),
            ).where(Purchase.customer_id == customer_id)
        )).one()

        count = row.total_purchases or 0
        spent = quantize_money(Decimal(str(row.total_spent)))
        average = quantize_money(spent / count) if count else ZERO
        return PurchaseStats(
            customer_id=customer_id,
            total_purchases=count,
            total_spent=spent,
            average_purchase=average,
            last_purchase_date=row.last_purchase_date,
        )

    async def rebuild(self, customer_id: int) -> Customer:
        """Overwrite the rollup with figures derived from stored purchases."""
        customer = await self._lock_customer(customer_id)
        stats = await self.purchase_stats(customer_id)

        if (customer.total_purchases, Decimal(customer.total_spent)) != (stats.total_purchases, stats.total_spent):
            logger.warning(
                "Customer rollup drift repaired",
                customer_id=customer_id,
                stored_purchases=customer.total_purchases,
                stored_spent=str(customer.total_spent),
                derived_purchases=stats.total_purchases,
                derived_spent=str(stats.total_spent),
            )
        customer.total_purchases = stats.total_purchases
        customer.total_spent = stats.total_spent
        customer.last_purchase_date = stats.last_purchase_date
        await self.uow.session.flush()
        return customer

    async def verify(self, customer_id: int) -> None:
        """Raise ConsistencyFailure if the rollup disagrees with stored purchases."""
        customer = await self.uow.session.get(Customer, customer_id, populate_existing=True)
        if customer is None:
            raise NotFound("Customer", customer_id)
        stats = await self.purchase_stats(customer_id)

        if customer.total_purchases != stats.total_purchases:
            raise ConsistencyFailure(
                "Customer", customer_id, "total_purchases", stats.total_purchases, customer.total_purchases
            )
        if Decimal(customer.total_spent) != stats.total_spent:
            raise ConsistencyFailure(
                "Customer", customer_id, "total_spent", stats.total_spent, customer.total_spent
            )
