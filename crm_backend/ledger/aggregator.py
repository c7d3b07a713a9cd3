"""
Purchase Aggregator

Owns a purchase's total, tax, discount and final amount. Totals are always
re-derived from the full item set under an exclusive purchase lock, and the
customer rollup only ever sees the difference in final amount.
"""

import secrets
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, select

from crm_backend.config import get_settings
from crm_backend.database.models import (
    Customer,
    PaymentMethod,
    PaymentStatus,
    Purchase,
    PurchaseItem,
    PurchaseStatus,
    as_naive_utc,
    utcnow,
)
from crm_backend.ledger.errors import ConsistencyFailure, DuplicateValue, LedgerError, NotFound, ValidationFailure
from crm_backend.ledger.locking import LockScope
from crm_backend.ledger.pricing import ZERO, compute_purchase_final, quantize_money, to_money
from crm_backend.ledger.rollup import CustomerStatisticsRollup
from crm_backend.ledger.unit_of_work import LedgerUnitOfWork

logger = structlog.get_logger(__name__)
settings = get_settings()

MAX_NOTES_LENGTH = 1000


def generate_purchase_number(prefix: Optional[str] = None) -> str:
    """Candidate purchase number: PUR-<epoch ms>-<6 random hex digits>."""
    prefix = prefix or settings.ledger.purchase_number_prefix
    return f"{prefix}-{time.time_ns() // 1_000_000}-{secrets.token_hex(3).upper()}"


def validate_notes(notes: Optional[str], limit: int = MAX_NOTES_LENGTH) -> Optional[str]:
    if notes is not None and len(notes) > limit:
        raise ValidationFailure("notes", f"must be at most {limit} characters")
    return notes


class PurchaseAggregator:
    """Keeps purchase totals consistent with items and propagates to the customer."""

    def __init__(self, uow: LedgerUnitOfWork, rollup: Optional[CustomerStatisticsRollup] = None):
        self.uow = uow
        self.rollup = rollup or CustomerStatisticsRollup(uow)

    @property
    def session(self):
        return self.uow.session

    async def lock_purchase(self, purchase_id: int) -> Purchase:
        purchase = await self.uow.lock(LockScope.purchase(purchase_id))
        if purchase is None:
            raise NotFound("Purchase", purchase_id)
        return purchase

    async def load_items(self, purchase_id: int) -> List[PurchaseItem]:
        result = await self.session.execute(
            select(PurchaseItem)
            .where(PurchaseItem.purchase_id == purchase_id)
            .order_by(PurchaseItem.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def recompute_totals(self, purchase_id: int) -> Purchase:
        """
        Re-derive total_amount and final_amount from the current item set.

        Runs under the purchase lock. The customer rollup is applied only
        when final_amount actually changed.

        Raises:
            NotFound: purchase absent
            NegativeAmountFailure: tax/discount would make final negative
        """
        purchase = await self.lock_purchase(purchase_id)
        await self.session.flush()
        items = await self.load_items(purchase_id)

        old_final = Decimal(purchase.final_amount)
        total = quantize_money(sum((Decimal(item.subtotal) for item in items), ZERO))
        new_final = compute_purchase_final(total, purchase.tax_amount, purchase.discount_amount)

        purchase.total_amount = total
        purchase.final_amount = new_final
        await self.session.flush()

        logger.debug(
            "Purchase totals recomputed",
            purchase_id=purchase_id,
            item_count=len(items),
            total_amount=str(total),
            final_amount=str(new_final),
        )

        delta = new_final - old_final
        if delta != 0:
            await self.rollup.apply_purchase_delta(purchase.customer_id, delta)
        return purchase

    async def _purchase_number_taken(self, purchase_number: str) -> bool:
        result = await self.session.execute(
            select(Purchase.id).where(Purchase.purchase_number == purchase_number)
        )
        return result.first() is not None

    async def assign_purchase_number(self, requested: Optional[str] = None) -> str:
        """
        Use the requested number if free, otherwise generate one that is
        verified against stored purchases.

        Raises:
            ValidationFailure: requested number already used, or no free
                number found within the configured attempts
        """
        if requested:
            if len(requested) > 50:
                raise ValidationFailure("purchase_number", "must be at most 50 characters", requested)
            if await self._purchase_number_taken(requested):
                raise DuplicateValue("purchase_number", requested)
            return requested

        attempts = settings.ledger.purchase_number_max_attempts
        for attempt in range(1, attempts + 1):
            candidate = generate_purchase_number()
            if not await self._purchase_number_taken(candidate):
                return candidate
            logger.warning("Purchase number collision, regenerating", candidate=candidate, attempt=attempt)

        raise ValidationFailure(
            "purchase_number", f"no unique number generated after {attempts} attempts"
        )

    async def create_purchase(
        self,
        customer_id: int,
        tax_amount: Any = ZERO,
        discount_amount: Any = ZERO,
        purchase_number: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        purchase_status: PurchaseStatus = PurchaseStatus.PENDING,
        notes: Optional[str] = None,
        purchase_date: Optional[datetime] = None,
        items: Iterable[PurchaseItem] = (),
    ) -> Purchase:
        """
        Create a purchase and count it on the customer.

        ``items`` are unsaved, already priced PurchaseItem rows (see
        PurchaseItemLedger.build_item); they are attached before the initial
        final amount is computed.
        """
        tax = to_money(tax_amount, "tax_amount")
        discount = to_money(discount_amount, "discount_amount")
        validate_notes(notes)

        customer = await self.session.get(Customer, customer_id)
        if customer is None:
            raise NotFound("Customer", customer_id)
        if not customer.is_active:
            raise ValidationFailure("customer_id", "customer must be active", customer_id)

        items = list(items)
        total = quantize_money(sum((Decimal(item.subtotal) for item in items), ZERO))
        final = compute_purchase_final(total, tax, discount)

        purchase = Purchase(
            customer_id=customer_id,
            purchase_number=await self.assign_purchase_number(purchase_number),
            total_amount=total,
            tax_amount=tax,
            discount_amount=discount,
            final_amount=final,
            payment_method=payment_method,
            payment_status=payment_status,
            purchase_status=purchase_status,
            notes=notes,
            purchase_date=as_naive_utc(purchase_date) or utcnow(),
        )
        self.session.add(purchase)
        await self.uow.flush_unique("purchase_number", purchase.purchase_number)

        for item in items:
            item.purchase_id = purchase.id
            self.session.add(item)
        await self.session.flush()

        logger.info(
            "Purchase created",
            purchase_id=purchase.id,
            purchase_number=purchase.purchase_number,
            customer_id=customer_id,
            item_count=len(items),
            final_amount=str(final),
        )

        await self.rollup.apply_new_purchase(customer_id, final, purchase.purchase_date)
        return purchase

    async def update_purchase_amounts(
        self,
        purchase_id: int,
        tax_amount: Any = None,
        discount_amount: Any = None,
    ) -> Purchase:
        """Edit purchase-level tax and/or discount, then recompute."""
        purchase = await self.lock_purchase(purchase_id)
        if tax_amount is not None:
            purchase.tax_amount = to_money(tax_amount, "tax_amount")
        if discount_amount is not None:
            purchase.discount_amount = to_money(discount_amount, "discount_amount")
        return await self.recompute_totals(purchase_id)

    async def update_purchase_details(self, purchase_id: int, changes: Dict[str, Any]) -> Purchase:
        """Payment and fulfilment fields; no derived state is touched."""
        purchase = await self.lock_purchase(purchase_id)
        for field in ("payment_method", "payment_status", "purchase_status"):
            if changes.get(field) is not None:
                setattr(purchase, field, changes[field])
        if "notes" in changes:
            purchase.notes = validate_notes(changes["notes"])
        await self.session.flush()
        return purchase

    async def delete_purchase(self, purchase_id: int) -> None:
        """Delete a purchase with its items and reverse its customer rollup."""
        purchase = await self.lock_purchase(purchase_id)
        customer_id = purchase.customer_id
        final = Decimal(purchase.final_amount)

        await self.rollup.apply_purchase_removal(customer_id, final)
        await self.session.execute(
            delete(PurchaseItem).where(PurchaseItem.purchase_id == purchase_id)
        )
        await self.session.delete(purchase)
        await self.session.flush()

        logger.info(
            "Purchase deleted",
            purchase_id=purchase_id,
            customer_id=customer_id,
            final_amount=str(final),
        )

    async def verify(self, purchase_id: int) -> Purchase:
        """
        Re-check the purchase invariants after a write.

        Raises:
            ConsistencyFailure: a stored total disagrees with its inputs
        """
        purchase = await self.session.get(Purchase, purchase_id, populate_existing=True)
        if purchase is None:
            raise NotFound("Purchase", purchase_id)
        items = await self.load_items(purchase_id)

        expected_total = quantize_money(sum((Decimal(item.subtotal) for item in items), ZERO))
        if Decimal(purchase.total_amount) != expected_total:
            raise ConsistencyFailure("Purchase", purchase_id, "total_amount", expected_total, purchase.total_amount)

        try:
            expected_final = compute_purchase_final(purchase.total_amount, purchase.tax_amount, purchase.discount_amount)
        except LedgerError:
            raise ConsistencyFailure("Purchase", purchase_id, "final_amount >= 0", ">= 0", purchase.final_amount)
        if Decimal(purchase.final_amount) != expected_final:
            raise ConsistencyFailure("Purchase", purchase_id, "final_amount", expected_final, purchase.final_amount)
        return purchase
