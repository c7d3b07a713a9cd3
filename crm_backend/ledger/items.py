"""
Purchase Item Ledger

Owns individual purchase lines. Every create, pricing change or delete
re-prices the line and then re-aggregates the parent purchase; the parent
purchase is locked before the line is touched, so concurrent edits of lines
of one purchase are applied one after the other.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import select

from crm_backend.database.models import Product, ProductVariant, Purchase, PurchaseItem
from crm_backend.ledger.aggregator import PurchaseAggregator, validate_notes
from crm_backend.ledger.errors import NotFound, ReferentialFailure, ValidationFailure
from crm_backend.ledger.pricing import ZERO, compute_item_pricing, quantize_money, to_decimal
from crm_backend.ledger.unit_of_work import LedgerUnitOfWork

logger = structlog.get_logger(__name__)

PRICING_FIELDS = ("quantity", "unit_price", "discount_percentage")
MAX_ITEM_NOTES_LENGTH = 500


class PurchaseItemLedger:
    """Creates, edits and removes purchase items and propagates upward."""

    def __init__(self, uow: LedgerUnitOfWork, aggregator: Optional[PurchaseAggregator] = None):
        self.uow = uow
        self.aggregator = aggregator or PurchaseAggregator(uow)

    @property
    def session(self):
        return self.uow.session

    async def resolve_product(
        self, product_id: int, variant_id: Optional[int]
    ) -> Tuple[Product, Optional[ProductVariant]]:
        """
        Load the referenced product and variant.

        Raises:
            NotFound: product or variant absent
            ReferentialFailure: the variant belongs to another product
        """
        product = await self.session.get(Product, product_id)
        if product is None:
            raise NotFound("Product", product_id)
        if variant_id is None:
            return product, None

        variant = await self.session.get(ProductVariant, variant_id)
        if variant is None:
            raise NotFound("ProductVariant", variant_id)
        if variant.product_id != product.id:
            raise ReferentialFailure(
                f"Variant {variant_id} does not belong to product {product_id}",
                {"product_id": product_id, "variant_id": variant_id, "variant_product_id": variant.product_id},
            )
        return product, variant

    async def build_item(
        self,
        product_id: int,
        variant_id: Optional[int] = None,
        quantity: int = 1,
        unit_price: Any = None,
        discount_percentage: Any = ZERO,
        notes: Optional[str] = None,
    ) -> PurchaseItem:
        """
        Validate references and price a line without attaching it.

        A missing unit price falls back to the variant price, then to the
        product base price.
        """
        product, variant = await self.resolve_product(product_id, variant_id)
        validate_notes(notes, MAX_ITEM_NOTES_LENGTH)
        if unit_price is None:
            unit_price = variant.price if variant is not None else product.base_price

        # stored with two decimals, so price with exactly what is stored
        percentage = quantize_money(to_decimal(discount_percentage, "discount_percentage"))
        pricing = compute_item_pricing(unit_price, quantity, percentage)
        return PurchaseItem(
            product_id=product.id,
            product_variant_id=variant.id if variant is not None else None,
            quantity=quantity,
            unit_price=pricing.unit_price,
            discount_percentage=percentage,
            discount_amount=pricing.discount_amount,
            subtotal=pricing.subtotal,
            notes=notes,
        )

    async def create_item(
        self,
        purchase_id: int,
        product_id: int,
        variant_id: Optional[int] = None,
        quantity: int = 1,
        unit_price: Any = None,
        discount_percentage: Any = ZERO,
        notes: Optional[str] = None,
    ) -> PurchaseItem:
        """Add a line to a purchase and re-aggregate it."""
        await self.aggregator.lock_purchase(purchase_id)
        item = await self.build_item(product_id, variant_id, quantity, unit_price, discount_percentage, notes)
        item.purchase_id = purchase_id
        self.session.add(item)
        await self.session.flush()

        logger.info(
            "Purchase item created",
            purchase_id=purchase_id,
            item_id=item.id,
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            subtotal=str(item.subtotal),
        )

        await self.aggregator.recompute_totals(purchase_id)
        return item

    async def _lock_item(self, item_id: int) -> Tuple[PurchaseItem, Purchase]:
        # The parent is only known after a read, so read, lock the parent,
        # then read again: the line may have moved or vanished meanwhile.
        purchase_id = (await self.session.execute(
            select(PurchaseItem.purchase_id).where(PurchaseItem.id == item_id)
        )).scalar_one_or_none()
        if purchase_id is None:
            raise NotFound("PurchaseItem", item_id)

        purchase = await self.aggregator.lock_purchase(purchase_id)
        item = await self.session.get(PurchaseItem, item_id, populate_existing=True)
        if item is None or item.purchase_id != purchase_id:
            raise NotFound("PurchaseItem", item_id)
        return item, purchase

    async def update_item(self, item_id: int, changes: Dict[str, Any]) -> PurchaseItem:
        """
        Apply partial changes to a line.

        Pricing and the parent purchase are recomputed only when quantity,
        unit_price or discount_percentage actually change value.
        """
        item, purchase = await self._lock_item(item_id)

        if "product_id" in changes or "product_variant_id" in changes:
            product_id = changes.get("product_id") or item.product_id
            variant_id = changes.get("product_variant_id", item.product_variant_id)
            await self.resolve_product(product_id, variant_id)
            item.product_id = product_id
            item.product_variant_id = variant_id

        if "notes" in changes:
            item.notes = validate_notes(changes["notes"], MAX_ITEM_NOTES_LENGTH)

        current = {
            "quantity": item.quantity,
            "unit_price": Decimal(item.unit_price),
            "discount_percentage": Decimal(item.discount_percentage),
        }
        proposed = dict(current)
        for field in PRICING_FIELDS:
            if changes.get(field) is not None:
                proposed[field] = changes[field]

        proposed["discount_percentage"] = quantize_money(
            to_decimal(proposed["discount_percentage"], "discount_percentage")
        )
        pricing = compute_item_pricing(
            proposed["unit_price"], proposed["quantity"], proposed["discount_percentage"]
        )
        proposed["unit_price"] = pricing.unit_price
        changed = [field for field in PRICING_FIELDS if proposed[field] != current[field]]

        if not changed:
            await self.session.flush()
            logger.debug("Purchase item updated without pricing change", item_id=item_id)
            return item

        item.quantity = proposed["quantity"]
        item.unit_price = pricing.unit_price
        item.discount_percentage = proposed["discount_percentage"]
        item.discount_amount = pricing.discount_amount
        item.subtotal = pricing.subtotal
        await self.session.flush()

        logger.info(
            "Purchase item repriced",
            item_id=item_id,
            purchase_id=purchase.id,
            changed=changed,
            subtotal=str(pricing.subtotal),
        )

        await self.aggregator.recompute_totals(purchase.id)
        return item

    async def delete_item(self, item_id: int) -> Purchase:
        """Remove a line and re-aggregate its former purchase."""
        item, purchase = await self._lock_item(item_id)
        await self.session.delete(item)
        await self.session.flush()

        logger.info("Purchase item deleted", item_id=item_id, purchase_id=purchase.id)

        return await self.aggregator.recompute_totals(purchase.id)


def validate_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Reject explicit nulls for fields that cannot be cleared."""
    for field in ("product_id", *PRICING_FIELDS):
        if field in changes and changes[field] is None:
            raise ValidationFailure(field, "cannot be null")
    return changes
