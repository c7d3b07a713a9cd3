"""
Ledger Service

Application-service entry points. Each call opens one LedgerUnitOfWork, runs
the full item -> purchase -> customer chain explicitly, re-checks the
touched purchase, and returns plain read models. Any failure rolls the whole
chain back.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_backend.config import get_settings
from crm_backend.database.models import Customer, Product, ProductVariant, Purchase, PurchaseItem
from crm_backend.ledger.aggregator import PurchaseAggregator
from crm_backend.ledger.errors import ConsistencyFailure, DuplicateValue, NotFound, ReferentialFailure, ValidationFailure
from crm_backend.ledger.items import PurchaseItemLedger, validate_changes
from crm_backend.ledger.locking import LockRegistry, LockScope
from crm_backend.ledger.pricing import ZERO, to_money, validate_discount_percentage
from crm_backend.ledger.rollup import CustomerStatisticsRollup
from crm_backend.ledger.schemas import (
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    ProductCreate,
    ProductDetail,
    ProductRead,
    ProductStatsRead,
    ProductUpdate,
    PurchaseCreate,
    PurchaseDetail,
    PurchaseDetailsUpdate,
    PurchaseItemChanges,
    PurchaseItemRead,
    PurchaseItemWrite,
    PurchaseRead,
    PurchaseStatsRead,
    VariantCreate,
    VariantRead,
    VariantUpdate,
)
from crm_backend.ledger.stock import StockAdjuster, StockUpdate, StockUpdateResult, validate_stock
from crm_backend.ledger.unit_of_work import LedgerUnitOfWork

logger = structlog.get_logger(__name__)
settings = get_settings()


class LedgerService:
    """
    Entry point for request handlers.

    Example:
        service = LedgerService(get_session_factory())
        purchase = await service.create_purchase(PurchaseCreate(customer_id=1))
        item = await service.create_item(purchase.id, product_id=3, quantity=2)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: Optional[LockRegistry] = None,
    ):
        self._session_factory = session_factory
        self._locks = locks
        self.stock = StockAdjuster(session_factory, locks)

    def unit_of_work(self) -> LedgerUnitOfWork:
        return LedgerUnitOfWork(self._session_factory, self._locks)

    async def _verify(self, uow: LedgerUnitOfWork, purchase_id: Optional[int], customer_id: Optional[int]) -> None:
        await uow.session.flush()
        try:
            if purchase_id is not None:
                await PurchaseAggregator(uow).verify(purchase_id)
            if customer_id is not None and settings.ledger.verify_customer_rollup:
                await CustomerStatisticsRollup(uow).verify(customer_id)
        except ConsistencyFailure as e:
            logger.critical("Ledger invariant violated, rolling back", error=e.to_dict())
            raise

    # -------------------------------------------------------------------------
    # Purchases
    # -------------------------------------------------------------------------

    async def create_purchase(self, data: PurchaseCreate) -> PurchaseDetail:
        """
        Create a purchase with its initial items.

        A generated purchase number that a concurrent writer committed first
        is retried in a fresh transaction; a requested one is reported as
        DuplicateValue.
        """
        attempts = 1 if data.purchase_number else settings.ledger.purchase_number_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._create_purchase(data)
            except DuplicateValue as e:
                if e.field != "purchase_number" or attempt == attempts:
                    raise
                logger.warning("Generated purchase number taken concurrently, retrying", attempt=attempt)

    async def _create_purchase(self, data: PurchaseCreate) -> PurchaseDetail:
        async with self.unit_of_work() as uow:
            items = PurchaseItemLedger(uow)
            lines = [
                await items.build_item(
                    line.product_id,
                    line.product_variant_id,
                    line.quantity,
                    line.unit_price,
                    line.discount_percentage,
                    line.notes,
                )
                for line in data.items
            ]
            purchase = await items.aggregator.create_purchase(
                customer_id=data.customer_id,
                tax_amount=data.tax_amount,
                discount_amount=data.discount_amount,
                purchase_number=data.purchase_number,
                payment_method=data.payment_method,
                payment_status=data.payment_status,
                purchase_status=data.purchase_status,
                notes=data.notes,
                purchase_date=data.purchase_date,
                items=lines,
            )
            await self._verify(uow, purchase.id, purchase.customer_id)
            return PurchaseDetail(
                **PurchaseRead.model_validate(purchase).model_dump(),
                items=[PurchaseItemRead.model_validate(line) for line in lines],
            )

    async def update_purchase_amounts(
        self,
        purchase_id: int,
        tax_amount: Any = None,
        discount_amount: Any = None,
    ) -> PurchaseRead:
        async with self.unit_of_work() as uow:
            purchase = await PurchaseAggregator(uow).update_purchase_amounts(
                purchase_id, tax_amount, discount_amount
            )
            await self._verify(uow, purchase_id, purchase.customer_id)
            return PurchaseRead.model_validate(purchase)

    async def update_purchase_details(self, purchase_id: int, changes: PurchaseDetailsUpdate) -> PurchaseRead:
        async with self.unit_of_work() as uow:
            purchase = await PurchaseAggregator(uow).update_purchase_details(
                purchase_id, changes.model_dump(exclude_unset=True)
            )
            return PurchaseRead.model_validate(purchase)

    async def delete_purchase(self, purchase_id: int) -> None:
        async with self.unit_of_work() as uow:
            aggregator = PurchaseAggregator(uow)
            purchase = await aggregator.lock_purchase(purchase_id)
            customer_id = purchase.customer_id
            await aggregator.delete_purchase(purchase_id)
            await self._verify(uow, None, customer_id)

    async def get_purchase(self, purchase_id: int) -> PurchaseDetail:
        async with self._session_factory() as session:
            purchase = await session.get(Purchase, purchase_id)
            if purchase is None:
                raise NotFound("Purchase", purchase_id)
            result = await session.execute(
                select(PurchaseItem).where(PurchaseItem.purchase_id == purchase_id).order_by(PurchaseItem.id)
            )
            items = result.scalars().all()
            return PurchaseDetail(
                **PurchaseRead.model_validate(purchase).model_dump(),
                items=[PurchaseItemRead.model_validate(item) for item in items],
            )

    async def list_purchase_items(self, purchase_id: int) -> List[PurchaseItemRead]:
        return (await self.get_purchase(purchase_id)).items

    async def list_purchases(
        self,
        customer_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PurchaseRead]:
        query = select(Purchase)
        if customer_id is not None:
            query = query.where(Purchase.customer_id == customer_id)
        query = query.order_by(Purchase.purchase_date.desc(), Purchase.id.desc()).offset(offset).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [PurchaseRead.model_validate(p) for p in result.scalars().all()]

    # -------------------------------------------------------------------------
    # Purchase items
    # -------------------------------------------------------------------------

    async def create_item(
        self,
        purchase_id: int,
        product_id: int,
        variant_id: Optional[int] = None,
        quantity: int = 1,
        unit_price: Any = None,
        discount_percentage: Any = ZERO,
        notes: Optional[str] = None,
    ) -> PurchaseItemWrite:
        async with self.unit_of_work() as uow:
            ledger = PurchaseItemLedger(uow)
            item = await ledger.create_item(
                purchase_id, product_id, variant_id, quantity, unit_price, discount_percentage, notes
            )
            purchase = await ledger.aggregator.lock_purchase(purchase_id)
            await self._verify(uow, purchase_id, purchase.customer_id)
            return PurchaseItemWrite.from_item(item, purchase.customer_id)

    async def update_item(
        self,
        item_id: int,
        changes: Union[PurchaseItemChanges, Dict[str, Any]],
    ) -> PurchaseItemWrite:
        if isinstance(changes, PurchaseItemChanges):
            changes = changes.model_dump(exclude_unset=True)
        validate_changes(changes)

        async with self.unit_of_work() as uow:
            ledger = PurchaseItemLedger(uow)
            item = await ledger.update_item(item_id, changes)
            purchase = await ledger.aggregator.lock_purchase(item.purchase_id)
            await self._verify(uow, purchase.id, purchase.customer_id)
            return PurchaseItemWrite.from_item(item, purchase.customer_id)

    async def delete_item(self, item_id: int) -> PurchaseRead:
        async with self.unit_of_work() as uow:
            purchase = await PurchaseItemLedger(uow).delete_item(item_id)
            await self._verify(uow, purchase.id, purchase.customer_id)
            return PurchaseRead.model_validate(purchase)

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    async def _phone_taken(self, session: AsyncSession, phone: str, exclude_id: Optional[int] = None) -> bool:
        query = select(Customer.id).where(Customer.phone == phone)
        if exclude_id is not None:
            query = query.where(Customer.id != exclude_id)
        return (await session.execute(query)).first() is not None

    async def create_customer(self, data: CustomerCreate) -> CustomerRead:
        async with self.unit_of_work() as uow:
            if await self._phone_taken(uow.session, data.phone):
                raise DuplicateValue("phone", data.phone)
            customer = Customer(**data.model_dump(), total_purchases=0, total_spent=ZERO, is_active=True)
            uow.session.add(customer)
            await uow.flush_unique("phone", customer.phone)
            logger.info("Customer created", customer_id=customer.id, customer_type=customer.customer_type.value)
            return CustomerRead.model_validate(customer)

    async def update_customer(self, customer_id: int, changes: CustomerUpdate) -> CustomerRead:
        """Contact fields only; rollup columns are never taken from callers."""
        async with self.unit_of_work() as uow:
            customer = await uow.session.get(Customer, customer_id)
            if customer is None:
                raise NotFound("Customer", customer_id)
            fields = changes.model_dump(exclude_unset=True)
            if fields.get("phone") and await self._phone_taken(uow.session, fields["phone"], customer_id):
                raise DuplicateValue("phone", fields["phone"])
            for field in ("name", "phone", "customer_type"):
                if field in fields and fields[field] is None:
                    raise ValidationFailure(field, "cannot be null")
            for field, value in fields.items():
                setattr(customer, field, value)
            await uow.flush_unique("phone", customer.phone)
            return CustomerRead.model_validate(customer)

    async def deactivate_customer(self, customer_id: int) -> CustomerRead:
        async with self.unit_of_work() as uow:
            customer = await uow.session.get(Customer, customer_id)
            if customer is None:
                raise NotFound("Customer", customer_id)
            customer.is_active = False
            await uow.session.flush()
            logger.info("Customer deactivated", customer_id=customer_id)
            return CustomerRead.model_validate(customer)

    async def get_customer(self, customer_id: int) -> CustomerRead:
        async with self._session_factory() as session:
            customer = await session.get(Customer, customer_id)
            if customer is None:
                raise NotFound("Customer", customer_id)
            return CustomerRead.model_validate(customer)

    async def list_customers(self, active_only: bool = True, limit: int = 50, offset: int = 0) -> List[CustomerRead]:
        query = select(Customer)
        if active_only:
            query = query.where(Customer.is_active.is_(True))
        query = query.order_by(Customer.id).offset(offset).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [CustomerRead.model_validate(c) for c in result.scalars().all()]

    async def purchase_stats(self, customer_id: int) -> PurchaseStatsRead:
        async with self.unit_of_work() as uow:
            if await uow.session.get(Customer, customer_id) is None:
                raise NotFound("Customer", customer_id)
            stats = await CustomerStatisticsRollup(uow).purchase_stats(customer_id)
            return PurchaseStatsRead.model_validate(stats)

    async def rebuild_customer_statistics(self, customer_id: int) -> CustomerRead:
        async with self.unit_of_work() as uow:
            customer = await CustomerStatisticsRollup(uow).rebuild(customer_id)
            return CustomerRead.model_validate(customer)

    # -------------------------------------------------------------------------
    # Catalog and stock
    # -------------------------------------------------------------------------

    async def _build_variant(self, session: AsyncSession, product_id: int, data: VariantCreate) -> ProductVariant:
        if (await session.execute(select(ProductVariant.id).where(ProductVariant.sku == data.sku))).first():
            raise DuplicateValue("sku", data.sku)
        return ProductVariant(
            product_id=product_id,
            sku=data.sku,
            color=data.color,
            size=data.size,
            price=to_money(data.price, "price"),
            discount=validate_discount_percentage(data.discount),
            stock=validate_stock(data.stock),
            image_url=data.image_url,
        )

    async def create_product(self, data: ProductCreate) -> ProductDetail:
        skus = [v.sku for v in data.variants]
        if len(skus) != len(set(skus)):
            raise ValidationFailure("variants", "sku values must be unique")

        async with self.unit_of_work() as uow:
            product = Product(
                name=data.name,
                description=data.description,
                category=data.category,
                base_price=to_money(data.base_price, "base_price"),
                brand=data.brand,
                image_url=data.image_url,
            )
            uow.session.add(product)
            await uow.session.flush()

            variants = [await self._build_variant(uow.session, product.id, v) for v in data.variants]
            uow.session.add_all(variants)
            await uow.flush_unique("sku", skus)

            logger.info("Product created", product_id=product.id, variant_count=len(variants))
            return ProductDetail(
                **ProductRead.model_validate(product).model_dump(),
                variants=[VariantRead.model_validate(v) for v in variants],
            )

    async def add_variant(self, product_id: int, data: VariantCreate) -> VariantRead:
        async with self.unit_of_work() as uow:
            if await uow.session.get(Product, product_id) is None:
                raise NotFound("Product", product_id)
            variant = await self._build_variant(uow.session, product_id, data)
            uow.session.add(variant)
            await uow.flush_unique("sku", data.sku)
            return VariantRead.model_validate(variant)

    async def get_product(self, product_id: int) -> ProductDetail:
        async with self._session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                raise NotFound("Product", product_id)
            result = await session.execute(
                select(ProductVariant).where(ProductVariant.product_id == product_id).order_by(ProductVariant.id)
            )
            return ProductDetail(
                **ProductRead.model_validate(product).model_dump(),
                variants=[VariantRead.model_validate(v) for v in result.scalars().all()],
            )

    async def update_product(self, product_id: int, changes: ProductUpdate) -> ProductDetail:
        """
        Edit catalog fields. Prices already captured on purchase items are
        not touched.
        """
        fields = changes.model_dump(exclude_unset=True)
        for field in ("name", "category", "base_price"):
            if field in fields and fields[field] is None:
                raise ValidationFailure(field, "cannot be null")
        if "base_price" in fields:
            fields["base_price"] = to_money(fields["base_price"], "base_price")

        async with self.unit_of_work() as uow:
            product = await uow.session.get(Product, product_id)
            if product is None:
                raise NotFound("Product", product_id)
            for field, value in fields.items():
                setattr(product, field, value)
            await uow.session.flush()
            logger.info("Product updated", product_id=product_id, fields=sorted(fields))
        return await self.get_product(product_id)

    async def _referenced_by_items(self, session: AsyncSession, condition) -> bool:
        return (await session.execute(select(PurchaseItem.id).where(condition).limit(1))).first() is not None

    async def delete_product(self, product_id: int) -> None:
        """
        Delete a product with its variants.

        Raises:
            ReferentialFailure: purchase items still reference the product
        """
        async with self.unit_of_work() as uow:
            product = await uow.session.get(Product, product_id)
            if product is None:
                raise NotFound("Product", product_id)
            if await self._referenced_by_items(uow.session, PurchaseItem.product_id == product_id):
                raise ReferentialFailure(
                    f"Product {product_id} is referenced by purchase items",
                    {"entity": "Product", "entity_id": product_id},
                )
            await uow.session.execute(delete(ProductVariant).where(ProductVariant.product_id == product_id))
            await uow.session.delete(product)
            await uow.flush_delete("Product", product_id)
            logger.info("Product deleted", product_id=product_id)

    async def update_variant(self, variant_id: int, changes: VariantUpdate) -> VariantRead:
        """
        Edit a variant under its stock lock, so a stock change here and a
        bulk stock update never interleave.
        """
        fields = changes.model_dump(exclude_unset=True)
        for field in ("sku", "price", "discount", "stock"):
            if field in fields and fields[field] is None:
                raise ValidationFailure(field, "cannot be null")
        if "price" in fields:
            fields["price"] = to_money(fields["price"], "price")
        if "discount" in fields:
            fields["discount"] = validate_discount_percentage(fields["discount"])
        if "stock" in fields:
            fields["stock"] = validate_stock(fields["stock"])

        async with self.unit_of_work() as uow:
            variant = await uow.lock(LockScope.variant(variant_id))
            if variant is None:
                raise NotFound("ProductVariant", variant_id)
            if "sku" in fields and fields["sku"] != variant.sku:
                taken = await uow.session.execute(
                    select(ProductVariant.id).where(ProductVariant.sku == fields["sku"])
                )
                if taken.first():
                    raise DuplicateValue("sku", fields["sku"])
            previous_stock = variant.stock
            for field, value in fields.items():
                setattr(variant, field, value)
            await uow.flush_unique("sku", variant.sku)
            logger.info(
                "Variant updated",
                variant_id=variant_id,
                fields=sorted(fields),
                previous_stock=previous_stock,
                stock=variant.stock,
            )
            return VariantRead.model_validate(variant)

    async def delete_variant(self, variant_id: int) -> VariantRead:
        """
        Delete a variant and return its last state.

        Raises:
            ReferentialFailure: purchase items still reference the variant
        """
        async with self.unit_of_work() as uow:
            variant = await uow.lock(LockScope.variant(variant_id))
            if variant is None:
                raise NotFound("ProductVariant", variant_id)
            if await self._referenced_by_items(uow.session, PurchaseItem.product_variant_id == variant_id):
                raise ReferentialFailure(
                    f"Variant {variant_id} is referenced by purchase items",
                    {"entity": "ProductVariant", "entity_id": variant_id},
                )
            deleted = VariantRead.model_validate(variant)
            await uow.session.delete(variant)
            await uow.flush_delete("ProductVariant", variant_id)
            logger.info("Variant deleted", variant_id=variant_id, product_id=deleted.product_id)
            return deleted

    async def product_stats(self, low_stock_threshold: int = 10) -> ProductStatsRead:
        """Catalog counts, category and brand distribution, low-stock count."""
        async with self._session_factory() as session:
            total_products = await session.scalar(select(func.count(Product.id)))
            total_variants = await session.scalar(select(func.count(ProductVariant.id)))
            categories = await session.execute(
                select(Product.category, func.count(Product.id))
                .group_by(Product.category)
                .order_by(Product.category)
            )
            brands = await session.execute(
                select(Product.brand, func.count(Product.id))
                .where(Product.brand.is_not(None))
                .group_by(Product.brand)
                .order_by(Product.brand)
            )
            low_stock = await session.scalar(
                select(func.count(ProductVariant.id)).where(ProductVariant.stock < low_stock_threshold)
            )
            return ProductStatsRead(
                total_products=total_products or 0,
                total_variants=total_variants or 0,
                categories={category: count for category, count in categories.all()},
                brands={brand: count for brand, count in brands.all()},
                low_stock_variants=low_stock or 0,
                low_stock_threshold=low_stock_threshold,
            )

    async def bulk_set_stock(self, updates: Sequence[StockUpdate]) -> List[StockUpdateResult]:
        return await self.stock.bulk_set_stock(updates)

    async def low_stock_variants(self, threshold: int = 10) -> List[VariantRead]:
        return [VariantRead.model_validate(v) for v in await self.stock.low_stock_variants(threshold)]

