"""
Unit Tests - Purchase Ledger

Item -> purchase -> customer propagation through LedgerService.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from crm_backend.database.models import Customer, PaymentStatus, Purchase, PurchaseItem
from crm_backend.ledger import aggregator as aggregator_module
from crm_backend.ledger.errors import (
    ConsistencyFailure,
    DuplicateValue,
    NegativeAmountFailure,
    NotFound,
    ReferentialFailure,
    ValidationFailure,
)
from crm_backend.ledger.schemas import (
    CustomerCreate,
    CustomerUpdate,
    PurchaseCreate,
    PurchaseDetailsUpdate,
    PurchaseItemChanges,
    PurchaseItemCreate,
)


async def stored_customer(test_db, customer_id: int) -> Customer:
    return await test_db.get(Customer, customer_id, populate_existing=True)


async def stored_purchase(test_db, purchase_id: int) -> Purchase:
    return await test_db.get(Purchase, purchase_id, populate_existing=True)


class TestScenarios:
    """Create, reprice and delete one item end to end"""

    async def test_create_update_delete_item(self, service, test_db, customer, product):
        # A: purchase with tax 10 / discount 5, then one item 100 x 2 at 10% off
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            tax_amount=Decimal("10"),
            discount_amount=Decimal("5"),
        ))
        assert purchase.total_amount == Decimal("0.00")
        assert purchase.final_amount == Decimal("5.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("5.00")

        item = await service.create_item(
            purchase.id, product.id, quantity=2, unit_price=Decimal("100"), discount_percentage=Decimal("10")
        )
        assert item.discount_amount == Decimal("20.00")
        assert item.subtotal == Decimal("180.00")

        stored = await stored_purchase(test_db, purchase.id)
        assert stored.total_amount == Decimal("180.00")
        assert stored.final_amount == Decimal("185.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("185.00")

        # B: quantity 2 -> 3
        item = await service.update_item(item.id, PurchaseItemChanges(quantity=3))
        assert item.subtotal == Decimal("270.00")

        stored = await stored_purchase(test_db, purchase.id)
        assert stored.total_amount == Decimal("270.00")
        assert stored.final_amount == Decimal("275.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("275.00")

        # C: delete the item
        parent = await service.delete_item(item.id)
        assert parent.total_amount == Decimal("0.00")
        assert parent.final_amount == Decimal("5.00")

        stored_cust = await stored_customer(test_db, customer.id)
        assert stored_cust.total_spent == Decimal("5.00")
        assert stored_cust.total_purchases == 1

    async def test_create_purchase_with_items(self, service, test_db, customer, product, other_product):
        """Test initial items are counted once in the customer rollup"""
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            tax_amount=Decimal("8.50"),
            items=[
                PurchaseItemCreate(product_id=product.id, product_variant_id=product.variants[0].id, quantity=2),
                PurchaseItemCreate(product_id=other_product.id, quantity=1, discount_percentage=Decimal("25")),
            ],
        ))

        # variant price 120 x 2 = 240; base price 40 at 25% off = 30
        assert [i.subtotal for i in purchase.items] == [Decimal("240.00"), Decimal("30.00")]
        assert purchase.total_amount == Decimal("270.00")
        assert purchase.final_amount == Decimal("278.50")

        stored_cust = await stored_customer(test_db, customer.id)
        assert stored_cust.total_purchases == 1
        assert stored_cust.total_spent == Decimal("278.50")
        assert stored_cust.last_purchase_date == purchase.purchase_date


class TestPurchaseItems:
    """Tests for item pricing propagation"""

    @pytest.fixture
    async def purchase(self, service, customer):
        return await service.create_purchase(PurchaseCreate(customer_id=customer.id))

    async def test_unit_price_defaults(self, service, purchase, product):
        """Test unit price falls back to variant price, then product base price"""
        with_variant = await service.create_item(purchase.id, product.id, product.variants[1].id)
        without_variant = await service.create_item(purchase.id, product.id)

        assert with_variant.unit_price == Decimal("150.00")
        assert without_variant.unit_price == Decimal("100.00")

    async def test_update_without_pricing_change_is_noop(self, service, test_db, customer, purchase, product):
        """Test setting the same values again leaves every total untouched"""
        item = await service.create_item(purchase.id, product.id, quantity=2, unit_price="100")

        updated = await service.update_item(
            item.id, PurchaseItemChanges(quantity=2, unit_price=Decimal("100.00"), notes="gift wrap")
        )

        assert updated.subtotal == Decimal("200.00")
        assert updated.notes == "gift wrap"
        assert (await stored_purchase(test_db, purchase.id)).total_amount == Decimal("200.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("200.00")

    async def test_item_on_missing_purchase(self, service, product):
        with pytest.raises(NotFound) as exc_info:
            await service.create_item(999, product.id)

        assert exc_info.value.entity == "Purchase"

    async def test_item_on_missing_product(self, service, purchase):
        with pytest.raises(NotFound) as exc_info:
            await service.create_item(purchase.id, 999)

        assert exc_info.value.entity == "Product"

    async def test_variant_of_other_product(self, service, test_db, purchase, product, other_product):
        """Test a variant must belong to the item's product"""
        with pytest.raises(ReferentialFailure):
            await service.create_item(purchase.id, product.id, other_product.variants[0].id)

        count = (await test_db.execute(select(func.count(PurchaseItem.id)))).scalar()
        assert count == 0

    async def test_update_missing_item(self, service):
        with pytest.raises(NotFound):
            await service.update_item(999, {"quantity": 2})

    async def test_null_pricing_field_rejected(self, service, purchase, product):
        item = await service.create_item(purchase.id, product.id)

        with pytest.raises(ValidationFailure) as exc_info:
            await service.update_item(item.id, {"quantity": None})

        assert exc_info.value.field == "quantity"

    async def test_invalid_quantity_rejected(self, service, test_db, purchase, product):
        with pytest.raises(ValidationFailure):
            await service.create_item(purchase.id, product.id, quantity=0)

        assert (await stored_purchase(test_db, purchase.id)).total_amount == Decimal("0.00")

    async def test_switch_variant_keeps_price(self, service, purchase, product):
        """Test a variant change alone does not reprice the line"""
        item = await service.create_item(purchase.id, product.id, product.variants[0].id, quantity=1)

        updated = await service.update_item(item.id, {"product_variant_id": product.variants[1].id})

        assert updated.product_variant_id == product.variants[1].id
        assert updated.unit_price == Decimal("120.00")


class TestNegativeAmount:
    """A rejected mutation leaves item, purchase and customer unchanged"""

    async def test_purchase_discount_exceeds_total(self, service, test_db, customer, product):
        with pytest.raises(NegativeAmountFailure):
            await service.create_purchase(PurchaseCreate(
                customer_id=customer.id,
                discount_amount=Decimal("50"),
                items=[PurchaseItemCreate(product_id=product.id, quantity=1, unit_price=Decimal("20"))],
            ))

        assert (await test_db.execute(select(func.count(Purchase.id)))).scalar() == 0
        stored_cust = await stored_customer(test_db, customer.id)
        assert stored_cust.total_purchases == 0
        assert stored_cust.total_spent == Decimal("0.00")

    async def test_item_repricing_rejected_atomically(self, service, test_db, customer, product):
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            discount_amount=Decimal("50"),
            items=[PurchaseItemCreate(product_id=product.id, quantity=1, unit_price=Decimal("100"))],
        ))
        item_id = purchase.items[0].id

        with pytest.raises(NegativeAmountFailure):
            await service.update_item(item_id, PurchaseItemChanges(unit_price=Decimal("10")))

        item = await test_db.get(PurchaseItem, item_id)
        assert item.unit_price == Decimal("100.00")
        assert item.subtotal == Decimal("100.00")
        stored = await stored_purchase(test_db, purchase.id)
        assert stored.final_amount == Decimal("50.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("50.00")

    async def test_delete_item_rejected_atomically(self, service, test_db, customer, product):
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            discount_amount=Decimal("30"),
            items=[PurchaseItemCreate(product_id=product.id, quantity=1, unit_price=Decimal("40"))],
        ))

        with pytest.raises(NegativeAmountFailure):
            await service.delete_item(purchase.items[0].id)

        assert await test_db.get(PurchaseItem, purchase.items[0].id) is not None
        assert (await stored_purchase(test_db, purchase.id)).final_amount == Decimal("10.00")

    async def test_amounts_update_rejected(self, service, test_db, customer):
        purchase = await service.create_purchase(PurchaseCreate(customer_id=customer.id, tax_amount=Decimal("5")))

        with pytest.raises(NegativeAmountFailure):
            await service.update_purchase_amounts(purchase.id, discount_amount=Decimal("6"))

        stored = await stored_purchase(test_db, purchase.id)
        assert stored.discount_amount == Decimal("0.00")
        assert stored.final_amount == Decimal("5.00")


class TestPurchases:
    """Tests for purchase-level operations"""

    async def test_update_amounts_propagates_delta(self, service, test_db, customer, product):
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            items=[PurchaseItemCreate(product_id=product.id, quantity=1)],
        ))

        updated = await service.update_purchase_amounts(purchase.id, Decimal("12.5"), Decimal("2.5"))

        assert updated.final_amount == Decimal("110.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("110.00")

    async def test_update_details(self, service, customer):
        purchase = await service.create_purchase(PurchaseCreate(customer_id=customer.id))

        updated = await service.update_purchase_details(
            purchase.id, PurchaseDetailsUpdate(payment_status=PaymentStatus.PAID, notes="paid at counter")
        )

        assert updated.payment_status == PaymentStatus.PAID
        assert updated.notes == "paid at counter"
        assert updated.final_amount == purchase.final_amount

    async def test_delete_purchase_reverses_rollup(self, service, test_db, customer, product):
        first = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            items=[PurchaseItemCreate(product_id=product.id, quantity=2)],
        ))
        await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            items=[PurchaseItemCreate(product_id=product.id, quantity=1)],
        ))
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("300.00")

        await service.delete_purchase(first.id)

        stored_cust = await stored_customer(test_db, customer.id)
        assert stored_cust.total_purchases == 1
        assert stored_cust.total_spent == Decimal("100.00")
        items = (await test_db.execute(
            select(func.count(PurchaseItem.id)).where(PurchaseItem.purchase_id == first.id)
        )).scalar()
        assert items == 0

        with pytest.raises(NotFound):
            await service.get_purchase(first.id)

    async def test_inactive_customer_rejected(self, service, customer):
        await service.deactivate_customer(customer.id)

        with pytest.raises(ValidationFailure) as exc_info:
            await service.create_purchase(PurchaseCreate(customer_id=customer.id))

        assert exc_info.value.field == "customer_id"

    async def test_missing_customer(self, service):
        with pytest.raises(NotFound):
            await service.create_purchase(PurchaseCreate(customer_id=999))

    async def test_generated_purchase_number(self, service, customer):
        purchase = await service.create_purchase(PurchaseCreate(customer_id=customer.id))

        prefix, millis, suffix = purchase.purchase_number.split("-")
        assert prefix == "PUR"
        assert millis.isdigit()
        assert len(suffix) == 6

    async def test_requested_purchase_number_must_be_unique(self, service, customer):
        await service.create_purchase(PurchaseCreate(customer_id=customer.id, purchase_number="PUR-1"))

        with pytest.raises(ValidationFailure) as exc_info:
            await service.create_purchase(PurchaseCreate(customer_id=customer.id, purchase_number="PUR-1"))

        assert exc_info.value.field == "purchase_number"

    async def test_generated_collision_is_regenerated(self, service, customer, monkeypatch):
        await service.create_purchase(PurchaseCreate(customer_id=customer.id, purchase_number="PUR-TAKEN"))

        candidates = iter(["PUR-TAKEN", "PUR-TAKEN", "PUR-FREE"])
        monkeypatch.setattr(aggregator_module, "generate_purchase_number", lambda prefix=None: next(candidates))

        purchase = await service.create_purchase(PurchaseCreate(customer_id=customer.id))

        assert purchase.purchase_number == "PUR-FREE"

    async def test_generation_gives_up(self, service, customer, monkeypatch):
        await service.create_purchase(PurchaseCreate(customer_id=customer.id, purchase_number="PUR-TAKEN"))
        monkeypatch.setattr(aggregator_module, "generate_purchase_number", lambda prefix=None: "PUR-TAKEN")

        with pytest.raises(ValidationFailure):
            await service.create_purchase(PurchaseCreate(customer_id=customer.id))

    async def test_aware_purchase_date_stored_as_utc(self, service, test_db, customer):
        plus_five = timezone(timedelta(hours=5))
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id, purchase_date=datetime(2025, 1, 1, 5, 0, tzinfo=plus_five)
        ))

        assert purchase.purchase_date == datetime(2025, 1, 1, 0, 0)
        assert (await stored_purchase(test_db, purchase.id)).purchase_date == datetime(2025, 1, 1, 0, 0)
        assert (await stored_customer(test_db, customer.id)).last_purchase_date == datetime(2025, 1, 1, 0, 0)

    async def test_concurrent_requested_number_conflict(self, service, test_db, customer):
        results = await asyncio.gather(
            service.create_purchase(PurchaseCreate(customer_id=customer.id, purchase_number="INV-1")),
            service.create_purchase(PurchaseCreate(customer_id=customer.id, purchase_number="INV-1")),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], DuplicateValue)
        assert failures[0].field == "purchase_number"
        assert (await stored_customer(test_db, customer.id)).total_purchases == 1

    async def test_concurrent_generated_numbers_stay_unique(self, service, test_db, customer, monkeypatch):
        candidates = iter(["PUR-RACE", "PUR-RACE", "PUR-NEXT", "PUR-SPARE"])
        monkeypatch.setattr(aggregator_module, "generate_purchase_number", lambda prefix=None: next(candidates))

        created = await asyncio.gather(
            service.create_purchase(PurchaseCreate(customer_id=customer.id)),
            service.create_purchase(PurchaseCreate(customer_id=customer.id)),
        )

        assert sorted(p.purchase_number for p in created) == ["PUR-NEXT", "PUR-RACE"]
        assert (await stored_customer(test_db, customer.id)).total_purchases == 2

    async def test_latest_created_purchase_sets_last_date(self, service, test_db, customer):
        """Test last_purchase_date follows creation order, not purchase_date order"""
        await service.create_purchase(PurchaseCreate(
            customer_id=customer.id, purchase_date=datetime(2025, 6, 1)
        ))
        await service.create_purchase(PurchaseCreate(
            customer_id=customer.id, purchase_date=datetime(2025, 1, 1)
        ))

        assert (await stored_customer(test_db, customer.id)).last_purchase_date == datetime(2025, 1, 1)


class TestConcurrency:
    """Concurrent writes on one purchase never lose an update"""

    async def test_concurrent_item_updates(self, service, test_db, customer, product):
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            items=[
                PurchaseItemCreate(product_id=product.id, quantity=1, unit_price=Decimal("10")),
                PurchaseItemCreate(product_id=product.id, quantity=1, unit_price=Decimal("20")),
            ],
        ))
        first, second = (item.id for item in purchase.items)

        await asyncio.gather(
            service.update_item(first, {"quantity": 5}),
            service.update_item(second, {"quantity": 3}),
        )

        stored = await stored_purchase(test_db, purchase.id)
        assert stored.total_amount == Decimal("110.00")
        assert stored.final_amount == Decimal("110.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("110.00")

    async def test_concurrent_item_creates(self, service, test_db, customer, product):
        purchase = await service.create_purchase(PurchaseCreate(customer_id=customer.id))

        await asyncio.gather(*(
            service.create_item(purchase.id, product.id, quantity=1, unit_price=Decimal("7.25"))
            for _ in range(8)
        ))

        stored = await stored_purchase(test_db, purchase.id)
        assert stored.total_amount == Decimal("58.00")
        assert (await stored_customer(test_db, customer.id)).total_spent == Decimal("58.00")


class TestVerification:
    """Post-write invariant checks"""

    async def test_corrupted_total_raises_consistency_failure(self, service, session_factory, customer, product):
        purchase = await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            items=[PurchaseItemCreate(product_id=product.id, quantity=1)],
        ))
        async with session_factory() as session:
            stored = await session.get(Purchase, purchase.id)
            stored.final_amount = Decimal("1.00")
            await session.commit()

        # item notes change: no re-aggregation, so the stale final survives to verification
        with pytest.raises(ConsistencyFailure) as exc_info:
            await service.update_item(purchase.items[0].id, {"notes": "checked"})

        assert exc_info.value.check == "final_amount"


class TestCustomers:
    """Customer records and statistics"""

    async def test_phone_must_be_unique(self, service, customer):
        with pytest.raises(ValidationFailure) as exc_info:
            await service.create_customer(CustomerCreate(name="Other", phone=customer.phone))

        assert exc_info.value.field == "phone"

    async def test_concurrent_duplicate_phone(self, service):
        results = await asyncio.gather(
            service.create_customer(CustomerCreate(name="First", phone="+1-555-0177")),
            service.create_customer(CustomerCreate(name="Second", phone="+1-555-0177")),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], DuplicateValue)
        assert failures[0].field == "phone"

    async def test_update_contact_fields(self, service, customer):
        updated = await service.update_customer(customer.id, CustomerUpdate(email="jane@example.com"))

        assert updated.email == "jane@example.com"
        assert updated.total_spent == Decimal("0.00")

    async def test_purchase_stats(self, service, customer, product):
        for quantity in (1, 2):
            await service.create_purchase(PurchaseCreate(
                customer_id=customer.id,
                items=[PurchaseItemCreate(product_id=product.id, quantity=quantity)],
            ))

        stats = await service.purchase_stats(customer.id)

        assert stats.total_purchases == 2
        assert stats.total_spent == Decimal("300.00")
        assert stats.average_purchase == Decimal("150.00")

    async def test_purchase_stats_without_purchases(self, service, customer):
        stats = await service.purchase_stats(customer.id)

        assert stats.total_purchases == 0
        assert stats.average_purchase == Decimal("0.00")
        assert stats.last_purchase_date is None

    async def test_rebuild_repairs_drift(self, service, session_factory, customer, product):
        await service.create_purchase(PurchaseCreate(
            customer_id=customer.id,
            items=[PurchaseItemCreate(product_id=product.id, quantity=1)],
        ))
        async with session_factory() as session:
            stored = await session.get(Customer, customer.id)
            stored.total_spent = Decimal("999.00")
            stored.total_purchases = 7
            await session.commit()

        rebuilt = await service.rebuild_customer_statistics(customer.id)

        assert rebuilt.total_purchases == 1
        assert rebuilt.total_spent == Decimal("100.00")
