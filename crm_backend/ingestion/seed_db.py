"""
Demo Data Seeding

Fills an empty database with Faker-generated customers, products and
purchases. Everything is written through LedgerService, so seeded purchase
totals and customer statistics are consistent from the start.

Usage:
    python -m crm_backend.ingestion.seed_db --customers 50 --products 20
"""

import argparse
import asyncio
import random
from datetime import timedelta
from decimal import Decimal
from typing import List

import structlog
from faker import Faker

from crm_backend.config.logging import configure_logging
from crm_backend.database.connection import close_database, get_session_factory, init_database
from crm_backend.database.models import CustomerType, PaymentMethod, PaymentStatus, PurchaseStatus, utcnow
from crm_backend.ledger.schemas import (
    CustomerCreate,
    CustomerRead,
    ProductCreate,
    ProductDetail,
    PurchaseCreate,
    PurchaseItemCreate,
    VariantCreate,
)
from crm_backend.ledger.service import LedgerService

logger = structlog.get_logger(__name__)

CATEGORIES = {
    "clothing": ["Shirt", "Pants", "Dress", "Jacket"],
    "shoes": ["Sneakers", "Boots", "Sandals"],
    "accessories": ["Bag", "Belt", "Scarf", "Watch"],
}
COLORS = ["black", "white", "navy", "red", "beige"]
SIZES = ["S", "M", "L", "XL"]

CUSTOMER_TYPES = [
    (CustomerType.REGULAR, 0.75),
    (CustomerType.VIP, 0.15),
    (CustomerType.WHOLESALE, 0.10),
]


class DemoSeeder:
    """Generate demo records with a fixed seed for reproducible datasets."""

    def __init__(self, service: LedgerService, seed: int = 42):
        self.service = service
        self.fake = Faker()
        self.fake.seed_instance(seed)
        self.random = random.Random(seed)

    async def seed_customers(self, n: int) -> List[CustomerRead]:
        customers = []
        for _ in range(n):
            customer_type = self.random.choices(
                [t for t, _ in CUSTOMER_TYPES], weights=[w for _, w in CUSTOMER_TYPES]
            )[0]
            customers.append(await self.service.create_customer(CustomerCreate(
                name=self.fake.name(),
                phone=self.fake.unique.numerify("+1-###-###-####"),
                email=self.fake.email(),
                address=self.fake.address().replace("\n", ", "),
                birthday=self.fake.date_of_birth(minimum_age=18, maximum_age=80),
                customer_type=customer_type,
            )))
        logger.info("Customers seeded", count=len(customers))
        return customers

    async def seed_products(self, n: int) -> List[ProductDetail]:
        products = []
        for _ in range(n):
            category = self.random.choice(list(CATEGORIES))
            kind = self.random.choice(CATEGORIES[category])
            base_price = Decimal(self.random.randint(500, 25000)) / 100

            variants = [
                VariantCreate(
                    sku=self.fake.unique.bothify("SKU-????-####").upper(),
                    color=color,
                    size=size,
                    price=base_price + Decimal(self.random.choice([0, 0, 5, 10])),
                    stock=self.random.randint(0, 200),
                )
                for color in self.random.sample(COLORS, 2)
                for size in self.random.sample(SIZES, 2)
            ]
            products.append(await self.service.create_product(ProductCreate(
                name=f"{self.fake.color_name()} {kind}",
                description=self.fake.sentence(nb_words=12),
                category=category,
                base_price=base_price,
                brand=self.fake.company(),
                variants=variants,
            )))
        logger.info("Products seeded", count=len(products))
        return products

    async def seed_purchases(
        self,
        customers: List[CustomerRead],
        products: List[ProductDetail],
        max_per_customer: int,
    ) -> int:
        if not products:
            return 0

        created = 0
        now = utcnow()
        for customer in customers:
            for _ in range(self.random.randint(0, max_per_customer)):
                lines = []
                for product in self.random.sample(products, self.random.randint(1, min(4, len(products)))):
                    variant = self.random.choice(product.variants) if product.variants else None
                    lines.append(PurchaseItemCreate(
                        product_id=product.id,
                        product_variant_id=variant.id if variant else None,
                        quantity=self.random.randint(1, 3),
                        discount_percentage=Decimal(self.random.choice([0, 0, 0, 10, 15])),
                    ))

                await self.service.create_purchase(PurchaseCreate(
                    customer_id=customer.id,
                    tax_amount=Decimal(self.random.randint(0, 1500)) / 100,
                    payment_method=self.random.choice(list(PaymentMethod)),
                    payment_status=PaymentStatus.PAID,
                    purchase_status=self.random.choice(
                        [PurchaseStatus.CONFIRMED, PurchaseStatus.SHIPPED, PurchaseStatus.DELIVERED]
                    ),
                    purchase_date=now - timedelta(days=self.random.randint(0, 365)),
                    items=lines,
                ))
                created += 1
        logger.info("Purchases seeded", count=created)
        return created


async def main(customers: int = 50, products: int = 20, max_purchases: int = 5, seed: int = 42) -> None:
    configure_logging()
    logger.info("Starting database seeding...")
    await init_database()

    try:
        seeder = DemoSeeder(LedgerService(get_session_factory()), seed=seed)
        seeded_customers = await seeder.seed_customers(customers)
        seeded_products = await seeder.seed_products(products)
        await seeder.seed_purchases(seeded_customers, seeded_products, max_purchases)
        logger.info("Database seeding completed")
    finally:
        await close_database()


def cli() -> None:
    parser = argparse.ArgumentParser(description="Seed the CRM database with demo data")
    parser.add_argument("--customers", type=int, default=50)
    parser.add_argument("--products", type=int, default=20)
    parser.add_argument("--max-purchases", type=int, default=5, help="Purchases per customer, at most")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    asyncio.run(main(args.customers, args.products, args.max_purchases, args.seed))


if __name__ == "__main__":
    cli()
