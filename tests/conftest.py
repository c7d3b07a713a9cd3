"""
Test Suite Configuration
"""
from decimal import Decimal
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from crm_backend.database.connection import create_session_factory
from crm_backend.database.models import Base
from crm_backend.ledger.locking import LockRegistry
from crm_backend.ledger.schemas import CustomerCreate, ProductCreate, VariantCreate
from crm_backend.ledger.service import LedgerService


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    On-disk SQLite database per test.

    A file rather than :memory: so that concurrent units of work get their
    own connections onto the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for asserting on stored rows"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks() -> LockRegistry:
    return LockRegistry()


@pytest.fixture
def service(session_factory, locks) -> LedgerService:
    return LedgerService(session_factory, locks)


@pytest.fixture
async def customer(service):
    return await service.create_customer(CustomerCreate(name="Jane Doe", phone="+1-555-0100"))


@pytest.fixture
async def product(service):
    """Product with two variants: 120.00 (stock 50) and 150.00 (stock 5)"""
    return await service.create_product(ProductCreate(
        name="Linen Shirt",
        category="clothing",
        base_price=Decimal("100.00"),
        variants=[
            VariantCreate(sku="LS-WHT-M", color="white", size="M", price=Decimal("120.00"), stock=50),
            VariantCreate(sku="LS-BLK-L", color="black", size="L", price=Decimal("150.00"), stock=5),
        ],
    ))


@pytest.fixture
async def other_product(service):
    return await service.create_product(ProductCreate(
        name="Canvas Bag",
        category="accessories",
        base_price=Decimal("40.00"),
        variants=[VariantCreate(sku="CB-NAT", color="natural", price=Decimal("45.00"), stock=12)],
    ))
