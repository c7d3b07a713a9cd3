"""
Database Models - CRM Ledger Schema

Customers own purchases, purchases own purchase items, and items reference
products and (optionally) one of the product's variants.

Derived columns:
- PurchaseItem.discount_amount / subtotal: priced from unit price, quantity
  and discount percentage
- Purchase.total_amount / final_amount: aggregated from the owned items
- Customer.total_purchases / total_spent / last_purchase_date: rolled up
  from the owned purchases

Derived columns are only written by crm_backend.ledger.
"""

from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)



class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class CustomerType(str, Enum):
    """Customer classification"""
    REGULAR = "regular"
    VIP = "vip"
    WHOLESALE = "wholesale"


class PaymentMethod(str, Enum):
    """Payment method enumeration"""
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"


class PaymentStatus(str, Enum):
    """Payment status enumeration"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PurchaseStatus(str, Enum):
    """Purchase fulfilment status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# =============================================================================
# CUSTOMERS
# =============================================================================

class Customer(Base):
    """
    Customer

    Contact details plus the lifetime statistics rolled up from purchases.
    Customers are never deleted; deactivate them with is_active.
    """
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    birthday: Mapped[Optional[date]] = mapped_column(Date)
    customer_type: Mapped[CustomerType] = mapped_column(
        SQLEnum(CustomerType), default=CustomerType.REGULAR, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Rollup
    total_purchases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    last_purchase_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    purchases: Mapped[List["Purchase"]] = relationship(
        back_populates="customer", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("total_purchases >= 0", name="ck_customers_total_purchases"),
        CheckConstraint("total_spent >= 0", name="ck_customers_total_spent"),
        Index("ix_customers_type", "customer_type"),
        Index("ix_customers_active", "is_active"),
    )


# =============================================================================
# CATALOG
# =============================================================================

class Product(Base):
    """Product catalog entry; sellable units are its variants."""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(100))
    image_url: Mapped[Optional[str]] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    variants: Mapped[List["ProductVariant"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_products_category", "category"),
        Index("ix_products_brand", "brand"),
    )


class ProductVariant(Base):
    """Stock-keeping unit of a product (colour/size combination)."""
    __tablename__ = "product_variants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    sku: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(50))
    size: Mapped[Optional[str]] = mapped_column(String(50))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    product: Mapped["Product"] = relationship(back_populates="variants")

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_product_variants_stock"),
        Index("ix_product_variants_product", "product_id"),
        Index("ix_product_variants_stock", "stock"),
    )


# =============================================================================
# LEDGER
# =============================================================================

class Purchase(Base):
    """
    Purchase

    One customer transaction. final_amount is always
    total_amount + tax_amount - discount_amount and never negative.
    """
    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    purchase_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Measures
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    final_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    # Status
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod), default=PaymentMethod.CASH, nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    purchase_status: Mapped[PurchaseStatus] = mapped_column(
        SQLEnum(PurchaseStatus), default=PurchaseStatus.PENDING, nullable=False
    )

    notes: Mapped[Optional[str]] = mapped_column(Text)
    purchase_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    customer: Mapped["Customer"] = relationship(back_populates="purchases")
    items: Mapped[List["PurchaseItem"]] = relationship(
        back_populates="purchase", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_purchases_total_amount"),
        CheckConstraint("discount_amount >= 0", name="ck_purchases_discount_amount"),
        CheckConstraint("tax_amount >= 0", name="ck_purchases_tax_amount"),
        CheckConstraint("final_amount >= 0", name="ck_purchases_final_amount"),
        Index("ix_purchases_customer", "customer_id"),
        Index("ix_purchases_date", "purchase_date"),
        Index("ix_purchases_payment_status", "payment_status"),
        Index("ix_purchases_status", "purchase_status"),
    )


class PurchaseItem(Base):
    """
    Purchase Item

    One line of a purchase. subtotal = unit_price * quantity - discount_amount.
    """
    __tablename__ = "purchase_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    purchase_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    product_variant_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("product_variants.id")
    )

    # Measures
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    purchase: Mapped["Purchase"] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1 AND quantity <= 999999", name="ck_purchase_items_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_purchase_items_unit_price"),
        CheckConstraint(
            "discount_percentage >= 0 AND discount_percentage <= 100",
            name="ck_purchase_items_discount_percentage",
        ),
        CheckConstraint("subtotal >= 0", name="ck_purchase_items_subtotal"),
        Index("ix_purchase_items_purchase", "purchase_id"),
        Index("ix_purchase_items_product", "product_id"),
        Index("ix_purchase_items_variant", "product_variant_id"),
    )
