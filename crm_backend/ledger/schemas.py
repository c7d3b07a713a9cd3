"""
Ledger Schemas

Commands accepted by LedgerService and the plain read models it returns.
Range checks live in the ledger itself (ValidationFailure); these models
only fix the shape and types.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from crm_backend.database.models import CustomerType, PaymentMethod, PaymentStatus, PurchaseStatus


# =============================================================================
# COMMANDS
# =============================================================================

class PurchaseItemCreate(BaseModel):
    """New purchase line"""
    product_id: int
    product_variant_id: Optional[int] = None
    quantity: int
    unit_price: Optional[Decimal] = None
    discount_percentage: Decimal = Decimal("0")
    notes: Optional[str] = None


class PurchaseItemChanges(BaseModel):
    """Partial update of a purchase line; only fields that are set apply"""
    product_id: Optional[int] = None
    product_variant_id: Optional[int] = None
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    notes: Optional[str] = None


class PurchaseCreate(BaseModel):
    """New purchase, optionally with its initial lines"""
    customer_id: int
    purchase_number: Optional[str] = None
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: PaymentStatus = PaymentStatus.PENDING
    purchase_status: PurchaseStatus = PurchaseStatus.PENDING
    notes: Optional[str] = None
    purchase_date: Optional[datetime] = None
    items: List[PurchaseItemCreate] = Field(default_factory=list)


class PurchaseAmountsUpdate(BaseModel):
    """Purchase-level tax/discount edit"""
    tax_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None


class PurchaseDetailsUpdate(BaseModel):
    """Payment and fulfilment fields"""
    payment_method: Optional[PaymentMethod] = None
    payment_status: Optional[PaymentStatus] = None
    purchase_status: Optional[PurchaseStatus] = None
    notes: Optional[str] = None


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=1, max_length=50)
    email: Optional[str] = None
    address: Optional[str] = None
    birthday: Optional[date] = None
    customer_type: CustomerType = CustomerType.REGULAR
    notes: Optional[str] = None


class CustomerUpdate(BaseModel):
    """Contact fields only; statistics are owned by the ledger"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[str] = None
    address: Optional[str] = None
    birthday: Optional[date] = None
    customer_type: Optional[CustomerType] = None
    notes: Optional[str] = None


class VariantCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=100)
    color: Optional[str] = None
    size: Optional[str] = None
    price: Decimal
    discount: Decimal = Decimal("0")
    stock: int = 0
    image_url: Optional[str] = None


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: str = Field(min_length=1, max_length=100)
    base_price: Decimal
    brand: Optional[str] = None
    image_url: Optional[str] = None
    variants: List[VariantCreate] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    """Partial catalog edit; only fields that are set apply"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    base_price: Optional[Decimal] = None
    brand: Optional[str] = None
    image_url: Optional[str] = None


class VariantUpdate(BaseModel):
    sku: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = None
    size: Optional[str] = None
    price: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    stock: Optional[int] = None
    image_url: Optional[str] = None


# =============================================================================
# READ MODELS
# =============================================================================

class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: str
    email: Optional[str]
    address: Optional[str]
    birthday: Optional[date]
    customer_type: CustomerType
    notes: Optional[str]
    total_purchases: int
    total_spent: Decimal
    last_purchase_date: Optional[datetime]
    is_active: bool


class PurchaseItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    purchase_id: int
    product_id: int
    product_variant_id: Optional[int]
    quantity: int
    unit_price: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    notes: Optional[str]


class PurchaseItemWrite(PurchaseItemRead):
    """Item after a ledger write, with the customer whose statistics moved"""
    customer_id: int

    @classmethod
    def from_item(cls, item, customer_id: int) -> "PurchaseItemWrite":
        return cls(**PurchaseItemRead.model_validate(item).model_dump(), customer_id=customer_id)


class PurchaseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    purchase_number: str
    total_amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    purchase_status: PurchaseStatus
    notes: Optional[str]
    purchase_date: datetime


class PurchaseDetail(PurchaseRead):
    items: List[PurchaseItemRead] = Field(default_factory=list)


class VariantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    sku: str
    color: Optional[str]
    size: Optional[str]
    price: Decimal
    discount: Decimal
    stock: int


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    category: str
    base_price: Decimal
    brand: Optional[str]
    image_url: Optional[str]


class ProductDetail(ProductRead):
    variants: List[VariantRead] = Field(default_factory=list)


class PurchaseStatsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: int
    total_purchases: int
    total_spent: Decimal
    average_purchase: Decimal
    last_purchase_date: Optional[datetime]


class ProductStatsRead(BaseModel):
    total_products: int
    total_variants: int
    categories: Dict[str, int]
    brands: Dict[str, int]
    low_stock_variants: int
    low_stock_threshold: int


class StockUpdateRequest(BaseModel):
    variant_id: int
    new_stock: int


class StockUpdateResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    variant_id: int
    success: bool
    stock: Optional[int] = None
    previous_stock: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
