"""
Purchases API Endpoints

REST API for purchases and their line items. Every write goes through the
ledger service, which re-aggregates the purchase and the customer's
statistics in the same transaction.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
import structlog

from crm_backend.ledger.schemas import (
    PurchaseAmountsUpdate,
    PurchaseCreate,
    PurchaseDetail,
    PurchaseDetailsUpdate,
    PurchaseItemChanges,
    PurchaseItemCreate,
    PurchaseItemRead,
    PurchaseRead,
)
from crm_backend.ledger.service import LedgerService
from crm_backend.serving.api.dependencies import get_ledger_service
from crm_backend.serving.cache import customers_cache, purchases_cache

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _invalidate(purchase_id: int, customer_id: Optional[int] = None) -> None:
    await purchases_cache.delete(purchase_id)
    if customer_id is not None:
        await customers_cache.delete(customer_id)


@router.post("", response_model=PurchaseDetail, status_code=status.HTTP_201_CREATED)
async def create_purchase(
    data: PurchaseCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseDetail:
    """Create a purchase, optionally with its initial items."""
    purchase = await service.create_purchase(data)
    await customers_cache.delete(purchase.customer_id)
    return purchase


@router.get("", response_model=List[PurchaseRead])
async def list_purchases(
    customer_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service),
) -> List[PurchaseRead]:
    """List purchases, newest first."""
    return await service.list_purchases(customer_id, limit=page_size, offset=(page - 1) * page_size)


@router.get("/{purchase_id}", response_model=PurchaseDetail)
async def get_purchase(
    purchase_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseDetail:
    cached = await purchases_cache.get(purchase_id)
    if cached:
        return PurchaseDetail(**cached)

    purchase = await service.get_purchase(purchase_id)
    await purchases_cache.set(purchase_id, purchase.model_dump(mode="json"))
    return purchase


@router.patch("/{purchase_id}/amounts", response_model=PurchaseRead)
async def update_purchase_amounts(
    purchase_id: int,
    data: PurchaseAmountsUpdate,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseRead:
    """Change purchase-level tax and/or discount; the final amount is recomputed."""
    purchase = await service.update_purchase_amounts(purchase_id, data.tax_amount, data.discount_amount)
    await _invalidate(purchase_id, purchase.customer_id)
    return purchase


@router.patch("/{purchase_id}", response_model=PurchaseRead)
async def update_purchase_details(
    purchase_id: int,
    changes: PurchaseDetailsUpdate,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseRead:
    """Change payment method, payment status, purchase status or notes."""
    purchase = await service.update_purchase_details(purchase_id, changes)
    await _invalidate(purchase_id)
    return purchase


@router.delete("/{purchase_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_purchase(
    purchase_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> Response:
    """Delete a purchase with its items; the customer's statistics are reversed."""
    purchase = await service.get_purchase(purchase_id)
    await service.delete_purchase(purchase_id)
    await _invalidate(purchase_id, purchase.customer_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# -----------------------------------------------------------------------------
# Items
# -----------------------------------------------------------------------------

@router.get("/{purchase_id}/items", response_model=List[PurchaseItemRead])
async def list_purchase_items(
    purchase_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> List[PurchaseItemRead]:
    return await service.list_purchase_items(purchase_id)


@router.post(
    "/{purchase_id}/items",
    response_model=PurchaseItemRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_purchase_item(
    purchase_id: int,
    data: PurchaseItemCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseItemRead:
    item = await service.create_item(
        purchase_id,
        data.product_id,
        data.product_variant_id,
        data.quantity,
        data.unit_price,
        data.discount_percentage,
        data.notes,
    )
    await _invalidate(purchase_id, item.customer_id)
    return item


@router.patch("/items/{item_id}", response_model=PurchaseItemRead)
async def update_purchase_item(
    item_id: int,
    changes: PurchaseItemChanges,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseItemRead:
    """Partial update; pricing fields trigger re-aggregation only when they change."""
    item = await service.update_item(item_id, changes)
    await _invalidate(item.purchase_id, item.customer_id)
    return item


@router.delete("/items/{item_id}", response_model=PurchaseRead)
async def delete_purchase_item(
    item_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseRead:
    """Remove an item and return the re-aggregated purchase."""
    purchase = await service.delete_item(item_id)
    await _invalidate(purchase.id, purchase.customer_id)
    return purchase
