"""
Products API Endpoints

REST API for the product catalog, variants and stock levels.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel

from crm_backend.ledger.schemas import (
    ProductCreate,
    ProductDetail,
    ProductStatsRead,
    ProductUpdate,
    StockUpdateRequest,
    StockUpdateResultRead,
    VariantCreate,
    VariantRead,
    VariantUpdate,
)
from crm_backend.ledger.service import LedgerService
from crm_backend.ledger.stock import StockUpdate
from crm_backend.serving.api.dependencies import get_ledger_service
from crm_backend.serving.cache import products_cache

router = APIRouter()


class BulkStockResponse(BaseModel):
    """Per-entry outcome of a bulk stock update"""
    results: List[StockUpdateResultRead]
    succeeded: int
    failed: int


@router.post("", response_model=ProductDetail, status_code=status.HTTP_201_CREATED)
async def create_product(
    data: ProductCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> ProductDetail:
    return await service.create_product(data)


@router.get("/low-stock", response_model=List[VariantRead])
async def get_low_stock_variants(
    threshold: int = Query(10, ge=1),
    service: LedgerService = Depends(get_ledger_service),
) -> List[VariantRead]:
    """Variants whose stock is below the threshold, lowest first."""
    return await service.low_stock_variants(threshold)


@router.put("/bulk/stock", response_model=BulkStockResponse)
async def bulk_update_stock(
    updates: List[StockUpdateRequest],
    service: LedgerService = Depends(get_ledger_service),
) -> BulkStockResponse:
    """
    Set stock for many variants.

    Entries are applied independently; a failing entry is reported in its
    result and never aborts the others.
    """
    results = await service.bulk_set_stock(
        [StockUpdate(variant_id=u.variant_id, new_stock=u.new_stock) for u in updates]
    )
    succeeded = sum(1 for r in results if r.success)
    if succeeded:
        await products_cache.invalidate_all()

    return BulkStockResponse(
        results=[StockUpdateResultRead.model_validate(r) for r in results],
        succeeded=succeeded,
        failed=len(results) - succeeded,
    )


@router.get("/stats/overview", response_model=ProductStatsRead)
async def get_product_stats(
    low_stock_threshold: int = Query(10, ge=1),
    service: LedgerService = Depends(get_ledger_service),
) -> ProductStatsRead:
    """Catalog counts with category and brand distribution."""
    return await service.product_stats(low_stock_threshold)


@router.get("/{product_id}", response_model=ProductDetail)
async def get_product(
    product_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> ProductDetail:
    cached = await products_cache.get(product_id)
    if cached:
        return ProductDetail(**cached)

    product = await service.get_product(product_id)
    await products_cache.set(product_id, product.model_dump(mode="json"))
    return product


@router.post(
    "/{product_id}/variants",
    response_model=VariantRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_variant(
    product_id: int,
    data: VariantCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> VariantRead:
    variant = await service.add_variant(product_id, data)
    await products_cache.delete(product_id)
    return variant


@router.patch("/{product_id}", response_model=ProductDetail)
async def update_product(
    product_id: int,
    changes: ProductUpdate,
    service: LedgerService = Depends(get_ledger_service),
) -> ProductDetail:
    product = await service.update_product(product_id, changes)
    await products_cache.delete(product_id)
    return product


@router.delete("/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_product(
    product_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> Response:
    """Delete a product and its variants; refused while purchase items reference it."""
    await service.delete_product(product_id)
    await products_cache.delete(product_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/variants/{variant_id}", response_model=VariantRead)
async def update_variant(
    variant_id: int,
    changes: VariantUpdate,
    service: LedgerService = Depends(get_ledger_service),
) -> VariantRead:
    variant = await service.update_variant(variant_id, changes)
    await products_cache.delete(variant.product_id)
    return variant


@router.delete("/variants/{variant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_variant(
    variant_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> Response:
    variant = await service.delete_variant(variant_id)
    await products_cache.delete(variant.product_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
