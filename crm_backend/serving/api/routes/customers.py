"""
Customers API Endpoints

REST API for customer records and their purchase statistics.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, status
import structlog

from crm_backend.ledger.schemas import (
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    PurchaseRead,
    PurchaseStatsRead,
)
from crm_backend.ledger.service import LedgerService
from crm_backend.serving.api.dependencies import get_ledger_service
from crm_backend.serving.cache import customers_cache

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
async def create_customer(
    data: CustomerCreate,
    service: LedgerService = Depends(get_ledger_service),
) -> CustomerRead:
    return await service.create_customer(data)


@router.get("", response_model=List[CustomerRead])
async def list_customers(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    active_only: bool = True,
    service: LedgerService = Depends(get_ledger_service),
) -> List[CustomerRead]:
    """List customers, active ones by default."""
    return await service.list_customers(active_only, limit=page_size, offset=(page - 1) * page_size)


@router.get("/{customer_id}", response_model=CustomerRead)
async def get_customer(
    customer_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> CustomerRead:
    cached = await customers_cache.get(customer_id)
    if cached:
        return CustomerRead(**cached)

    customer = await service.get_customer(customer_id)
    await customers_cache.set(customer_id, customer.model_dump(mode="json"))
    return customer


@router.patch("/{customer_id}", response_model=CustomerRead)
async def update_customer(
    customer_id: int,
    changes: CustomerUpdate,
    service: LedgerService = Depends(get_ledger_service),
) -> CustomerRead:
    """Update contact fields. Purchase statistics are not writable."""
    customer = await service.update_customer(customer_id, changes)
    await customers_cache.delete(customer_id)
    return customer


@router.delete("/{customer_id}", response_model=CustomerRead)
async def deactivate_customer(
    customer_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> CustomerRead:
    """Soft delete: the customer keeps its purchase history."""
    customer = await service.deactivate_customer(customer_id)
    await customers_cache.delete(customer_id)
    return customer


@router.get("/{customer_id}/stats", response_model=PurchaseStatsRead)
async def get_purchase_stats(
    customer_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> PurchaseStatsRead:
    """Purchase count, total, average and latest date derived from stored purchases."""
    return await service.purchase_stats(customer_id)


@router.post("/{customer_id}/rebuild-stats", response_model=CustomerRead)
async def rebuild_customer_statistics(
    customer_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> CustomerRead:
    customer = await service.rebuild_customer_statistics(customer_id)
    await customers_cache.delete(customer_id)
    logger.info("Customer statistics rebuilt via API", customer_id=customer_id)
    return customer


@router.get("/{customer_id}/purchases", response_model=List[PurchaseRead])
async def list_customer_purchases(
    customer_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service),
) -> List[PurchaseRead]:
    await service.get_customer(customer_id)
    return await service.list_purchases(customer_id, limit=page_size, offset=(page - 1) * page_size)
