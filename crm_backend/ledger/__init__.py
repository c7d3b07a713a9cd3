"""
Ledger Module

Purchase item pricing, purchase aggregation, customer statistics rollup and
stock adjustment.
"""
from .errors import (
    LedgerError,
    ValidationFailure,
    NotFound,
    ReferentialFailure,
    NegativeAmountFailure,
    ConsistencyFailure,
)
from .locking import LockKind, LockScope, LockRegistry
from .unit_of_work import LedgerUnitOfWork
from .service import LedgerService
from .stock import StockUpdate, StockUpdateResult

__all__ = [
    "LedgerError",
    "ValidationFailure",
    "NotFound",
    "ReferentialFailure",
    "NegativeAmountFailure",
    "ConsistencyFailure",
    "LockKind",
    "LockScope",
    "LockRegistry",
    "LedgerUnitOfWork",
    "LedgerService",
    "StockUpdate",
    "StockUpdateResult",
]
