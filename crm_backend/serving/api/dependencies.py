"""
API Dependencies
"""

from crm_backend.database.connection import get_session_factory
from crm_backend.ledger.service import LedgerService


async def get_ledger_service() -> LedgerService:
    """
    FastAPI dependency for the ledger application service.

    Example:
        @router.post("")
        async def create(service: LedgerService = Depends(get_ledger_service)):
            ...
    """
    return LedgerService(get_session_factory())
