"""
API Routes Module
"""
from .health import router as health_router
from .customers import router as customers_router
from .products import router as products_router
from .purchases import router as purchases_router

__all__ = [
    "health_router",
    "customers_router",
    "products_router",
    "purchases_router",
]
