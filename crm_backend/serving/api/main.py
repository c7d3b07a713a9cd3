"""
FastAPI Application Factory

Creates and configures the CRM API application.
"""

from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from crm_backend.config import get_settings
from crm_backend.serving.api.errors import register_exception_handlers
from crm_backend.serving.api.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from crm_backend.serving.api.routes import (
    health_router,
    customers_router,
    products_router,
    purchases_router,
)

settings = get_settings()


def create_api_app(lifespan: Optional[Any] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        lifespan: Optional lifespan context manager (database, cache, logging)

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="CRM Purchase Ledger API",
        description="Customers, products and purchases with consistent purchase statistics",
        version=settings.version,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    register_exception_handlers(app)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(customers_router, prefix="/api/v1/customers", tags=["Customers"])
    app.include_router(products_router, prefix="/api/v1/products", tags=["Products"])
    app.include_router(purchases_router, prefix="/api/v1/purchases", tags=["Purchases"])

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app
