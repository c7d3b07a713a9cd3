"""
FastAPI Production Application

Main entry point for the CRM Purchase Ledger API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from redis.exceptions import RedisError
import structlog

from crm_backend.config import get_settings
from crm_backend.config.logging import configure_logging
from crm_backend.database.connection import init_database, close_database
from crm_backend.serving.cache import init_redis, close_redis
from crm_backend.serving.api.main import create_api_app

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()

    logger.info("Starting CRM Purchase Ledger API", environment=settings.app_env)

    # the ledger cannot serve without its database
    await init_database()

    try:
        await init_redis()
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable, serving without cache", error=str(e))
        await close_redis()

    yield

    logger.info("Shutting down...")
    await close_redis()
    await close_database()


app = create_api_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
