"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from sandwich_engine.api.health import router as health_router
from sandwich_engine.blockchain_connector import create_node_client
from sandwich_engine.cache.redis_client import close_redis, get_redis
from sandwich_engine.config.settings import settings
from sandwich_engine.mev_detection.engine import create_engine

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging; web3 and aiohttp are kept at WARNING."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
    for noisy in ("web3", "aiohttp", "urllib3", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown events."""
    logger.info("Starting sandwich engine service")
    config = settings.to_engine_config()

    redis = await get_redis()
    if redis is None:
        logger.info("Redis not configured: token verdicts are kept in memory only")

    node = await create_node_client(
        settings.rpc_url,
        ws_url=settings.ws_url,
        backup_rpc_url=settings.backup_rpc_url,
        default_timeout=config.rpc_timeout,
        max_retries=config.rpc_max_retries,
        retry_backoff=config.rpc_backoff,
    )
    app.state.node = node

    engine = create_engine(
        config,
        node,
        private_key=settings.private_key,
        relay_signing_key=settings.relay_signing_key,
        redis_client=redis,
    )
    app.state.engine = engine
    await engine.start()
    logger.info("System startup complete")

    yield

    logger.info("Shutting down sandwich engine service")
    await engine.stop()
    await node.close()
    await close_redis()
    logger.info("System shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Sandwich Engine API",
        description="Mempool sandwich detection and private bundle submission",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(health_router, tags=["health"])

    return app


# Create the app instance
app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    configure_logging(settings.log_level)
    uvicorn.run(
        "sandwich_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
    )


if __name__ == "__main__":
    run()
