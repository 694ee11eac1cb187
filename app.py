from contextlib import asynccontextmanager
from typing import Optional
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import RoomRegistry, create_redis_client
from constants import CORS_ORIGINS, PURGE_ON_STARTUP
from manager import ConnectionManager
from relay import RelayEngine
from routers.rooms import rooms_router
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(registry: Optional[RoomRegistry] = None, purge_on_startup: bool = PURGE_ON_STARTUP) -> FastAPI:
    if registry is None:
        registry = RoomRegistry(create_redis_client())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            registry.ping()
            logger.info("Room registry reachable")
            if purge_on_startup:
                registry.purge()
        except Exception as e:
            logger.error(f"Failed to reach room registry: {e}", exc_info=True)
            raise
        yield
        logger.info("EphemeralChat relay shutting down")

    app = FastAPI(title="EphemeralChat relay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    manager = ConnectionManager(registry)
    app.state.registry = registry
    app.state.manager = manager
    app.state.relay = RelayEngine(manager)

    app.include_router(rooms_router)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
