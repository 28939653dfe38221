from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from ..config import get_settings
from ..db.mongo import MongoDBManager
from .middleware import CorrelationIdMiddleware
from .router import get_services, router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = get_services()
    if isinstance(services.db, MongoDBManager):
        # The position_key unique index must exist before the first purchase
        await services.db.ensure_indexes()
        logger.info("mongo indexes ensured")
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title=settings.app_name, lifespan=_lifespan)
    app.add_middleware(CorrelationIdMiddleware, path_prefix=settings.api_prefix)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app
