from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from trendscope.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from trendscope.config.load_config import env_bool, load_app_config
from trendscope.runtime.aggregator import reconcile
from trendscope.runtime.dispatcher import JobDispatcher
from trendscope.storage.sqlite_store import SQLiteStore

from .routers.catalog import router as catalog_router
from .routers.cron import router as cron_router
from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.prompts import router as prompts_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("TRENDSCOPE_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Jobs left `processing` by a previous process go back to the queue.
        app.state.startup_reconcile = {}
        if env_bool("TRENDSCOPE_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                result = reconcile(store, load_app_config())
                app.state.startup_reconcile = {
                    "requeued_jobs": result.requeued_jobs,
                    "failed_jobs": result.failed_jobs,
                    "executed_runs": result.executed_runs,
                }
            finally:
                store.close()

        app.state.dispatcher = None
        if env_bool("TRENDSCOPE_ENABLE_DISPATCHER", True):
            dispatcher = JobDispatcher.from_config(load_app_config())
            if dispatcher is not None:
                dispatcher.start()
                app.state.dispatcher = dispatcher
                logger.info(f"dispatcher started: {dispatcher.status_snapshot()}")
        try:
            yield
        finally:
            dispatcher = getattr(app.state, "dispatcher", None)
            if dispatcher is not None:
                dispatcher.stop()

    app = FastAPI(title="trendscope API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(cron_router, prefix="/api/v1", tags=["cron"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(prompts_router, prefix="/api/v1", tags=["prompts"])
    app.include_router(catalog_router, prefix="/api/v1", tags=["catalog"])

    return app


app = create_app()
