"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fieldops.api.router import api_router
from fieldops.config import get_settings
from fieldops.db.engine import async_session_factory, engine, init_db
from fieldops.errors import FieldOpsError
from fieldops.services.dispatch import DispatchOrchestrator
from fieldops.services.timeout_scanner import TimeoutScanner, run_periodically

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_db()

    # Background sweep for offers whose deadline elapsed
    scanner_task = None
    if settings.dispatch.scanner_enabled:
        scanner = TimeoutScanner(
            async_session_factory,
            orchestrator_factory=lambda db: DispatchOrchestrator(db, config=settings.dispatch),
        )
        scanner_task = asyncio.create_task(
            run_periodically(scanner, settings.dispatch.scan_interval_seconds)
        )
        logger.info("Timeout scanner started (every %ss)", settings.dispatch.scan_interval_seconds)
    yield
    if scanner_task is not None:
        scanner_task.cancel()
    await engine.dispose()


app = FastAPI(
    title="FieldOps",
    description="Field-service dispatch with sequential technician offers and payment holds.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(FieldOpsError)
async def fieldops_error_handler(request: Request, exc: FieldOpsError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


app.include_router(api_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
