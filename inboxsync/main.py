"""
FastAPI application entry point.

Run with:
    uvicorn inboxsync.main:app --port 5000

Startup builds the AppContext and runs the startup gate. If a required
dependency is down, the lifespan raises StartupDependencyFailure and
uvicorn exits with a non-zero status instead of serving.
"""

import uuid
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from inboxsync.api.routes import router as api_router, ws_router
from inboxsync.config import load_accounts, load_settings
from inboxsync.context import AppContext
from inboxsync.errors import (
    ConnectivityError,
    InboxSyncError,
    NotFoundError,
    ValidationError,
)
from inboxsync.logging.config import setup_logging, request_id_var

logger = logging.getLogger(__name__)

ContextBuilder = Callable[[], Awaitable[AppContext]]

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConnectivityError: 503,
}


async def build_default_context() -> AppContext:
    """Load configuration, construct services, and pass the startup gate."""
    settings = load_settings()
    setup_logging(level=settings.log_level)
    accounts = load_accounts(settings.accounts_config_path)
    ctx = AppContext.build(settings, accounts)
    try:
        await ctx.startup()
    except Exception:
        await ctx.shutdown()
        raise
    return ctx


def _status_for(error: InboxSyncError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


def create_app(build_context: Optional[ContextBuilder] = None) -> FastAPI:
    """Create the app. Tests pass their own context builder."""
    builder = build_context or build_default_context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = await builder()
        app.state.ctx = ctx
        logger.info("app.started", extra={"action": "app.started"})
        try:
            yield
        finally:
            await ctx.shutdown()
            logger.info("app.stopped", extra={"action": "app.stopped"})

    app = FastAPI(title="Inbox Sync", lifespan=lifespan, redoc_url=None)

    # --- Middleware: Request context + logging ---
    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Set up request ID and request timing."""
        req_id = str(uuid.uuid4())[:8]
        request_id_var.set(req_id)

        start = time.monotonic()
        response = await call_next(request)

        response.headers["X-Request-ID"] = req_id

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "http.request",
            extra={
                "action": "http.request",
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            },
        )
        return response

    # --- Structured errors ---
    @app.exception_handler(InboxSyncError)
    async def inbox_sync_error_handler(request: Request, exc: InboxSyncError):
        status = _status_for(exc)
        if status >= 500:
            logger.error(
                "http.request_failed",
                extra={"action": "http.request_failed", "kind": exc.kind, "error": exc.message},
            )
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": exc.to_dict()},
        )

    app.include_router(api_router)
    app.include_router(ws_router)

    # --- Health check endpoints ---
    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/ready")
    async def ready(request: Request):
        ctx: AppContext = request.app.state.ctx
        try:
            await ctx.store.ping()
            store_ok = True
        except ConnectivityError:
            store_ok = False

        sync = ctx.supervisors.status()
        checks = {
            "document_store": store_ok,
            "retrieval_initialized": ctx.retrieval.initialized,
            "sync_running": sync["is_running"],
            "all_accounts_connected": len(sync["connected_accounts"]) == sync["total_accounts"],
        }
        all_ok = all(checks.values())
        return {"status": "ready" if all_ok else "not_ready", "checks": checks}

    return app


app = create_app()
