from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from homestead.api.error_handling import register_exception_handlers
from homestead.api.routes import router
from homestead.config import Settings
from homestead.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_prune_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and tear it down on shutdown.

    A secrets failure raises out of startup so the process never serves
    requests with missing or ephemeral keys.
    """
    global _prune_task
    from homestead.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_prune_interval_seconds
    if interval > 0:
        _prune_task = asyncio.create_task(_run_session_prune(runtime, interval))

    yield

    try:
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
            _prune_task = None
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Homestead", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for logs and the ``X-Request-ID`` header.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Tokens and secrets travel in API bodies; nothing under /v1 may be cached
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health")
async def health():
    """Liveness plus a bounded storage probe."""
    from homestead.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    store_ok = True
    if hasattr(runtime.store, "_connect"):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            store_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            store_ok = False
        checks["database"] = {"status": "healthy" if store_ok else "unhealthy"}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}
    checks["secrets"] = {"status": "healthy", "source": runtime.secret_store.source}

    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)


async def _run_session_prune(runtime, interval_seconds: int) -> None:
    """Background loop deleting expired session ledger rows."""

    try:
        while True:
            try:
                await asyncio.to_thread(runtime.auth.prune_sessions)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_prune_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("session_prune_task_cancelled")


def create_app() -> FastAPI:
    return app
