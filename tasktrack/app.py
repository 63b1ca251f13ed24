from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tasktrack.api.error_handling import register_exception_handlers
from tasktrack.api.routes import router
from tasktrack.config import Settings
from tasktrack.logging import get_logger, set_correlation_id
from tasktrack.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_UNCACHED_PREFIXES = ("/auth/", "/tasks", "/profile", "/health")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Build the runtime eagerly so a weak JWT secret or a dead database stops startup.
    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Task Tracker", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; never a wildcard since the API takes bearer credentials.
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
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def resolve_bearer_identity(request: Request, call_next):
    """Attach an IdentityContext for a valid bearer token; never rejects."""
    current = getattr(request.state, "identity", None)
    runtime = get_runtime()
    request.state.identity = await asyncio.to_thread(
        runtime.authenticator.authenticate,
        request.url.path,
        request.headers.get("Authorization"),
        current,
    )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith(_UNCACHED_PREFIXES):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Propagate X-Request-ID into the logging context and back to the client."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


async def _run_bounded(label: str, func) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


@app.get("/health", tags=["health"])
async def health():
    """Report UP when the store answers a probe within the timeout, else DOWN with 503."""
    runtime = get_runtime()
    store_type = type(runtime.store).__name__
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks: Dict[str, Dict[str, Any]] = {
        "store": {"status": "UP" if store_ok else "DOWN", "type": store_type},
    }
    body = {
        "status": "UP" if store_ok else "DOWN",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "version": __version__,
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)
