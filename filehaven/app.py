from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from filehaven.api.error_handling import error_response, register_exception_handlers
from filehaven.api.routes import router
from filehaven.config import Settings
from filehaven.logging import bind_request_context, get_logger, set_correlation_id
from filehaven.service.access import AccessAction

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from filehaven.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        logger.info(
            "startup_complete",
            environment=runtime.settings.environment.value,
            missing_secrets=runtime.settings.missing_secrets(),
        )
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if hasattr(runtime.store, "close"):
            runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="filehaven", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    configured = Settings.from_env().cors_allow_origins
    if configured:
        return configured
    # Credentials are allowed, so never fall back to a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


async def enforce_access(request: Request, call_next):
    """Gate every request before it reaches a route.

    API paths outside ``/api/public`` and ``/api/auth`` need the shared API key;
    admin and protected pages need a session cookie.
    """
    from filehaven.service.runtime import get_runtime

    runtime = get_runtime()
    path = request.url.path
    decision = runtime.access.evaluate(path, request.headers, request.cookies)

    if decision.action is AccessAction.REJECT:
        contact = runtime.settings.api_access_contact
        logger.warning("access_denied_api_key", path=path, method=request.method)
        return error_response(
            401,
            f"Unauthorized: missing or invalid API key. To request access, contact: {contact}",
            {"contact": contact},
            code="unauthorized",
        )
    if decision.action is AccessAction.REDIRECT:
        logger.info("access_redirect_signin", path=path, reason=decision.reason)
        return RedirectResponse(decision.location, status_code=302)

    return await call_next(request)


async def add_correlation_id(request: Request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    bind_request_context(request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


# Registration order matters: the last middleware added runs first, so the
# correlation id is set before the access gate can log or reject.
app.middleware("http")(enforce_access)
app.middleware("http")(add_security_headers)
app.middleware("http")(add_correlation_id)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store reachability and whether required secrets are configured."""
    from filehaven.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    missing = runtime.settings.missing_secrets()
    checks["configuration"] = {
        "status": "healthy" if not missing else "incomplete",
        "missing": missing,
    }

    return {
        "status": "healthy" if db_ok and not missing else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }
