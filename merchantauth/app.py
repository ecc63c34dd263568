from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from merchantauth.api.error_handling import (
    register_exception_handlers,
    service_error_response,
    unhandled_error_response,
)
from merchantauth.api.routes import NEW_TOKEN_HEADER, router
from merchantauth.config import Settings
from merchantauth.logging import get_logger, set_correlation_id
from merchantauth.service.audit import (
    build_audit_entry,
    extract_client_ip,
    generate_session_id,
    is_audit_excluded,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
SERVICE_NAME = "merchant-auth"
SESSION_HEADER = "X-Session-Id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain audit entries and close clients on shutdown."""
    from merchantauth.service.runtime import get_runtime

    get_runtime()
    logger.info("service_started", service=SERVICE_NAME, version=__version__)

    yield

    try:
        await get_runtime().shutdown()
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="Merchant Auth Service", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", SESSION_HEADER],
    expose_headers=[
        "X-Request-ID",
        SESSION_HEADER,
        NEW_TOKEN_HEADER,
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "X-RateLimit-Window",
    ],
    max_age=3600,
)

# Middleware registered later wraps the ones registered earlier, so the chain
# below runs correlation id -> audit -> security headers -> rate limit ->
# fault conversion -> route.


@app.middleware("http")
async def convert_unhandled_errors(request: Request, call_next):
    """Turn route faults into the 500 envelope so outer layers still see a response."""
    try:
        return await call_next(request)
    except Exception as exc:
        return unhandled_error_response(request, exc)


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    path = request.url.path
    if request.method == "OPTIONS" or is_audit_excluded(path):
        return await call_next(request)
    from merchantauth.service.runtime import get_runtime

    runtime = get_runtime()
    ip = extract_client_ip(request.headers, request.client.host if request.client else None)
    decision = await runtime.rate_limiter.check(path, ip)
    if decision is None:
        return await call_next(request)
    if not decision.allowed:
        response = service_error_response(decision.to_error())
    else:
        response = await call_next(request)
    for name, value in decision.headers().items():
        response.headers[name] = value
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


def _json_body(raw: bytes, content_type: str) -> Any:
    if not raw or "json" not in content_type:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


@app.middleware("http")
async def record_audit_entry(request: Request, call_next):
    """Capture every request/response pair and hand it to the audit pipeline.

    The entry is queued after the response is produced; persistence happens in
    the background and never delays or fails the request.
    """
    path = request.url.path
    if is_audit_excluded(path):
        return await call_next(request)

    started = time.perf_counter()
    incoming_session = request.headers.get(SESSION_HEADER)
    session_id = incoming_session or generate_session_id()
    raw_body = await request.body()

    response = await call_next(request)

    if not incoming_session:
        response.headers[SESSION_HEADER] = session_id
    try:
        from merchantauth.service.runtime import get_runtime

        runtime = get_runtime()
        route = request.scope.get("route")
        entry = build_audit_entry(
            session_id=session_id,
            method=request.method,
            path=path,
            url=str(request.url),
            query=dict(request.query_params),
            body=_json_body(raw_body, request.headers.get("content-type", "")),
            ip_address=extract_client_ip(
                request.headers, request.client.host if request.client else None
            ),
            user_agent=request.headers.get("user-agent"),
            status=response.status_code,
            elapsed_ms=int((time.perf_counter() - started) * 1000),
            principal=getattr(request.state, "principal", None),
            route_name=getattr(route, "path", None),
            sensitive_fields=runtime.settings.sensitive_fields,
        )
        runtime.audit.enqueue(entry)
    except Exception as exc:
        logger.error(
            "audit_capture_failed",
            path=path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Liveness plus dependency checks for the store and the session cache."""
    from merchantauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, str] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    checks["store"] = "healthy" if store_ok else "unhealthy"

    if runtime.cache is None:
        checks["cache"] = "not_configured"
        cache_ok = True
    else:
        try:
            cache_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            cache_ok = False
        except Exception as exc:
            logger.error("health_check_cache_failed", error=str(exc))
            cache_ok = False
        checks["cache"] = "healthy" if cache_ok else "unhealthy"

    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "checks": checks,
    }


def create_app() -> FastAPI:
    return app
