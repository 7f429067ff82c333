from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tokenward.api.error_handling import _error_response, register_exception_handlers
from tokenward.api.routes import RateLimitInfo, client_key, router
from tokenward.config import Settings, get_settings
from tokenward.logging import get_logger, sanitize_error_message, set_correlation_id
from tokenward.result import Failure
from tokenward.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
_RATE_LIMIT_EXEMPT_PATHS = frozenset({"/healthz"})


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the HTTP app.

    The runtime is created in the lifespan from ``settings`` unless one is
    passed in; an injected runtime is left open on shutdown for its owner.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime or await Runtime.create(settings)
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            if owned:
                try:
                    await app.state.runtime.close()
                except Exception as exc:
                    logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="tokenward", version=__version__, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(router)

    @app.middleware("http")
    async def enforce_global_rate_limit(request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in _RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)
        rt: Runtime = request.app.state.runtime
        outcome = await rt.rate_limiter.hit(rt.global_policy, client_key(request))
        if isinstance(outcome, Failure):
            failure = outcome.error
            window = rt.global_policy.window_seconds
            return _error_response(
                failure.kind.status_code,
                failure.message,
                code=failure.kind.value,
                headers={"Retry-After": str(failure.retry_after or window)},
            )
        response = await call_next(request)
        decision = outcome.value
        if decision.limit > 0:
            # Route-level (auth scope) headers win when both apply
            info = RateLimitInfo.from_decision(decision)
            response.headers.setdefault("X-RateLimit-Limit", str(info.limit))
            response.headers.setdefault("X-RateLimit-Remaining", str(max(0, info.remaining)))
            response.headers.setdefault("X-RateLimit-Reset", str(info.reset_seconds))
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Echo or mint X-Request-ID and bind it to the log context."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    # Outermost, so the limiter's early 429s carry CORS headers too
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.get("/healthz")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, probe) -> bool:
            try:
                await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error(
                    "health_check_failed", component=label, error=sanitize_error_message(str(exc))
                )
            return False

        store_ok = await _run_bounded(
            "store", lambda: asyncio.to_thread(rt.store.verify_connection)
        )
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy"}
        cache_ok = await _run_bounded("cache", rt.cache.verify_connection)
        checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}

        healthy = store_ok and cache_ok
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
