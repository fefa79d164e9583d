from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.routing import Match

from usersvc.api.error_handling import register_exception_handlers
from usersvc.api.routes import router
from usersvc.config import Settings
from usersvc.logging import configure_logging, get_logger, set_correlation_id
from usersvc.service.metrics import METRICS_CONTENT_TYPE
from usersvc.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _route_template(request: Request) -> str:
    """Matched route path (``/api/v1/users/{user_id}``) to keep metric labels bounded."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "unmatched"


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime: Optional[Runtime] = None,
) -> FastAPI:
    """Build the service.

    ``settings`` defaults to ``Settings.from_env()``. A prebuilt ``runtime``
    may be passed (tests inject in-memory backends); otherwise one is created
    here and closed on shutdown.
    """
    settings = settings or (runtime.settings if runtime else Settings.from_env())
    configure_logging(
        log_level=settings.log_level,
        json_output=settings.log_json,
        development_mode=settings.log_dev_mode,
    )
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("service_started", service=settings.service_name, version=__version__)
        yield
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="User Service", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
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

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Tokens travel in API bodies; keep them out of shared caches
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)
        with runtime.metrics.track_request(request.method, _route_template(request)) as ctx:
            response = await call_next(request)
            ctx["status_code"] = response.status_code
        return response

    # Registered last so it runs first: every log line below carries the id
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    def _liveness() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": settings.service_name,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health", tags=["health"])
    async def health() -> Dict[str, Any]:
        return _liveness()

    @app.get("/live", tags=["health"])
    async def live() -> Dict[str, Any]:
        return _liveness()

    @app.get("/ready", tags=["health"])
    async def ready():
        """Readiness: 503 until both the credential store and the cache answer."""
        dependencies = await runtime.check_dependencies(HEALTH_CHECK_TIMEOUT_SECONDS)
        is_ready = all(d["status"] == "healthy" for d in dependencies.values())
        body = {
            "status": "ready" if is_ready else "not ready",
            "service": settings.service_name,
            "dependencies": dependencies,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if is_ready else 503, content=body)

    @app.get("/metrics", tags=["health"])
    async def metrics() -> Response:
        return Response(content=runtime.metrics.render(), media_type=METRICS_CONTENT_TYPE)

    return app
