"""FastAPI application factory and entry point.

Creates the application instance, registers middleware and exception
handlers, mounts the routers and builds the job engine in the lifespan.

Usage::

    # Development server (from project root)
    uvicorn product_scraper.api.main:app --reload

    # Production
    uvicorn product_scraper.api.main:app --host 0.0.0.0 --port 8000

The engine runs inside the API process, so use a single worker: jobs,
locks and the dispatch queue live in this process's memory.
"""

from __future__ import annotations

import time
import uuid
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from product_scraper.api.limiter import limiter
from product_scraper.api.metrics import (
    get_metrics_response,
    http_request_duration_seconds,
    http_requests_total,
)
from product_scraper.api.responses import ERROR_STATUS, error_response, ok
from product_scraper.config.settings import Settings, get_settings
from product_scraper.core.database import build_engine, build_sessionmaker, create_tables
from product_scraper.core.exceptions import ScraperError
from product_scraper.core.logging_config import configure_logging, request_id_var
from product_scraper.recipes.loader import RecipeRegistry
from product_scraper.scraper.orchestrator import JobOrchestrator
from product_scraper.scraper.scheduler import JobDispatcher, JobScheduler
from product_scraper.storage.store import ScrapeStorage
from product_scraper.telemetry.monitor import PerformanceMonitor

# ---------------------------------------------------------------------------
# Logging configuration - applied once at module import time so that log
# records emitted during app construction are captured correctly.
# The log level is re-applied inside create_app() after settings are loaded.
# ---------------------------------------------------------------------------

configure_logging("INFO")

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: build and tear down the job engine
# ---------------------------------------------------------------------------


def _build_lifespan(
    settings: Settings,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        engine = build_engine(settings.database_url)
        await create_tables(engine)

        registry = RecipeRegistry(settings.recipes_dir).load()
        storage = ScrapeStorage(build_sessionmaker(engine))
        orchestrator = JobOrchestrator(storage, registry, settings)
        scheduler = JobScheduler(orchestrator, settings)
        dispatcher = JobDispatcher(scheduler.run, settings.max_concurrent_jobs)
        orchestrator.bind_dispatcher(dispatcher.submit)

        application.state.recipes = registry
        application.state.storage = storage
        application.state.orchestrator = orchestrator
        application.state.scheduler = scheduler
        application.state.dispatcher = dispatcher
        application.state.monitor = PerformanceMonitor(orchestrator, dispatcher, settings)

        recovered = await orchestrator.recover()
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            debug=settings.debug,
            log_level=settings.log_level,
            recipes=len(registry),
            rejected_recipes=len(registry.errors),
            **recovered,
        )
        try:
            yield
        finally:
            await dispatcher.shutdown()
            await engine.dispose()
            logger.info("application_shutdown")

    return lifespan


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    Separated from the module-level ``app`` singleton so that tests can
    call ``create_app()`` with their own settings before the singleton is
    created.

    Returns:
        A fully configured ``FastAPI`` instance.
    """
    settings = settings or get_settings()

    # Re-apply logging configuration with the correct level from settings.
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Scrape job engine: recipe-driven product extraction to CSV.",
        version="0.1.0",
        debug=settings.debug,
        lifespan=_build_lifespan(settings),
    )

    # ---- Middleware --------------------------------------------------------

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter.enabled = settings.rate_limit_enabled
    application.state.limiter = limiter
    application.add_middleware(SlowAPIMiddleware)

    # ---- Request logging middleware ----------------------------------------

    @application.middleware("http")
    async def request_logging_middleware(
        request: Request, call_next: Callable
    ) -> Response:
        """Log every request, record HTTP metrics and echo ``X-Request-ID``.

        Attaches a ``request_id`` to the structlog context (and to
        ``request.state`` for the response envelope) so that every log line
        emitted during a request can be correlated.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        # Populate the ContextVar so stdlib logging records also carry the ID.
        request_id_var.set(request_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed = time.perf_counter() - start
            status_code = getattr(response, "status_code", 500)
            route = request.scope.get("route")
            path = getattr(route, "path", "unmatched")
            http_requests_total.labels(
                method=request.method, path=path, status=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(method=request.method, path=path).observe(
                elapsed
            )
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn(
                "request_complete",
                status_code=status_code,
                elapsed_ms=round(elapsed * 1000, 2),
            )

        response.headers["X-Request-ID"] = request_id
        return response

    # ---- Exception handlers ------------------------------------------------

    @application.exception_handler(ScraperError)
    async def scraper_error_handler(request: Request, exc: ScraperError) -> JSONResponse:
        label = type(exc).__name__
        status_code = ERROR_STATUS.get(label, 500)
        if status_code >= 500:
            logger.error("request_failed", error=label, message=str(exc))
        return error_response(request, label, str(exc), status_code=status_code)

    @application.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body') or 'body'}: {err['msg']}"
            for err in exc.errors()
        )
        return error_response(request, "ValidationError", problems, status_code=400)

    @application.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return error_response(
            request, "RateLimitExceeded", f"Rate limit exceeded: {exc.detail}", status_code=429
        )

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        label = "NotFoundError" if exc.status_code == 404 else "HTTPError"
        return error_response(request, label, str(exc.detail), status_code=exc.status_code)

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", exc_info=exc)
        return error_response(
            request, "InternalError", "Internal server error", status_code=500
        )

    # ---- Routers -----------------------------------------------------------

    from product_scraper.recipes.router import router as recipes_router  # noqa: PLC0415
    from product_scraper.scraper.router import router as scrape_router  # noqa: PLC0415
    from product_scraper.storage.router import router as storage_router  # noqa: PLC0415
    from product_scraper.telemetry.router import router as telemetry_router  # noqa: PLC0415

    application.include_router(
        telemetry_router, prefix="/api/scrape/performance", tags=["telemetry"]
    )
    application.include_router(scrape_router, prefix="/api/scrape", tags=["scrape"])
    application.include_router(recipes_router, prefix="/api/recipes", tags=["recipes"])
    application.include_router(storage_router, prefix="/api/storage", tags=["storage"])

    # ---- System endpoints --------------------------------------------------

    @application.get("/health", tags=["system"])
    async def health(request: Request) -> JSONResponse:
        """Process-level liveness check; performs no I/O."""
        return ok(request, {"status": "ok"})

    if settings.metrics_enabled:

        @application.get("/metrics", tags=["system"], include_in_schema=False)
        async def metrics() -> Response:
            """Prometheus exposition of engine and HTTP metrics."""
            body, content_type = get_metrics_response()
            return Response(content=body, media_type=content_type)

    return application


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

app = create_app()
"""The FastAPI application instance.

This is the ASGI callable passed to Uvicorn.
"""
