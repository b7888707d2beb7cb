"""
Fleet Dispatch - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleet_dispatch.api.routes import router as api_router
from fleet_dispatch.core.clock import SystemClock
from fleet_dispatch.core.config import settings
from fleet_dispatch.core.logging import get_logger, setup_logging
from fleet_dispatch.core.middleware import setup_exception_handlers, setup_middleware
from fleet_dispatch.db.database import AsyncSessionLocal, engine, init_db
from fleet_dispatch.db.repository import SqlAlchemyRepository
from fleet_dispatch.domain.services.dispatch_engine import DispatchEngine
from fleet_dispatch.domain.services.dispatch_policy import DispatchPolicy
from fleet_dispatch.domain.services.provider_factory import (
    build_estimator,
    build_notifier,
    default_plan_catalog,
)

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "orders", "description": "Ride orders: booking, dispatch, acceptance, trip lifecycle."},
    {"name": "vehicles", "description": "Fleet registration, shift status and positions."},
    {"name": "wallets", "description": "Driver prepaid wallets: balance, ledger history, top-ups."},
    {"name": "webhooks", "description": "Inbound driver replies from the group chat bridge."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Ride dispatch engine: sequential driver offers, fares and prepaid commission wallets.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and the dispatch engine"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await init_db(engine)
    logger.info("Database tables initialized")

    app.state.dispatch_engine = DispatchEngine(
        repository=SqlAlchemyRepository(AsyncSessionLocal),
        notifier=build_notifier(settings),
        estimator=build_estimator(settings),
        plans=default_plan_catalog(settings),
        policy=DispatchPolicy.from_settings(settings),
        clock=SystemClock(),
    )
    resumed = await app.state.dispatch_engine.resume()
    logger.info("Dispatch engine ready", extra_data={"resumed_orders": resumed})


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    dispatch_engine: DispatchEngine | None = getattr(app.state, "dispatch_engine", None)
    if dispatch_engine is not None:
        await dispatch_engine.shutdown()
        await dispatch_engine.outbox.close()
        await dispatch_engine.estimator.close()
    # Dispose database connections to avoid pool exhaustion on restart
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
