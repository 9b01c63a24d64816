from contextlib import asynccontextmanager
from typing import Optional
import asyncio
import logging

from cachetools import TTLCache
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from creditledger.config import Settings, settings as default_settings
from creditledger.routers import credits, crypto, health, payments, sessions
from creditledger.auth.bearer_auth import TokenVerifier
from creditledger.core.alerting import AlertCategory, AlertLevel, send_alert
from creditledger.core.database import close_db, get_engine, init_db
from creditledger.core.structured_logging import APP_VERSION, setup_logging
from creditledger.core.errors import CreditLedgerError, all_error_classes
from creditledger.core.errors.registry import error_registry
from creditledger.core.errors.middleware import creditledger_error_handler
from creditledger.core.log_middleware import CorrelationMiddleware
from creditledger.models.pricing import PricingCatalog
from creditledger.services.chain_payments import ChainPaymentService
from creditledger.services.fiat_events import FiatEventProcessor, configure_stripe
from creditledger.services.ledger import BalanceNotifier, CreditLedger
from creditledger.services.reconciliation import LedgerHealthCheck, ReconciliationSweep
from creditledger.services.session_meter import SessionMeterRegistry

setup_logging(logging.DEBUG if default_settings.debug else logging.INFO)

logger = logging.getLogger(__name__)

API_TITLE = "creditledger API"

API_DESCRIPTION = """
## creditledger - Credits, payments and metered sessions

One integer credit balance per user, funded by Stripe Checkout or by an
on-chain token payment, and spent per minute by metered sessions.

### Authentication

User endpoints take a bearer JWT: `Authorization: Bearer <token>`.
Operator endpoints (ledger health, reconciliation) take `X-Internal-Key`.
The Stripe webhook is authenticated by its `Stripe-Signature` header.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness, alerts, ledger integrity and reconciliation."},
    {"name": "credits", "description": "Balance, history, pre-flight checks and the daily bonus. **Requires bearer token.**"},
    {"name": "payments", "description": "Stripe Checkout purchases and the Stripe webhook."},
    {"name": "crypto", "description": "Signed receipts for on-chain token payments. **Requires bearer token.**"},
    {"name": "sessions", "description": "Per-minute metered sessions and their event stream. **Requires bearer token.**"},
]


async def _periodic(name: str, interval_s: float, fn, *args):
    """Run a blocking job on a fixed interval. A failing pass is alerted and the loop continues."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(fn, *args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("%s pass failed: %s", name, e, exc_info=True)
            send_alert(
                f"{name} pass failed",
                str(e),
                level=AlertLevel.HIGH,
                category=AlertCategory.SYSTEM,
                fingerprint=f"system.{name}.failed",
            )


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    config: Settings = app.state.settings
    logger.info("Starting creditledger API v%s (%s)...", APP_VERSION, config.environment)

    error_registry.load()
    error_registry.require_coverage(all_error_classes())

    if app.state.run_migrations:
        init_db()  # Alembic upgrade head
        logger.info("Database initialized")

    app.state.pricing.load()
    logger.info("Loaded pricing for %d personas", len(app.state.pricing))

    background = []
    chain_service = getattr(app.state, "chain_service", None)
    if app.state.start_background and chain_service is not None:
        background.append(
            asyncio.create_task(
                _periodic("chain_sync", config.chain_sync_interval_s, chain_service.sync_payments)
            )
        )
        logger.info("Chain payment sync every %ss", config.chain_sync_interval_s)

    if app.state.start_background and config.reconciliation_interval_s > 0:
        background.append(
            asyncio.create_task(
                _periodic(
                    "reconciliation",
                    config.reconciliation_interval_s,
                    app.state.reconciliation_sweep.run,
                    config.reconciliation_lookback_hours,
                )
            )
        )
        logger.info("Stripe reconciliation every %ss", config.reconciliation_interval_s)

    yield

    # Shutdown
    logger.info("Shutting down creditledger API...")
    await app.state.meter_registry.shutdown()
    for task in background:
        await _cancel(task)
    if app.state.owns_engine:
        close_db()


def create_app(
    config: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    stripe_client=None,
    chain_service: Optional[ChainPaymentService] = None,
    start_background: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``engine``, ``stripe_client`` and ``chain_service`` replace the
    production wiring; an injected engine also skips Alembic.
    """
    config = config or default_settings

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    # Composition root: one ledger and one notifier for the whole process
    notifier = BalanceNotifier()
    ledger = CreditLedger(engine=engine or get_engine(), notifier=notifier)
    stripe_client = stripe_client or configure_stripe(config.stripe_secret_key, config.stripe_api_version)
    processor = FiatEventProcessor(ledger, stripe_client, refund_policy=config.refund_overdraft_policy)
    pricing = PricingCatalog(
        config.pricing_config_path,
        cache=TTLCache(maxsize=256, ttl=config.persona_cache_ttl),
    )

    if chain_service is None and config.chain_enabled:
        chain_service = ChainPaymentService(ledger, config)

    app.state.settings = config
    app.state.run_migrations = engine is None
    app.state.owns_engine = engine is None
    app.state.start_background = start_background
    app.state.ledger = ledger
    app.state.stripe = stripe_client
    app.state.fiat_processor = processor
    app.state.reconciliation_sweep = ReconciliationSweep(processor, stripe_client)
    app.state.health_check = LedgerHealthCheck(ledger, processor, stripe_client)
    app.state.pricing = pricing
    app.state.chain_service = chain_service
    app.state.meter_registry = SessionMeterRegistry(
        ledger,
        pricing,
        interval_s=config.meter_interval_s,
        max_minutes=config.max_session_minutes,
    )
    app.state.token_verifier = TokenVerifier(
        config.jwt_secret,
        config.jwt_algorithm,
        cache=TTLCache(maxsize=config.auth_cache_size, ttl=config.auth_cache_ttl),
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id + correlation_id in every log line
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(CreditLedgerError, creditledger_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(credits.router, prefix="/api", tags=["credits"])
    app.include_router(payments.router, prefix="/api", tags=["payments"])
    app.include_router(crypto.router, prefix="/api", tags=["crypto"])
    app.include_router(sessions.router, prefix="/api", tags=["sessions"])

    # Root endpoint
    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": APP_VERSION,
            "status": "running",
            "chain_enabled": app.state.chain_service is not None,
            "docs": {"swagger": "/docs", "redoc": "/redoc", "openapi": "/openapi.json"},
        }

    return app


# Create the app instance
app = create_app()
