"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 3000

Or from the project root (HOST / PORT / RELOAD from settings):
    python -m backend.app.main
"""

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Dispatch services ──
from backend.app.dispatch.channels.simulation import build_simulated_transports
from backend.app.dispatch.classifier import ErrorClassifier
from backend.app.dispatch.dispatcher import Dispatcher
from backend.app.dispatch.events import HttpEventPublisher, NullEventPublisher
from backend.app.dispatch.ledger import DeliveryLedger, LedgerConfig
from backend.app.dispatch.provider_cache import ProviderStatusCache
from backend.app.dispatch.retry import RetryExecutor, RetryPolicy
from backend.app.dispatch.validator import ChannelDefaults, PayloadValidator

# ── API routers ──
from backend.app.api.v1.communication import router as communication_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def build_dispatcher(config: Settings) -> Dispatcher:
    """Wire the dispatcher and its collaborators from settings."""
    classifier = ErrorClassifier()
    ledger = DeliveryLedger(
        LedgerConfig(
            directory=Path(config.LEDGER_DIR),
            retention_days=config.LEDGER_RETENTION_DAYS,
        ),
        classifier=classifier,
    )
    ledger.initialize()

    if config.REWARD_TRACKER_BASE_URL:
        publisher = HttpEventPublisher(
            config.REWARD_TRACKER_BASE_URL,
            api_key=config.REWARD_TRACKER_API_KEY,
            timeout_seconds=config.REWARD_PUBLISH_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("REWARD_TRACKER_BASE_URL not set; outcome events will be dropped")
        publisher = NullEventPublisher()

    if config.TRANSPORT_MODE != "simulation":
        raise ValueError(f"Unsupported TRANSPORT_MODE: {config.TRANSPORT_MODE}")

    return Dispatcher(
        build_simulated_transports(),
        ledger,
        validator=PayloadValidator(
            ChannelDefaults(
                email=config.DEFAULT_EMAIL_TYPE,
                sms=config.DEFAULT_SMS_TYPE,
                whatsapp=config.DEFAULT_WHATSAPP_TYPE,
                telegram=config.DEFAULT_TELEGRAM_TYPE,
            )
        ),
        executor=RetryExecutor(
            RetryPolicy(
                max_attempts=config.RETRY_MAX_ATTEMPTS,
                base_delay_ms=config.RETRY_BASE_DELAY_MS,
                max_delay_ms=config.RETRY_MAX_DELAY_MS,
            ),
            classifier=classifier,
        ),
        publisher=publisher,
        classifier=classifier,
    )


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    if getattr(app.state, "dispatcher", None) is None:
        app.state.dispatcher = build_dispatcher(settings)
    if getattr(app.state, "provider_cache", None) is None:
        app.state.provider_cache = ProviderStatusCache(settings.PROVIDER_CACHE_TTL_SECONDS)

    dispatcher: Dispatcher = app.state.dispatcher
    if settings.LEDGER_COMPACT_ON_STARTUP:
        removed = await dispatcher.ledger.compact()
        logger.info("Ledger compaction removed %d records", removed)

    yield

    await dispatcher.drain()
    await dispatcher.publisher.close()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Multi-channel outbound communication for logistics. "
        "Validates and sanitises email, SMS, WhatsApp and Telegram sends, "
        "retries transient provider failures with exponential backoff, "
        "keeps an append-only delivery ledger with statistics, "
        "and reports each outcome to the reward tracker."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (order matters — outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(communication_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "channels": ["email", "sms", "whatsapp", "telegram"],
        "docs": "/docs",
    }


async def _health(request: Request):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        return await run_health_check()
    return await run_health_check(
        ledger_dir=Path(dispatcher.ledger.config.directory),
        provider_cache=getattr(request.app.state, "provider_cache", None),
        transports=dispatcher.transports,
    )


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — ledger, providers, reward tracker, disk."""
    report = await _health(request)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await _health(request)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
    )
