from contextlib import asynccontextmanager

from sqlalchemy import text

from pulsecrm.core.observability import (
    http_exception_handler,
    log_event,
    pipeline_logger,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from pulsecrm.core.config import settings
from pulsecrm.db.session import SessionLocal, engine
from pulsecrm.routers import ai, auth, campaigns, customers, dashboard, delivery, orders, segments
from pulsecrm.services.campaign_orchestrator import CampaignOrchestrator
from pulsecrm.services.delivery_gateway import build_delivery_gateway
from pulsecrm.services.delivery_worker import DeliveryWorker
from pulsecrm.services.ledger_service import LedgerReceiptSink


@asynccontextmanager
async def lifespan(app: FastAPI):
    session_factory = getattr(app.state, "session_factory", None) or SessionLocal
    gateway = build_delivery_gateway(
        settings.delivery_gateway_default,
        receipt_sink=LedgerReceiptSink(session_factory),
    )
    orchestrator = CampaignOrchestrator(
        session_factory,
        gateway,
        pacing_seconds=settings.delivery_pacing_seconds,
    )
    worker = DeliveryWorker(
        orchestrator,
        start_delay_seconds=settings.campaign_start_delay_seconds,
        maxsize=settings.delivery_queue_maxsize,
    )
    app.state.delivery_gateway = gateway
    app.state.delivery_worker = worker

    if settings.delivery_worker_enabled:
        worker.start()
    else:
        worker.attach()
        log_event(pipeline_logger, "delivery_worker_disabled")
    try:
        yield
    finally:
        await worker.stop()
        close = getattr(gateway, "aclose", None)
        if close is not None:
            await close()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Backend API for PulseCRM: customer ingestion, rule-based segments and campaign delivery.\n\n"
        "Swagger quick test flow:\n"
        "1. Call `POST /auth/register` or `POST /auth/login`.\n"
        "2. Click **Authorize** and use your email/username + password "
        "(OAuth token URL: `/auth/token`).\n"
        "3. Ingest data with `POST /customers` and `POST /orders`, then build `/segments` "
        "and launch `/campaigns`."
    ),
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "auth", "description": "User authentication and token lifecycle."},
        {"name": "customers", "description": "Customer ingestion and profile endpoints."},
        {"name": "orders", "description": "Order ingestion with customer aggregate updates."},
        {"name": "segments", "description": "Rule-based audience segments, previews and audience refresh."},
        {"name": "campaigns", "description": "Campaign creation, delivery status and communication logs."},
        {"name": "delivery", "description": "Vendor delivery receipt intake."},
        {"name": "dashboard", "description": "CRM summary metrics."},
        {"name": "ai", "description": "Rule, message, insight and lookalike generation assist."},
    ],
    lifespan=lifespan,
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Local tooling uses dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(customers.router)
app.include_router(orders.router)
app.include_router(segments.router)
app.include_router(campaigns.router)
app.include_router(delivery.router)
app.include_router(dashboard.router)
app.include_router(ai.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
