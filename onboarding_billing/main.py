import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from onboarding_billing.core.background import BackgroundTaskRunner
from onboarding_billing.core.config import settings
from onboarding_billing.core.errors import BillingError
from onboarding_billing.core.observability import (
    billing_exception_handler,
    http_exception_handler,
    log_event,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from onboarding_billing.db.session import engine
from onboarding_billing.routers import checkout, webhooks
from onboarding_billing.services.notification_service import EmailNotifier
from onboarding_billing.services.providers import build_payment_provider

logger = logging.getLogger("onboarding_billing.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.payment_provider = build_payment_provider(settings)
    app.state.background_runner = BackgroundTaskRunner(max_workers=settings.background_workers)
    app.state.notifier = EmailNotifier(settings)
    log_event(
        logger,
        logging.INFO,
        "startup",
        env=settings.env,
        payment_provider=app.state.payment_provider.name,
        background_workers=settings.background_workers,
    )
    try:
        yield
    finally:
        drained = app.state.background_runner.shutdown(timeout=settings.background_shutdown_timeout_seconds)
        log_event(logger, logging.INFO, "shutdown", background_drained=drained)


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description=(
        "Payment lifecycle for the onboarding wizard.\n\n"
        "1. Call `POST /checkout/token` for the submission.\n"
        "2. Call `POST /checkout` with the token in `X-CSRF-Token` and confirm the returned client secret.\n"
        "3. Poll `GET /checkout/{submission_id}/status` until the provider webhook marks it paid."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "checkout", "description": "Pricing, checkout creation and payment status polling."},
        {"name": "webhooks", "description": "Payment provider webhooks and the processed event ledger."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(BillingError, billing_exception_handler)
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
    # Local wizard builds run on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout.router)
app.include_router(webhooks.router)
app.include_router(webhooks.ledger_router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
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
