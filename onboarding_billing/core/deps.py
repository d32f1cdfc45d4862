import hmac

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session, sessionmaker

from onboarding_billing.core.background import BackgroundTaskRunner
from onboarding_billing.core.config import settings
from onboarding_billing.db.session import SessionLocal
from onboarding_billing.services.checkout_service import CheckoutService
from onboarding_billing.services.notification_service import Notifier
from onboarding_billing.services.payment_provider import PaymentProvider
from onboarding_billing.services.webhook_gateway import WebhookGateway


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Background work outlives the request session and opens its own."""
    return SessionLocal


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


def get_background_runner(request: Request) -> BackgroundTaskRunner:
    return request.app.state.background_runner


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_checkout_service(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutService:
    return CheckoutService(db, provider, config=settings)


def get_webhook_gateway(
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    provider: PaymentProvider = Depends(get_payment_provider),
    runner: BackgroundTaskRunner = Depends(get_background_runner),
    notifier: Notifier = Depends(get_notifier),
) -> WebhookGateway:
    return WebhookGateway(
        db,
        session_factory=session_factory,
        provider=provider,
        runner=runner,
        notifier=notifier,
        config=settings,
    )


def require_admin_key(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    if not settings.admin_api_key:
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")
