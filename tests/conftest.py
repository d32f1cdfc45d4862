import hashlib
import hmac
import json
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import onboarding_billing.models  # noqa: F401
from onboarding_billing.core.background import BackgroundTaskRunner
from onboarding_billing.core.config import settings
from onboarding_billing.core.deps import (
    get_background_runner,
    get_db,
    get_notifier,
    get_payment_provider,
    get_session_factory,
)
from onboarding_billing.db.base import Base
from onboarding_billing.main import app
from onboarding_billing.models.submission import Submission
from onboarding_billing.services.notification_service import NotificationDeliveryResult
from onboarding_billing.services.payment_provider import StubPaymentProvider

WEBHOOK_SECRET = "whsec_test_suite_secret"
ADMIN_KEY = "admin-test-key"

TEST_DISCOUNT_CODES = [
    {"code": "WELCOME10", "kind": "percent", "value": 10},
    {"code": "FLAT50", "kind": "fixed", "value": 5000},
    {"code": "FREEFIRST", "kind": "percent", "value": 100},
    {"code": "BIGFIXED", "kind": "fixed", "value": 999999},
    {"code": "LOYAL20", "kind": "percent", "value": 20, "duration": "forever", "provider_coupon_id": "coupon_loyal20"},
    {"code": "EXPIRED5", "kind": "percent", "value": 5, "expires_at": "2020-01-01T00:00:00+00:00"},
]

_OVERRIDDEN_SETTINGS = {
    "secret_key": "test-secret-key",
    "stripe_webhook_secret": WEBHOOK_SECRET,
    "webhook_test_bypass_enabled": False,
    "env": "test",
    "admin_api_key": ADMIN_KEY,
    "discount_codes": TEST_DISCOUNT_CODES,
    "checkout_rate_limit_max_attempts": 5,
    "checkout_rate_limit_window_seconds": 3600,
    "provider_max_attempts": 3,
    "provider_backoff_initial_seconds": 0.0,
    "provider_backoff_max_seconds": 0.0,
    "schedule_end_behavior": "release",
}


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def notify(self, event, payload):
        with self._lock:
            self.sent.append((event, payload))
        return NotificationDeliveryResult(status="sent")

    def events(self, name: str) -> list[dict[str, Any]]:
        return [payload for event, payload in self.sent if event == name]


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@dataclass
class BillingTestContext:
    client: TestClient
    session_local: sessionmaker
    provider: StubPaymentProvider
    runner: BackgroundTaskRunner
    notifier: RecordingNotifier
    created: list[str] = field(default_factory=list)

    def add_submission(self, **overrides: Any) -> str:
        submission_id = overrides.pop("id", None) or str(uuid.uuid4())
        values = {
            "id": submission_id,
            "session_id": str(uuid.uuid4()),
            "email": "owner@example.com",
            "business_name": "Bakery Rossi",
            "form_data": {"businessName": "Bakery Rossi", "step3": {"businessEmail": "owner@example.com"}},
            "status": "submitted",
        }
        values.update(overrides)
        with self.session_local() as db:
            db.add(Submission(**values))
            db.commit()
        self.created.append(submission_id)
        return submission_id

    def get_submission(self, submission_id: str) -> Submission:
        with self.session_local() as db:
            submission = db.get(Submission, submission_id)
            db.expunge(submission)
            return submission

    def checkout_token(self, submission_id: str) -> str:
        response = self.client.post("/checkout/token", json={"submissionId": submission_id})
        assert response.status_code == 200, response.text
        return response.json()["token"]

    def checkout(
        self,
        submission_id: str,
        *,
        languages: list[str] | None = None,
        discount_code: str | None = None,
        token: str | None = None,
    ):
        body: dict[str, Any] = {"submissionId": submission_id, "additionalLanguages": languages or []}
        if discount_code is not None:
            body["discountCode"] = discount_code
        return self.client.post(
            "/checkout",
            json=body,
            headers={"X-CSRF-Token": token or self.checkout_token(submission_id)},
        )

    def post_event(self, event: dict[str, Any], *, signature: str | None = None, headers: dict | None = None):
        payload = json.dumps(event).encode("utf-8")
        request_headers = {"Content-Type": "application/json"}
        if signature is None:
            request_headers["Stripe-Signature"] = sign_payload(payload)
        elif signature:
            request_headers["Stripe-Signature"] = signature
        request_headers.update(headers or {})
        return self.client.post("/webhook", content=payload, headers=request_headers)

    def deliver(self, event: dict[str, Any]):
        response = self.post_event(event)
        assert self.runner.drain(timeout=10)
        return response


@pytest.fixture()
def test_context():
    original = {name: getattr(settings, name) for name in _OVERRIDDEN_SETTINGS}
    for name, value in _OVERRIDDEN_SETTINGS.items():
        setattr(settings, name, value)

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    provider = StubPaymentProvider()
    # One worker keeps background writes serial on the shared in-memory connection.
    runner = BackgroundTaskRunner(max_workers=1, thread_name_prefix="billing-test")
    notifier = RecordingNotifier()

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_local
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_background_runner] = lambda: runner
    app.dependency_overrides[get_notifier] = lambda: notifier

    with TestClient(app) as client:
        yield BillingTestContext(
            client=client,
            session_local=session_local,
            provider=provider,
            runner=runner,
            notifier=notifier,
        )

    runner.shutdown(timeout=10)
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    for name, value in original.items():
        setattr(settings, name, value)
