import threading
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from onboarding_billing.core.background import BackgroundTaskRunner, RunnerClosedError
from onboarding_billing.core.config import Settings
from onboarding_billing.core.errors import ProviderRequestError, ProviderTransientError, UpstreamProviderError
from onboarding_billing.core.rate_limit import FixedWindowRateLimiter
from onboarding_billing.core.retry import build_retrying, call_with_retry
from onboarding_billing.core.security import (
    TokenValidationError,
    create_checkout_token,
    create_token,
    verify_checkout_token,
)
from onboarding_billing.db.base import Base
from onboarding_billing.services.payment_provider import StubPaymentProvider
from onboarding_billing.services.providers import build_payment_provider
from onboarding_billing.services.stripe_provider import StripePaymentProvider

STRONG_SECRET = "k" * 48


def _settings(**overrides):
    values = {"secret_key": "dev-secret", "database_url": "sqlite://"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _production(**overrides):
    values = {
        "env": "production",
        "secret_key": STRONG_SECRET,
        "stripe_webhook_secret": "whsec_live_0123456789",
        "cors_origins": "https://onboarding.example.com",
    }
    values.update(overrides)
    return _settings(**values)


class TestSettings:
    def test_list_values_parse_from_env_strings(self):
        config = _settings(
            cors_origins="https://a.example.com, https://b.example.com",
            discount_codes='[{"code": "SPRING", "kind": "fixed", "value": 1000}]',
            billing_currency="EUR",
        )

        assert config.cors_origins == ["https://a.example.com", "https://b.example.com"]
        assert config.discount_codes[0]["code"] == "SPRING"
        assert config.billing_currency == "eur"

    def test_blank_optional_strings_become_none(self):
        config = _settings(admin_api_key="  ", stripe_secret_key="")

        assert config.admin_api_key is None
        assert config.stripe_secret_key is None

    def test_valid_production_settings(self):
        config = _production()

        assert config.is_production is True
        assert config.webhook_test_bypass_enabled is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"webhook_test_bypass_enabled": True},
            {"secret_key": "change_me"},
            {"secret_key": "short"},
            {"stripe_webhook_secret": "whsec_test_local"},
            {"payment_provider_default": "stripe", "stripe_secret_key": None},
            {"cors_origins": "*"},
            {"smtp_use_ssl": True, "smtp_use_starttls": True},
        ],
    )
    def test_unsafe_production_settings_refused(self, overrides):
        with pytest.raises(ValidationError):
            _production(**overrides)

    def test_bypass_allowed_outside_production(self):
        assert _settings(env="staging", webhook_test_bypass_enabled=True).webhook_test_bypass_enabled is True


class TestProviderFactory:
    def test_stub_is_default(self):
        assert isinstance(build_payment_provider(_settings()), StubPaymentProvider)

    def test_stripe_requires_key(self):
        with pytest.raises(ValueError):
            build_payment_provider(_settings(payment_provider_default="stripe"))

    def test_stripe_provider_built_with_key(self):
        provider = build_payment_provider(
            _settings(payment_provider_default="stripe", stripe_secret_key="sk_test_123", stripe_base_package_price_id="price_1")
        )

        assert isinstance(provider, StripePaymentProvider)
        assert provider.name == "stripe"


class TestRetry:
    def _flaky(self, failures, error_type=ProviderTransientError):
        calls = {"count": 0}

        def operation(value):
            calls["count"] += 1
            if calls["count"] <= failures:
                raise error_type("temporarily unavailable")
            return value * 2

        return operation, calls

    def test_transient_failures_are_retried(self):
        operation, calls = self._flaky(2)

        result = call_with_retry(operation, 21, retrying=build_retrying(max_attempts=3, initial_backoff=0, max_backoff=0))

        assert result == 42
        assert calls["count"] == 3

    def test_exhausted_budget_raises_upstream_error(self):
        operation, calls = self._flaky(5)

        with pytest.raises(UpstreamProviderError) as exc_info:
            call_with_retry(operation, 1, retrying=build_retrying(max_attempts=3, initial_backoff=0, max_backoff=0))

        assert calls["count"] == 3
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, ProviderTransientError)

    def test_request_errors_fail_fast(self):
        operation, calls = self._flaky(5, error_type=ProviderRequestError)

        with pytest.raises(UpstreamProviderError) as exc_info:
            call_with_retry(operation, 1, retrying=build_retrying(max_attempts=3, initial_backoff=0, max_backoff=0))

        assert calls["count"] == 1
        assert exc_info.value.retryable is False

    def test_provider_code_is_preserved(self):
        def missing():
            raise ProviderRequestError("gone", provider_code="resource_missing")

        with pytest.raises(UpstreamProviderError) as exc_info:
            call_with_retry(missing)

        assert exc_info.value.resource_missing is True


class TestBackgroundRunner:
    def test_drain_waits_for_follow_up_work(self):
        runner = BackgroundTaskRunner(max_workers=2)
        results = []
        release = threading.Event()

        def follow_up():
            results.append("follow_up")

        def first():
            release.wait(timeout=5)
            results.append("first")
            runner.submit("follow_up", follow_up)

        runner.submit("first", first)
        release.set()

        assert runner.drain(timeout=5) is True
        assert results == ["first", "follow_up"]
        assert runner.pending_count == 0
        runner.shutdown(timeout=5)

    def test_failures_stay_inside_the_task(self):
        runner = BackgroundTaskRunner(max_workers=1)

        def explode():
            raise RuntimeError("boom")

        future = runner.submit("explode", explode)

        assert future.result(timeout=5) is None
        assert runner.shutdown(timeout=5) is True

    def test_closed_runner_refuses_work(self):
        runner = BackgroundTaskRunner(max_workers=1)
        runner.shutdown(timeout=5)

        with pytest.raises(RunnerClosedError):
            runner.submit("late", lambda: None)

    def test_drain_reports_timeout(self):
        runner = BackgroundTaskRunner(max_workers=1)
        release = threading.Event()
        runner.submit("slow", release.wait, 5)

        assert runner.drain(timeout=0.05) is False
        release.set()
        assert runner.shutdown(timeout=5) is True


class TestRateLimiter:
    @pytest.fixture()
    def db(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(bind=engine)
        session = sessionmaker(bind=engine)()
        yield session
        session.close()
        Base.metadata.drop_all(bind=engine)

    def test_blocks_after_max_attempts_in_window(self, db):
        limiter = FixedWindowRateLimiter(max_attempts=3, window_seconds=3600)
        now = 7200.0 + 600

        results = [limiter.check_and_consume(db, "checkout:a", now=now) for _ in range(4)]

        assert results[:3] == [0, 0, 0]
        assert results[3] == 3001
        assert limiter.attempts(db, "checkout:a", now=now) == 4

    def test_new_window_resets_the_count(self, db):
        limiter = FixedWindowRateLimiter(max_attempts=1, window_seconds=60)

        assert limiter.check_and_consume(db, "checkout:b", now=120.0) == 0
        assert limiter.check_and_consume(db, "checkout:b", now=150.0) == 31
        assert limiter.check_and_consume(db, "checkout:b", now=180.0) == 0

    def test_keys_are_independent(self, db):
        limiter = FixedWindowRateLimiter(max_attempts=1, window_seconds=60)

        assert limiter.check_and_consume(db, "checkout:c", now=60.0) == 0
        assert limiter.check_and_consume(db, "checkout:d", now=60.0) == 0


class TestCheckoutTokens:
    def test_token_bound_to_session(self):
        issued = create_checkout_token("sub-1", "sess-1")

        verify_checkout_token(issued.token, "sub-1", "sess-1")
        with pytest.raises(TokenValidationError):
            verify_checkout_token(issued.token, "sub-1", "sess-2")

    def test_token_without_session_bound_to_submission(self):
        issued = create_checkout_token("sub-1")

        verify_checkout_token(issued.token, "sub-1")
        with pytest.raises(TokenValidationError):
            verify_checkout_token(issued.token, "sub-2")

    def test_other_token_types_refused(self):
        other = create_token("sub-1", timedelta(minutes=5), "access")

        with pytest.raises(TokenValidationError):
            verify_checkout_token(other.token, "sub-1")

    def test_missing_token_refused(self):
        with pytest.raises(TokenValidationError):
            verify_checkout_token(None, "sub-1")
