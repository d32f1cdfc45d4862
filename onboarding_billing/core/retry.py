import logging
from typing import Any, Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from onboarding_billing.core.config import settings
from onboarding_billing.core.errors import ProviderError, ProviderTransientError, UpstreamProviderError
from onboarding_billing.core.observability import log_event

logger = logging.getLogger("onboarding_billing.provider")

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    log_event(
        logger,
        logging.WARNING,
        "provider_call_retry",
        operation=getattr(retry_state.fn, "__name__", "provider_call"),
        attempt=retry_state.attempt_number,
        error=str(outcome.exception()) if outcome else None,
        sleep_seconds=round(retry_state.upcoming_sleep, 3),
    )


def build_retrying(
    *,
    max_attempts: int | None = None,
    initial_backoff: float | None = None,
    max_backoff: float | None = None,
) -> Retrying:
    return Retrying(
        retry=retry_if_exception_type(ProviderTransientError),
        stop=stop_after_attempt(max_attempts or settings.provider_max_attempts),
        wait=wait_random_exponential(
            multiplier=settings.provider_backoff_initial_seconds if initial_backoff is None else initial_backoff,
            max=settings.provider_backoff_max_seconds if max_backoff is None else max_backoff,
        ),
        before_sleep=_log_retry,
        reraise=True,
    )


def call_with_retry(fn: Callable[..., T], *args: Any, retrying: Retrying | None = None, **kwargs: Any) -> T:
    """Run a provider call with a bounded retry budget.

    Only ``ProviderTransientError`` is retried. Once the budget is spent, or
    when the provider rejects the call outright, the failure is re-raised as
    ``UpstreamProviderError`` with the original exception chained.
    """
    retrying = retrying or build_retrying()
    try:
        return retrying(fn, *args, **kwargs)
    except ProviderTransientError as exc:
        raise UpstreamProviderError(str(exc), retryable=True, provider_code=exc.provider_code) from exc
    except ProviderError as exc:
        raise UpstreamProviderError(str(exc), retryable=False, provider_code=exc.provider_code) from exc
