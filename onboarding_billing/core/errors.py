"""Domain error taxonomy.

Every error the service raises on purpose derives from ``BillingError`` and
carries the machine readable ``code`` the browser and operators see, the HTTP
``status_code`` the API maps it to, and a human readable ``message``.
"""


class BillingError(Exception):
    code = "internal_error"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, details: list[dict] | None = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


# 400 ----------------------------------------------------------------------


class InputValidationError(BillingError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class SubmissionNotFound(InputValidationError):
    code = "INVALID_SUBMISSION_ID"
    default_message = "Submission not found or not in submitted status"


class InvalidLanguageCode(InputValidationError):
    code = "INVALID_LANGUAGE_CODE"

    def __init__(self, invalid_codes: list[str]):
        self.invalid_codes = invalid_codes
        super().__init__(f"Invalid language codes: {', '.join(invalid_codes)}")


class InvalidDiscountCode(InputValidationError):
    code = "INVALID_DISCOUNT_CODE"

    def __init__(self, discount_code: str):
        self.discount_code = discount_code
        super().__init__(f"Discount code '{discount_code}' is not valid or has expired")


class MissingCustomerEmail(InputValidationError):
    code = "MISSING_CUSTOMER_EMAIL"
    default_message = "Customer email not found in submission"


class WebhookPayloadError(InputValidationError):
    code = "INVALID_WEBHOOK_PAYLOAD"
    default_message = "Webhook payload could not be parsed"


# Authentication ------------------------------------------------------------


class AuthenticationError(BillingError):
    code = "AUTHENTICATION_FAILED"
    status_code = 401
    default_message = "Authentication failed"


class WebhookSignatureError(AuthenticationError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    default_message = "Invalid signature"


class CheckoutTokenError(AuthenticationError):
    code = "CSRF_VALIDATION_FAILED"
    status_code = 403
    default_message = "Invalid or missing checkout token"


# Conflicts and throttling ------------------------------------------------


class ConflictError(BillingError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Conflict"


class PaymentAlreadyCompleted(ConflictError):
    code = "PAYMENT_ALREADY_COMPLETED"
    default_message = "Payment has already been completed for this submission"


class CheckoutInProgress(ConflictError):
    code = "CHECKOUT_IN_PROGRESS"
    default_message = "A checkout for this submission is already being prepared"

    def __init__(self, retry_after_seconds: int = 5):
        self.retry_after_seconds = retry_after_seconds
        super().__init__()


class RateLimitExceeded(BillingError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many payment attempts. Please try again later."

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__()


# Provider ------------------------------------------------------------------


class UpstreamProviderError(BillingError):
    """Raised to callers when the payment provider could not complete a call."""

    code = "STRIPE_API_ERROR"
    status_code = 500
    default_message = "Failed to create checkout session. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool = False,
        provider_code: str | None = None,
    ):
        self.retryable = retryable
        self.provider_code = provider_code
        super().__init__(message)

    @property
    def resource_missing(self) -> bool:
        return self.provider_code == "resource_missing"


class ProviderError(Exception):
    """Raised by provider adapters; never rendered to HTTP clients directly."""

    def __init__(self, message: str, *, provider_code: str | None = None):
        self.provider_code = provider_code
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Connection failures, timeouts, throttling and 5xx answers."""


class ProviderRequestError(ProviderError):
    """The provider rejected the request; retrying will not help."""


# Webhook processing --------------------------------------------------------


class ProcessingError(Exception):
    """A webhook handler could not apply an event. Recorded on the ledger only."""


class LedgerWriteError(BillingError):
    """The event could not be recorded, so it must not be acknowledged."""

    code = "WEBHOOK_LEDGER_ERROR"
    status_code = 500
    default_message = "Webhook could not be recorded"
