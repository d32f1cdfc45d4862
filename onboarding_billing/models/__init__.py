from onboarding_billing.models.submission import Submission
from onboarding_billing.models.payment import PaymentDetails
from onboarding_billing.models.webhook_event import PaymentWebhookEvent
from onboarding_billing.models.rate_limit import CheckoutAttemptWindow
