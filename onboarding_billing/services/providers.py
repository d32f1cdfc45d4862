from onboarding_billing.core.config import Settings
from onboarding_billing.services.payment_provider import PaymentProvider, StubPaymentProvider
from onboarding_billing.services.stripe_provider import StripePaymentProvider, build_stripe_client


def build_payment_provider(config: Settings) -> PaymentProvider:
    """Constructs the single provider instance the application injects everywhere."""
    normalized = (config.payment_provider_default or "").strip().lower()
    if normalized == "stub":
        return StubPaymentProvider()
    if normalized == "stripe":
        if not config.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required for the stripe payment provider")
        client = build_stripe_client(config.stripe_secret_key, timeout_seconds=config.provider_timeout_seconds)
        return StripePaymentProvider(client, base_price_id=config.stripe_base_package_price_id)
    raise ValueError(f"Unknown payment provider '{config.payment_provider_default}'. Available: stripe, stub")
