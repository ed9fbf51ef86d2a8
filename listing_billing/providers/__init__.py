"""Payment provider adapters and the configuration-driven factory."""

from listing_billing.config import Settings, get_settings
from .base import (
    BillingInfo,
    CancelResult,
    CardDetails,
    ChargeAttempt,
    ChargeResult,
    ChargeStatus,
    HostedSession,
    PaymentProvider,
    ProviderName,
    VaultResult,
    WebhookEvent,
    user_message,
)
from .ecom import EcomPaymentsProvider
from .stripe_provider import StripeProvider

PROVIDERS: dict[str, type] = {
    "ecom": EcomPaymentsProvider,
    "stripe": StripeProvider,
}


def build_provider(name: str, settings: Settings) -> PaymentProvider:
    """Construct the adapter registered under ``name``."""
    try:
        return PROVIDERS[name](settings)
    except KeyError:
        raise ValueError(f"Unknown payment provider: {name}")


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency: the provider selected by PAYMENT_PROVIDER."""
    settings = get_settings()
    return build_provider(settings.payment_provider, settings)


def get_provider_registry() -> dict[str, PaymentProvider]:
    """FastAPI dependency: one adapter per provider (cancellation and webhooks)."""
    settings = get_settings()
    return {name: build_provider(name, settings) for name in PROVIDERS}


__all__ = [
    "BillingInfo",
    "CancelResult",
    "CardDetails",
    "ChargeAttempt",
    "ChargeResult",
    "ChargeStatus",
    "EcomPaymentsProvider",
    "HostedSession",
    "PaymentProvider",
    "ProviderName",
    "StripeProvider",
    "VaultResult",
    "WebhookEvent",
    "build_provider",
    "get_payment_provider",
    "get_provider_registry",
    "user_message",
]
