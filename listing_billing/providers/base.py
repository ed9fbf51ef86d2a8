"""PaymentProvider protocol — common interface over the payment gateways.

Every provider returns the normalized result shapes below; provider-specific
field names never leave the adapter.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal, Protocol

from listing_billing.constants import DEFAULT_CURRENCY, GENERIC_PAYMENT_ERROR, PROVIDER_ERROR_MESSAGES
from listing_billing.utils import last_four

ProviderName = Literal["ecom", "stripe"]


class ChargeStatus(StrEnum):
    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"


def user_message(error_code: str | None) -> str:
    """Payer-facing message for a provider error code, generic when unknown."""
    return PROVIDER_ERROR_MESSAGES.get(error_code or "", GENERIC_PAYMENT_ERROR)


@dataclass
class CardDetails:
    """Raw card fields (legacy gateway) and/or a provider payment-method token."""

    card_number: str | None = None
    expiry_date: str | None = None  # MM/YY
    cvv: str | None = None
    cardholder_name: str | None = None
    token: str | None = None

    @property
    def last_four(self) -> str | None:
        return last_four(self.card_number) if self.card_number else None

    @property
    def has_raw_card(self) -> bool:
        return bool(self.card_number and self.expiry_date)


@dataclass
class BillingInfo:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    address1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "US"

    @classmethod
    def from_cardholder(cls, cardholder_name: str | None, **kwargs: Any) -> "BillingInfo":
        parts = (cardholder_name or "").split(" ")
        return cls(first_name=parts[0], last_name=" ".join(parts[1:]), **kwargs)


@dataclass
class ChargeAttempt:
    """One request to charge a provider. Amounts are integer cents."""

    amount: int
    currency: str = DEFAULT_CURRENCY
    description: str = ""
    card: CardDetails | None = None
    vault_id: str | None = None
    billing: BillingInfo = field(default_factory=BillingInfo)
    metadata: dict[str, str] = field(default_factory=dict)
    recurring: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError("amount must be integer minor units")
        if self.amount < 0:
            raise ValueError("amount must not be negative")
        if self.amount > 0 and self.card is None and not self.vault_id:
            raise ValueError("a card or a vault reference is required")


@dataclass
class ChargeResult:
    success: bool
    status: ChargeStatus
    amount: int
    currency: str = DEFAULT_CURRENCY
    provider: str | None = None
    transaction_id: str | None = None
    subscription_id: str | None = None
    vault_id: str | None = None
    last_four: str | None = None
    error_code: str | None = None
    message: str | None = None
    raw_response: str | None = None
    retryable: bool = False
    simulated: bool = False
    simulation_reason: str | None = None

    @classmethod
    def error(
        cls,
        attempt: ChargeAttempt,
        provider: str,
        raw_response: str | None = None,
        retryable: bool = False,
        error_code: str | None = None,
    ) -> "ChargeResult":
        return cls(
            success=False,
            status=ChargeStatus.ERROR,
            amount=attempt.amount,
            currency=attempt.currency,
            provider=provider,
            error_code=error_code,
            message=user_message(error_code),
            raw_response=raw_response,
            retryable=retryable,
        )


@dataclass
class VaultResult:
    success: bool
    status: ChargeStatus
    vault_id: str | None = None
    last_four: str | None = None
    transaction_id: str | None = None
    error_code: str | None = None
    message: str | None = None
    raw_response: str | None = None
    retryable: bool = False


@dataclass
class CancelResult:
    success: bool
    message: str | None = None
    error_code: str | None = None
    raw_response: str | None = None


@dataclass
class WebhookEvent:
    """Provider callback normalized to the reconciler's vocabulary."""

    provider: str
    event_type: str
    subscription_id: str | None = None
    transaction_id: str | None = None
    status: str | None = None
    amount: int | None = None  # cents
    occurred_at: datetime | None = None
    cancel_at_period_end: bool | None = None
    period_end: datetime | None = None
    # Hosted checkout only: the business id we handed the provider, its customer and plan
    business_reference: str | None = None
    customer_id: str | None = None
    plan_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class HostedSession:
    """A provider-hosted page (checkout or billing portal) the owner is redirected to."""

    id: str
    url: str


class PaymentProvider(Protocol):
    """Protocol for payment gateways (Ecom Payments, Stripe)."""

    name: ProviderName

    @property
    def is_configured(self) -> bool:
        """True when live or test credentials are available."""
        ...

    async def charge(self, attempt: ChargeAttempt) -> ChargeResult:
        """Run a one-time or recurring charge against a card or a vault."""
        ...

    async def create_vault(self, card: CardDetails, billing: BillingInfo) -> VaultResult:
        """Store a card provider-side and return its vault token."""
        ...

    async def update_vault(self, vault_id: str, card: CardDetails, billing: BillingInfo) -> VaultResult:
        """Replace the card behind an existing vault token."""
        ...

    async def cancel_subscription(self, provider_subscription_id: str) -> CancelResult:
        ...

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Verify and normalize a webhook delivery.

        Raises WebhookVerificationError on a bad or missing signature.
        """
        ...
