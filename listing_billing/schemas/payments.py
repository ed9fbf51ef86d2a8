"""Payment endpoint request/response schemas. Amounts are integer cents on input."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from listing_billing.constants import DEFAULT_CURRENCY
from listing_billing.providers.base import BillingInfo, CardDetails


class PaymentMethodIn(BaseModel):
    card_number: str | None = None
    expiry_date: str | None = Field(None, description="MM/YY")
    cvv: str | None = None
    cardholder_name: str | None = None
    billing_zip: str | None = None
    billing_address: str | None = None
    token: str | None = Field(None, description="Provider payment-method token (Stripe)")

    def to_card(self) -> CardDetails:
        return CardDetails(
            card_number=self.card_number,
            expiry_date=self.expiry_date,
            cvv=self.cvv,
            cardholder_name=self.cardholder_name,
            token=self.token,
        )

    def to_billing(self, email: str | None = None) -> BillingInfo:
        return BillingInfo.from_cardholder(
            self.cardholder_name,
            email=email or "",
            address1=self.billing_address or "",
            zip=self.billing_zip or "",
        )


class VaultRequest(BaseModel):
    business_id: int
    payment_method: PaymentMethodIn


class VaultResponse(BaseModel):
    success: bool = True
    customer_vault_id: str
    last4: str | None = None
    created: bool


class ChargeRequest(BaseModel):
    amount: StrictInt = Field(..., ge=0, description="Amount in cents")
    currency: str = DEFAULT_CURRENCY
    description: str = ""
    customer_email: str | None = None
    payment_method: PaymentMethodIn | None = None
    business_id: int | None = None
    plan_name: str | None = None
    discount_code_id: str | None = None
    is_recurring: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be a three-letter code")
        return v.upper()

    @field_validator("discount_code_id", mode="before")
    @classmethod
    def coerce_discount_ref(cls, v):
        return str(v) if isinstance(v, int) else v


class ChargeResponse(BaseModel):
    success: bool
    status: str
    transaction_id: str | None = None
    subscription_id: str | None = None
    amount: Decimal
    amount_cents: int
    discount_cents: int = 0
    currency: str
    last4: str | None = None
    message: str | None = None
    error_code: str | None = None
    retryable: bool = False
    simulated: bool = False
    simulation_reason: str | None = None


class BusinessRef(BaseModel):
    business_id: int


class CancelResponse(BaseModel):
    success: bool = True
    message: str
    provider_cancelled: bool
    subscription_status: str


class UpdatePaymentMethodRequest(BaseModel):
    business_id: int
    payment_method: PaymentMethodIn


class UpdatePaymentMethodResponse(BaseModel):
    success: bool = True
    last4: str | None = None
    customer_vault_id: str


class UpgradePlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(..., alias="businessId")
    current_plan: str = Field(..., alias="currentPlan")
    new_plan: str = Field(..., alias="newPlan")
    plan_price: StrictInt = Field(..., alias="planPrice", ge=0, description="New plan price in cents")
    payment_method: PaymentMethodIn | None = Field(None, alias="paymentMethod")
    discount_code: str | None = Field(None, alias="discountCode")


class UpgradePlanResponse(BaseModel):
    success: bool = True
    transaction_id: str | None = None
    new_plan: str
    upgrade_amount: Decimal
    upgrade_amount_cents: int
    is_downgrade: bool
    simulated: bool = False


class SubscriptionStatusResponse(BaseModel):
    business_id: int
    subscription_status: str
    plan_name: str | None = None
    plan_price_cents: int | None = None
    last4: str | None = None
    last_payment_date: datetime | None = None
    next_billing_date: datetime | None = None
    entitled: bool


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str


class CheckoutSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(..., alias="businessId")
    plan_name: str = Field(..., alias="planName")
    plan_price: StrictInt = Field(..., alias="planPrice", ge=0, description="Plan price in cents")
    success_url: str | None = Field(None, alias="successUrl")
    cancel_url: str | None = Field(None, alias="cancelUrl")


class PortalSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_id: int = Field(..., alias="businessId")
    return_url: str | None = Field(None, alias="returnUrl")


class HostedSessionResponse(BaseModel):
    url: str
    session_id: str


class CheckoutVerification(BaseModel):
    paid: bool
    business_id: int
    subscription_status: str
    outcome: str
