"""Stripe provider — tokenized cards, customers as vaults, native subscriptions, hosted checkout."""

import asyncio
import json
import logging
from collections.abc import Mapping
from datetime import datetime, UTC
from typing import Any

import stripe

from listing_billing.config import Settings
from listing_billing.constants import EVENT_CHECKOUT_COMPLETED, STRIPE_EVENT_TYPES
from listing_billing.errors import NotFoundError, ProviderError, WebhookVerificationError
from .base import (
    BillingInfo,
    CancelResult,
    CardDetails,
    ChargeAttempt,
    ChargeResult,
    ChargeStatus,
    HostedSession,
    VaultResult,
    WebhookEvent,
    user_message,
)

logger = logging.getLogger(__name__)

_APPROVED_SUBSCRIPTION_STATES = {"active", "trialing"}


def _get_period_timestamps(stripe_sub: Mapping) -> tuple[int | None, int | None]:
    """Extract current_period_start/end, handling Stripe API version differences.

    Newer API versions (2024-06-20+) moved these fields to items.data[0].
    """
    try:
        return stripe_sub["current_period_start"], stripe_sub["current_period_end"]
    except (KeyError, TypeError):
        pass
    try:
        item = stripe_sub["items"]["data"][0]
        return item["current_period_start"], item["current_period_end"]
    except (KeyError, TypeError, IndexError):
        pass
    return None, None


def _invoice_subscription_id(invoice: Mapping) -> str | None:
    """Invoices expose their subscription at the top level on older API versions."""
    if invoice.get("subscription"):
        return invoice["subscription"]
    try:
        return invoice["parent"]["subscription_details"]["subscription"]
    except (KeyError, TypeError):
        return None


def _timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value else None


class StripeProvider:
    """Stripe adapter. Blocking SDK calls run in worker threads with an explicit timeout."""

    name = "stripe"

    def __init__(self, settings: Settings):
        self._api_key = settings.stripe_secret_key
        self._product_id = settings.stripe_product_id
        self._timeout = settings.provider_timeout
        self._webhook_secret = settings.stripe_webhook_secret
        self._allow_unsigned = settings.webhook_allow_unsigned

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _call(self, func, *args: Any, **params: Any) -> Any:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, api_key=self._api_key, **params),
            timeout=self._timeout,
        )

    async def _default_payment_method(self, customer_id: str) -> str | None:
        customer = await self._call(stripe.Customer.retrieve, customer_id)
        try:
            return customer["invoice_settings"]["default_payment_method"]
        except (KeyError, TypeError):
            return None

    async def _create_customer(self, token: str, billing: BillingInfo) -> Any:
        name = " ".join(part for part in (billing.first_name, billing.last_name) if part)
        return await self._call(
            stripe.Customer.create,
            email=billing.email or None,
            name=name or None,
            payment_method=token,
            invoice_settings={"default_payment_method": token},
        )

    def _declined(self, attempt: ChargeAttempt, code: str | None, raw: str) -> ChargeResult:
        return ChargeResult(
            success=False,
            status=ChargeStatus.DECLINED,
            amount=attempt.amount,
            currency=attempt.currency,
            provider=self.name,
            error_code=code,
            message=user_message(code),
            raw_response=raw,
        )

    async def charge(self, attempt: ChargeAttempt) -> ChargeResult:
        token = attempt.card.token if attempt.card else None
        if not token and not attempt.vault_id:
            logger.error("Stripe charge attempted without a payment token or customer")
            return ChargeResult.error(attempt, self.name, raw_response="missing payment token")

        try:
            if attempt.recurring:
                return await self._charge_subscription(attempt, token)
            return await self._charge_once(attempt, token)
        except stripe.CardError as e:
            code = getattr(e, "code", None)
            logger.warning("Stripe card declined (%s)", code)
            return self._declined(attempt, code, str(e))
        except (stripe.APIConnectionError, stripe.RateLimitError, TimeoutError) as e:
            logger.error("Stripe unavailable: %s", e)
            return ChargeResult.error(attempt, self.name, raw_response=str(e) or "timeout", retryable=True)
        except stripe.StripeError as e:
            logger.error("Stripe charge failed: %s", e)
            return ChargeResult.error(attempt, self.name, raw_response=str(e), error_code=getattr(e, "code", None))

    async def _charge_once(self, attempt: ChargeAttempt, token: str | None) -> ChargeResult:
        params: dict[str, Any] = {
            "amount": attempt.amount,
            "currency": attempt.currency.lower(),
            "description": attempt.description or None,
            "metadata": attempt.metadata,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if attempt.vault_id:
            params["customer"] = attempt.vault_id
            params["off_session"] = True
            params["payment_method"] = token or await self._default_payment_method(attempt.vault_id)
        else:
            params["payment_method"] = token

        intent = await self._call(stripe.PaymentIntent.create, **params)
        if intent["status"] != "succeeded":
            return self._declined(attempt, intent["status"], json.dumps({"id": intent["id"], "status": intent["status"]}))

        logger.info("Stripe payment %s succeeded for %s cents", intent["id"], attempt.amount)
        return ChargeResult(
            success=True,
            status=ChargeStatus.APPROVED,
            amount=attempt.amount,
            currency=attempt.currency,
            provider=self.name,
            transaction_id=intent["id"],
            vault_id=attempt.vault_id,
            last_four=attempt.card.last_four if attempt.card else None,
            raw_response=json.dumps({"id": intent["id"], "status": intent["status"]}),
        )

    async def _charge_subscription(self, attempt: ChargeAttempt, token: str | None) -> ChargeResult:
        customer_id = attempt.vault_id
        if not customer_id:
            customer = await self._create_customer(token, attempt.billing)
            customer_id = customer["id"]

        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{
                "price_data": {
                    "currency": attempt.currency.lower(),
                    "product": self._product_id,
                    "unit_amount": attempt.amount,
                    "recurring": {"interval": "year"},
                },
            }],
            "payment_behavior": "error_if_incomplete",
            "metadata": attempt.metadata,
            "expand": ["latest_invoice"],
        }
        if token:
            params["default_payment_method"] = token

        sub = await self._call(stripe.Subscription.create, **params)
        invoice = sub["latest_invoice"]
        invoice_id = invoice if invoice is None or isinstance(invoice, str) else invoice["id"]
        raw = json.dumps({"id": sub["id"], "status": sub["status"], "latest_invoice": invoice_id})

        if sub["status"] not in _APPROVED_SUBSCRIPTION_STATES:
            return self._declined(attempt, sub["status"], raw)

        logger.info("Stripe subscription %s created for customer %s", sub["id"], customer_id)
        return ChargeResult(
            success=True,
            status=ChargeStatus.APPROVED,
            amount=attempt.amount,
            currency=attempt.currency,
            provider=self.name,
            transaction_id=invoice_id,
            subscription_id=sub["id"],
            vault_id=customer_id,
            last_four=attempt.card.last_four if attempt.card else None,
            raw_response=raw,
        )

    async def _vault_call(self, coro) -> VaultResult:
        try:
            return await coro
        except stripe.CardError as e:
            code = getattr(e, "code", None)
            return VaultResult(
                success=False, status=ChargeStatus.DECLINED, error_code=code,
                message=user_message(code), raw_response=str(e),
            )
        except (stripe.APIConnectionError, stripe.RateLimitError, TimeoutError) as e:
            return VaultResult(
                success=False, status=ChargeStatus.ERROR, message=user_message(None),
                raw_response=str(e) or "timeout", retryable=True,
            )
        except stripe.StripeError as e:
            return VaultResult(
                success=False, status=ChargeStatus.ERROR, message=user_message(None), raw_response=str(e),
            )

    @staticmethod
    def _card_last_four(payment_method: Any) -> str | None:
        try:
            return payment_method["card"]["last4"]
        except (KeyError, TypeError):
            return None

    async def create_vault(self, card: CardDetails, billing: BillingInfo) -> VaultResult:
        """Create a customer with the tokenized card as its default payment method."""
        if not card.token:
            return VaultResult(success=False, status=ChargeStatus.ERROR, message="A payment token is required")

        async def _create() -> VaultResult:
            customer = await self._create_customer(card.token, billing)
            payment_method = await self._call(stripe.PaymentMethod.retrieve, card.token)
            logger.info("Created Stripe customer %s", customer["id"])
            return VaultResult(
                success=True,
                status=ChargeStatus.APPROVED,
                vault_id=customer["id"],
                last_four=self._card_last_four(payment_method),
            )

        return await self._vault_call(_create())

    async def update_vault(self, vault_id: str, card: CardDetails, billing: BillingInfo) -> VaultResult:
        """Attach a new card to the customer and make it the default."""
        if not card.token:
            return VaultResult(success=False, status=ChargeStatus.ERROR, message="A payment token is required")

        async def _update() -> VaultResult:
            payment_method = await self._call(stripe.PaymentMethod.attach, card.token, customer=vault_id)
            await self._call(
                stripe.Customer.modify,
                vault_id,
                invoice_settings={"default_payment_method": card.token},
            )
            logger.info("Updated default payment method for Stripe customer %s", vault_id)
            return VaultResult(
                success=True,
                status=ChargeStatus.APPROVED,
                vault_id=vault_id,
                last_four=self._card_last_four(payment_method),
            )

        return await self._vault_call(_update())

    async def cancel_subscription(self, provider_subscription_id: str) -> CancelResult:
        try:
            sub = await self._call(stripe.Subscription.cancel, provider_subscription_id)
        except (stripe.StripeError, TimeoutError) as e:
            logger.error("Stripe cancellation of %s failed: %s", provider_subscription_id, e)
            return CancelResult(success=False, message=str(e) or "timeout", error_code=getattr(e, "code", None))
        return CancelResult(success=True, raw_response=json.dumps({"id": sub["id"], "status": sub["status"]}))

    async def _hosted(self, func, what: str, **params: Any) -> HostedSession:
        try:
            session = await self._call(func, **params)
        except (stripe.StripeError, TimeoutError) as e:
            logger.error("Stripe %s session failed: %s", what, e)
            raise ProviderError(f"Could not open the {what} page", retryable=isinstance(e, TimeoutError))
        return HostedSession(id=session["id"], url=session["url"])

    async def create_checkout_session(
        self,
        business_id: int,
        plan_name: str,
        amount: int,
        success_url: str,
        cancel_url: str,
        customer_id: str | None = None,
        customer_email: str | None = None,
    ) -> HostedSession:
        """Start a hosted checkout for an annual subscription to ``plan_name``."""
        reference = {"business_id": str(business_id), "plan_name": plan_name}
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{
                "price_data": {
                    "currency": "usd",
                    "product": self._product_id,
                    "unit_amount": amount,
                    "recurring": {"interval": "year"},
                },
                "quantity": 1,
            }],
            "client_reference_id": str(business_id),
            "metadata": reference,
            "subscription_data": {"metadata": reference},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = await self._hosted(stripe.checkout.Session.create, "checkout", **params)
        logger.info("Stripe checkout session %s opened for business %s (%s)", session.id, business_id, plan_name)
        return session

    async def create_portal_session(self, customer_id: str, return_url: str) -> HostedSession:
        """Open the Stripe billing portal for an existing customer."""
        return await self._hosted(
            stripe.billing_portal.Session.create, "billing portal", customer=customer_id, return_url=return_url
        )

    def _checkout_event(self, session: Mapping, occurred_at: datetime | None, raw: dict) -> WebhookEvent:
        metadata = session.get("metadata") or {}
        return WebhookEvent(
            provider=self.name,
            event_type=EVENT_CHECKOUT_COMPLETED,
            subscription_id=session.get("subscription"),
            transaction_id=session.get("invoice") or session.get("id"),
            status=session.get("payment_status"),
            amount=session.get("amount_total"),
            occurred_at=occurred_at,
            business_reference=session.get("client_reference_id") or metadata.get("business_id"),
            customer_id=session.get("customer"),
            plan_name=metadata.get("plan_name"),
            raw=raw,
        )

    async def retrieve_checkout_event(self, session_id: str) -> WebhookEvent:
        """Fetch a checkout session and normalize it like its completion webhook."""
        try:
            session = await self._call(stripe.checkout.Session.retrieve, session_id)
        except stripe.InvalidRequestError:
            raise NotFoundError("Checkout session not found")
        except (stripe.StripeError, TimeoutError) as e:
            logger.error("Stripe checkout session %s lookup failed: %s", session_id, e)
            raise ProviderError("Could not verify the checkout session", retryable=True)
        if session.get("status") != "complete":
            logger.info("Checkout session %s is %s", session_id, session.get("status"))
        return self._checkout_event(session, None, {"id": session_id, "status": session.get("status")})

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if self._webhook_secret:
            signature = {k.lower(): v for k, v in headers.items()}.get("stripe-signature")
            if not signature:
                raise WebhookVerificationError("Missing webhook signature")
            try:
                stripe.Webhook.construct_event(body, signature, self._webhook_secret)
            except (stripe.SignatureVerificationError, ValueError):
                raise WebhookVerificationError("Invalid webhook signature")
        elif self._allow_unsigned:
            logger.warning("Accepting unsigned Stripe webhook (WEBHOOK_ALLOW_UNSIGNED is on)")
        else:
            raise WebhookVerificationError("Webhook signature verification is not configured")

        try:
            event = json.loads(body)
            data = event["data"]["object"]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning("Stripe webhook body is not a valid event")
            return WebhookEvent(provider=self.name, event_type="")

        stripe_type = event.get("type", "")
        event_type = STRIPE_EVENT_TYPES.get(stripe_type, stripe_type)
        occurred_at = _timestamp(event.get("created"))

        if stripe_type.startswith("invoice."):
            return WebhookEvent(
                provider=self.name,
                event_type=event_type,
                subscription_id=_invoice_subscription_id(data),
                transaction_id=data.get("id"),
                status=data.get("status"),
                amount=data.get("amount_paid") or data.get("amount_due"),
                occurred_at=occurred_at,
                raw=event,
            )

        if stripe_type.startswith("customer.subscription."):
            _, period_end = _get_period_timestamps(data)
            return WebhookEvent(
                provider=self.name,
                event_type=event_type,
                subscription_id=data.get("id"),
                status=data.get("status"),
                occurred_at=occurred_at,
                cancel_at_period_end=data.get("cancel_at_period_end"),
                period_end=_timestamp(period_end),
                raw=event,
            )

        if stripe_type == "checkout.session.completed":
            return self._checkout_event(data, occurred_at, event)

        return WebhookEvent(provider=self.name, event_type=event_type, occurred_at=occurred_at, raw=event)
