"""Ecom Payments provider — legacy form-encoded gateway with numeric response codes."""

import hashlib
import hmac
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, UTC
from urllib.parse import parse_qsl, urlencode

import httpx

from listing_billing.config import Settings
from listing_billing.constants import (
    BILLING_PERIOD_DAYS,
    ECOM_RESPONSE_APPROVED,
    ECOM_RESPONSE_DECLINED,
    ECOM_RESPONSE_ERROR,
    ECOM_VAULT_VERIFY_AMOUNT,
)
from listing_billing.errors import WebhookVerificationError
from listing_billing.http_client import get_http_client
from listing_billing.utils import clean_card_number, format_major, mask_card, parse_major
from .base import (
    BillingInfo,
    CancelResult,
    CardDetails,
    ChargeAttempt,
    ChargeResult,
    ChargeStatus,
    VaultResult,
    WebhookEvent,
    user_message,
)

logger = logging.getLogger(__name__)

# The gateway sends x-nmi-signature; x-webhook-signature is kept for relays that rename it
SIGNATURE_HEADERS = ("x-nmi-signature", "x-webhook-signature")
# Gateway-side communication errors are worth retrying
_RETRYABLE_CODES = {"420", "421"}


@dataclass
class _GatewayReply:
    fields: dict[str, str]
    raw: str

    @property
    def outcome(self) -> str | None:
        return self.fields.get("response")

    @property
    def response_code(self) -> str | None:
        return self.fields.get("response_code")

    def classify(self) -> tuple[ChargeStatus, bool]:
        """Map the gateway outcome to (status, retryable)."""
        if self.outcome == ECOM_RESPONSE_APPROVED:
            return ChargeStatus.APPROVED, False
        if self.outcome == ECOM_RESPONSE_DECLINED:
            return ChargeStatus.DECLINED, False
        return ChargeStatus.ERROR, self.response_code in _RETRYABLE_CODES


class _GatewayUnavailable(Exception):
    """Transport-level failure; no usable reply."""

    def __init__(self, raw: str, retryable: bool):
        self.raw = raw
        self.retryable = retryable
        super().__init__(raw)


def _card_fields(card: CardDetails) -> list[tuple[str, str]]:
    fields = [
        ("ccnumber", clean_card_number(card.card_number)),
        ("ccexp", (card.expiry_date or "").replace("/", "")),
    ]
    if card.cvv:
        fields.append(("cvv", card.cvv))
    return fields


def _billing_fields(billing: BillingInfo) -> list[tuple[str, str]]:
    pairs = [
        ("first_name", billing.first_name),
        ("last_name", billing.last_name),
        ("email", billing.email),
        ("address1", billing.address1),
        ("city", billing.city),
        ("state", billing.state),
        ("zip", billing.zip),
        ("country", billing.country),
    ]
    return [(key, value) for key, value in pairs if value]


def _parse_occurred_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=UTC)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable webhook timestamp %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class EcomPaymentsProvider:
    """Talks to the Ecom Payments transact endpoint."""

    name = "ecom"

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._security_key = settings.ecom_security_key
        self._url = settings.ecom_gateway_url
        self._timeout = settings.provider_timeout
        self._webhook_secret = settings.ecom_webhook_secret
        self._allow_unsigned = settings.webhook_allow_unsigned
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._security_key)

    async def _post(self, fields: list[tuple[str, str]]) -> _GatewayReply:
        """POST an ordered form to the gateway and parse the form-encoded reply."""
        client = self._client or get_http_client()
        body = urlencode([("security_key", self._security_key), *fields])
        try:
            resp = await client.post(
                self._url,
                content=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("Ecom gateway timed out after %ss: %s", self._timeout, e)
            raise _GatewayUnavailable(f"timeout: {e}", retryable=True)
        except httpx.HTTPError as e:
            logger.error("Ecom gateway request failed: %s", e)
            raise _GatewayUnavailable(f"network error: {e}", retryable=True)

        if resp.status_code >= 400:
            logger.error("Ecom gateway returned HTTP %s", resp.status_code)
            raise _GatewayUnavailable(
                f"HTTP {resp.status_code}: {resp.text}", retryable=resp.status_code >= 500
            )

        reply = _GatewayReply(fields=dict(parse_qsl(resp.text, keep_blank_values=True)), raw=resp.text)
        if reply.outcome not in (ECOM_RESPONSE_APPROVED, ECOM_RESPONSE_DECLINED, ECOM_RESPONSE_ERROR):
            logger.error("Malformed Ecom gateway response: %r", resp.text[:200])
            raise _GatewayUnavailable(resp.text, retryable=False)
        return reply

    async def charge(self, attempt: ChargeAttempt) -> ChargeResult:
        fields: list[tuple[str, str]] = []
        if attempt.vault_id:
            fields.append(("customer_vault_id", attempt.vault_id))
        else:
            fields.extend(_card_fields(attempt.card))
        fields.extend(_billing_fields(attempt.billing))

        if attempt.recurring:
            fields.extend([
                ("type", "add_subscription"),
                ("plan_payments", "0"),  # unlimited renewals
                ("plan_amount", format_major(attempt.amount)),
                ("day_frequency", str(BILLING_PERIOD_DAYS)),
                ("month_frequency", "0"),
            ])
        else:
            fields.extend([("type", "sale"), ("amount", format_major(attempt.amount))])
        if not attempt.vault_id:
            fields.append(("customer_vault", "add_customer"))

        if attempt.description:
            fields.append(("order_description", attempt.description))
        fields.append(("currency", attempt.currency))
        for index, (key, value) in enumerate(sorted(attempt.metadata.items()), start=1):
            fields.append((f"merchant_defined_field_{index}", f"{key}={value}"))

        logger.info(
            "Ecom %s for %s cents (%s)",
            "subscription" if attempt.recurring else "sale",
            attempt.amount,
            f"vault {attempt.vault_id}" if attempt.vault_id else mask_card(attempt.card.card_number),
        )
        try:
            reply = await self._post(fields)
        except _GatewayUnavailable as e:
            return ChargeResult.error(attempt, self.name, raw_response=e.raw, retryable=e.retryable)

        status, retryable = reply.classify()
        if status is not ChargeStatus.APPROVED:
            logger.warning("Ecom charge %s (code %s)", status, reply.response_code)
            return ChargeResult(
                success=False,
                status=status,
                amount=attempt.amount,
                currency=attempt.currency,
                provider=self.name,
                transaction_id=reply.fields.get("transactionid") or None,
                error_code=reply.response_code,
                message=user_message(reply.response_code),
                raw_response=reply.raw,
                retryable=retryable,
            )

        return ChargeResult(
            success=True,
            status=ChargeStatus.APPROVED,
            amount=attempt.amount,
            currency=attempt.currency,
            provider=self.name,
            transaction_id=reply.fields.get("transactionid"),
            subscription_id=reply.fields.get("subscription_id") or None,
            vault_id=reply.fields.get("customer_vault_id") or attempt.vault_id,
            last_four=attempt.card.last_four if attempt.card else None,
            raw_response=reply.raw,
        )

    async def _vault_request(self, fields: list[tuple[str, str]], card: CardDetails, vault_id: str | None) -> VaultResult:
        try:
            reply = await self._post(fields)
        except _GatewayUnavailable as e:
            return VaultResult(
                success=False,
                status=ChargeStatus.ERROR,
                message=user_message(None),
                raw_response=e.raw,
                retryable=e.retryable,
            )

        status, retryable = reply.classify()
        if status is not ChargeStatus.APPROVED:
            return VaultResult(
                success=False,
                status=status,
                error_code=reply.response_code,
                message=user_message(reply.response_code),
                raw_response=reply.raw,
                retryable=retryable,
            )

        returned_id = reply.fields.get("customer_vault_id") or vault_id
        if not returned_id:
            logger.error("Ecom approved a vault request without a customer_vault_id")
            return VaultResult(
                success=False, status=ChargeStatus.ERROR, message=user_message(None), raw_response=reply.raw
            )
        return VaultResult(
            success=True,
            status=ChargeStatus.APPROVED,
            vault_id=returned_id,
            last_four=card.last_four,
            transaction_id=reply.fields.get("transactionid") or None,
            raw_response=reply.raw,
        )

    async def create_vault(self, card: CardDetails, billing: BillingInfo) -> VaultResult:
        """Create a customer vault via a one-cent verification sale."""
        fields = [
            ("type", "sale"),
            ("amount", format_major(ECOM_VAULT_VERIFY_AMOUNT)),
            *_card_fields(card),
            ("customer_vault", "add_customer"),
            ("currency", "USD"),
            ("order_description", "Customer vault creation"),
            *_billing_fields(billing),
        ]
        logger.info("Creating Ecom customer vault for card %s", mask_card(card.card_number))
        return await self._vault_request(fields, card, None)

    async def update_vault(self, vault_id: str, card: CardDetails, billing: BillingInfo) -> VaultResult:
        fields = [
            ("customer_vault", "update_customer"),
            ("customer_vault_id", vault_id),
            *_card_fields(card),
            *_billing_fields(billing),
        ]
        logger.info("Updating Ecom customer vault %s with card %s", vault_id, mask_card(card.card_number))
        return await self._vault_request(fields, card, vault_id)

    async def cancel_subscription(self, provider_subscription_id: str) -> CancelResult:
        try:
            reply = await self._post([
                ("subscription_id", provider_subscription_id),
                ("type", "delete_subscription"),
            ])
        except _GatewayUnavailable as e:
            return CancelResult(success=False, message="Gateway unavailable", raw_response=e.raw)

        if reply.outcome != ECOM_RESPONSE_APPROVED:
            return CancelResult(
                success=False,
                message=reply.fields.get("responsetext") or user_message(reply.response_code),
                error_code=reply.response_code,
                raw_response=reply.raw,
            )
        return CancelResult(success=True, raw_response=reply.raw)

    def _verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self._webhook_secret:
            if self._allow_unsigned:
                logger.warning("Accepting unsigned Ecom webhook (WEBHOOK_ALLOW_UNSIGNED is on)")
                return
            raise WebhookVerificationError("Webhook signature verification is not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        provided = next((lowered[name] for name in SIGNATURE_HEADERS if lowered.get(name)), None)
        if not provided:
            raise WebhookVerificationError("Missing webhook signature")
        expected = hmac.new(self._webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(provided.strip().lower(), expected):
            raise WebhookVerificationError("Invalid webhook signature")

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Verify and normalize a form-encoded or JSON Ecom callback."""
        self._verify_signature(body, headers)

        text = body.decode("utf-8", errors="replace").strip()
        if text.startswith("{"):
            try:
                data = {k: str(v) for k, v in json.loads(text).items() if v is not None}
            except (json.JSONDecodeError, AttributeError):
                logger.warning("Unparseable Ecom webhook JSON body")
                data = {}
        else:
            data = dict(parse_qsl(text, keep_blank_values=True))

        amount = None
        if data.get("amount"):
            try:
                amount = parse_major(data["amount"])
            except (ArithmeticError, ValueError):
                logger.warning("Ignoring invalid webhook amount %r", data["amount"])

        return WebhookEvent(
            provider=self.name,
            event_type=data.get("event_type", ""),
            subscription_id=data.get("subscription_id") or None,
            transaction_id=data.get("transaction_id") or None,
            status=data.get("status") or None,
            amount=amount,
            occurred_at=_parse_occurred_at(data.get("occurred_at")),
            raw=data,
        )
