"""Charge processor — validate, discount, then simulate or submit to a provider.

Persistence of the outcome belongs to the subscription service; this module
only touches the database to reserve and release discount uses.
"""

import dataclasses
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.config import Settings, get_settings
from listing_billing.constants import (
    FREE_TX_PREFIX,
    GENERIC_PAYMENT_ERROR,
    SIMULATED_TX_PREFIX,
    TEST_CARD_NUMBERS,
)
from listing_billing.errors import PaymentDeclinedError, PaymentValidationError, ProviderError
from listing_billing.providers.base import (
    CardDetails,
    ChargeAttempt,
    ChargeResult,
    ChargeStatus,
    PaymentProvider,
    VaultResult,
)
from listing_billing.utils import clean_card_number, validate_card
from .discount_service import AppliedDiscount, redeem_discount, release_discount

logger = logging.getLogger(__name__)


def _synthetic_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def is_test_card(card: CardDetails | None) -> bool:
    return bool(card and card.card_number and clean_card_number(card.card_number) in TEST_CARD_NUMBERS)


def validate_payment_method(provider: PaymentProvider, card: CardDetails | None, vault_id: str | None = None) -> None:
    """Reject unusable payment data before any network call."""
    if card is None:
        if not vault_id:
            raise PaymentValidationError("A payment method is required")
        return

    if provider.name == "stripe" and not card.token and not vault_id:
        raise PaymentValidationError("A payment token is required")
    if card.card_number or provider.name == "ecom":
        if not card.card_number or not card.expiry_date:
            raise PaymentValidationError("Card number and expiry date are required")
        problems = validate_card(card.card_number, card.expiry_date, card.cvv)
        if problems:
            raise PaymentValidationError("; ".join(problems), details={"problems": problems})


def _simulation_reason(provider: PaymentProvider, attempt: ChargeAttempt, settings: Settings) -> str | None:
    if not provider.is_configured:
        return "no credentials configured"
    if is_test_card(attempt.card) and not settings.is_production:
        return "designated test card"
    return None


def _free_result(attempt: ChargeAttempt, provider: PaymentProvider) -> ChargeResult:
    logger.info("Zero-amount charge approved without a provider call")
    return ChargeResult(
        success=True,
        status=ChargeStatus.APPROVED,
        amount=0,
        currency=attempt.currency,
        provider=provider.name,
        transaction_id=_synthetic_id(FREE_TX_PREFIX),
        vault_id=attempt.vault_id,
        last_four=attempt.card.last_four if attempt.card else None,
        message="No payment required",
    )


def _simulated_result(attempt: ChargeAttempt, provider: PaymentProvider, reason: str) -> ChargeResult:
    logger.info("Simulating %s cents charge on %s (%s)", attempt.amount, provider.name, reason)
    return ChargeResult(
        success=True,
        status=ChargeStatus.APPROVED,
        amount=attempt.amount,
        currency=attempt.currency,
        provider=provider.name,
        transaction_id=_synthetic_id(SIMULATED_TX_PREFIX),
        subscription_id=_synthetic_id(f"{SIMULATED_TX_PREFIX}sub_") if attempt.recurring else None,
        vault_id=attempt.vault_id,
        last_four=attempt.card.last_four if attempt.card else None,
        message="Payment approved",
        raw_response=f"Simulated payment ({reason})",
        simulated=True,
        simulation_reason=reason,
    )


async def process_charge(
    db: AsyncSession,
    provider: PaymentProvider,
    attempt: ChargeAttempt,
    discount_code: str | None = None,
    plan_name: str | None = None,
    settings: Settings | None = None,
) -> ChargeResult:
    """
    Run one charge attempt through validation, discounting and the provider.

    Args:
        db: Session used to reserve the discount code.
        provider: Adapter that receives the charge.
        attempt: Undiscounted charge request, amount in cents.
        discount_code: Code or id; an unusable code rejects the charge.
        plan_name: Plan the charge pays for, checked against the code's plans.
        settings: Defaults to the process settings.

    Returns:
        The normalized result. Declines and errors are returned, not raised.

    Raises:
        PaymentValidationError: bad payment data or an unusable discount code.
    """
    settings = settings or get_settings()
    if attempt.amount > 0 or attempt.card is not None:
        validate_payment_method(provider, attempt.card, attempt.vault_id)

    applied: AppliedDiscount | None = None
    if discount_code:
        applied = await redeem_discount(db, discount_code, attempt.amount, plan_name)
        attempt = dataclasses.replace(
            attempt,
            amount=applied.final_amount,
            metadata={**attempt.metadata, "discount_code": applied.code},
        )

    if attempt.amount == 0:
        return _free_result(attempt, provider)

    reason = _simulation_reason(provider, attempt, settings)
    if reason:
        return _simulated_result(attempt, provider, reason)

    result = await provider.charge(attempt)
    if not result.success and applied:
        await release_discount(db, applied)
    return result


def raise_for_result(result: ChargeResult | VaultResult) -> None:
    """Turn a failed provider result into the error the caller should see."""
    if result.success:
        return
    details = {"error_code": result.error_code} if result.error_code else {}
    if result.status is ChargeStatus.DECLINED:
        raise PaymentDeclinedError(result.message or GENERIC_PAYMENT_ERROR, details=details)
    raise ProviderError(result.message or GENERIC_PAYMENT_ERROR, retryable=result.retryable, details=details)
