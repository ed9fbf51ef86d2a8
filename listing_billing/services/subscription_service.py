"""Subscription state machine — transitions, charge settlement, cancellation, plan changes.

Business.subscription_status is only written here. Every transition is a
conditional update on the current status, so a transition whose precondition
was invalidated by a concurrent request is rejected instead of overwriting it.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.constants import (
    BILLING_PERIOD_DAYS,
    HISTORY_INITIAL_SUBSCRIPTION,
    HISTORY_ONE_TIME_PAYMENT,
    HISTORY_PLAN_DOWNGRADE,
    HISTORY_PLAN_UPGRADE,
    HISTORY_RECURRING_PAYMENT,
    HISTORY_SUBSCRIPTION_CANCELLATION,
    PLAN_PRICES,
    SIMULATED_TX_PREFIX,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAST_DUE,
    STATUS_PENDING,
)
from listing_billing.errors import PaymentValidationError, StateConflictError
from listing_billing.models.business import Business
from listing_billing.models.subscription import SubscriptionRecord
from listing_billing.providers.base import BillingInfo, CardDetails, ChargeAttempt, ChargeResult, PaymentProvider
from listing_billing.utils import ensure_aware, format_major, now_utc
from .business_service import get_business, subscription_column, vault_column
from .charge_service import process_charge, raise_for_result
from .history_service import history_status, record_history
from .vault_service import ensure_vault

logger = logging.getLogger(__name__)

# action -> (statuses it may start from, resulting status)
_LEGAL: dict[str, tuple[frozenset[str], str]] = {
    "activate": (frozenset({STATUS_PENDING, STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED}), STATUS_ACTIVE),
    "renew": (frozenset({STATUS_PENDING, STATUS_ACTIVE, STATUS_PAST_DUE}), STATUS_ACTIVE),
    "change_plan": (frozenset({STATUS_ACTIVE, STATUS_PAST_DUE}), STATUS_ACTIVE),
    "mark_past_due": (frozenset({STATUS_ACTIVE, STATUS_PAST_DUE}), STATUS_PAST_DUE),
    "cancel": (frozenset({STATUS_ACTIVE, STATUS_PAST_DUE}), STATUS_CANCELLED),
    "terminate": (frozenset({STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED}), STATUS_CANCELLED),
}


def can_transition(action: str, status: str) -> bool:
    allowed, _ = _LEGAL[action]
    return status in allowed


def next_status(action: str, status: str) -> str:
    """Resulting status of ``action`` from ``status``; raises StateConflictError when illegal."""
    allowed, target = _LEGAL[action]
    if status not in allowed:
        raise StateConflictError(
            f"Cannot {action.replace('_', ' ')} a subscription that is {status}",
            details={"current_status": status},
        )
    return target


async def latest_record(db: AsyncSession, business_id: int, provider: str) -> SubscriptionRecord | None:
    result = await db.execute(
        select(SubscriptionRecord)
        .where(SubscriptionRecord.business_id == business_id, SubscriptionRecord.provider == provider)
        .order_by(SubscriptionRecord.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def apply_transition(
    db: AsyncSession,
    business: Business,
    action: str,
    provider: str,
    values: Mapping[str, Any] | None = None,
    record_values: Mapping[str, Any] | None = None,
) -> Business:
    """
    Move a business through ``action`` and mirror it onto its subscription record.

    Args:
        db: Database session.
        business: Business to transition; re-read after the update.
        action: Key of the transition table.
        provider: Provider whose subscription record is updated.
        values: Extra Business columns written in the same conditional update.
        record_values: SubscriptionRecord columns to set.

    Returns:
        The refreshed Business.

    Raises:
        StateConflictError: the current status does not permit ``action``.
    """
    allowed, target = _LEGAL[action]
    business_id, previous = business.id, business.subscription_status
    stmt = (
        update(Business)
        .where(Business.id == business_id, Business.subscription_status.in_(allowed))
        .values(subscription_status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to %s business %s", action, business_id)
        raise

    if result.rowcount == 0:
        await db.rollback()
        current = await get_business(db, business_id)
        next_status(action, current.subscription_status)
        # Status was legal again by the time we re-read; let the caller retry
        raise StateConflictError("Subscription changed concurrently, please retry")

    record_values = dict(record_values or {})
    record = await latest_record(db, business_id, provider)
    new_sub_id = record_values.get("provider_subscription_id")
    if record is None or (
        new_sub_id and record.provider_subscription_id and record.provider_subscription_id != new_sub_id
    ):
        db.add(SubscriptionRecord(business_id=business_id, provider=provider, status=target, **record_values))
    else:
        record.status = target
        for key, value in record_values.items():
            setattr(record, key, value)
    await db.commit()

    logger.info("Business %s: %s -> %s (%s)", business_id, previous, target, action)
    return await get_business(db, business_id)


def check_can_subscribe(business: Business, plan_name: str | None = None) -> None:
    """
    Reject a plan purchase while the business is already paying for one.

    Any provider's running subscription blocks a new one, whichever provider
    is configured now. Buying the plan the business is already on is also
    rejected, so a resubmitted one-time plan charge is never billed twice.
    """
    status = business.subscription_status
    if status not in (STATUS_ACTIVE, STATUS_PAST_DUE):
        return
    running = business.subscription_references()
    if running:
        raise StateConflictError(
            "Business already has a subscription",
            code="subscription_exists",
            details={"current_status": status, "providers": sorted(running)},
        )
    if plan_name and plan_name == business.plan_name:
        raise StateConflictError(
            f"Business is already on the {plan_name}",
            code="plan_already_active",
            details={"current_status": status, "plan_name": plan_name},
        )


async def settle_charge(
    db: AsyncSession,
    business: Business,
    result: ChargeResult,
    recurring: bool,
    plan_name: str | None = None,
    plan_price: int | None = None,
) -> Business:
    """
    Record a charge outcome and, when it paid for a plan, activate the subscription.

    History is written first and unconditionally. A failed charge leaves the
    status alone; past_due is only entered through the renewal webhooks.
    """
    business_id = business.id
    if recurring:
        history_type = HISTORY_INITIAL_SUBSCRIPTION if business.last_payment_date is None else HISTORY_RECURRING_PAYMENT
    else:
        history_type = HISTORY_ONE_TIME_PAYMENT
    await record_history(
        db,
        business.id,
        type=history_type,
        status=history_status(result.status),
        provider=result.provider,
        amount=result.amount,
        transaction_id=result.transaction_id,
        response_text=result.raw_response or result.message,
    )
    if not result.success or not (recurring or plan_name):
        return business

    provider = result.provider
    paid_at = now_utc()
    period_end = paid_at + timedelta(days=BILLING_PERIOD_DAYS)
    values: dict[str, Any] = {
        "last_payment_date": paid_at,
        "next_billing_date": period_end,
    }
    if plan_name:
        values["plan_name"] = plan_name
        values["plan_price"] = plan_price if plan_price is not None else result.amount
    if result.last_four:
        values["payment_method_last_four"] = result.last_four
    if result.vault_id and not business.vault_id_for(provider):
        values[vault_column(provider).key] = result.vault_id
    if result.subscription_id:
        values[subscription_column(provider).key] = result.subscription_id

    record_values: dict[str, Any] = {
        "plan_name": plan_name or business.plan_name,
        "current_period_start": paid_at,
        "current_period_end": period_end,
        "cancel_at_period_end": False,
    }
    if result.subscription_id:
        record_values["provider_subscription_id"] = result.subscription_id

    try:
        return await apply_transition(db, business, "activate", provider, values, record_values)
    except (StateConflictError, SQLAlchemyError) as e:
        logger.critical(
            "Charge %s for business %s succeeded but was not recorded on the business: %s",
            result.transaction_id, business_id, e,
        )
        raise StateConflictError(
            "Payment succeeded but the subscription could not be updated",
            code="charge_not_recorded",
            details={"transaction_id": result.transaction_id},
        )


@dataclass
class CancelOutcome:
    business: Business
    provider_cancelled: bool
    message: str


async def cancel_subscription(
    db: AsyncSession,
    business: Business,
    providers: Mapping[str, PaymentProvider],
) -> CancelOutcome:
    """
    Cancel provider-side subscriptions, then cancel locally regardless.

    A provider failure does not block the local cancellation; it is logged
    and noted in the history entry so the provider side can be fixed by hand.
    """
    if not business.plan_name or business.subscription_status not in (STATUS_ACTIVE, STATUS_PAST_DUE):
        raise PaymentValidationError("No active subscription to cancel", code="no_active_subscription")

    failures = []
    provider_name = None
    for name, provider in providers.items():
        sub_id = business.subscription_id_for(name)
        if not sub_id:
            continue
        provider_name = name
        if sub_id.startswith(SIMULATED_TX_PREFIX):
            continue
        result = await provider.cancel_subscription(sub_id)
        if not result.success:
            logger.error(
                "Provider %s failed to cancel subscription %s for business %s: %s",
                name, sub_id, business.id, result.message,
            )
            failures.append(f"{name}: {result.message or 'unknown error'}")

    if failures:
        response_text = "Cancelled locally; provider cancellation failed (" + "; ".join(failures) + ")"
    else:
        response_text = "Subscription cancelled"
    await record_history(
        db,
        business.id,
        type=HISTORY_SUBSCRIPTION_CANCELLATION,
        status="approved",
        provider=provider_name,
        response_text=response_text,
    )

    business = await apply_transition(
        db,
        business,
        "cancel",
        provider_name or "ecom",
        record_values={"cancel_at_period_end": True},
    )
    message = "Subscription cancelled successfully"
    if failures:
        message += ". Provider-side cancellation will be completed manually."
    return CancelOutcome(business=business, provider_cancelled=not failures, message=message)


@dataclass
class PlanChangeOutcome:
    business: Business
    transaction_id: str | None
    amount: int
    is_downgrade: bool
    simulated: bool = False


def check_plan_price(new_plan: str, plan_price: int) -> None:
    if new_plan not in PLAN_PRICES:
        raise PaymentValidationError(f"Unknown plan: {new_plan}", code="unknown_plan")
    if plan_price != PLAN_PRICES[new_plan]:
        raise PaymentValidationError(
            f"Price for {new_plan} is {format_major(PLAN_PRICES[new_plan])}",
            code="price_mismatch",
        )


async def change_plan(
    db: AsyncSession,
    business: Business,
    provider: PaymentProvider,
    new_plan: str,
    plan_price: int,
    card: CardDetails | None = None,
    billing: BillingInfo | None = None,
    discount_code: str | None = None,
) -> PlanChangeOutcome:
    """
    Upgrade or downgrade a business to another catalog plan.

    Upgrades charge the full price difference immediately against the stored
    vault. Downgrades charge nothing. Neither is prorated.
    """
    business_id = business.id
    next_status("change_plan", business.subscription_status)
    check_plan_price(new_plan, plan_price)

    current_price = business.plan_price if business.plan_price is not None else PLAN_PRICES.get(business.plan_name, 0)
    delta = plan_price - current_price
    if delta == 0:
        raise PaymentValidationError("New plan has the same price as the current plan", code="no_price_change")

    vault_id = business.vault_id_for(provider.name)
    if card is not None:
        outcome = await ensure_vault(db, business.id, provider, card, billing or BillingInfo())
        vault_id = outcome.vault_id
    if not vault_id:
        raise PaymentValidationError("A stored payment method is required", code="payment_method_required")

    values = {"plan_name": new_plan, "plan_price": plan_price}
    if delta < 0:
        await record_history(
            db,
            business.id,
            type=HISTORY_PLAN_DOWNGRADE,
            status="approved",
            provider=provider.name,
            response_text=f"Downgraded from {business.plan_name} to {new_plan}",
        )
        business = await apply_transition(
            db, business, "change_plan", provider.name, values, record_values={"plan_name": new_plan}
        )
        return PlanChangeOutcome(business=business, transaction_id=None, amount=0, is_downgrade=True)

    attempt = ChargeAttempt(
        amount=delta,
        vault_id=vault_id,
        description=f"Plan upgrade: {business.plan_name} to {new_plan}",
        metadata={"business_id": str(business.id), "plan": new_plan},
    )
    result = await process_charge(db, provider, attempt, discount_code=discount_code, plan_name=new_plan)
    await record_history(
        db,
        business.id,
        type=HISTORY_PLAN_UPGRADE,
        status=history_status(result.status),
        provider=provider.name,
        amount=result.amount,
        transaction_id=result.transaction_id,
        response_text=result.raw_response or result.message,
    )
    raise_for_result(result)

    try:
        business = await apply_transition(
            db, business, "change_plan", provider.name, values, record_values={"plan_name": new_plan}
        )
    except StateConflictError:
        logger.critical(
            "Upgrade charge %s for business %s succeeded but the plan change was rejected",
            result.transaction_id, business_id,
        )
        raise StateConflictError(
            "Upgrade was charged but the subscription changed concurrently",
            code="charge_not_recorded",
            details={"transaction_id": result.transaction_id},
        )
    return PlanChangeOutcome(
        business=business,
        transaction_id=result.transaction_id,
        amount=result.amount,
        is_downgrade=False,
        simulated=result.simulated,
    )


def is_entitled(business: Business, at: datetime | None = None) -> bool:
    """Active, past-due in grace, or cancelled but still within the paid period."""
    if business.subscription_status in (STATUS_ACTIVE, STATUS_PAST_DUE):
        return True
    if business.subscription_status == STATUS_CANCELLED and business.next_billing_date:
        return ensure_aware(business.next_billing_date) > (at or now_utc())
    return False
