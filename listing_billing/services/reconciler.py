"""Webhook reconciler — apply provider events to local subscription state.

Events are matched to a business through the provider subscription id or a
recorded transaction id. A completed hosted checkout, whose subscription is
not recorded yet, falls back to the business id it was opened for. Nothing
here raises for an unknown event or an unknown business: the webhook must
always be acknowledged, otherwise the provider keeps redelivering it.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.constants import (
    BILLING_PERIOD_DAYS,
    CHECKOUT_PAID_STATUSES,
    EVENT_CHECKOUT_COMPLETED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCESS,
    EVENT_SUBSCRIPTION_CANCELLED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    HISTORY_INITIAL_SUBSCRIPTION,
    HISTORY_RECURRING_PAYMENT,
    HISTORY_RECURRING_PAYMENT_FAILED,
    HISTORY_SUBSCRIPTION_CANCELLATION,
    HISTORY_SUBSCRIPTION_DELETED,
    HISTORY_SUBSCRIPTION_UPDATED,
    NO_TRANSACTION_ID,
    PLAN_PRICES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAST_DUE,
)
from listing_billing.errors import StateConflictError
from listing_billing.models.business import Business
from listing_billing.providers.base import WebhookEvent
from listing_billing.utils import ensure_aware, now_utc
from .business_service import (
    find_by_reference,
    find_by_subscription_id,
    find_by_transaction_id,
    subscription_column,
    vault_column,
)
from .history_service import record_history
from .subscription_service import apply_transition, can_transition, latest_record

logger = logging.getLogger(__name__)

# Provider subscription status -> state machine action
_UPDATED_STATUS_ACTIONS = {
    "active": "renew",
    "trialing": "renew",
    "past_due": "mark_past_due",
    "unpaid": "mark_past_due",
    "canceled": "terminate",
    "cancelled": "terminate",
}


class ReconcileOutcome(StrEnum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    STALE = "stale"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    business: Business | None = None
    event_type: str = ""


async def _find_business(db: AsyncSession, event: WebhookEvent) -> Business | None:
    if event.subscription_id:
        business = await find_by_subscription_id(db, event.provider, event.subscription_id)
        if business:
            return business
    if event.event_type == EVENT_CHECKOUT_COMPLETED:
        return await find_by_reference(db, event.business_reference)
    if event.transaction_id and event.transaction_id != NO_TRANSACTION_ID:
        return await find_by_transaction_id(db, event.transaction_id)
    return None


async def _is_stale(db: AsyncSession, business: Business, event: WebhookEvent) -> bool:
    if not event.occurred_at:
        return False
    record = await latest_record(db, business.id, event.provider)
    last_seen = ensure_aware(record.last_event_at) if record else None
    return bool(last_seen and ensure_aware(event.occurred_at) < last_seen)


def _event_record_values(event: WebhookEvent) -> dict:
    values = {}
    if event.occurred_at:
        values["last_event_at"] = event.occurred_at
    if event.period_end:
        values["current_period_end"] = event.period_end
    if event.cancel_at_period_end is not None:
        values["cancel_at_period_end"] = event.cancel_at_period_end
    return values


async def _transition(
    db: AsyncSession,
    business: Business,
    action: str,
    event: WebhookEvent,
    values: dict | None = None,
    record_values: dict | None = None,
) -> ReconcileResult:
    """Apply ``action`` if it is legal now; an illegal one leaves the business as is."""
    if not can_transition(action, business.subscription_status):
        logger.info(
            "Webhook %s leaves business %s %s", event.event_type, business.id, business.subscription_status
        )
        return ReconcileResult(ReconcileOutcome.UNCHANGED, business, event.event_type)
    try:
        business = await apply_transition(
            db, business, action, event.provider, values,
            record_values={**_event_record_values(event), **(record_values or {})},
        )
    except StateConflictError as e:
        logger.warning("Webhook %s lost a race: %s", event.event_type, e.message)
        return ReconcileResult(ReconcileOutcome.UNCHANGED, None, event.event_type)
    return ReconcileResult(ReconcileOutcome.APPLIED, business, event.event_type)


async def _on_payment_success(db: AsyncSession, business: Business, event: WebhookEvent) -> ReconcileResult:
    await record_history(
        db, business.id, type=HISTORY_RECURRING_PAYMENT, status="approved", provider=event.provider,
        amount=event.amount or 0, transaction_id=event.transaction_id,
        response_text=f"Renewal payment ({event.status or 'paid'})",
    )
    # A late renewal does not undo an explicit cancellation
    if business.subscription_status == STATUS_CANCELLED:
        logger.info("Renewal for cancelled business %s recorded without reactivating", business.id)
        return ReconcileResult(ReconcileOutcome.UNCHANGED, business, event.event_type)

    paid_at = now_utc()
    values = {"last_payment_date": paid_at, "next_billing_date": paid_at + timedelta(days=BILLING_PERIOD_DAYS)}
    return await _transition(db, business, "renew", event, values)


async def _on_payment_failed(db: AsyncSession, business: Business, event: WebhookEvent) -> ReconcileResult:
    await record_history(
        db, business.id, type=HISTORY_RECURRING_PAYMENT_FAILED, status="failed", provider=event.provider,
        amount=event.amount or 0, transaction_id=event.transaction_id,
        response_text=f"Renewal payment failed ({event.status or 'failed'})",
    )
    return await _transition(db, business, "mark_past_due", event)


async def _on_cancelled(db: AsyncSession, business: Business, event: WebhookEvent) -> ReconcileResult:
    await record_history(
        db, business.id, type=HISTORY_SUBSCRIPTION_CANCELLATION, status="approved", provider=event.provider,
        response_text="Subscription cancelled by provider",
    )
    return await _transition(db, business, "cancel", event)


async def _on_deleted(db: AsyncSession, business: Business, event: WebhookEvent) -> ReconcileResult:
    await record_history(
        db, business.id, type=HISTORY_SUBSCRIPTION_DELETED, status="approved", provider=event.provider,
        response_text="Subscription deleted by provider",
    )
    values = {subscription_column(event.provider).key: None}
    return await _transition(db, business, "terminate", event, values)


async def _on_updated(db: AsyncSession, business: Business, event: WebhookEvent) -> ReconcileResult:
    await record_history(
        db, business.id, type=HISTORY_SUBSCRIPTION_UPDATED, status="approved", provider=event.provider,
        response_text=f"Subscription updated ({event.status or 'unknown status'})",
    )
    action = _UPDATED_STATUS_ACTIONS.get(event.status or "")
    if action is None:
        logger.info("Subscription status %r for business %s needs no transition", event.status, business.id)
        return ReconcileResult(ReconcileOutcome.UNCHANGED, business, event.event_type)
    return await _transition(db, business, action, event)


async def _on_checkout_completed(db: AsyncSession, business: Business, event: WebhookEvent) -> ReconcileResult:
    """Activate the subscription a hosted checkout created; redeliveries are no-ops."""
    if event.status not in CHECKOUT_PAID_STATUSES or not event.subscription_id:
        logger.info("Checkout for business %s not paid yet (%s)", business.id, event.status)
        return ReconcileResult(ReconcileOutcome.UNCHANGED, business, event.event_type)
    if business.subscription_id_for(event.provider) == event.subscription_id:
        return ReconcileResult(ReconcileOutcome.UNCHANGED, business, event.event_type)

    running = business.subscription_references()
    if business.subscription_status in (STATUS_ACTIVE, STATUS_PAST_DUE) and running:
        # Both subscriptions now bill the customer; the new one has to be refunded by hand
        logger.critical(
            "Checkout subscription %s for business %s arrived while %s is still running",
            event.subscription_id, business.id, running,
        )
        await record_history(
            db, business.id, type=HISTORY_SUBSCRIPTION_UPDATED, status="approved", provider=event.provider,
            amount=event.amount or 0, transaction_id=event.transaction_id,
            response_text=f"Checkout subscription {event.subscription_id} not applied: a subscription is running",
        )
        return ReconcileResult(ReconcileOutcome.UNCHANGED, business, event.event_type)

    await record_history(
        db, business.id, type=HISTORY_INITIAL_SUBSCRIPTION, status="approved", provider=event.provider,
        amount=event.amount or 0, transaction_id=event.transaction_id,
        response_text=f"Hosted checkout completed ({event.status})",
    )
    paid_at = now_utc()
    period_end = paid_at + timedelta(days=BILLING_PERIOD_DAYS)
    values = {
        "last_payment_date": paid_at,
        "next_billing_date": period_end,
        subscription_column(event.provider).key: event.subscription_id,
    }
    plan_name = event.plan_name or business.plan_name
    if event.plan_name:
        values["plan_name"] = event.plan_name
        values["plan_price"] = event.amount if event.amount is not None else PLAN_PRICES.get(event.plan_name)
    if event.customer_id and not business.vault_id_for(event.provider):
        values[vault_column(event.provider).key] = event.customer_id
    record_values = {
        "provider_subscription_id": event.subscription_id,
        "plan_name": plan_name,
        "current_period_start": paid_at,
        "current_period_end": period_end,
        "cancel_at_period_end": False,
    }
    return await _transition(db, business, "activate", event, values, record_values)


_HANDLERS = {
    EVENT_PAYMENT_SUCCESS: _on_payment_success,
    EVENT_PAYMENT_FAILED: _on_payment_failed,
    EVENT_SUBSCRIPTION_CANCELLED: _on_cancelled,
    EVENT_SUBSCRIPTION_DELETED: _on_deleted,
    EVENT_SUBSCRIPTION_UPDATED: _on_updated,
    EVENT_CHECKOUT_COMPLETED: _on_checkout_completed,
}


async def reconcile_event(db: AsyncSession, event: WebhookEvent) -> ReconcileResult:
    """Apply one verified provider event. Never raises for unknown events or subjects."""
    handler = _HANDLERS.get(event.event_type)
    if handler is None:
        logger.warning("Ignoring unhandled %s webhook event %r", event.provider, event.event_type)
        return ReconcileResult(ReconcileOutcome.IGNORED, event_type=event.event_type)

    business = await _find_business(db, event)
    if business is None:
        logger.warning(
            "No business for %s webhook %s (subscription %s, transaction %s)",
            event.provider, event.event_type, event.subscription_id, event.transaction_id,
        )
        return ReconcileResult(ReconcileOutcome.NOT_FOUND, event_type=event.event_type)

    if await _is_stale(db, business, event):
        logger.warning(
            "Out-of-order %s webhook for business %s (event at %s)", event.event_type, business.id, event.occurred_at
        )
        await record_history(
            db, business.id, type=HISTORY_SUBSCRIPTION_UPDATED, status="approved", provider=event.provider,
            transaction_id=event.transaction_id, amount=event.amount or 0,
            response_text=f"Out-of-order {event.event_type} event ignored",
        )
        return ReconcileResult(ReconcileOutcome.STALE, business, event.event_type)

    logger.info("Reconciling %s webhook %s for business %s", event.provider, event.event_type, business.id)
    return await handler(db, business, event)
