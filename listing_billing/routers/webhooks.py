"""Webhook routes — Ecom Payments and Stripe."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.constants import EVENT_CHECKOUT_COMPLETED, EVENT_PAYMENT_FAILED
from listing_billing.db.session import get_db
from listing_billing.providers import PaymentProvider, get_provider_registry
from listing_billing.schemas.payments import WebhookAck
from listing_billing.services.notification_service import send_payment_failed_notice, send_receipt
from listing_billing.services.reconciler import ReconcileOutcome, reconcile_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _handle(
    provider: PaymentProvider,
    request: Request,
    db: AsyncSession,
    background_tasks: BackgroundTasks,
) -> WebhookAck:
    payload = await request.body()
    # Raises WebhookVerificationError (401) before anything is read from the body
    event = provider.parse_webhook(payload, request.headers)
    logger.info("%s webhook: %s", provider.name, event.event_type or "<empty>")

    result = await reconcile_event(db, event)
    business = result.business
    if result.outcome == ReconcileOutcome.APPLIED and business:
        if event.event_type == EVENT_PAYMENT_FAILED:
            background_tasks.add_task(send_payment_failed_notice, business.email, business.name, business.plan_name)
        elif event.event_type == EVENT_CHECKOUT_COMPLETED:
            background_tasks.add_task(
                send_receipt, business.email, business.name, event.amount or 0, event.transaction_id, business.plan_name
            )
    return WebhookAck(outcome=result.outcome)


@router.post("/ecom", response_model=WebhookAck)
async def ecom_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
):
    return await _handle(providers["ecom"], request, db, background_tasks)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
):
    return await _handle(providers["stripe"], request, db, background_tasks)
