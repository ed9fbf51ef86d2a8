"""Payment routes — vault, charge, cancel, payment-method update, plan change, hosted checkout."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.config import get_settings
from listing_billing.constants import CHECKOUT_PAID_STATUSES, PLAN_PRICES
from listing_billing.db.session import get_db
from listing_billing.errors import NotFoundError, PaymentValidationError
from listing_billing.models.business import Business
from listing_billing.providers import (
    BillingInfo,
    ChargeAttempt,
    ChargeResult,
    PaymentProvider,
    get_payment_provider,
    get_provider_registry,
)
from listing_billing.schemas.payments import (
    BusinessRef,
    CancelResponse,
    ChargeRequest,
    ChargeResponse,
    CheckoutSessionRequest,
    CheckoutVerification,
    HostedSessionResponse,
    PortalSessionRequest,
    SubscriptionStatusResponse,
    UpdatePaymentMethodRequest,
    UpdatePaymentMethodResponse,
    UpgradePlanRequest,
    UpgradePlanResponse,
    VaultRequest,
    VaultResponse,
)
from listing_billing.services.auth_service import get_current_owner
from listing_billing.services.business_service import find_by_reference, get_business
from listing_billing.services.charge_service import process_charge
from listing_billing.services.notification_service import (
    send_cancellation_notice,
    send_payment_method_updated,
    send_plan_change_notice,
    send_receipt,
)
from listing_billing.services.reconciler import ReconcileOutcome, reconcile_event
from listing_billing.services.subscription_service import (
    cancel_subscription,
    change_plan,
    check_can_subscribe,
    check_plan_price,
    is_entitled,
    settle_charge,
)
from listing_billing.services.vault_service import ensure_vault, update_payment_method
from listing_billing.utils import cents_to_major

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])

_FAILURE_STATUS = {"declined": 402, "error": 502}


async def _owned_business(db: AsyncSession, business_id: int, owner_id: str) -> Business:
    business = await get_business(db, business_id)
    if business.owner_id != owner_id:
        logger.warning("Owner %s attempted to manage billing of business %s", owner_id, business.id)
        raise HTTPException(status_code=403, detail="Not the owner of this business")
    return business


def _checkout_provider(providers: dict[str, PaymentProvider]):
    """Hosted checkout and the billing portal exist on Stripe only, whatever PAYMENT_PROVIDER says."""
    provider = providers.get("stripe")
    if provider is None or not provider.is_configured:
        raise PaymentValidationError("Hosted checkout is not available", code="checkout_unavailable")
    return provider


def _charge_response(result: ChargeResult, requested: int) -> ChargeResponse:
    return ChargeResponse(
        success=result.success,
        status=result.status,
        transaction_id=result.transaction_id,
        subscription_id=result.subscription_id,
        amount=cents_to_major(result.amount),
        amount_cents=result.amount,
        discount_cents=requested - result.amount,
        currency=result.currency,
        last4=result.last_four,
        message=result.message,
        error_code=result.error_code,
        retryable=result.retryable,
        simulated=result.simulated,
        simulation_reason=result.simulation_reason,
    )


@router.post("/vault", response_model=VaultResponse)
async def create_vault(
    body: VaultRequest,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    business = await get_business(db, body.business_id)
    outcome = await ensure_vault(
        db,
        business.id,
        provider,
        body.payment_method.to_card(),
        body.payment_method.to_billing(business.email),
    )
    return VaultResponse(customer_vault_id=outcome.vault_id, last4=outcome.last_four, created=outcome.created)


@router.post("/charge", response_model=ChargeResponse)
async def charge(
    body: ChargeRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    business = None
    vault_id = None
    if body.business_id is not None:
        business = await get_business(db, body.business_id)
        if body.is_recurring or body.plan_name:
            check_can_subscribe(business, body.plan_name)
        vault_id = business.vault_id_for(provider.name)
    if body.plan_name:
        check_plan_price(body.plan_name, body.amount)

    card = body.payment_method.to_card() if body.payment_method else None
    if body.payment_method:
        billing = body.payment_method.to_billing(body.customer_email)
    else:
        billing = BillingInfo(email=body.customer_email or "")
    if business and vault_id and card is not None:
        # New card for a business with a vault: replace the vaulted card, never open a second vault
        outcome = await ensure_vault(db, business.id, provider, card, billing)
        vault_id = outcome.vault_id
    metadata = {}
    if business:
        metadata["business_id"] = str(business.id)
    if body.plan_name:
        metadata["plan"] = body.plan_name
    try:
        attempt = ChargeAttempt(
            amount=body.amount,
            currency=body.currency,
            description=body.description or (f"{body.plan_name} subscription" if body.plan_name else ""),
            card=card,
            vault_id=vault_id,
            metadata=metadata,
            billing=billing,
            recurring=body.is_recurring,
        )
    except ValueError as e:
        raise PaymentValidationError(str(e).capitalize())

    result = await process_charge(db, provider, attempt, discount_code=body.discount_code_id, plan_name=body.plan_name)
    if business:
        business = await settle_charge(
            db,
            business,
            result,
            recurring=body.is_recurring,
            plan_name=body.plan_name,
            plan_price=body.amount if body.plan_name else None,
        )

    response = _charge_response(result, body.amount)
    if not result.success:
        return JSONResponse(status_code=_FAILURE_STATUS[result.status], content=response.model_dump(mode="json"))

    receipt_to = body.customer_email or (business.email if business else None)
    if result.amount > 0:
        background_tasks.add_task(
            send_receipt,
            receipt_to,
            business.name if business else "your business",
            result.amount,
            result.transaction_id,
            body.plan_name,
            body.description or "Subscription payment",
        )
    return response


@router.post("/cancel-subscription", response_model=CancelResponse)
async def cancel(
    body: BusinessRef,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
):
    business = await get_business(db, body.business_id)
    outcome = await cancel_subscription(db, business, providers)
    business = outcome.business
    background_tasks.add_task(
        send_cancellation_notice, business.email, business.name, business.plan_name, business.next_billing_date
    )
    return CancelResponse(
        message=outcome.message,
        provider_cancelled=outcome.provider_cancelled,
        subscription_status=business.subscription_status,
    )


@router.post("/update-payment-method", response_model=UpdatePaymentMethodResponse)
async def update_card(
    body: UpdatePaymentMethodRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    business = await get_business(db, body.business_id)
    outcome = await update_payment_method(
        db,
        business.id,
        provider,
        body.payment_method.to_card(),
        body.payment_method.to_billing(business.email),
    )
    background_tasks.add_task(send_payment_method_updated, business.email, business.name, outcome.last_four)
    return UpdatePaymentMethodResponse(last4=outcome.last_four, customer_vault_id=outcome.vault_id)


@router.post("/upgrade-plan", response_model=UpgradePlanResponse)
async def upgrade_plan(
    body: UpgradePlanRequest,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    business = await _owned_business(db, body.business_id, owner_id)
    if body.current_plan != business.plan_name:
        raise PaymentValidationError(
            f"Current plan is {business.plan_name or 'none'}, not {body.current_plan}",
            code="plan_mismatch",
        )

    card = body.payment_method.to_card() if body.payment_method else None
    billing = body.payment_method.to_billing(business.email) if body.payment_method else None
    outcome = await change_plan(
        db,
        business,
        provider,
        body.new_plan,
        body.plan_price,
        card=card,
        billing=billing,
        discount_code=body.discount_code,
    )
    background_tasks.add_task(
        send_plan_change_notice,
        outcome.business.email,
        outcome.business.name,
        body.current_plan,
        body.new_plan,
        outcome.amount,
        outcome.is_downgrade,
        outcome.transaction_id,
    )
    return UpgradePlanResponse(
        transaction_id=outcome.transaction_id,
        new_plan=body.new_plan,
        upgrade_amount=cents_to_major(outcome.amount),
        upgrade_amount_cents=outcome.amount,
        is_downgrade=outcome.is_downgrade,
        simulated=outcome.simulated,
    )


@router.get("/subscription/{business_id}", response_model=SubscriptionStatusResponse)
async def subscription_status(
    business_id: int,
    owner_id: str = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    business = await _owned_business(db, business_id, owner_id)
    return SubscriptionStatusResponse(
        business_id=business.id,
        subscription_status=business.subscription_status,
        plan_name=business.plan_name,
        plan_price_cents=business.plan_price if business.plan_price is not None else PLAN_PRICES.get(business.plan_name),
        last4=business.payment_method_last_four,
        last_payment_date=business.last_payment_date,
        next_billing_date=business.next_billing_date,
        entitled=is_entitled(business),
    )


@router.post("/create-checkout-session", response_model=HostedSessionResponse)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    owner_id: str = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
):
    business = await _owned_business(db, body.business_id, owner_id)
    check_plan_price(body.plan_name, body.plan_price)
    check_can_subscribe(business, body.plan_name)
    stripe_provider = _checkout_provider(providers)

    app_url = get_settings().app_url
    session = await stripe_provider.create_checkout_session(
        business.id,
        body.plan_name,
        body.plan_price,
        success_url=body.success_url or f"{app_url}/dashboard?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=body.cancel_url or f"{app_url}/dashboard?checkout=cancelled",
        customer_id=business.stripe_customer_id,
        customer_email=business.email,
    )
    return HostedSessionResponse(url=session.url, session_id=session.id)


@router.post("/create-customer-portal-session", response_model=HostedSessionResponse)
async def create_customer_portal_session(
    body: PortalSessionRequest,
    owner_id: str = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
):
    business = await _owned_business(db, body.business_id, owner_id)
    if not business.stripe_customer_id:
        raise PaymentValidationError("This business has no Stripe billing account", code="no_billing_account")
    stripe_provider = _checkout_provider(providers)

    session = await stripe_provider.create_portal_session(
        business.stripe_customer_id, body.return_url or f"{get_settings().app_url}/dashboard"
    )
    return HostedSessionResponse(url=session.url, session_id=session.id)


@router.get("/verify-checkout-session", response_model=CheckoutVerification)
async def verify_checkout_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
):
    """Settle a checkout on the owner's return instead of waiting for the webhook."""
    stripe_provider = _checkout_provider(providers)
    event = await stripe_provider.retrieve_checkout_event(session_id)
    business = await find_by_reference(db, event.business_reference)
    if business is None:
        raise NotFoundError("Checkout session is not linked to a business")
    if business.owner_id != owner_id:
        raise HTTPException(status_code=403, detail="Not the owner of this business")

    result = await reconcile_event(db, event)
    business = await get_business(db, business.id)
    if result.outcome == ReconcileOutcome.APPLIED:
        background_tasks.add_task(
            send_receipt, business.email, business.name, event.amount or 0, event.transaction_id, business.plan_name
        )
    return CheckoutVerification(
        paid=event.status in CHECKOUT_PAID_STATUSES,
        business_id=business.id,
        subscription_status=business.subscription_status,
        outcome=result.outcome,
    )
