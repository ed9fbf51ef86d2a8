from datetime import timedelta

import pytest
from sqlalchemy import select, update

from listing_billing.constants import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAST_DUE,
    STATUS_PENDING,
)
from listing_billing.errors import PaymentDeclinedError, PaymentValidationError, StateConflictError
from listing_billing.models import Business, PaymentHistoryEntry, SubscriptionRecord
from listing_billing.providers.base import ChargeAttempt, ChargeStatus
from listing_billing.services.business_service import get_business
from listing_billing.services.charge_service import process_charge
from listing_billing.services.subscription_service import (
    can_transition,
    cancel_subscription,
    change_plan,
    check_can_subscribe,
    check_plan_price,
    is_entitled,
    next_status,
    settle_charge,
)
from listing_billing.utils import ensure_aware, now_utc

from conftest import make_card


async def _history(db, business_id: int) -> list[PaymentHistoryEntry]:
    result = await db.execute(
        select(PaymentHistoryEntry)
        .where(PaymentHistoryEntry.business_id == business_id)
        .order_by(PaymentHistoryEntry.id)
    )
    return list(result.scalars())


async def _set_status(db, business_id: int, status: str) -> None:
    # Behind the session's back, like a concurrent request would
    await db.execute(
        update(Business)
        .where(Business.id == business_id)
        .values(subscription_status=status)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


@pytest.mark.parametrize(
    "action,status,allowed",
    [
        ("activate", STATUS_PENDING, True),
        ("activate", STATUS_CANCELLED, True),
        ("renew", STATUS_PAST_DUE, True),
        ("renew", STATUS_CANCELLED, False),
        ("change_plan", STATUS_ACTIVE, True),
        ("change_plan", STATUS_CANCELLED, False),
        ("change_plan", STATUS_PENDING, False),
        ("mark_past_due", STATUS_PENDING, False),
        ("cancel", STATUS_PAST_DUE, True),
        ("cancel", STATUS_CANCELLED, False),
        ("terminate", STATUS_CANCELLED, True),
        ("terminate", STATUS_PENDING, False),
    ],
)
def test_transition_table(action, status, allowed):
    assert can_transition(action, status) is allowed


def test_illegal_transition_reports_current_status():
    with pytest.raises(StateConflictError) as exc_info:
        next_status("cancel", STATUS_PENDING)

    assert exc_info.value.details == {"current_status": STATUS_PENDING}


async def test_successful_plan_charge_activates(db, business, provider, settings):
    attempt = ChargeAttempt(amount=1200, card=make_card(), recurring=True)
    result = await process_charge(db, provider, attempt, settings=settings)

    updated = await settle_charge(db, business, result, recurring=True, plan_name="Starter Plan", plan_price=1200)

    assert updated.subscription_status == STATUS_ACTIVE
    assert updated.plan_name == "Starter Plan"
    assert updated.plan_price == 1200
    assert updated.ecom_customer_vault_id == "V-charge"
    assert updated.ecom_subscription_id == "S-100"
    assert updated.payment_method_last_four == "1111"
    assert ensure_aware(updated.next_billing_date) - ensure_aware(updated.last_payment_date) == timedelta(days=365)

    history = await _history(db, business.id)
    assert [(h.type, h.status, h.amount) for h in history] == [("initial_subscription", "approved", 1200)]

    record = (await db.execute(select(SubscriptionRecord))).scalar_one()
    assert record.provider_subscription_id == "S-100"
    assert record.status == STATUS_ACTIVE


async def test_declined_charge_is_recorded_without_status_change(db, business, provider, settings):
    provider.charge_status = ChargeStatus.DECLINED
    result = await process_charge(db, provider, ChargeAttempt(amount=1200, card=make_card()), settings=settings)

    updated = await settle_charge(db, business, result, recurring=True, plan_name="Starter Plan")

    assert updated.subscription_status == STATUS_PENDING
    history = await _history(db, business.id)
    assert [(h.type, h.status, h.provider_transaction_id) for h in history] == [
        ("initial_subscription", "declined", "tx-declined")
    ]


async def test_one_time_charge_does_not_activate(db, business, provider, settings):
    result = await process_charge(db, provider, ChargeAttempt(amount=500, card=make_card()), settings=settings)

    updated = await settle_charge(db, business, result, recurring=False)

    assert updated.subscription_status == STATUS_PENDING
    assert [h.type for h in await _history(db, business.id)] == ["one_time_payment"]


async def test_running_subscription_blocks_new_one(active_business):
    with pytest.raises(StateConflictError) as exc_info:
        check_can_subscribe(active_business)

    assert exc_info.value.code == "subscription_exists"
    assert exc_info.value.details["providers"] == ["ecom"]


async def test_subscription_on_other_provider_still_blocks(db, active_business):
    # Switching PAYMENT_PROVIDER to stripe must not allow a second subscription
    active_business.ecom_subscription_id = None
    active_business.stripe_subscription_id = "sub_running"
    await db.commit()

    with pytest.raises(StateConflictError) as exc_info:
        check_can_subscribe(active_business, "VIP Plan")

    assert exc_info.value.details["providers"] == ["stripe"]


async def test_same_plan_purchase_is_rejected_without_provider_subscription(db, active_business):
    active_business.ecom_subscription_id = None
    await db.commit()

    with pytest.raises(StateConflictError) as exc_info:
        check_can_subscribe(active_business, "Starter Plan")

    assert exc_info.value.code == "plan_already_active"
    check_can_subscribe(active_business, "VIP Plan")
    check_can_subscribe(active_business)


async def test_cancelled_business_may_subscribe_again(db, active_business):
    active_business.subscription_status = STATUS_CANCELLED
    await db.commit()

    check_can_subscribe(active_business, "Starter Plan")


def test_plan_price_is_checked_against_catalog():
    check_plan_price("VIP Plan", 9900)
    with pytest.raises(PaymentValidationError, match="99.00"):
        check_plan_price("VIP Plan", 100)
    with pytest.raises(PaymentValidationError) as exc_info:
        check_plan_price("Platinum Plan", 100)
    assert exc_info.value.code == "unknown_plan"


async def test_cancel_calls_provider_then_cancels(db, active_business, provider):
    outcome = await cancel_subscription(db, active_business, {"ecom": provider})

    assert outcome.provider_cancelled
    assert outcome.business.subscription_status == STATUS_CANCELLED
    assert provider.called("cancel_subscription") == [("cancel_subscription", "S-1")]
    record = (await db.execute(select(SubscriptionRecord))).scalar_one()
    assert record.cancel_at_period_end
    assert [h.type for h in await _history(db, active_business.id)] == ["subscription_cancellation"]


async def test_cancel_survives_provider_failure(db, active_business, provider):
    provider.cancel_ok = False

    outcome = await cancel_subscription(db, active_business, {"ecom": provider})

    assert not outcome.provider_cancelled
    assert "manually" in outcome.message
    assert outcome.business.subscription_status == STATUS_CANCELLED
    history = await _history(db, active_business.id)
    assert "provider cancellation failed" in history[0].response_text


async def test_cancel_skips_simulated_subscription(db, active_business, provider):
    await db.execute(
        update(Business).where(Business.id == active_business.id).values(ecom_subscription_id="sim_sub_abc")
    )
    await db.commit()
    business = await get_business(db, active_business.id)

    outcome = await cancel_subscription(db, business, {"ecom": provider})

    assert outcome.provider_cancelled
    assert provider.called("cancel_subscription") == []


async def test_cancel_requires_active_subscription(db, business, provider):
    with pytest.raises(PaymentValidationError) as exc_info:
        await cancel_subscription(db, business, {"ecom": provider})

    assert exc_info.value.code == "no_active_subscription"


async def test_cancel_applies_after_concurrent_past_due(db, active_business, provider):
    await _set_status(db, active_business.id, STATUS_PAST_DUE)

    outcome = await cancel_subscription(db, active_business, {"ecom": provider})

    assert outcome.business.subscription_status == STATUS_CANCELLED


async def test_upgrade_charges_difference_against_vault(db, active_business, provider):
    next_billing = ensure_aware(active_business.next_billing_date)

    outcome = await change_plan(db, active_business, provider, "Enhanced Plan", 6000)

    assert not outcome.is_downgrade
    assert outcome.amount == 4800
    charge = provider.called("charge")[0][1]
    assert charge.amount == 4800
    assert charge.vault_id == "V-existing"
    assert not charge.recurring

    business = outcome.business
    assert business.plan_name == "Enhanced Plan"
    assert business.plan_price == 6000
    assert business.subscription_status == STATUS_ACTIVE
    assert ensure_aware(business.next_billing_date) == next_billing
    history = await _history(db, active_business.id)
    assert [(h.type, h.amount) for h in history] == [("plan_upgrade", 4800)]


async def test_declined_upgrade_keeps_plan(db, active_business, provider):
    provider.charge_status = ChargeStatus.DECLINED

    with pytest.raises(PaymentDeclinedError):
        await change_plan(db, active_business, provider, "VIP Plan", 9900)

    business = await get_business(db, active_business.id)
    assert business.plan_name == "Starter Plan"
    history = await _history(db, active_business.id)
    assert [(h.type, h.status) for h in history] == [("plan_upgrade", "declined")]


async def test_downgrade_is_free(db, active_business, provider):
    await db.execute(
        update(Business).where(Business.id == active_business.id).values(plan_name="VIP Plan", plan_price=9900)
    )
    await db.commit()
    business = await get_business(db, active_business.id)

    outcome = await change_plan(db, business, provider, "Starter Plan", 1200)

    assert outcome.is_downgrade
    assert outcome.amount == 0
    assert outcome.transaction_id is None
    assert provider.calls == []
    assert outcome.business.plan_name == "Starter Plan"
    assert [h.type for h in await _history(db, business.id)] == ["plan_downgrade"]


async def test_same_price_is_rejected(db, active_business, provider):
    with pytest.raises(PaymentValidationError) as exc_info:
        await change_plan(db, active_business, provider, "Starter Plan", 1200)

    assert exc_info.value.code == "no_price_change"


async def test_upgrade_without_vault_needs_payment_method(db, provider):
    business = Business(
        name="No Vault Co", owner_id="owner-3", subscription_status=STATUS_ACTIVE,
        plan_name="Starter Plan", plan_price=1200,
    )
    db.add(business)
    await db.commit()

    with pytest.raises(PaymentValidationError) as exc_info:
        await change_plan(db, business, provider, "VIP Plan", 9900)

    assert exc_info.value.code == "payment_method_required"
    assert provider.calls == []


async def test_upgrade_with_new_card_stores_it_first(db, provider):
    business = Business(
        name="No Vault Co", owner_id="owner-3", subscription_status=STATUS_ACTIVE,
        plan_name="Starter Plan", plan_price=1200,
    )
    db.add(business)
    await db.commit()

    outcome = await change_plan(db, business, provider, "VIP Plan", 9900, card=make_card())

    assert [call[0] for call in provider.calls] == ["create_vault", "charge"]
    assert provider.called("charge")[0][1].vault_id == "V1"
    assert outcome.amount == 8700


async def test_upgrade_on_cancelled_is_rejected(db, active_business, provider):
    await _set_status(db, active_business.id, STATUS_CANCELLED)
    business = await get_business(db, active_business.id)

    with pytest.raises(StateConflictError):
        await change_plan(db, business, provider, "VIP Plan", 9900)

    assert provider.calls == []


async def test_upgrade_charged_but_cancelled_meanwhile(db, active_business, provider):
    # The session still believes the business is active
    await _set_status(db, active_business.id, STATUS_CANCELLED)

    with pytest.raises(StateConflictError) as exc_info:
        await change_plan(db, active_business, provider, "VIP Plan", 9900)

    assert exc_info.value.code == "charge_not_recorded"
    assert exc_info.value.details["transaction_id"] == "tx-1"
    business = await get_business(db, active_business.id)
    assert business.subscription_status == STATUS_CANCELLED
    assert business.plan_name == "Starter Plan"


def test_entitlement():
    now = now_utc()
    assert is_entitled(Business(subscription_status=STATUS_ACTIVE))
    assert is_entitled(Business(subscription_status=STATUS_PAST_DUE))
    assert not is_entitled(Business(subscription_status=STATUS_PENDING))
    assert is_entitled(
        Business(subscription_status=STATUS_CANCELLED, next_billing_date=now + timedelta(days=10)), at=now
    )
    assert not is_entitled(
        Business(subscription_status=STATUS_CANCELLED, next_billing_date=now - timedelta(days=1)), at=now
    )
