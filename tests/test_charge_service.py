import pytest
from sqlalchemy import select

from listing_billing.config import Settings
from listing_billing.errors import PaymentDeclinedError, PaymentValidationError, ProviderError
from listing_billing.models import DiscountCode
from listing_billing.providers.base import CardDetails, ChargeAttempt, ChargeStatus
from listing_billing.services.charge_service import (
    is_test_card,
    process_charge,
    raise_for_result,
    validate_payment_method,
)

from conftest import FakeProvider, make_card


async def test_zero_amount_never_reaches_provider(db, provider, settings):
    result = await process_charge(db, provider, ChargeAttempt(amount=0), settings=settings)

    assert result.success
    assert result.transaction_id.startswith("free_")
    assert provider.calls == []


async def test_unconfigured_provider_is_simulated(db, settings):
    provider = FakeProvider(configured=False)

    result = await process_charge(
        db, provider, ChargeAttempt(amount=1200, card=make_card(), recurring=True), settings=settings
    )

    assert result.success
    assert result.simulated
    assert result.simulation_reason == "no credentials configured"
    assert result.transaction_id.startswith("sim_")
    assert result.subscription_id.startswith("sim_sub_")
    assert result.last_four == "1111"
    assert provider.calls == []


async def test_test_card_is_simulated_outside_production(db, provider, settings):
    result = await process_charge(
        db, provider, ChargeAttempt(amount=1200, card=make_card("4000 0000 0000 0002")), settings=settings
    )

    assert result.simulated
    assert result.simulation_reason == "designated test card"
    assert provider.calls == []


async def test_test_card_goes_to_provider_in_production(db, provider):
    production = Settings(debug=True, environment="production")

    result = await process_charge(
        db, provider, ChargeAttempt(amount=1200, card=make_card("4000000000000002")), settings=production
    )

    assert not result.simulated
    assert len(provider.called("charge")) == 1


async def test_discount_reduces_amount_sent(db, provider, settings):
    db.add(DiscountCode(code="SAVE20", discount_type="percentage", discount_value=20))
    await db.commit()

    result = await process_charge(
        db, provider, ChargeAttempt(amount=6000, card=make_card()), discount_code="SAVE20", settings=settings
    )

    assert result.amount == 4800
    sent = provider.called("charge")[0][1]
    assert sent.amount == 4800
    assert sent.metadata["discount_code"] == "SAVE20"


async def test_full_discount_is_free(db, provider, settings):
    db.add(DiscountCode(code="FREEYEAR", discount_type="percentage", discount_value=100))
    await db.commit()

    result = await process_charge(
        db, provider, ChargeAttempt(amount=1200, card=make_card()), discount_code="freeyear", settings=settings
    )

    assert result.amount == 0
    assert result.transaction_id.startswith("free_")
    assert provider.calls == []


async def test_invalid_discount_rejects_before_provider(db, provider, settings):
    with pytest.raises(PaymentValidationError) as exc_info:
        await process_charge(
            db, provider, ChargeAttempt(amount=6000, card=make_card()), discount_code="NOPE", settings=settings
        )

    assert exc_info.value.code == "invalid_discount"
    assert provider.calls == []


async def test_declined_charge_releases_discount(db, provider, settings):
    db.add(DiscountCode(code="SAVE20", discount_type="percentage", discount_value=20, max_uses=1))
    await db.commit()
    provider.charge_status = ChargeStatus.DECLINED

    result = await process_charge(
        db, provider, ChargeAttempt(amount=6000, card=make_card()), discount_code="SAVE20", settings=settings
    )

    assert result.status is ChargeStatus.DECLINED
    discount = (await db.execute(select(DiscountCode))).scalar_one()
    await db.refresh(discount)
    assert discount.current_uses == 0


async def test_invalid_card_rejected_before_provider(db, provider, settings):
    with pytest.raises(PaymentValidationError):
        await process_charge(
            db, provider, ChargeAttempt(amount=1200, card=make_card("1234")), settings=settings
        )

    assert provider.calls == []


def test_validate_payment_method_rules():
    ecom = FakeProvider("ecom")
    stripe = FakeProvider("stripe")

    with pytest.raises(PaymentValidationError):
        validate_payment_method(ecom, None)
    validate_payment_method(ecom, None, vault_id="V1")

    with pytest.raises(PaymentValidationError):
        validate_payment_method(ecom, CardDetails(token="pm_1"))
    validate_payment_method(stripe, CardDetails(token="pm_1"))

    with pytest.raises(PaymentValidationError):
        validate_payment_method(stripe, CardDetails(cardholder_name="Dana Reyes"))


def test_is_test_card():
    assert is_test_card(make_card("5555-5555-5555-4444"))
    assert not is_test_card(make_card())
    assert not is_test_card(None)


async def test_raise_for_result(db, provider, settings):
    provider.charge_status = ChargeStatus.DECLINED
    declined = await process_charge(db, provider, ChargeAttempt(amount=1200, card=make_card()), settings=settings)
    with pytest.raises(PaymentDeclinedError) as exc_info:
        raise_for_result(declined)
    assert exc_info.value.details["error_code"] == "202"

    provider.charge_status = ChargeStatus.ERROR
    failed = await process_charge(db, provider, ChargeAttempt(amount=1200, card=make_card()), settings=settings)
    with pytest.raises(ProviderError) as exc_info:
        raise_for_result(failed)
    assert exc_info.value.retryable
