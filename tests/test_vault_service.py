import pytest
from sqlalchemy import select, update

from listing_billing.errors import (
    NotFoundError,
    PaymentDeclinedError,
    PaymentValidationError,
    VaultInconsistencyError,
)
from listing_billing.models import Business, PaymentHistoryEntry
from listing_billing.providers.base import BillingInfo, ChargeStatus
from listing_billing.services.business_service import get_business
from listing_billing.services.vault_service import ensure_vault, update_payment_method

from conftest import make_card


async def _history(db, business_id: int) -> list[PaymentHistoryEntry]:
    result = await db.execute(
        select(PaymentHistoryEntry)
        .where(PaymentHistoryEntry.business_id == business_id)
        .order_by(PaymentHistoryEntry.id)
    )
    return list(result.scalars())


async def test_first_call_creates_then_second_updates(db, business, provider):
    first = await ensure_vault(db, business.id, provider, make_card("4000000000000002"), BillingInfo())

    assert first.created
    assert first.vault_id == "V1"
    assert first.last_four == "0002"

    second = await ensure_vault(db, business.id, provider, make_card("5555555555554444"), BillingInfo())

    assert not second.created
    assert second.vault_id == "V1"
    assert second.last_four == "4444"
    assert provider.called("update_vault")[0][1] == "V1"

    stored = await get_business(db, business.id)
    assert stored.ecom_customer_vault_id == "V1"
    assert stored.payment_method_last_four == "4444"

    history = await _history(db, business.id)
    assert [(h.type, h.status, h.amount) for h in history] == [
        ("vault_creation", "approved", 1),
        ("payment_method_update", "approved", 0),
    ]


async def test_declined_card_is_recorded_and_not_stored(db, business, provider):
    provider.vault_status = ChargeStatus.DECLINED

    with pytest.raises(PaymentDeclinedError) as exc_info:
        await ensure_vault(db, business.id, provider, make_card(), BillingInfo())

    assert exc_info.value.message == "Expired card"
    stored = await get_business(db, business.id)
    assert stored.ecom_customer_vault_id is None
    history = await _history(db, business.id)
    assert [(h.type, h.status) for h in history] == [("vault_creation", "declined")]


async def test_invalid_card_never_reaches_provider(db, business, provider):
    with pytest.raises(PaymentValidationError):
        await ensure_vault(db, business.id, provider, make_card(cvv="12"), BillingInfo())

    assert provider.calls == []
    assert await _history(db, business.id) == []


async def test_unknown_business(db, provider):
    with pytest.raises(NotFoundError):
        await ensure_vault(db, 999, provider, make_card(), BillingInfo())


async def test_concurrent_vault_write_is_reported(db, business, provider):
    business_id = business.id

    async def racing_writer():
        await db.execute(
            update(Business).where(Business.id == business_id).values(ecom_customer_vault_id="V-other")
        )
        await db.commit()

    provider.before_vault_result = racing_writer

    with pytest.raises(VaultInconsistencyError) as exc_info:
        await ensure_vault(db, business_id, provider, make_card(), BillingInfo())

    assert exc_info.value.vault_id == "V1"
    assert exc_info.value.to_dict()["customer_vault_id"] == "V1"
    stored = await get_business(db, business_id)
    assert stored.ecom_customer_vault_id == "V-other"


async def test_update_payment_method_requires_subscription(db, business, provider):
    with pytest.raises(PaymentValidationError) as exc_info:
        await update_payment_method(db, business.id, provider, make_card(), BillingInfo())

    assert exc_info.value.code == "no_active_subscription"
    assert provider.calls == []


async def test_update_payment_method_replaces_card(db, active_business, provider):
    outcome = await update_payment_method(
        db, active_business.id, provider, make_card("5105105105105100"), BillingInfo()
    )

    assert outcome.vault_id == "V-existing"
    assert outcome.last_four == "5100"
    history = await _history(db, active_business.id)
    assert [h.type for h in history] == ["payment_method_update"]
