from datetime import timedelta

import pytest

from listing_billing.errors import PaymentValidationError
from listing_billing.models import DiscountCode
from listing_billing.services.discount_service import (
    compute_discount,
    redeem_discount,
    release_discount,
    validate_discount,
)
from listing_billing.utils import now_utc


async def _code(db, **kwargs) -> DiscountCode:
    values = {"code": "SAVE20", "discount_type": "percentage", "discount_value": 20, **kwargs}
    discount = DiscountCode(**values)
    db.add(discount)
    await db.commit()
    return discount


@pytest.mark.parametrize(
    "discount_type,value,amount,expected",
    [
        ("percentage", 20, 6000, 1200),
        ("percentage", 15, 1001, 150),  # 150.15 rounds down
        ("percentage", 50, 1, 1),  # 0.5 rounds up
        ("percentage", 150, 1200, 1200),
        ("fixed", 500, 1200, 500),
        ("fixed", 5000, 1200, 1200),
    ],
)
def test_compute_discount(discount_type, value, amount, expected):
    assert compute_discount(discount_type, value, amount) == expected


def test_compute_discount_unknown_type():
    with pytest.raises(ValueError):
        compute_discount("bogus", 10, 1000)


async def test_lookup_by_code_is_case_insensitive(db):
    discount = await _code(db)

    assert (await validate_discount(db, "save20")).id == discount.id
    assert (await validate_discount(db, str(discount.id))).id == discount.id


@pytest.mark.parametrize(
    "kwargs,message",
    [
        ({"is_active": False}, "Invalid discount code"),
        ({"max_uses": 2, "current_uses": 2}, "Discount code has reached its usage limit"),
        ({"applicable_plans": ["VIP Plan"]}, "Discount code does not apply to this plan"),
    ],
)
async def test_unusable_codes_are_rejected(db, kwargs, message):
    await _code(db, **kwargs)

    with pytest.raises(PaymentValidationError) as exc_info:
        await validate_discount(db, "SAVE20", plan_name="Starter Plan")

    assert exc_info.value.code == "invalid_discount"
    assert exc_info.value.message == message


async def test_expired_code_is_rejected(db):
    await _code(db, expires_at=now_utc() - timedelta(days=1))

    with pytest.raises(PaymentValidationError, match="expired"):
        await validate_discount(db, "SAVE20")


async def test_unknown_code_is_rejected(db):
    with pytest.raises(PaymentValidationError):
        await validate_discount(db, "NOPE")


async def test_redeem_reserves_a_use_and_release_returns_it(db):
    discount = await _code(db, max_uses=1)

    applied = await redeem_discount(db, "SAVE20", 6000, plan_name="Enhanced Plan")

    assert applied.discount_amount == 1200
    assert applied.final_amount == 4800
    await db.refresh(discount)
    assert discount.current_uses == 1

    with pytest.raises(PaymentValidationError):
        await redeem_discount(db, "SAVE20", 6000)

    await release_discount(db, applied)
    await db.refresh(discount)
    assert discount.current_uses == 0
