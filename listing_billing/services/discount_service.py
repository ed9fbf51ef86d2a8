"""Discount codes — validate, compute, redeem and release.

Invalid or unredeemable codes always reject the charge; a payer is never
silently charged the undiscounted price.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.errors import PaymentValidationError
from listing_billing.models.discount_code import DiscountCode
from listing_billing.utils import ensure_aware, now_utc

logger = logging.getLogger(__name__)


@dataclass
class AppliedDiscount:
    discount_id: int
    code: str
    original_amount: int
    discount_amount: int

    @property
    def final_amount(self) -> int:
        return self.original_amount - self.discount_amount


def compute_discount(discount_type: str, discount_value: int, amount: int) -> int:
    """Discount in cents for an amount in cents. Percentages round half up."""
    if discount_type == "percentage":
        return min(amount, (amount * discount_value + 50) // 100)
    if discount_type == "fixed":
        return min(amount, discount_value)
    raise ValueError(f"Unknown discount type: {discount_type}")


def _invalid(message: str = "Invalid discount code") -> PaymentValidationError:
    return PaymentValidationError(message, code="invalid_discount")


async def validate_discount(db: AsyncSession, code_ref: str, plan_name: str | None = None) -> DiscountCode:
    """Look up a code by id or by (case-insensitive) code and check it is usable."""
    ref = code_ref.strip()
    if not ref:
        raise _invalid()
    clauses = [func.upper(DiscountCode.code) == ref.upper()]
    if ref.isdigit():
        clauses.append(DiscountCode.id == int(ref))
    result = await db.execute(select(DiscountCode).where(or_(*clauses)).limit(1))
    discount = result.scalar_one_or_none()

    if not discount or not discount.is_active:
        raise _invalid()
    expires_at = ensure_aware(discount.expires_at)
    if expires_at and expires_at <= now_utc():
        raise _invalid("Discount code has expired")
    if discount.max_uses is not None and discount.current_uses >= discount.max_uses:
        raise _invalid("Discount code has reached its usage limit")
    if discount.applicable_plans and plan_name not in discount.applicable_plans:
        raise _invalid("Discount code does not apply to this plan")
    return discount


async def redeem_discount(
    db: AsyncSession, code_ref: str, amount: int, plan_name: str | None = None
) -> AppliedDiscount:
    """Validate a code, compute its discount and reserve one use of it."""
    discount = await validate_discount(db, code_ref, plan_name)
    discount_amount = compute_discount(discount.discount_type, discount.discount_value, amount)
    if discount_amount <= 0:
        raise _invalid("Discount code does not reduce this amount")

    result = await db.execute(
        update(DiscountCode)
        .where(
            DiscountCode.id == discount.id,
            DiscountCode.is_active.is_(True),
            or_(DiscountCode.max_uses.is_(None), DiscountCode.current_uses < DiscountCode.max_uses),
        )
        .values(current_uses=DiscountCode.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise _invalid("Discount code is no longer available")
    await db.commit()

    logger.info("Redeemed discount %s: %s cents off %s", discount.code, discount_amount, amount)
    return AppliedDiscount(
        discount_id=discount.id,
        code=discount.code,
        original_amount=amount,
        discount_amount=discount_amount,
    )


async def release_discount(db: AsyncSession, applied: AppliedDiscount) -> None:
    """Give back a reserved use after the charge it was reserved for failed."""
    await db.execute(
        update(DiscountCode)
        .where(DiscountCode.id == applied.discount_id, DiscountCode.current_uses > 0)
        .values(current_uses=DiscountCode.current_uses - 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Released discount %s after failed charge", applied.code)
