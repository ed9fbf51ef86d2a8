"""Append-only payment history."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.constants import NO_TRANSACTION_ID
from listing_billing.models.payment_history import PaymentHistoryEntry
from listing_billing.providers.base import ChargeStatus

logger = logging.getLogger(__name__)

_HISTORY_STATUS = {
    ChargeStatus.APPROVED: "approved",
    ChargeStatus.DECLINED: "declined",
    ChargeStatus.ERROR: "failed",
}


def history_status(status: ChargeStatus) -> str:
    return _HISTORY_STATUS[status]


async def record_history(
    db: AsyncSession,
    business_id: int,
    type: str,
    status: str,
    provider: str | None = None,
    amount: int = 0,
    transaction_id: str | None = None,
    response_text: str | None = None,
) -> PaymentHistoryEntry:
    """Insert and commit one history row.

    Written before the business row is touched, so a failed row update still
    leaves the intent on record.
    """
    entry = PaymentHistoryEntry(
        business_id=business_id,
        provider=provider,
        provider_transaction_id=transaction_id or NO_TRANSACTION_ID,
        amount=amount,
        status=status,
        type=type,
        response_text=response_text,
    )
    db.add(entry)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Failed to record %s history for business %s", type, business_id)
        raise
    logger.info("History: business %s %s %s (%s cents)", business_id, type, status, amount)
    return entry
