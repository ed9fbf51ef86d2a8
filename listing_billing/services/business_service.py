"""Business lookups shared by the payment services."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.errors import NotFoundError
from listing_billing.models.business import Business
from listing_billing.models.payment_history import PaymentHistoryEntry


def vault_column(provider: str):
    return Business.ecom_customer_vault_id if provider == "ecom" else Business.stripe_customer_id


def subscription_column(provider: str):
    return Business.ecom_subscription_id if provider == "ecom" else Business.stripe_subscription_id


async def get_business(db: AsyncSession, business_id: int) -> Business:
    """Fetch a business fresh from the database, or raise NotFoundError."""
    result = await db.execute(
        select(Business).where(Business.id == business_id).execution_options(populate_existing=True)
    )
    business = result.scalar_one_or_none()
    if not business:
        raise NotFoundError("Business not found")
    return business


async def find_by_subscription_id(db: AsyncSession, provider: str, subscription_id: str) -> Business | None:
    result = await db.execute(select(Business).where(subscription_column(provider) == subscription_id))
    return result.scalar_one_or_none()


async def find_by_transaction_id(db: AsyncSession, transaction_id: str) -> Business | None:
    """Resolve a business through the payment history entry that recorded the transaction."""
    result = await db.execute(
        select(Business)
        .join(PaymentHistoryEntry, PaymentHistoryEntry.business_id == Business.id)
        .where(PaymentHistoryEntry.provider_transaction_id == transaction_id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_by_reference(db: AsyncSession, reference: str | None) -> Business | None:
    """Resolve the business id a hosted checkout was opened with; junk references match nothing."""
    if not reference or not reference.isdigit():
        return None
    return await db.get(Business, int(reference), populate_existing=True)
