"""Vault manager — store or replace a business's card with the provider."""

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from listing_billing.constants import (
    ECOM_VAULT_VERIFY_AMOUNT,
    HISTORY_PAYMENT_METHOD_UPDATE,
    HISTORY_VAULT_CREATION,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAST_DUE,
)
from listing_billing.errors import PaymentValidationError, VaultInconsistencyError
from listing_billing.models.business import Business
from listing_billing.providers.base import BillingInfo, CardDetails, PaymentProvider
from .business_service import get_business, vault_column
from .charge_service import raise_for_result, validate_payment_method
from .history_service import history_status, record_history

logger = logging.getLogger(__name__)

_UPDATABLE_STATUSES = (STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED)


@dataclass
class VaultOutcome:
    vault_id: str
    last_four: str | None
    created: bool


async def ensure_vault(
    db: AsyncSession,
    business_id: int,
    provider: PaymentProvider,
    card: CardDetails,
    billing: BillingInfo,
    history_type: str | None = None,
) -> VaultOutcome:
    """
    Create the business's vault with ``provider``, or replace the card in the existing one.

    The business row is re-read here rather than trusted from the caller, and
    the token is written with a conditional update, so two concurrent calls
    cannot both record a freshly created vault.

    Raises:
        NotFoundError: unknown business.
        PaymentValidationError: unusable card data.
        PaymentDeclinedError / ProviderError: the provider refused or failed.
        VaultInconsistencyError: the vault exists provider-side but was not recorded.
    """
    business = await get_business(db, business_id)
    validate_payment_method(provider, card)

    existing = business.vault_id_for(provider.name)
    if existing:
        result = await provider.update_vault(existing, card, billing)
    else:
        result = await provider.create_vault(card, billing)
    created = not existing
    # Vault creation on the legacy gateway is a real micro-charge
    amount = ECOM_VAULT_VERIFY_AMOUNT if created and provider.name == "ecom" else 0

    await record_history(
        db,
        business_id,
        type=history_type or (HISTORY_VAULT_CREATION if created else HISTORY_PAYMENT_METHOD_UPDATE),
        status=history_status(result.status),
        provider=provider.name,
        amount=amount,
        transaction_id=result.transaction_id,
        response_text=result.raw_response or result.message,
    )
    raise_for_result(result)

    vault_id = existing or result.vault_id
    last_four = result.last_four or card.last_four
    column = vault_column(provider.name)
    stmt = update(Business).where(Business.id == business_id)
    if created:
        stmt = stmt.where(column.is_(None)).values({column.key: vault_id, "payment_method_last_four": last_four})
    else:
        stmt = stmt.where(column == existing).values(payment_method_last_four=last_four)

    failure = None
    try:
        rows = (await db.execute(stmt.execution_options(synchronize_session=False))).rowcount
        if rows:
            await db.commit()
        else:
            failure = "vault reference changed concurrently"
    except SQLAlchemyError as e:
        failure = str(e)

    if failure:
        await db.rollback()
        logger.critical(
            "Vault %s exists at %s but could not be recorded for business %s: %s",
            vault_id, provider.name, business_id, failure,
        )
        raise VaultInconsistencyError(
            "Payment method was stored with the provider but could not be saved. Support has been notified.",
            vault_id=vault_id,
        )

    logger.info(
        "%s %s vault %s for business %s (card ending %s)",
        "Created" if created else "Updated", provider.name, vault_id, business_id, last_four,
    )
    return VaultOutcome(vault_id=vault_id, last_four=last_four, created=created)


async def update_payment_method(
    db: AsyncSession,
    business_id: int,
    provider: PaymentProvider,
    card: CardDetails,
    billing: BillingInfo,
) -> VaultOutcome:
    """Replace the card on file; allowed while active, past due, or cancelled but entitled."""
    business = await get_business(db, business_id)
    if business.subscription_status not in _UPDATABLE_STATUSES:
        raise PaymentValidationError(
            "No subscription to update the payment method for",
            code="no_active_subscription",
        )
    return await ensure_vault(db, business_id, provider, card, billing, history_type=HISTORY_PAYMENT_METHOD_UPDATE)
