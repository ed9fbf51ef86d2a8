import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from listing_billing.config import Settings
from listing_billing.constants import STATUS_ACTIVE
from listing_billing.models import Base, Business
from listing_billing.providers.base import (
    CancelResult,
    CardDetails,
    ChargeResult,
    ChargeStatus,
    VaultResult,
    user_message,
)
from listing_billing.utils import now_utc

VALID_EXPIRY = "12/35"


class FakeProvider:
    """Records every call and answers with canned results."""

    def __init__(self, name: str = "ecom", configured: bool = True):
        self.name = name
        self.configured = configured
        self.calls: list[tuple] = []
        self.charge_status = ChargeStatus.APPROVED
        self.vault_status = ChargeStatus.APPROVED
        self.cancel_ok = True
        self.subscription_id = "S-100"
        self.before_vault_result = None
        self._vault_seq = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    def called(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    async def charge(self, attempt):
        self.calls.append(("charge", attempt))
        if self.charge_status is ChargeStatus.DECLINED:
            return ChargeResult(
                success=False,
                status=ChargeStatus.DECLINED,
                amount=attempt.amount,
                provider=self.name,
                transaction_id="tx-declined",
                error_code="202",
                message=user_message("202"),
                raw_response="response=2&responsetext=DECLINE&response_code=202",
            )
        if self.charge_status is ChargeStatus.ERROR:
            return ChargeResult.error(attempt, self.name, raw_response="timeout", retryable=True)
        return ChargeResult(
            success=True,
            status=ChargeStatus.APPROVED,
            amount=attempt.amount,
            provider=self.name,
            transaction_id=f"tx-{len(self.calls)}",
            subscription_id=self.subscription_id if attempt.recurring else None,
            vault_id=attempt.vault_id or "V-charge",
            last_four=attempt.card.last_four if attempt.card else None,
            raw_response="response=1&responsetext=SUCCESS&response_code=100",
        )

    async def create_vault(self, card: CardDetails, billing):
        self.calls.append(("create_vault", card))
        self._vault_seq += 1
        return await self._vault_result(f"V{self._vault_seq}", card)

    async def update_vault(self, vault_id: str, card: CardDetails, billing):
        self.calls.append(("update_vault", vault_id, card))
        return await self._vault_result(vault_id, card)

    async def _vault_result(self, vault_id: str, card: CardDetails) -> VaultResult:
        if self.before_vault_result:
            await self.before_vault_result()
        if self.vault_status is not ChargeStatus.APPROVED:
            return VaultResult(
                success=False,
                status=self.vault_status,
                error_code="223",
                message=user_message("223"),
                raw_response="response=2&response_code=223",
            )
        return VaultResult(
            success=True,
            status=ChargeStatus.APPROVED,
            vault_id=vault_id,
            last_four=card.last_four,
            transaction_id=f"tx-vault-{vault_id}",
        )

    async def cancel_subscription(self, provider_subscription_id: str):
        self.calls.append(("cancel_subscription", provider_subscription_id))
        if self.cancel_ok:
            return CancelResult(success=True, raw_response="response=1")
        return CancelResult(success=False, message="Gateway unavailable", raw_response="timeout")


def make_card(number: str = "4111111111111111", cvv: str = "123") -> CardDetails:
    return CardDetails(card_number=number, expiry_date=VALID_EXPIRY, cvv=cvv, cardholder_name="Dana Reyes")


@pytest.fixture
def settings():
    return Settings(debug=True, environment="development")


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
async def business(db):
    business = Business(name="Acme Plumbing", owner_id="owner-1", email="owner@acme.test")
    db.add(business)
    await db.commit()
    return business


@pytest.fixture
async def active_business(db):
    paid_at = now_utc() - timedelta(days=30)
    business = Business(
        name="Bayside Bakery",
        owner_id="owner-2",
        email="hello@bayside.test",
        subscription_status=STATUS_ACTIVE,
        plan_name="Starter Plan",
        plan_price=1200,
        ecom_customer_vault_id="V-existing",
        ecom_subscription_id="S-1",
        payment_method_last_four="1111",
        last_payment_date=paid_at,
        next_billing_date=paid_at + timedelta(days=365),
    )
    db.add(business)
    await db.commit()
    return business


@pytest.fixture
def provider():
    return FakeProvider()
