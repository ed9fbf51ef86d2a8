"""Business model — the subscribing entity and its provider references."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from listing_billing.constants import STATUS_PENDING
from listing_billing.utils import now_utc
from .base import Base


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Subscription state, written only by the subscription state machine
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default=STATUS_PENDING)
    plan_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    plan_price: Mapped[int | None] = mapped_column(Integer, nullable=True)  # cents

    # At most one vault / subscription reference per provider
    ecom_customer_vault_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    ecom_subscription_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)

    payment_method_last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    # Relationships
    subscriptions: Mapped[list["SubscriptionRecord"]] = relationship(back_populates="business")
    payments: Mapped[list["PaymentHistoryEntry"]] = relationship(back_populates="business")

    def vault_id_for(self, provider: str) -> str | None:
        return self.ecom_customer_vault_id if provider == "ecom" else self.stripe_customer_id

    def subscription_id_for(self, provider: str) -> str | None:
        return self.ecom_subscription_id if provider == "ecom" else self.stripe_subscription_id

    def subscription_references(self) -> dict[str, str]:
        """Provider subscription ids currently recorded, keyed by provider."""
        refs = {"ecom": self.ecom_subscription_id, "stripe": self.stripe_subscription_id}
        return {name: sub_id for name, sub_id in refs.items() if sub_id}
