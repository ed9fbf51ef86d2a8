"""PaymentHistoryEntry model — append-only payment audit log."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from listing_billing.constants import NO_TRANSACTION_ID
from listing_billing.utils import now_utc
from .base import Base


class PaymentHistoryEntry(Base):
    __tablename__ = "payment_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id"), nullable=False, index=True)
    provider: Mapped[str | None] = mapped_column(String(16), nullable=True)
    provider_transaction_id: Mapped[str] = mapped_column(
        String(64), nullable=False, default=NO_TRANSACTION_ID, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # cents
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    type: Mapped[str] = mapped_column(String(48), nullable=False)
    response_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc)

    business: Mapped["Business"] = relationship(back_populates="payments")
