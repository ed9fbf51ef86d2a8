"""Initial schema — businesses, subscription_records, payment_history, discount_codes.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- businesses ---
    op.create_table(
        "businesses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("subscription_status", sa.String(32), server_default="pending", nullable=False),
        sa.Column("plan_name", sa.String(64), nullable=True),
        sa.Column("plan_price", sa.Integer(), nullable=True),
        sa.Column("ecom_customer_vault_id", sa.String(64), nullable=True),
        sa.Column("ecom_subscription_id", sa.String(64), nullable=True),
        sa.Column("stripe_customer_id", sa.String(64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(64), nullable=True),
        sa.Column("payment_method_last_four", sa.String(4), nullable=True),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_businesses"),
        sa.UniqueConstraint("ecom_customer_vault_id", name="uq_businesses_ecom_customer_vault_id"),
        sa.UniqueConstraint("ecom_subscription_id", name="uq_businesses_ecom_subscription_id"),
        sa.UniqueConstraint("stripe_customer_id", name="uq_businesses_stripe_customer_id"),
        sa.UniqueConstraint("stripe_subscription_id", name="uq_businesses_stripe_subscription_id"),
    )
    op.create_index("ix_businesses_owner_id", "businesses", ["owner_id"])
    op.create_index("ix_businesses_email", "businesses", ["email"])

    # --- subscription_records ---
    op.create_table(
        "subscription_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("provider_subscription_id", sa.String(64), nullable=True),
        sa.Column("plan_name", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), server_default="pending", nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], name="fk_subscription_records_business_id_businesses"),
        sa.PrimaryKeyConstraint("id", name="pk_subscription_records"),
        sa.UniqueConstraint("provider_subscription_id", name="uq_subscription_records_provider_subscription_id"),
    )
    op.create_index("ix_subscription_records_business_id", "subscription_records", ["business_id"])

    # --- payment_history (insert-only) ---
    op.create_table(
        "payment_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(16), nullable=True),
        sa.Column("provider_transaction_id", sa.String(64), server_default="no_transaction_id", nullable=False),
        sa.Column("amount", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("type", sa.String(48), nullable=False),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], name="fk_payment_history_business_id_businesses"),
        sa.PrimaryKeyConstraint("id", name="pk_payment_history"),
    )
    op.create_index("ix_payment_history_business_id", "payment_history", ["business_id"])
    op.create_index("ix_payment_history_provider_transaction_id", "payment_history", ["provider_transaction_id"])

    # --- discount_codes ---
    op.create_table(
        "discount_codes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("discount_type", sa.String(16), nullable=False),
        sa.Column("discount_value", sa.Integer(), nullable=False),
        sa.Column("applicable_plans", sa.JSON(), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), server_default="0", nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_discount_codes"),
        sa.UniqueConstraint("code", name="uq_discount_codes_code"),
    )


def downgrade() -> None:
    op.drop_table("discount_codes")
    op.drop_table("payment_history")
    op.drop_table("subscription_records")
    op.drop_table("businesses")
