"""Create invoice/customer cache, reminder settings, and business profile tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "invoices_cache",
        sa.Column("invoice_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("invoice_number", sa.String(length=128), nullable=True),
        sa.Column("amount_total", sa.Float(), nullable=False, server_default="0"),
        sa.Column("balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("last_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("invoice_id"),
    )
    op.create_index("ix_invoices_cache_user_id", "invoices_cache", ["user_id"], unique=False)

    op.create_table(
        "customers_cache",
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("primary_phone", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("customer_id"),
    )
    op.create_index("ix_customers_cache_user_id", "customers_cache", ["user_id"], unique=False)

    op.create_table(
        "reminder_settings",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("smart_mode", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("manual_channel", sa.String(length=16), nullable=False, server_default="voice"),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("call_start_time", sa.String(length=8), nullable=False, server_default="09:00:00"),
        sa.Column("call_end_time", sa.String(length=8), nullable=False, server_default="18:00:00"),
        sa.Column("call_days_of_week_json", sa.Text(), nullable=False, server_default="[1,2,3,4,5]"),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("retry_delay_hours", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("language", sa.String(length=16), nullable=False, server_default="en"),
        sa.Column("voice_gender", sa.String(length=16), nullable=False, server_default="female"),
        sa.Column("standard_offsets_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("custom_reminder_days_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "business_profiles",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("company_name", sa.String(length=256), nullable=False),
        sa.Column("business_description", sa.Text(), nullable=True),
        sa.Column("industry", sa.String(length=128), nullable=True),
        sa.Column("support_phone", sa.String(length=64), nullable=False),
        sa.Column("support_email", sa.String(length=256), nullable=True),
        sa.Column("preferred_payment_methods_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )


def downgrade() -> None:
    op.drop_table("business_profiles")
    op.drop_table("reminder_settings")
    op.drop_index("ix_customers_cache_user_id", table_name="customers_cache")
    op.drop_table("customers_cache")
    op.drop_index("ix_invoices_cache_user_id", table_name="invoices_cache")
    op.drop_table("invoices_cache")
