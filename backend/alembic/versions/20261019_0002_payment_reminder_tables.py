"""Create payment reminder, scheduler run, and outbound throttle tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payment_reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("reminder_type", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_id", sa.String(length=256), nullable=True),
        sa.Column("call_outcome_json", sa.Text(), nullable=True),
        sa.Column("skip_reason", sa.Text(), nullable=True),
        sa.Column("dispatch_phase", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
        sa.CheckConstraint("channel IN ('sms', 'voice')", name="ck_payment_reminders_channel"),
    )
    op.create_index("ix_payment_reminders_invoice_id", "payment_reminders", ["invoice_id"], unique=False)
    op.create_index("ix_payment_reminders_user_id", "payment_reminders", ["user_id"], unique=False)
    op.create_index("ix_payment_reminders_scheduled_date", "payment_reminders", ["scheduled_date"], unique=False)
    op.create_index("ix_payment_reminders_status", "payment_reminders", ["status"], unique=False)
    op.create_index("ix_payment_reminders_external_id", "payment_reminders", ["external_id"], unique=False)

    op.create_table(
        "reminder_scheduler_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dispatched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deferred", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timed_out", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requeued", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_rate", sa.Float(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "ix_reminder_scheduler_runs_started_at",
        "reminder_scheduler_runs",
        ["started_at"],
        unique=False,
    )

    op.create_table(
        "outbound_send_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("throttle_key", sa.String(length=160), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbound_send_events_throttle_key", "outbound_send_events", ["throttle_key"], unique=False)
    op.create_index("ix_outbound_send_events_sent_at", "outbound_send_events", ["sent_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_outbound_send_events_sent_at", table_name="outbound_send_events")
    op.drop_index("ix_outbound_send_events_throttle_key", table_name="outbound_send_events")
    op.drop_table("outbound_send_events")
    op.drop_index("ix_reminder_scheduler_runs_started_at", table_name="reminder_scheduler_runs")
    op.drop_table("reminder_scheduler_runs")
    op.drop_index("ix_payment_reminders_external_id", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_status", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_scheduled_date", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_user_id", table_name="payment_reminders")
    op.drop_index("ix_payment_reminders_invoice_id", table_name="payment_reminders")
    op.drop_table("payment_reminders")
