"""reminder engine schema

Revision ID: 20251019_01
Revises: None
Create Date: 2025-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20251019_01"
down_revision = None
branch_labels = None
depends_on = None

LIVE_STATUS_SQL = "status IN ('queued', 'scheduled', 'sent', 'snoozed')"


def upgrade() -> None:
    op.create_table(
        "reminders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("foreign_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="push"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_logged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_state", sa.String(length=32), nullable=True),
        sa.Column("payload_metadata", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_reminders_tenant_id", "reminders", ["tenant_id"])
    op.create_index("ix_reminders_scheduled_for", "reminders", ["scheduled_for"])
    op.create_index("ix_reminders_status_scheduled_for", "reminders", ["status", "scheduled_for"])
    op.create_index(
        "uq_reminders_live_dedup_key",
        "reminders",
        ["tenant_id", "type", "foreign_id"],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_SQL),
        sqlite_where=sa.text(LIVE_STATUS_SQL),
    )

    op.create_table(
        "reminder_interactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reminder_id", sa.String(length=36),
                  sa.ForeignKey("reminders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("acted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
    )
    op.create_index("ix_reminder_interactions_reminder_id", "reminder_interactions", ["reminder_id"])

    op.create_table(
        "reminder_preferences",
        sa.Column("tenant_id", sa.String(length=128), primary_key=True),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("default_lead_minutes", sa.Integer(), nullable=True, server_default="180"),
        sa.Column("inactivity_threshold_hours", sa.Integer(), nullable=False, server_default="72"),
        sa.Column("behaviour_lookback_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("quiet_start_hour", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quiet_end_hour", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("preferred_weekdays", sa.JSON(), nullable=False),
        sa.Column("snooze_durations_minutes", sa.JSON(), nullable=False),
        sa.Column("smart_reminders_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "reminder_analytics",
        sa.Column("tenant_id", sa.String(length=128), primary_key=True),
        sa.Column("preferred_hour_of_day", sa.Integer(), nullable=False, server_default="18"),
        sa.Column("preferred_day_of_week", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("average_completion_lead_hours", sa.Float(), nullable=False, server_default="6"),
        sa.Column("average_inactivity_hours", sa.Float(), nullable=False, server_default="96"),
        sa.Column("sample_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_computed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False, unique=True),
        sa.Column("p256dh", sa.Text(), nullable=False),
        sa.Column("auth", sa.Text(), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_push_subscriptions_tenant_id", "push_subscriptions", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_push_subscriptions_tenant_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")
    op.drop_table("reminder_analytics")
    op.drop_table("reminder_preferences")
    op.drop_index("ix_reminder_interactions_reminder_id", table_name="reminder_interactions")
    op.drop_table("reminder_interactions")
    op.drop_index("uq_reminders_live_dedup_key", table_name="reminders")
    op.drop_index("ix_reminders_status_scheduled_for", table_name="reminders")
    op.drop_index("ix_reminders_scheduled_for", table_name="reminders")
    op.drop_index("ix_reminders_tenant_id", table_name="reminders")
    op.drop_table("reminders")
