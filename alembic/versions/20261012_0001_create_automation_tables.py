"""create automation tables

Revision ID: 20261012_0001
Revises:
Create Date: 2026-10-12 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261012_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "automations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("trigger_type", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automations_trigger_type", "automations", ["trigger_type"], unique=False)
    op.create_index("ix_automations_trigger_status", "automations", ["trigger_type", "status"], unique=False)
    op.create_index("ix_automations_status_updated_at", "automations", ["status", "updated_at"], unique=False)

    op.create_table(
        "automation_steps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("automation_id", sa.String(length=36), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("delay_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subject", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("html_body", sa.Text(), nullable=False),
        sa.Column("use_ai_generation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ai_purpose", sa.String(length=30), nullable=True),
        sa.Column("ai_topic", sa.String(length=200), nullable=True),
        sa.Column("skip_condition", sa.String(length=40), nullable=True),
        sa.ForeignKeyConstraint(["automation_id"], ["automations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("automation_id", "step_index", name="uq_automation_steps_automation_index"),
    )
    op.create_index("ix_automation_steps_automation_id", "automation_steps", ["automation_id"], unique=False)

    op.create_table(
        "automation_enrollments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("automation_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("next_send_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stop_reason", sa.String(length=30), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("claimed_by", sa.String(length=64), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["automation_id"], ["automations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "automation_id",
            "customer_id",
            name="uq_automation_enrollments_automation_customer",
        ),
    )
    op.create_index(
        "ix_automation_enrollments_automation_id",
        "automation_enrollments",
        ["automation_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_enrollments_customer_id",
        "automation_enrollments",
        ["customer_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_enrollments_status_next_send_at",
        "automation_enrollments",
        ["status", "next_send_at"],
        unique=False,
    )
    op.create_index(
        "ix_automation_enrollments_automation_enrolled_at",
        "automation_enrollments",
        ["automation_id", "enrolled_at"],
        unique=False,
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("segment", sa.String(length=20), nullable=False, server_default="new"),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_purchase_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("marketing_opt_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=False)
    op.create_index("ix_customers_segment_registered_at", "customers", ["segment", "registered_at"], unique=False)
    op.create_index("ix_customers_first_purchase_at", "customers", ["first_purchase_at"], unique=False)

    op.create_table(
        "delivery_records",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("idempotency_key", sa.String(length=80), nullable=False),
        sa.Column("automation_id", sa.String(length=36), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("provider", sa.String(length=60), nullable=False),
        sa.Column("provider_message_id", sa.String(length=160), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="failed"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["automation_id"], ["automations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_delivery_records_automation_id", "delivery_records", ["automation_id"], unique=False)
    op.create_index("ix_delivery_records_enrollment_id", "delivery_records", ["enrollment_id"], unique=False)
    op.create_index(
        "ix_delivery_records_automation_status",
        "delivery_records",
        ["automation_id", "status"],
        unique=False,
    )

    op.create_table(
        "trigger_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enrollments_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trigger_events_event_type", "trigger_events", ["event_type"], unique=False)
    op.create_index("ix_trigger_events_customer_id", "trigger_events", ["customer_id"], unique=False)
    op.create_index("ix_trigger_events_status_created_at", "trigger_events", ["status", "created_at"], unique=False)

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="warning"),
        sa.Column("title", sa.String(length=160), nullable=False),
        sa.Column("message", sa.String(length=1000), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alerts_type", "alerts", ["type"], unique=False)
    op.create_index("ix_alerts_is_read_created_at", "alerts", ["is_read", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_alerts_is_read_created_at", table_name="alerts")
    op.drop_index("ix_alerts_type", table_name="alerts")
    op.drop_table("alerts")

    op.drop_index("ix_trigger_events_status_created_at", table_name="trigger_events")
    op.drop_index("ix_trigger_events_customer_id", table_name="trigger_events")
    op.drop_index("ix_trigger_events_event_type", table_name="trigger_events")
    op.drop_table("trigger_events")

    op.drop_index("ix_delivery_records_automation_status", table_name="delivery_records")
    op.drop_index("ix_delivery_records_enrollment_id", table_name="delivery_records")
    op.drop_index("ix_delivery_records_automation_id", table_name="delivery_records")
    op.drop_table("delivery_records")

    op.drop_index("ix_customers_first_purchase_at", table_name="customers")
    op.drop_index("ix_customers_segment_registered_at", table_name="customers")
    op.drop_index("ix_customers_email", table_name="customers")
    op.drop_table("customers")

    op.drop_index("ix_automation_enrollments_automation_enrolled_at", table_name="automation_enrollments")
    op.drop_index("ix_automation_enrollments_status_next_send_at", table_name="automation_enrollments")
    op.drop_index("ix_automation_enrollments_customer_id", table_name="automation_enrollments")
    op.drop_index("ix_automation_enrollments_automation_id", table_name="automation_enrollments")
    op.drop_table("automation_enrollments")

    op.drop_index("ix_automation_steps_automation_id", table_name="automation_steps")
    op.drop_table("automation_steps")

    op.drop_index("ix_automations_status_updated_at", table_name="automations")
    op.drop_index("ix_automations_trigger_status", table_name="automations")
    op.drop_index("ix_automations_trigger_type", table_name="automations")
    op.drop_table("automations")
