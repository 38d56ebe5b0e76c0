"""
subscription scheduling and billing

Revision ID: 0001_subscription_billing
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_subscription_billing"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "businesses",
        sa.Column("business_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        *_timestamps(updated=False),
    )

    op.create_table(
        "service_plans",
        sa.Column("service_plan_id", sa.String(length=36), primary_key=True),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("base_price_cents", sa.Integer(), nullable=False),
        sa.Column("billing_model", sa.String(length=16), nullable=False),
        sa.Column("default_frequency", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_service_plans_business_id", "service_plans", ["business_id"])

    op.create_table(
        "customers",
        sa.Column("customer_id", sa.String(length=36), primary_key=True),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("address_line1", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=100), nullable=True),
        sa.Column("zip", sa.String(length=20), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_customers_business_id", "customers", ["business_id"])

    op.create_table(
        "number_sequences",
        sa.Column("sequence_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("last_number", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("business_id", "kind", name="uq_number_sequences_business_kind"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(length=36), primary_key=True),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("customer_id", sa.String(length=36), sa.ForeignKey("customers.customer_id"), nullable=False),
        sa.Column(
            "service_plan_id", sa.String(length=36), sa.ForeignKey("service_plans.service_plan_id"), nullable=True
        ),
        sa.Column("subscription_number", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("previous_status", sa.String(length=16), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("frequency", sa.String(length=16), nullable=False),
        sa.Column("billing_model", sa.String(length=16), nullable=False),
        sa.Column("price_per_visit_cents", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("pause_start_date", sa.Date(), nullable=True),
        sa.Column("pause_end_date", sa.Date(), nullable=True),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        sa.Column("preferred_day_of_week", sa.Integer(), nullable=True),
        sa.Column("preferred_time_start", sa.Time(), nullable=True),
        sa.Column("preferred_time_end", sa.Time(), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("next_service_date", sa.Date(), nullable=True),
        sa.Column("next_billing_date", sa.Date(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("allow_customer_skip", sa.Boolean(), nullable=False),
        sa.Column("max_customer_skips_per_year", sa.Integer(), nullable=False),
        sa.Column("total_jobs_generated", sa.Integer(), nullable=False),
        sa.Column("total_invoices_generated", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("business_id", "subscription_number", name="uq_subscriptions_business_number"),
    )
    op.create_index("ix_subscriptions_business_id", "subscriptions", ["business_id"])
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    op.create_index("ix_subscriptions_status_next_billing", "subscriptions", ["status", "next_billing_date"])

    op.create_table(
        "subscription_line_items",
        sa.Column("line_item_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "subscription_id",
            sa.String(length=36),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
    )
    op.create_index("ix_subscription_line_items_subscription_id", "subscription_line_items", ["subscription_id"])

    op.create_table(
        "subscription_schedules",
        sa.Column("schedule_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(length=36),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("preferred_time_start", sa.Time(), nullable=True),
        sa.Column("preferred_time_end", sa.Time(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("invoice_id", sa.String(length=36), nullable=True),
        sa.Column("skipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("skipped_by", sa.String(length=100), nullable=True),
        sa.Column("skip_reason", sa.Text(), nullable=True),
        sa.Column("is_customer_skip", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("subscription_id", "scheduled_date", name="uq_subscription_schedules_date"),
    )
    op.create_index(
        "ix_subscription_schedules_status_date", "subscription_schedules", ["status", "scheduled_date"]
    )

    op.create_table(
        "subscription_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.String(length=36),
            sa.ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("business_id", sa.String(length=36), nullable=False),
        sa.Column("schedule_id", sa.String(length=36), nullable=True),
        sa.Column("job_id", sa.String(length=36), nullable=True),
        sa.Column("invoice_id", sa.String(length=36), nullable=True),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_subscription_events_subscription_id", "subscription_events", ["subscription_id"])

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(length=36), primary_key=True),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("customer_id", sa.String(length=36), sa.ForeignKey("customers.customer_id"), nullable=False),
        sa.Column("job_number", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("address_line1", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=100), nullable=True),
        sa.Column("zip", sa.String(length=20), nullable=True),
        sa.Column(
            "subscription_id", sa.String(length=36), sa.ForeignKey("subscriptions.subscription_id"), nullable=True
        ),
        sa.Column(
            "subscription_schedule_id",
            sa.String(length=36),
            sa.ForeignKey("subscription_schedules.schedule_id"),
            nullable=True,
            unique=True,
        ),
        sa.Column("needs_invoice", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("invoice_id", sa.String(length=36), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("business_id", "job_number", name="uq_jobs_business_number"),
    )
    op.create_index("ix_jobs_customer_id", "jobs", ["customer_id"])
    op.create_index("ix_jobs_subscription_id", "jobs", ["subscription_id"])
    op.create_index("ix_jobs_needs_invoice", "jobs", ["needs_invoice", "status"])

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(length=36), primary_key=True),
        sa.Column("business_id", sa.String(length=36), sa.ForeignKey("businesses.business_id"), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("customer_id", sa.String(length=36), sa.ForeignKey("customers.customer_id"), nullable=False),
        sa.Column(
            "subscription_id", sa.String(length=36), sa.ForeignKey("subscriptions.subscription_id"), nullable=True
        ),
        sa.Column("subscription_schedule_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("billing_period_start", sa.Date(), nullable=True),
        sa.Column("billing_period_end", sa.Date(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("business_id", "invoice_number", name="uq_invoices_business_number"),
    )
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])
    op.create_index("ix_invoices_subscription_period", "invoices", ["subscription_id", "billing_period_start"])

    op.create_table(
        "invoice_items",
        sa.Column("item_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("invoice_id", sa.String(length=36), sa.ForeignKey("invoices.invoice_id"), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
    )
    op.create_index("ix_invoice_items_invoice_id", "invoice_items", ["invoice_id"])

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_status", sa.String(length=16), nullable=False),
        sa.Column("loops", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_invoice_items_invoice_id", table_name="invoice_items")
    op.drop_table("invoice_items")
    op.drop_index("ix_invoices_subscription_period", table_name="invoices")
    op.drop_index("ix_invoices_subscription_id", table_name="invoices")
    op.drop_index("ix_invoices_customer_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_jobs_needs_invoice", table_name="jobs")
    op.drop_index("ix_jobs_subscription_id", table_name="jobs")
    op.drop_index("ix_jobs_customer_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_subscription_events_subscription_id", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_subscription_schedules_status_date", table_name="subscription_schedules")
    op.drop_table("subscription_schedules")
    op.drop_index("ix_subscription_line_items_subscription_id", table_name="subscription_line_items")
    op.drop_table("subscription_line_items")
    op.drop_index("ix_subscriptions_status_next_billing", table_name="subscriptions")
    op.drop_index("ix_subscriptions_customer_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_business_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("number_sequences")
    op.drop_index("ix_customers_business_id", table_name="customers")
    op.drop_table("customers")
    op.drop_index("ix_service_plans_business_id", table_name="service_plans")
    op.drop_table("service_plans")
    op.drop_table("businesses")
