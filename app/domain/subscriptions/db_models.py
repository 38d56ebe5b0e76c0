from __future__ import annotations

import uuid
from datetime import date, datetime, time

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.domain.subscriptions import statuses
from app.infra.db import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.business_id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.customer_id"), nullable=False, index=True)
    service_plan_id: Mapped[str | None] = mapped_column(ForeignKey("service_plans.service_plan_id"))
    subscription_number: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    internal_notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=statuses.SubscriptionStatus.PENDING
    )
    previous_status: Mapped[str | None] = mapped_column(String(16))
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    billing_model: Mapped[str] = mapped_column(String(16), nullable=False)
    price_per_visit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    pause_start_date: Mapped[date | None] = mapped_column(Date)
    pause_end_date: Mapped[date | None] = mapped_column(Date)
    pause_reason: Mapped[str | None] = mapped_column(Text)
    preferred_day_of_week: Mapped[int | None] = mapped_column(Integer)
    preferred_time_start: Mapped[time | None] = mapped_column(Time)
    preferred_time_end: Mapped[time | None] = mapped_column(Time)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    next_service_date: Mapped[date | None] = mapped_column(Date)
    next_billing_date: Mapped[date | None] = mapped_column(Date)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    allow_customer_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_customer_skips_per_year: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    total_jobs_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_invoices_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    line_items: Mapped[list["SubscriptionLineItem"]] = relationship(
        "SubscriptionLineItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionLineItem.sort_order",
    )
    service_plan = relationship("ServicePlan")
    customer = relationship("Customer")

    __table_args__ = (
        UniqueConstraint("business_id", "subscription_number", name="uq_subscriptions_business_number"),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
    )


class SubscriptionLineItem(Base):
    __tablename__ = "subscription_line_items"

    line_item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    subscription: Mapped[Subscription] = relationship("Subscription", back_populates="line_items")


class SubscriptionSchedule(Base):
    __tablename__ = "subscription_schedules"

    schedule_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"), nullable=False
    )
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.business_id"), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    preferred_time_start: Mapped[time | None] = mapped_column(Time)
    preferred_time_end: Mapped[time | None] = mapped_column(Time)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=statuses.ScheduleStatus.PENDING
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    job_id: Mapped[str | None] = mapped_column(String(36))
    invoice_id: Mapped[str | None] = mapped_column(String(36))
    skipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    skipped_by: Mapped[str | None] = mapped_column(String(100))
    skip_reason: Mapped[str | None] = mapped_column(Text)
    is_customer_skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    subscription: Mapped[Subscription] = relationship("Subscription")

    __table_args__ = (
        UniqueConstraint("subscription_id", "scheduled_date", name="uq_subscription_schedules_date"),
        Index("ix_subscription_schedules_status_date", "status", "scheduled_date"),
    )


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id: Mapped[str] = mapped_column(
        ForeignKey("subscriptions.subscription_id", ondelete="CASCADE"), nullable=False, index=True
    )
    business_id: Mapped[str] = mapped_column(String(36), nullable=False)
    schedule_id: Mapped[str | None] = mapped_column(String(36))
    job_id: Mapped[str | None] = mapped_column(String(36))
    invoice_id: Mapped[str | None] = mapped_column(String(36))
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(100))
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


@event.listens_for(SubscriptionEvent, "before_update")
def _reject_event_update(mapper, connection, target) -> None:
    raise ValueError("subscription events are append-only")


@event.listens_for(SubscriptionEvent, "before_delete")
def _reject_event_delete(mapper, connection, target) -> None:
    raise ValueError("subscription events are append-only")
