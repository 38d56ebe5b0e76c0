from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.errors import InvalidTransitionError, NotFoundError, ValidationFailure
from app.domain.invoices import service as invoice_service
from app.domain.invoices.db_models import Invoice
from app.domain.invoices.schemas import InvoiceItemCreate
from app.domain.jobs.db_models import Job
from app.domain.jobs.statuses import JobStatus
from app.domain.subscriptions import events_service, recurrence, schedule_service, statuses
from app.domain.subscriptions.db_models import Subscription, SubscriptionSchedule
from app.domain.subscriptions.events_service import SYSTEM_ACTOR, Actor
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

BILLABLE_STATUSES = {statuses.SubscriptionStatus.ACTIVE, statuses.SubscriptionStatus.PAUSED}
PERIODIC_BILLING_MODELS = {statuses.BillingModel.PREPAY, statuses.BillingModel.HYBRID}


def invoice_lines(subscription: Subscription) -> list[InvoiceItemCreate]:
    """Snapshot the subscription's current line items, in display order."""

    if subscription.line_items:
        return [
            InvoiceItemCreate(
                description=item.description,
                qty=item.quantity,
                unit_price_cents=item.unit_price_cents,
            )
            for item in sorted(subscription.line_items, key=lambda item: item.sort_order)
        ]
    return [
        InvoiceItemCreate(
            description=f"{subscription.name} ({subscription.subscription_number})",
            qty=1,
            unit_price_cents=subscription.price_per_visit_cents,
        )
    ]


async def next_billing_date_after(
    session: AsyncSession, subscription: Subscription, period_end: date | None, issued_on: date
) -> date | None:
    """Prepay bills the day after the paid period; other models bill at the next visit."""

    if subscription.billing_model == statuses.BillingModel.PREPAY and period_end is not None:
        return period_end + timedelta(days=1)
    if subscription.next_service_date and subscription.next_service_date > issued_on:
        return subscription.next_service_date
    return await session.scalar(
        select(func.min(SubscriptionSchedule.scheduled_date)).where(
            SubscriptionSchedule.subscription_id == subscription.subscription_id,
            SubscriptionSchedule.status == statuses.ScheduleStatus.PENDING,
            SubscriptionSchedule.scheduled_date > issued_on,
        )
    )


async def generate_invoice(
    session: AsyncSession,
    subscription_id: str,
    *,
    period_start: date | None = None,
    period_end: date | None = None,
    schedule_id: str | None = None,
    today: date | None = None,
    actor: Actor = SYSTEM_ACTOR,
    require_billable: bool = True,
) -> Invoice:
    subscription = await schedule_service.lock_subscription(session, subscription_id, with_line_items=True)
    if require_billable and subscription.status not in BILLABLE_STATUSES:
        raise InvalidTransitionError(f"Cannot invoice a {subscription.status} subscription")
    current = today or schedule_service.local_today(subscription.timezone)

    # Prepay always bills a whole period so next_billing_date can move past it.
    if subscription.billing_model == statuses.BillingModel.PREPAY:
        if period_start is None:
            period_start = subscription.next_billing_date or subscription.start_date
        if period_end is None:
            period_end = recurrence.period_end(subscription.frequency, period_start)
    if period_start and period_end and period_end < period_start:
        raise ValidationFailure("Billing period end must not precede its start")

    schedule = None
    if schedule_id is not None:
        schedule = await session.get(SubscriptionSchedule, schedule_id)
        if schedule is None or schedule.subscription_id != subscription.subscription_id:
            raise NotFoundError("Schedule entry not found")

    invoice = await invoice_service.create_invoice(
        session,
        business_id=subscription.business_id,
        customer_id=subscription.customer_id,
        items=invoice_lines(subscription),
        issue_date=current,
        due_date=current + timedelta(days=settings.invoice_due_days),
        currency=settings.default_currency,
        subscription_id=subscription.subscription_id,
        subscription_schedule_id=schedule_id,
        billing_period_start=period_start,
        billing_period_end=period_end,
        created_by=actor.actor_id,
    )

    if schedule is not None:
        await session.execute(
            update(SubscriptionSchedule)
            .where(SubscriptionSchedule.schedule_id == schedule.schedule_id)
            .values(invoice_id=invoice.invoice_id, version=SubscriptionSchedule.version + 1)
            .execution_options(synchronize_session=False)
        )

    subscription.total_invoices_generated += 1
    subscription.next_billing_date = await next_billing_date_after(session, subscription, period_end, current)
    await session.flush()

    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.INVOICE_GENERATED,
        actor,
        schedule_id=schedule_id,
        invoice_id=invoice.invoice_id,
        metadata={
            "invoice_number": invoice.invoice_number,
            "total_cents": invoice.total_cents,
            "billing_model": subscription.billing_model,
            "period_start": period_start,
            "period_end": period_end,
        },
    )
    metrics.record_subscription_invoice(subscription.billing_model)
    logger.info(
        "subscription_invoice_generated",
        extra={
            "extra": {
                "subscription_id": subscription.subscription_id,
                "invoice_id": invoice.invoice_id,
                "total_cents": invoice.total_cents,
            }
        },
    )
    return invoice


async def invoice_completed_job(
    session: AsyncSession, job_id: str, *, today: date | None = None
) -> Invoice | None:
    """Bill a completed per-visit job once. Returns None if someone else has it."""

    stmt = (
        select(Job)
        .where(
            Job.job_id == job_id,
            Job.needs_invoice.is_(True),
            Job.invoice_id.is_(None),
            Job.status == JobStatus.COMPLETED,
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None or job.subscription_id is None:
        return None
    completed_on = job.completed_at.date() if job.completed_at else today
    invoice = await generate_invoice(
        session,
        job.subscription_id,
        period_start=completed_on,
        period_end=completed_on,
        schedule_id=job.subscription_schedule_id,
        today=today,
        require_billable=False,
    )
    job.invoice_id = invoice.invoice_id
    job.needs_invoice = False
    await session.flush()
    return invoice


async def list_due_billing(
    session: AsyncSession,
    *,
    today: date | None = None,
    business_id: str | None = None,
    limit: int | None = None,
) -> list[str]:
    """Candidates only. Without today the bound is loose and callers re-check the local date."""

    stmt = select(Subscription.subscription_id).where(
        Subscription.status == statuses.SubscriptionStatus.ACTIVE,
        Subscription.billing_model.in_([model.value for model in PERIODIC_BILLING_MODELS]),
        Subscription.next_billing_date.is_not(None),
        Subscription.next_billing_date <= schedule_service.sweep_horizon(today),
    )
    if business_id:
        stmt = stmt.where(Subscription.business_id == business_id)
    stmt = stmt.order_by(Subscription.next_billing_date, Subscription.subscription_id).limit(
        limit or settings.sweep_batch_limit
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_uninvoiced_jobs(
    session: AsyncSession,
    *,
    business_id: str | None = None,
    limit: int | None = None,
) -> list[str]:
    stmt = select(Job.job_id).where(
        Job.needs_invoice.is_(True),
        Job.invoice_id.is_(None),
        Job.status == JobStatus.COMPLETED,
        Job.subscription_id.is_not(None),
    )
    if business_id:
        stmt = stmt.where(Job.business_id == business_id)
    stmt = stmt.order_by(Job.completed_at, Job.job_id).limit(limit or settings.sweep_batch_limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def generate_due_invoices(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    today: date | None = None,
    business_id: str | None = None,
) -> dict[str, int]:
    counts = {"periodic": 0, "per_visit": 0, "skipped": 0, "failed": 0}

    async with session_factory() as session:
        subscription_ids = await list_due_billing(session, today=today, business_id=business_id)
        job_ids = await list_uninvoiced_jobs(session, business_id=business_id)

    for subscription_id in subscription_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    subscription = await schedule_service.lock_subscription(session, subscription_id)
                    current = today or schedule_service.local_today(subscription.timezone)
                    due = (
                        subscription.status == statuses.SubscriptionStatus.ACTIVE
                        and subscription.next_billing_date is not None
                        and subscription.next_billing_date <= current
                    )
                    if not due:
                        counts["skipped"] += 1
                        continue
                    await generate_invoice(session, subscription_id, today=current)
            counts["periodic"] += 1
        except Exception:  # noqa: BLE001
            counts["failed"] += 1
            logger.exception(
                "subscription_invoice_failed",
                extra={"extra": {"subscription_id": subscription_id}},
            )

    for job_id in job_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    invoice = await invoice_completed_job(session, job_id, today=today)
            if invoice is None:
                counts["skipped"] += 1
            else:
                counts["per_visit"] += 1
        except Exception:  # noqa: BLE001
            counts["failed"] += 1
            logger.exception("job_invoice_failed", extra={"extra": {"job_id": job_id}})

    return counts
