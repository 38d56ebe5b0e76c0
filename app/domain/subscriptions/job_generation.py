from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.customers.db_models import Customer
from app.domain.errors import InvalidTransitionError, NotFoundError
from app.domain.jobs import service as jobs_service
from app.domain.subscriptions import events_service, schedule_service, statuses
from app.domain.subscriptions.db_models import Subscription, SubscriptionSchedule
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def visit_window(subscription: Subscription, entry: SubscriptionSchedule) -> tuple[datetime, datetime]:
    """UTC start and end of the visit for a schedule entry."""

    tz = ZoneInfo(subscription.timezone)
    start_time = entry.preferred_time_start or subscription.preferred_time_start or settings.default_visit_start
    end_time = entry.preferred_time_end or subscription.preferred_time_end or settings.default_visit_end
    starts_at = datetime.combine(entry.scheduled_date, start_time, tzinfo=tz)
    ends_at = datetime.combine(entry.scheduled_date, end_time, tzinfo=tz)
    if ends_at <= starts_at:
        ends_at = datetime.combine(entry.scheduled_date, settings.default_visit_end, tzinfo=tz)
    return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


async def _claim_entry(session: AsyncSession, schedule_id: str) -> SubscriptionSchedule | None:
    stmt = (
        select(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.schedule_id == schedule_id,
            SubscriptionSchedule.status.in_(statuses.schedule_sources(statuses.ScheduleStatus.JOB_CREATED)),
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def materialize_job(
    session: AsyncSession,
    schedule_id: str,
    *,
    today: date | None = None,
) -> str | None:
    """Turn a pending schedule entry into a job.

    Returns the new job id, or None when the entry is no longer pending or is
    being handled by another worker. None is not an error and is never retried.
    """

    entry = await _claim_entry(session, schedule_id)
    if entry is None:
        if await session.get(SubscriptionSchedule, schedule_id) is None:
            raise NotFoundError("Schedule entry not found")
        logger.info("schedule_claim_skipped", extra={"extra": {"schedule_id": schedule_id}})
        metrics.record_subscription_job("claimed_elsewhere")
        return None

    subscription = await session.get(Subscription, entry.subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    if subscription.status != statuses.SubscriptionStatus.ACTIVE:
        raise InvalidTransitionError(
            f"Cannot generate a job for a {subscription.status} subscription"
        )

    job_id = str(uuid.uuid4())
    seen_version = entry.version
    claimed = await session.execute(
        update(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.schedule_id == schedule_id,
            SubscriptionSchedule.status == entry.status,
            SubscriptionSchedule.version == seen_version,
        )
        .values(
            status=statuses.ScheduleStatus.JOB_CREATED,
            job_id=job_id,
            version=seen_version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        logger.info("schedule_claim_lost", extra={"extra": {"schedule_id": schedule_id}})
        metrics.record_subscription_job("claimed_elsewhere")
        return None

    customer = await session.get(Customer, subscription.customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    starts_at, ends_at = visit_window(subscription, entry)
    job = await jobs_service.create_job(
        session,
        job_id=job_id,
        business_id=subscription.business_id,
        customer=customer,
        title=subscription.name,
        description=subscription.notes,
        scheduled_start=starts_at,
        scheduled_end=ends_at,
        subscription_id=subscription.subscription_id,
        subscription_schedule_id=entry.schedule_id,
        needs_invoice=subscription.billing_model == statuses.BillingModel.PER_VISIT,
    )

    await session.execute(
        update(Subscription)
        .where(Subscription.subscription_id == subscription.subscription_id)
        .values(total_jobs_generated=Subscription.total_jobs_generated + 1)
        .execution_options(synchronize_session=False)
    )
    await schedule_service.refresh_next_service_date(session, subscription, today=today)
    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.JOB_GENERATED,
        schedule_id=entry.schedule_id,
        job_id=job.job_id,
        metadata={"scheduled_date": entry.scheduled_date, "job_number": job.job_number},
    )
    metrics.record_subscription_job("created")
    logger.info(
        "subscription_job_generated",
        extra={
            "extra": {
                "subscription_id": subscription.subscription_id,
                "schedule_id": entry.schedule_id,
                "job_id": job.job_id,
            }
        },
    )
    return job.job_id


async def list_due_schedules(
    session: AsyncSession,
    *,
    today: date | None = None,
    lookahead_days: int | None = None,
    business_id: str | None = None,
    limit: int | None = None,
) -> list[str]:
    """Pending entries of active subscriptions dated today..today+lookahead.

    Without an explicit ``today`` each subscription is judged by the date in
    its own timezone.
    """

    lookahead = timedelta(days=lookahead_days if lookahead_days is not None else settings.job_lookahead_days)
    latest = schedule_service.sweep_horizon(today)
    earliest = today or latest - timedelta(days=2)
    stmt = (
        select(SubscriptionSchedule.schedule_id, SubscriptionSchedule.scheduled_date, Subscription.timezone)
        .join(Subscription, Subscription.subscription_id == SubscriptionSchedule.subscription_id)
        .where(
            Subscription.status == statuses.SubscriptionStatus.ACTIVE,
            SubscriptionSchedule.status.in_(statuses.schedule_sources(statuses.ScheduleStatus.JOB_CREATED)),
            SubscriptionSchedule.scheduled_date >= earliest,
            SubscriptionSchedule.scheduled_date <= latest + lookahead,
        )
        .order_by(SubscriptionSchedule.scheduled_date, SubscriptionSchedule.schedule_id)
    )
    if business_id:
        stmt = stmt.where(SubscriptionSchedule.business_id == business_id)
    if today is not None:
        stmt = stmt.limit(limit or settings.sweep_batch_limit)
    rows = (await session.execute(stmt)).all()

    due: list[str] = []
    for schedule_id, scheduled_date, timezone_name in rows:
        current = today or schedule_service.local_today(timezone_name)
        if current <= scheduled_date <= current + lookahead:
            due.append(schedule_id)
    return due[: limit or settings.sweep_batch_limit]
