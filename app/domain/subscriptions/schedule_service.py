from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.domain.errors import NotFoundError
from app.domain.subscriptions import recurrence, statuses
from app.domain.subscriptions.db_models import Subscription, SubscriptionSchedule
from app.infra.db import dialect_name
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def local_today(timezone_name: str | None = None) -> date:
    return datetime.now(ZoneInfo(timezone_name or settings.default_timezone)).date()


def sweep_horizon(today: date | None = None) -> date:
    """Latest date that can be "today" in any timezone.

    Sweeps select candidates up to this bound and re-check each subscription
    against its own local date under lock.
    """

    return today or datetime.now(timezone.utc).date() + timedelta(days=1)


async def lock_subscription(
    session: AsyncSession, subscription_id: str, *, with_line_items: bool = False
) -> Subscription:
    stmt = select(Subscription)
    if with_line_items:
        stmt = stmt.options(selectinload(Subscription.line_items))
    stmt = (
        stmt.where(Subscription.subscription_id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = (await session.execute(stmt)).scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


async def refresh_next_service_date(
    session: AsyncSession, subscription: Subscription, *, today: date | None = None
) -> date | None:
    current = today or local_today(subscription.timezone)
    next_date = await session.scalar(
        select(func.min(SubscriptionSchedule.scheduled_date)).where(
            SubscriptionSchedule.subscription_id == subscription.subscription_id,
            SubscriptionSchedule.status == statuses.ScheduleStatus.PENDING,
            SubscriptionSchedule.scheduled_date >= current,
        )
    )
    subscription.next_service_date = next_date
    await session.flush()
    return next_date


async def generate_schedules(
    session: AsyncSession,
    subscription_id: str,
    months_ahead: int | None = None,
    *,
    today: date | None = None,
) -> int:
    """Fill the rolling window with pending entries and return how many were added.

    Dates already present for the subscription are left untouched, so calling
    this repeatedly is a no-op once the window is full.
    """

    subscription = await session.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    current = today or local_today(subscription.timezone)
    months = months_ahead if months_ahead is not None else settings.schedule_window_months

    last_date = await session.scalar(
        select(func.max(SubscriptionSchedule.scheduled_date)).where(
            SubscriptionSchedule.subscription_id == subscription.subscription_id
        )
    )
    end = recurrence.window_end(current, months)
    if subscription.end_date is not None:
        end = min(end, subscription.end_date)

    dates = recurrence.project_dates(subscription.frequency, subscription.start_date, last_date, end)
    inserted = 0
    if dates:
        insert_fn = pg_insert if dialect_name(session) == "postgresql" else sqlite_insert
        rows = [
            {
                "schedule_id": str(uuid.uuid4()),
                "subscription_id": subscription.subscription_id,
                "business_id": subscription.business_id,
                "scheduled_date": scheduled_date,
                "preferred_time_start": subscription.preferred_time_start,
                "preferred_time_end": subscription.preferred_time_end,
                "status": statuses.ScheduleStatus.PENDING.value,
                "version": 1,
                "is_customer_skip": False,
            }
            for scheduled_date in dates
        ]
        stmt = (
            insert_fn(SubscriptionSchedule)
            .values(rows)
            .on_conflict_do_nothing(
                index_elements=[SubscriptionSchedule.subscription_id, SubscriptionSchedule.scheduled_date]
            )
            .returning(SubscriptionSchedule.schedule_id)
        )
        result = await session.execute(stmt)
        inserted = len(result.scalars().all())

    await refresh_next_service_date(session, subscription, today=current)
    metrics.record_schedule_entries(inserted)
    if inserted:
        logger.info(
            "schedules_generated",
            extra={
                "extra": {
                    "subscription_id": subscription.subscription_id,
                    "count": inserted,
                    "window_end": end.isoformat(),
                }
            },
        )
    return inserted


async def list_schedules(
    session: AsyncSession,
    subscription_id: str,
    *,
    status: str | None = None,
    from_date: date | None = None,
    limit: int = 200,
) -> list[SubscriptionSchedule]:
    stmt = select(SubscriptionSchedule).where(SubscriptionSchedule.subscription_id == subscription_id)
    if status:
        stmt = stmt.where(SubscriptionSchedule.status == status)
    if from_date:
        stmt = stmt.where(SubscriptionSchedule.scheduled_date >= from_date)
    stmt = (
        stmt.order_by(SubscriptionSchedule.scheduled_date)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_subscription_ids(
    session: AsyncSession, *, business_id: str | None = None
) -> list[str]:
    stmt = select(Subscription.subscription_id).where(
        Subscription.status == statuses.SubscriptionStatus.ACTIVE
    )
    if business_id:
        stmt = stmt.where(Subscription.business_id == business_id)
    result = await session.execute(stmt.order_by(Subscription.subscription_id))
    return list(result.scalars().all())


async def generate_for_active_subscriptions(
    session_factory: async_sessionmaker[AsyncSession],
    months_ahead: int | None = None,
    *,
    business_id: str | None = None,
    today: date | None = None,
) -> dict[str, int]:
    async with session_factory() as session:
        subscription_ids = await list_active_subscription_ids(session, business_id=business_id)

    processed = 0
    generated = 0
    failed = 0
    for subscription_id in subscription_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    subscription = await lock_subscription(session, subscription_id)
                    if subscription.status != statuses.SubscriptionStatus.ACTIVE:
                        continue
                    generated += await generate_schedules(
                        session, subscription_id, months_ahead, today=today
                    )
            processed += 1
        except Exception:  # noqa: BLE001
            failed += 1
            logger.exception(
                "schedule_top_up_failed", extra={"extra": {"subscription_id": subscription_id}}
            )
    return {"subscriptions": processed, "generated": generated, "failed": failed}
