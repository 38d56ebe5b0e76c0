import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.subscriptions import billing_service, events_service, job_generation, schedule_service
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions import statuses
from app.domain.subscriptions.db_models import Subscription, SubscriptionSchedule
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)


async def _record_generation_failure(
    session_factory: async_sessionmaker[AsyncSession], schedule_id: str, exc: Exception
) -> None:
    async with session_factory() as session:
        async with session.begin():
            entry = await session.get(SubscriptionSchedule, schedule_id)
            if entry is None:
                return
            subscription = await session.get(Subscription, entry.subscription_id)
            if subscription is None:
                return
            await events_service.record_event(
                session,
                subscription,
                statuses.EventType.JOB_GENERATION_FAILED,
                schedule_id=schedule_id,
                metadata={"scheduled_date": entry.scheduled_date, "reason": type(exc).__name__},
            )


async def run_subscription_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    today: date | None = None,
    business_id: str | None = None,
) -> dict[str, int]:
    """Without an explicit today every subscription runs on its own local date."""

    counts = {"created": 0, "claimed_elsewhere": 0, "failed": 0}

    async with session_factory() as session:
        schedule_ids = await job_generation.list_due_schedules(
            session, today=today, business_id=business_id
        )

    for schedule_id in schedule_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    job_id = await job_generation.materialize_job(session, schedule_id, today=today)
        except Exception as exc:  # noqa: BLE001
            counts["failed"] += 1
            metrics.record_subscription_job("failed")
            logger.warning(
                "subscription_job_failed",
                extra={"extra": {"schedule_id": schedule_id, "reason": type(exc).__name__}},
            )
            await _record_generation_failure(session_factory, schedule_id, exc)
            continue
        if job_id is None:
            counts["claimed_elsewhere"] += 1
        else:
            counts["created"] += 1

    counts["resumed"] = await subscription_service.resume_elapsed_pauses(
        session_factory, today=today, business_id=business_id
    )
    counts["completed"] = await subscription_service.complete_expired_subscriptions(
        session_factory, today=today, business_id=business_id
    )
    topped_up = await schedule_service.generate_for_active_subscriptions(
        session_factory, business_id=business_id, today=today
    )
    counts["generated"] = topped_up["generated"]
    return counts


async def run_subscription_invoices(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    today: date | None = None,
    business_id: str | None = None,
) -> dict[str, int]:
    return await billing_service.generate_due_invoices(
        session_factory, today=today, business_id=business_id
    )
