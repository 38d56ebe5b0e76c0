from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.domain.businesses.db_models import Business, ServicePlan
from app.domain.customers.db_models import Customer
from app.domain.errors import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailure,
    VersionConflictError,
)
from app.domain.numbering import service as numbering_service
from app.domain.subscriptions import events_service, schedule_service, statuses
from app.domain.subscriptions.db_models import Subscription, SubscriptionLineItem, SubscriptionSchedule
from app.domain.subscriptions.events_service import SYSTEM_ACTOR, Actor
from app.domain.subscriptions.schemas import LineItemInput, SubscriptionCreateRequest
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

PAUSED_SKIP_REASON = "Paused"
CANCELLED_SKIP_REASON = "Subscription cancelled"
COMPLETED_SKIP_REASON = "Subscription completed"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _set_status(subscription: Subscription, target: statuses.SubscriptionStatus) -> None:
    if not statuses.can_transition(subscription.status, target):
        raise InvalidTransitionError(
            f"Cannot move subscription from {subscription.status} to {target}"
        )
    subscription.previous_status = subscription.status
    subscription.status = target
    subscription.status_changed_at = _utcnow()


def _line_item_models(items: list[LineItemInput]) -> list[SubscriptionLineItem]:
    return [
        SubscriptionLineItem(
            description=item.description,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            total_cents=item.quantity * item.unit_price_cents,
            sort_order=index,
        )
        for index, item in enumerate(items)
    ]


def line_items_total(subscription: Subscription) -> int:
    return sum(item.total_cents for item in subscription.line_items)


async def get_subscription(session: AsyncSession, subscription_id: str) -> Subscription:
    stmt = (
        select(Subscription)
        .options(selectinload(Subscription.line_items))
        .where(Subscription.subscription_id == subscription_id)
        .execution_options(populate_existing=True)
    )
    subscription = (await session.execute(stmt)).scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


async def list_subscriptions(
    session: AsyncSession,
    *,
    business_id: str | None = None,
    customer_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Subscription]:
    stmt = select(Subscription).options(selectinload(Subscription.line_items))
    if business_id:
        stmt = stmt.where(Subscription.business_id == business_id)
    if customer_id:
        stmt = stmt.where(Subscription.customer_id == customer_id)
    if status:
        stmt = stmt.where(Subscription.status == statuses.normalize_status(status))
    stmt = (
        stmt.order_by(Subscription.created_at.desc(), Subscription.subscription_number.desc())
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_subscription(
    session: AsyncSession,
    payload: SubscriptionCreateRequest,
    actor: Actor = SYSTEM_ACTOR,
    *,
    today: date | None = None,
) -> Subscription:
    try:
        frequency = statuses.normalize_frequency(str(payload.frequency))
        billing_model = statuses.normalize_billing_model(str(payload.billing_model))
    except ValueError as exc:
        raise ValidationFailure(str(exc)) from exc

    business = await session.get(Business, payload.business_id)
    if business is None:
        raise NotFoundError("Business not found")
    customer = await session.get(Customer, payload.customer_id)
    if customer is None or customer.business_id != business.business_id:
        raise ValidationFailure("Customer does not belong to this business")
    plan = None
    if payload.service_plan_id:
        plan = await session.get(ServicePlan, payload.service_plan_id)
        if plan is None or plan.business_id != business.business_id:
            raise ValidationFailure("Service plan does not belong to this business")

    subscription_number = await numbering_service.next_sequence_number(session, business.business_id)
    activate = payload.activate
    subscription = Subscription(
        business_id=business.business_id,
        customer_id=customer.customer_id,
        service_plan_id=plan.service_plan_id if plan else None,
        subscription_number=subscription_number,
        name=payload.name or (plan.name if plan else f"{frequency.value.title()} service"),
        notes=payload.notes,
        internal_notes=payload.internal_notes,
        status=statuses.SubscriptionStatus.ACTIVE if activate else statuses.SubscriptionStatus.PENDING,
        status_changed_at=_utcnow(),
        frequency=frequency,
        billing_model=billing_model,
        price_per_visit_cents=payload.price_per_visit_cents,
        start_date=payload.start_date,
        end_date=payload.end_date,
        preferred_day_of_week=payload.preferred_day_of_week,
        preferred_time_start=payload.preferred_time_start,
        preferred_time_end=payload.preferred_time_end,
        timezone=payload.timezone or business.timezone or settings.default_timezone,
        next_billing_date=(
            payload.start_date if billing_model != statuses.BillingModel.PER_VISIT else None
        ),
        allow_customer_skip=payload.allow_customer_skip,
        max_customer_skips_per_year=payload.max_customer_skips_per_year,
        created_by=actor.actor_id,
    )
    subscription.line_items = _line_item_models(payload.line_items)
    session.add(subscription)
    await session.flush()

    generated = 0
    if activate:
        generated = await schedule_service.generate_schedules(
            session, subscription.subscription_id, settings.schedule_window_months, today=today
        )

    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.CREATED,
        actor,
        metadata={
            "frequency": frequency.value,
            "billing_model": billing_model.value,
            "price_per_visit_cents": payload.price_per_visit_cents,
            "schedules_generated": generated,
        },
    )
    metrics.record_lifecycle("created")
    logger.info(
        "subscription_created",
        extra={
            "extra": {
                "subscription_id": subscription.subscription_id,
                "subscription_number": subscription_number,
                "schedules_generated": generated,
            }
        },
    )
    return subscription


async def activate_subscription(
    session: AsyncSession,
    subscription_id: str,
    actor: Actor = SYSTEM_ACTOR,
    *,
    today: date | None = None,
) -> Subscription:
    subscription = await schedule_service.lock_subscription(session, subscription_id)
    if subscription.status not in {statuses.SubscriptionStatus.DRAFT, statuses.SubscriptionStatus.PENDING}:
        raise InvalidTransitionError(f"Cannot activate a {subscription.status} subscription")
    _set_status(subscription, statuses.SubscriptionStatus.ACTIVE)
    await session.flush()
    generated = await schedule_service.generate_schedules(
        session, subscription.subscription_id, settings.schedule_window_months, today=today
    )
    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.ACTIVATED,
        actor,
        metadata={"schedules_generated": generated},
    )
    metrics.record_lifecycle("activated")
    logger.info("subscription_activated", extra={"extra": {"subscription_id": subscription_id}})
    return subscription


async def pause_subscription(
    session: AsyncSession,
    subscription_id: str,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    reason: str | None = None,
    actor: Actor = SYSTEM_ACTOR,
    today: date | None = None,
) -> Subscription:
    """Pause an active subscription over the half-open window [start, end).

    Without an end date the pause is open-ended and every pending entry from
    ``start`` on is paused.
    """

    subscription = await schedule_service.lock_subscription(session, subscription_id)
    if subscription.status != statuses.SubscriptionStatus.ACTIVE:
        raise InvalidTransitionError(
            f"Only active subscriptions can be paused (status is {subscription.status})"
        )
    current = today or schedule_service.local_today(subscription.timezone)
    pause_start = start_date or current
    if end_date is not None and end_date < pause_start:
        raise ValidationFailure("Pause end date must not precede its start date")

    conditions = [
        SubscriptionSchedule.subscription_id == subscription.subscription_id,
        SubscriptionSchedule.status.in_(statuses.schedule_sources(statuses.ScheduleStatus.PAUSED)),
        SubscriptionSchedule.scheduled_date >= pause_start,
    ]
    if end_date is not None:
        conditions.append(SubscriptionSchedule.scheduled_date < end_date)
    result = await session.execute(
        update(SubscriptionSchedule)
        .where(*conditions)
        .values(
            status=statuses.ScheduleStatus.PAUSED,
            version=SubscriptionSchedule.version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    paused_count = result.rowcount

    _set_status(subscription, statuses.SubscriptionStatus.PAUSED)
    subscription.pause_start_date = pause_start
    subscription.pause_end_date = end_date
    subscription.pause_reason = reason
    await schedule_service.refresh_next_service_date(session, subscription, today=current)

    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.PAUSED,
        actor,
        metadata={
            "pause_start_date": pause_start,
            "pause_end_date": end_date,
            "entries_paused": paused_count,
        },
        notes=reason,
    )
    metrics.record_lifecycle("paused")
    logger.info(
        "subscription_paused",
        extra={"extra": {"subscription_id": subscription_id, "entries_paused": paused_count}},
    )
    return subscription


async def resume_subscription(
    session: AsyncSession,
    subscription_id: str,
    actor: Actor = SYSTEM_ACTOR,
    *,
    today: date | None = None,
) -> Subscription:
    subscription = await schedule_service.lock_subscription(session, subscription_id)
    if subscription.status != statuses.SubscriptionStatus.PAUSED:
        raise InvalidTransitionError(
            f"Only paused subscriptions can be resumed (status is {subscription.status})"
        )
    current = today or schedule_service.local_today(subscription.timezone)

    lapsed = await session.execute(
        update(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.subscription_id == subscription.subscription_id,
            SubscriptionSchedule.status.in_(
                statuses.schedule_sources(
                    statuses.ScheduleStatus.SKIPPED, among=(statuses.ScheduleStatus.PAUSED,)
                )
            ),
            SubscriptionSchedule.scheduled_date < current,
        )
        .values(
            status=statuses.ScheduleStatus.SKIPPED,
            skip_reason=PAUSED_SKIP_REASON,
            skipped_at=_utcnow(),
            version=SubscriptionSchedule.version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    restored = await session.execute(
        update(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.subscription_id == subscription.subscription_id,
            SubscriptionSchedule.status.in_(statuses.schedule_sources(statuses.ScheduleStatus.PENDING)),
            SubscriptionSchedule.scheduled_date >= current,
        )
        .values(
            status=statuses.ScheduleStatus.PENDING,
            version=SubscriptionSchedule.version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )

    _set_status(subscription, statuses.SubscriptionStatus.ACTIVE)
    subscription.pause_start_date = None
    subscription.pause_end_date = None
    subscription.pause_reason = None
    await session.flush()
    generated = await schedule_service.generate_schedules(
        session, subscription.subscription_id, settings.schedule_window_months, today=current
    )

    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.RESUMED,
        actor,
        metadata={
            "entries_resumed": restored.rowcount,
            "entries_skipped": lapsed.rowcount,
            "schedules_generated": generated,
        },
    )
    metrics.record_lifecycle("resumed")
    logger.info(
        "subscription_resumed",
        extra={"extra": {"subscription_id": subscription_id, "entries_resumed": restored.rowcount}},
    )
    return subscription


async def cancel_subscription(
    session: AsyncSession,
    subscription_id: str,
    *,
    reason: str | None = None,
    actor: Actor = SYSTEM_ACTOR,
    today: date | None = None,
) -> Subscription:
    subscription = await schedule_service.lock_subscription(session, subscription_id)
    if subscription.status in statuses.TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Cannot cancel a {subscription.status} subscription")
    current = today or schedule_service.local_today(subscription.timezone)

    result = await session.execute(
        update(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.subscription_id == subscription.subscription_id,
            SubscriptionSchedule.status.in_(statuses.schedule_sources(statuses.ScheduleStatus.SKIPPED)),
        )
        .values(
            status=statuses.ScheduleStatus.SKIPPED,
            skip_reason=CANCELLED_SKIP_REASON,
            skipped_at=_utcnow(),
            skipped_by=actor.actor_id,
            version=SubscriptionSchedule.version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )

    _set_status(subscription, statuses.SubscriptionStatus.CANCELLED)
    subscription.end_date = current
    subscription.cancelled_at = _utcnow()
    subscription.cancellation_reason = reason
    subscription.next_service_date = None
    subscription.next_billing_date = None
    await session.flush()

    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.CANCELLED,
        actor,
        metadata={"entries_skipped": result.rowcount, "previous_status": subscription.previous_status},
        notes=reason,
    )
    metrics.record_lifecycle("cancelled")
    logger.info(
        "subscription_cancelled",
        extra={"extra": {"subscription_id": subscription_id, "entries_skipped": result.rowcount}},
    )
    return subscription


async def replace_line_items(
    session: AsyncSession,
    subscription_id: str,
    items: list[LineItemInput],
    actor: Actor = SYSTEM_ACTOR,
) -> Subscription:
    subscription = await schedule_service.lock_subscription(
        session, subscription_id, with_line_items=True
    )
    if subscription.status in statuses.TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Cannot edit a {subscription.status} subscription")
    old_total = line_items_total(subscription)
    subscription.line_items = _line_item_models(items)
    await session.flush()
    new_total = line_items_total(subscription)

    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.PRICE_CHANGED,
        actor,
        metadata={"old_total_cents": old_total, "new_total_cents": new_total, "items": len(items)},
    )
    metrics.record_lifecycle("price_changed")
    return subscription


def visit_starts_at(subscription: Subscription, entry: SubscriptionSchedule) -> datetime:
    start_time = entry.preferred_time_start or subscription.preferred_time_start or settings.default_visit_start
    return datetime.combine(entry.scheduled_date, start_time, tzinfo=ZoneInfo(subscription.timezone))


async def _customer_skips_in_year(session: AsyncSession, subscription_id: str, year: int) -> int:
    count = await session.scalar(
        select(func.count())
        .select_from(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.subscription_id == subscription_id,
            SubscriptionSchedule.is_customer_skip.is_(True),
            SubscriptionSchedule.scheduled_date >= date(year, 1, 1),
            SubscriptionSchedule.scheduled_date <= date(year, 12, 31),
        )
    )
    return int(count or 0)


async def _check_customer_skip(
    session: AsyncSession,
    subscription: Subscription,
    entry: SubscriptionSchedule,
    now: datetime,
) -> None:
    if not subscription.allow_customer_skip:
        raise PermissionDeniedError("Skipping visits is not enabled for this subscription")
    lead = timedelta(hours=settings.customer_skip_lead_hours)
    if visit_starts_at(subscription, entry) - now < lead:
        raise ValidationFailure(
            f"Visits must be skipped at least {settings.customer_skip_lead_hours} hours in advance"
        )
    used = await _customer_skips_in_year(
        session, subscription.subscription_id, entry.scheduled_date.year
    )
    if used >= subscription.max_customer_skips_per_year:
        raise ValidationFailure("Yearly skip limit reached for this subscription")


async def skip_schedule(
    session: AsyncSession,
    schedule_id: str,
    *,
    reason: str | None = None,
    actor: Actor = SYSTEM_ACTOR,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> SubscriptionSchedule:
    entry = await session.get(SubscriptionSchedule, schedule_id)
    if entry is None:
        raise NotFoundError("Schedule entry not found")
    subscription = await schedule_service.lock_subscription(session, entry.subscription_id)
    stmt = (
        select(SubscriptionSchedule)
        .where(SubscriptionSchedule.schedule_id == schedule_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    entry = (await session.execute(stmt)).scalar_one()

    is_customer = actor.actor_type == statuses.ActorType.CUSTOMER
    if is_customer and subscription.customer_id != actor.actor_id:
        raise PermissionDeniedError("Schedule entry does not belong to this customer")
    if expected_version is not None and entry.version != expected_version:
        raise VersionConflictError(
            f"Schedule entry has changed (version {entry.version}, expected {expected_version})"
        )
    if not statuses.can_transition_schedule(entry.status, statuses.ScheduleStatus.SKIPPED):
        raise InvalidTransitionError(f"Cannot skip a {entry.status} schedule entry")
    if entry.status == statuses.ScheduleStatus.PAUSED:
        raise InvalidTransitionError("Paused visits are restored or skipped with their subscription")

    current = now or _utcnow()
    today = current.astimezone(ZoneInfo(subscription.timezone)).date()
    if entry.scheduled_date < today:
        raise InvalidTransitionError("Cannot skip a visit in the past")
    if is_customer:
        await _check_customer_skip(session, subscription, entry, current)

    seen_version = entry.version
    result = await session.execute(
        update(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.schedule_id == schedule_id,
            SubscriptionSchedule.status == entry.status,
            SubscriptionSchedule.version == seen_version,
        )
        .values(
            status=statuses.ScheduleStatus.SKIPPED,
            skipped_at=current,
            skipped_by=actor.actor_id,
            skip_reason=reason,
            is_customer_skip=is_customer,
            version=seen_version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise VersionConflictError("Schedule entry was modified concurrently")

    await schedule_service.refresh_next_service_date(session, subscription, today=today)
    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.SKIPPED,
        actor,
        schedule_id=schedule_id,
        metadata={"scheduled_date": entry.scheduled_date, "is_customer_skip": is_customer},
        notes=reason,
    )
    logger.info(
        "schedule_skipped",
        extra={"extra": {"schedule_id": schedule_id, "is_customer_skip": is_customer}},
    )
    refreshed = await session.execute(stmt)
    return refreshed.scalar_one()


def _portal_subscription(subscription: Subscription, upcoming: list[SubscriptionSchedule]) -> dict:
    plan = subscription.service_plan
    return {
        "subscription_id": subscription.subscription_id,
        "subscription_number": subscription.subscription_number,
        "name": subscription.name,
        "status": subscription.status,
        "frequency": subscription.frequency,
        "billing_model": subscription.billing_model,
        "price_per_visit_cents": subscription.price_per_visit_cents,
        "next_service_date": subscription.next_service_date,
        "allow_customer_skip": subscription.allow_customer_skip,
        "service_plan": (
            {
                "service_plan_id": plan.service_plan_id,
                "name": plan.name,
                "description": plan.description,
            }
            if plan is not None
            else None
        ),
        "upcoming": [
            {
                "schedule_id": entry.schedule_id,
                "scheduled_date": entry.scheduled_date,
                "preferred_time_start": entry.preferred_time_start,
                "preferred_time_end": entry.preferred_time_end,
                "version": entry.version,
            }
            for entry in upcoming
        ],
    }


async def list_customer_subscriptions(
    session: AsyncSession,
    customer_id: str,
    *,
    upcoming_limit: int = 3,
    today: date | None = None,
) -> list[dict]:
    """Non-cancelled subscriptions of a customer with their next pending visits."""

    stmt = (
        select(Subscription)
        .options(selectinload(Subscription.service_plan))
        .where(
            Subscription.customer_id == customer_id,
            Subscription.status != statuses.SubscriptionStatus.CANCELLED,
        )
        .order_by(
            Subscription.next_service_date.is_(None),
            Subscription.next_service_date,
            Subscription.subscription_number,
        )
        .execution_options(populate_existing=True)
    )
    subscriptions = (await session.execute(stmt)).scalars().all()
    results = []
    for subscription in subscriptions:
        current = today or schedule_service.local_today(subscription.timezone)
        upcoming = await schedule_service.list_schedules(
            session,
            subscription.subscription_id,
            status=statuses.ScheduleStatus.PENDING,
            from_date=current,
            limit=upcoming_limit,
        )
        results.append(_portal_subscription(subscription, upcoming))
    return results


async def resume_elapsed_pauses(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    today: date | None = None,
    business_id: str | None = None,
) -> int:
    stmt = select(Subscription.subscription_id).where(
        Subscription.status == statuses.SubscriptionStatus.PAUSED,
        Subscription.pause_end_date.is_not(None),
        Subscription.pause_end_date <= schedule_service.sweep_horizon(today),
    )
    if business_id:
        stmt = stmt.where(Subscription.business_id == business_id)
    async with session_factory() as session:
        subscription_ids = list((await session.execute(stmt)).scalars().all())

    resumed = 0
    for subscription_id in subscription_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    subscription = await schedule_service.lock_subscription(session, subscription_id)
                    current = today or schedule_service.local_today(subscription.timezone)
                    if (
                        subscription.status != statuses.SubscriptionStatus.PAUSED
                        or subscription.pause_end_date is None
                        or subscription.pause_end_date > current
                    ):
                        continue
                    await resume_subscription(session, subscription_id, today=current)
            resumed += 1
        except Exception:  # noqa: BLE001
            logger.exception("pause_resume_failed", extra={"extra": {"subscription_id": subscription_id}})
    return resumed


async def _complete_if_expired(session: AsyncSession, subscription_id: str, today: date | None) -> bool:
    subscription = await schedule_service.lock_subscription(session, subscription_id)
    current = today or schedule_service.local_today(subscription.timezone)
    if (
        subscription.status != statuses.SubscriptionStatus.ACTIVE
        or subscription.end_date is None
        or subscription.end_date >= current
    ):
        return False
    leftover = await session.execute(
        update(SubscriptionSchedule)
        .where(
            SubscriptionSchedule.subscription_id == subscription_id,
            SubscriptionSchedule.status.in_(statuses.schedule_sources(statuses.ScheduleStatus.SKIPPED)),
        )
        .values(
            status=statuses.ScheduleStatus.SKIPPED,
            skip_reason=COMPLETED_SKIP_REASON,
            skipped_at=_utcnow(),
            version=SubscriptionSchedule.version + 1,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    _set_status(subscription, statuses.SubscriptionStatus.COMPLETED)
    subscription.next_service_date = None
    subscription.next_billing_date = None
    await session.flush()
    await events_service.record_event(
        session,
        subscription,
        statuses.EventType.COMPLETED,
        metadata={"end_date": subscription.end_date, "entries_skipped": leftover.rowcount},
    )
    metrics.record_lifecycle("completed")
    return True


async def complete_expired_subscriptions(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    today: date | None = None,
    business_id: str | None = None,
) -> int:
    """Mark fixed-term subscriptions whose end date has passed as completed.

    Only runs when ``auto_complete_expired_subscriptions`` is enabled.
    """

    if not settings.auto_complete_expired_subscriptions:
        return 0
    stmt = select(Subscription.subscription_id).where(
        Subscription.status == statuses.SubscriptionStatus.ACTIVE,
        Subscription.end_date.is_not(None),
        Subscription.end_date < schedule_service.sweep_horizon(today),
    )
    if business_id:
        stmt = stmt.where(Subscription.business_id == business_id)
    async with session_factory() as session:
        subscription_ids = list((await session.execute(stmt)).scalars().all())

    completed = 0
    for subscription_id in subscription_ids:
        try:
            async with session_factory() as session:
                async with session.begin():
                    done = await _complete_if_expired(session, subscription_id, today)
        except Exception:  # noqa: BLE001
            logger.exception("subscription_completion_failed", extra={"extra": {"subscription_id": subscription_id}})
            continue
        if done:
            completed += 1
    return completed
