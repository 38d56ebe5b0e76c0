from datetime import date, datetime, timezone

import pytest

from app.domain.errors import InvalidTransitionError, PermissionDeniedError, ValidationFailure, VersionConflictError
from app.domain.subscriptions import schedule_service, statuses
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions.events_service import Actor
from app.domain.subscriptions.statuses import ActorType, ScheduleStatus
from app.settings import settings
from tests.conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID, STAFF, create_subscription

TODAY = date(2024, 1, 15)
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
CUSTOMER = Actor(ActorType.CUSTOMER, CUSTOMER_ID)


async def _entry_ids(session_maker, subscription_id: str) -> dict[date, str]:
    async with session_maker() as session:
        entries = await schedule_service.list_schedules(session, subscription_id)
        return {entry.scheduled_date: entry.schedule_id for entry in entries}


async def _entry(session_maker, subscription_id: str, day: date):
    async with session_maker() as session:
        entries = await schedule_service.list_schedules(session, subscription_id, from_date=day, limit=1)
        return entries[0]


@pytest.mark.anyio
async def test_staff_skip_bumps_version_and_next_service_date(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY, start_date=date(2024, 1, 22))
    ids = await _entry_ids(async_session_maker, subscription_id)

    async with async_session_maker() as session:
        entry = await subscription_service.skip_schedule(
            session, ids[date(2024, 1, 22)], reason="Holiday", actor=STAFF, expected_version=1, now=NOW
        )
        await session.commit()

    assert entry.status == ScheduleStatus.SKIPPED
    assert entry.version == 2
    assert entry.skip_reason == "Holiday"
    assert entry.is_customer_skip is False
    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
    assert subscription.next_service_date == date(2024, 1, 29)


@pytest.mark.anyio
async def test_stale_version_conflicts_and_leaves_entry_unchanged(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY, start_date=date(2024, 1, 22))
    ids = await _entry_ids(async_session_maker, subscription_id)
    target = ids[date(2024, 1, 29)]

    async with async_session_maker() as session:
        await subscription_service.pause_subscription(
            session, subscription_id, start_date=date(2024, 1, 29), end_date=date(2024, 2, 1), today=TODAY
        )
        await subscription_service.resume_subscription(session, subscription_id, today=TODAY)
        await session.commit()

    async with async_session_maker() as session:
        with pytest.raises(VersionConflictError):
            await subscription_service.skip_schedule(session, target, actor=STAFF, expected_version=1, now=NOW)
        await session.rollback()

    entry = await _entry(async_session_maker, subscription_id, date(2024, 1, 29))
    assert entry.status == ScheduleStatus.PENDING
    assert entry.version == 3
    assert entry.skipped_at is None


@pytest.mark.anyio
async def test_cannot_skip_a_past_visit(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)
    ids = await _entry_ids(async_session_maker, subscription_id)

    async with async_session_maker() as session:
        with pytest.raises(InvalidTransitionError):
            await subscription_service.skip_schedule(
                session,
                ids[date(2024, 1, 15)],
                actor=STAFF,
                now=datetime(2024, 1, 16, 8, 0, tzinfo=timezone.utc),
            )


@pytest.mark.anyio
async def test_customer_skip_rules(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY, max_customer_skips_per_year=1)
    ids = await _entry_ids(async_session_maker, subscription_id)

    async with async_session_maker() as session:
        # visit at 09:00 tomorrow is inside the 24 hour lead time
        with pytest.raises(ValidationFailure):
            await subscription_service.skip_schedule(
                session,
                ids[date(2024, 1, 22)],
                actor=CUSTOMER,
                now=datetime(2024, 1, 21, 12, 0, tzinfo=timezone.utc),
            )
        await session.rollback()

    async with async_session_maker() as session:
        with pytest.raises(PermissionDeniedError):
            await subscription_service.skip_schedule(
                session, ids[date(2024, 1, 22)], actor=Actor(ActorType.CUSTOMER, OTHER_CUSTOMER_ID), now=NOW
            )
        await session.rollback()

    async with async_session_maker() as session:
        entry = await subscription_service.skip_schedule(
            session, ids[date(2024, 1, 22)], reason="Away", actor=CUSTOMER, now=NOW
        )
        await session.commit()
    assert entry.is_customer_skip is True

    async with async_session_maker() as session:
        with pytest.raises(ValidationFailure):
            await subscription_service.skip_schedule(session, ids[date(2024, 1, 29)], actor=CUSTOMER, now=NOW)
        await session.rollback()

    # staff skips do not count against the customer's allowance
    async with async_session_maker() as session:
        await subscription_service.skip_schedule(session, ids[date(2024, 1, 29)], actor=STAFF, now=NOW)
        await session.commit()


@pytest.mark.anyio
async def test_customer_skip_disabled(async_session_maker):
    settings.customer_skip_lead_hours = 0
    subscription_id = await create_subscription(async_session_maker, today=TODAY, allow_customer_skip=False)
    ids = await _entry_ids(async_session_maker, subscription_id)

    async with async_session_maker() as session:
        with pytest.raises(PermissionDeniedError):
            await subscription_service.skip_schedule(session, ids[date(2024, 1, 22)], actor=CUSTOMER, now=NOW)


@pytest.mark.anyio
async def test_portal_query_lists_upcoming_pending_visits(async_session_maker):
    first = await create_subscription(async_session_maker, today=TODAY, start_date=date(2024, 1, 22))
    await create_subscription(async_session_maker, today=TODAY, frequency="monthly", start_date=date(2024, 2, 1))
    cancelled = await create_subscription(async_session_maker, today=TODAY)
    ids = await _entry_ids(async_session_maker, first)

    async with async_session_maker() as session:
        await subscription_service.cancel_subscription(session, cancelled, today=TODAY)
        await subscription_service.skip_schedule(session, ids[date(2024, 1, 29)], actor=STAFF, now=NOW)
        await session.commit()

    async with async_session_maker() as session:
        results = await subscription_service.list_customer_subscriptions(session, CUSTOMER_ID, today=TODAY)
        other = await subscription_service.list_customer_subscriptions(session, OTHER_CUSTOMER_ID, today=TODAY)

    assert other == []
    assert [item["subscription_id"] for item in results][0] == first
    assert len(results) == 2
    upcoming = [visit["scheduled_date"] for visit in results[0]["upcoming"]]
    assert upcoming == [date(2024, 1, 22), date(2024, 2, 5), date(2024, 2, 12)]
    assert results[1]["next_service_date"] == date(2024, 2, 1)


def test_schedule_sources_follow_transition_table():
    assert statuses.schedule_sources(ScheduleStatus.SKIPPED) == [ScheduleStatus.PENDING, ScheduleStatus.PAUSED]
    assert statuses.schedule_sources(ScheduleStatus.JOB_CREATED) == [ScheduleStatus.PENDING]
    assert statuses.schedule_sources(ScheduleStatus.PENDING, among=(ScheduleStatus.SKIPPED,)) == []
    assert not statuses.can_transition_schedule(ScheduleStatus.JOB_CREATED, ScheduleStatus.SKIPPED)


@pytest.mark.anyio
async def test_paused_visit_cannot_be_skipped_individually(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY, start_date=date(2024, 1, 22))
    ids = await _entry_ids(async_session_maker, subscription_id)

    async with async_session_maker() as session:
        await subscription_service.pause_subscription(
            session, subscription_id, start_date=date(2024, 1, 29), end_date=date(2024, 2, 10), today=TODAY
        )
        await session.commit()

    async with async_session_maker() as session:
        with pytest.raises(InvalidTransitionError):
            await subscription_service.skip_schedule(session, ids[date(2024, 1, 29)], actor=STAFF, now=NOW)
        await session.rollback()

    paused = await _entry(async_session_maker, subscription_id, date(2024, 1, 29))
    assert paused.status == ScheduleStatus.PAUSED
    assert paused.version == 2
