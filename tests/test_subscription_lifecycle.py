from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from app.domain.errors import InvalidTransitionError, NotFoundError, ValidationFailure
from app.domain.subscriptions import events_service, job_generation, schedule_service
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions.db_models import SubscriptionEvent, SubscriptionSchedule
from app.domain.subscriptions.schemas import LineItemInput
from app.domain.subscriptions.statuses import ScheduleStatus, SubscriptionStatus
from tests.conftest import BUSINESS_ID, OTHER_CUSTOMER_ID, PLAN_ID, STAFF, create_subscription, subscription_payload

TODAY = date(2024, 1, 15)


async def _entries(session_maker, subscription_id: str) -> dict[date, SubscriptionSchedule]:
    async with session_maker() as session:
        entries = await schedule_service.list_schedules(session, subscription_id)
        return {entry.scheduled_date: entry for entry in entries}


async def _event_types(session_maker, subscription_id: str) -> list[str]:
    async with session_maker() as session:
        events = await events_service.list_events(session, subscription_id)
        return sorted(event.event_type for event in events)


@pytest.mark.anyio
async def test_create_assigns_number_and_records_event(async_session_maker):
    first = await create_subscription(async_session_maker, today=TODAY)
    second = await create_subscription(async_session_maker, today=TODAY, service_plan_id=PLAN_ID, name=None)

    async with async_session_maker() as session:
        one = await subscription_service.get_subscription(session, first)
        two = await subscription_service.get_subscription(session, second)

    assert one.subscription_number == "SUB-00001"
    assert two.subscription_number == "SUB-00002"
    assert two.name == "Pool Care"
    assert one.status == SubscriptionStatus.ACTIVE
    assert one.created_by == STAFF.actor_id
    assert await _event_types(async_session_maker, first) == ["created"]


def test_create_rejects_unknown_frequency_and_billing_model():
    with pytest.raises(ValidationError):
        subscription_payload(frequency="fortnightly")
    with pytest.raises(ValidationError):
        subscription_payload(billing_model="postpaid")
    with pytest.raises(ValidationError):
        subscription_payload(end_date=date(2024, 1, 1))
    assert subscription_payload(frequency="WEEKLY").frequency == "weekly"


@pytest.mark.anyio
async def test_create_rejects_customer_of_another_business(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(NotFoundError):
            await subscription_service.create_subscription(
                session, subscription_payload(business_id="missing-business"), STAFF, today=TODAY
            )
        with pytest.raises(ValidationFailure):
            await subscription_service.create_subscription(
                session, subscription_payload(customer_id="nobody"), STAFF, today=TODAY
            )


@pytest.mark.anyio
async def test_pause_resume_round_trip_restores_pending_dates(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)
    today = date(2024, 1, 20)
    before = sorted((await _entries(async_session_maker, subscription_id)).keys())

    async with async_session_maker() as session:
        await subscription_service.pause_subscription(
            session,
            subscription_id,
            start_date=date(2024, 2, 1),
            end_date=date(2024, 3, 1),
            reason="Travelling",
            actor=STAFF,
            today=today,
        )
        await session.commit()

    paused = await _entries(async_session_maker, subscription_id)
    paused_dates = sorted(day for day, entry in paused.items() if entry.status == ScheduleStatus.PAUSED)
    assert paused_dates == [date(2024, 2, 5), date(2024, 2, 12), date(2024, 2, 19), date(2024, 2, 26)]
    assert paused[date(2024, 3, 4)].status == ScheduleStatus.PENDING
    assert paused[date(2024, 2, 5)].version == 2

    async with async_session_maker() as session:
        await subscription_service.resume_subscription(session, subscription_id, STAFF, today=today)
        await session.commit()

    after = await _entries(async_session_maker, subscription_id)
    assert sorted(day for day, entry in after.items() if entry.status == ScheduleStatus.PENDING) == before
    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.pause_start_date is None
    assert subscription.next_service_date == date(2024, 1, 22)
    assert await _event_types(async_session_maker, subscription_id) == ["created", "paused", "resumed"]


@pytest.mark.anyio
async def test_resume_after_pause_elapsed_skips_missed_visits(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)

    async with async_session_maker() as session:
        await subscription_service.pause_subscription(
            session, subscription_id, start_date=date(2024, 2, 1), today=TODAY
        )
        await session.commit()

    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
        assert subscription.next_service_date == date(2024, 1, 15)
        assert subscription.pause_end_date is None

    resume_day = date(2024, 2, 20)
    async with async_session_maker() as session:
        await subscription_service.resume_subscription(session, subscription_id, today=resume_day)
        await session.commit()

    entries = await _entries(async_session_maker, subscription_id)
    for missed in (date(2024, 2, 5), date(2024, 2, 12), date(2024, 2, 19)):
        assert entries[missed].status == ScheduleStatus.SKIPPED
        assert entries[missed].skip_reason == subscription_service.PAUSED_SKIP_REASON
    assert entries[date(2024, 2, 26)].status == ScheduleStatus.PENDING
    assert date(2024, 5, 20) in entries

    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
    assert subscription.next_service_date == date(2024, 2, 26)


@pytest.mark.anyio
async def test_pause_requires_active_subscription(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY, activate=False)

    async with async_session_maker() as session:
        with pytest.raises(InvalidTransitionError):
            await subscription_service.pause_subscription(session, subscription_id, today=TODAY)
        with pytest.raises(InvalidTransitionError):
            await subscription_service.resume_subscription(session, subscription_id, today=TODAY)


@pytest.mark.anyio
async def test_pause_rejects_inverted_window_without_side_effects(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)

    async with async_session_maker() as session:
        with pytest.raises(ValidationFailure):
            await subscription_service.pause_subscription(
                session,
                subscription_id,
                start_date=date(2024, 3, 1),
                end_date=date(2024, 2, 1),
                today=TODAY,
            )
        await session.rollback()

    entries = await _entries(async_session_maker, subscription_id)
    assert all(entry.status == ScheduleStatus.PENDING for entry in entries.values())
    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.anyio
async def test_cancellation_is_final(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)
    entries = await _entries(async_session_maker, subscription_id)

    async with async_session_maker() as session:
        await subscription_service.cancel_subscription(
            session, subscription_id, reason="Moving away", actor=STAFF, today=TODAY
        )
        await session.commit()

    after = await _entries(async_session_maker, subscription_id)
    assert all(entry.status == ScheduleStatus.SKIPPED for entry in after.values())
    assert {entry.skip_reason for entry in after.values()} == {subscription_service.CANCELLED_SKIP_REASON}

    first = entries[date(2024, 1, 22)].schedule_id
    async with async_session_maker() as session:
        assert await job_generation.materialize_job(session, first, today=TODAY) is None
        with pytest.raises(InvalidTransitionError):
            await subscription_service.skip_schedule(session, first, actor=STAFF)
        with pytest.raises(InvalidTransitionError):
            await subscription_service.cancel_subscription(session, subscription_id, today=TODAY)
        with pytest.raises(InvalidTransitionError):
            await subscription_service.activate_subscription(session, subscription_id, today=TODAY)

    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.previous_status == SubscriptionStatus.ACTIVE
    assert subscription.cancellation_reason == "Moving away"
    assert subscription.next_service_date is None
    assert subscription.end_date == TODAY


@pytest.mark.anyio
async def test_replace_line_items_records_price_change(async_session_maker):
    subscription_id = await create_subscription(
        async_session_maker,
        today=TODAY,
        line_items=[{"description": "Skim and vacuum", "quantity": 1, "unit_price_cents": 5000}],
    )

    async with async_session_maker() as session:
        await subscription_service.replace_line_items(
            session,
            subscription_id,
            [
                LineItemInput(description="Skim and vacuum", quantity=1, unit_price_cents=5500),
                LineItemInput(description="Filter rinse", quantity=2, unit_price_cents=1000),
            ],
            STAFF,
        )
        await session.commit()

    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
        assert [item.total_cents for item in subscription.line_items] == [5500, 2000]
        assert [item.sort_order for item in subscription.line_items] == [0, 1]
        event = (
            await session.execute(
                select(SubscriptionEvent).where(
                    SubscriptionEvent.subscription_id == subscription_id,
                    SubscriptionEvent.event_type == "price_changed",
                )
            )
        ).scalar_one()
    assert event.event_metadata["old_total_cents"] == 5000
    assert event.event_metadata["new_total_cents"] == 7500


@pytest.mark.anyio
async def test_events_are_append_only(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)

    async with async_session_maker() as session:
        event = (await events_service.list_events(session, subscription_id))[0]
        event.notes = "rewritten"
        with pytest.raises(ValueError):
            await session.flush()


@pytest.mark.anyio
async def test_list_subscriptions_filters(async_session_maker):
    await create_subscription(async_session_maker, today=TODAY)
    await create_subscription(async_session_maker, today=TODAY, customer_id=OTHER_CUSTOMER_ID, activate=False)

    async with async_session_maker() as session:
        everything = await subscription_service.list_subscriptions(session, business_id=BUSINESS_ID)
        pending = await subscription_service.list_subscriptions(session, status="PENDING")
        for_other = await subscription_service.list_subscriptions(session, customer_id=OTHER_CUSTOMER_ID)

    assert len(everything) == 2
    assert [sub.customer_id for sub in pending] == [OTHER_CUSTOMER_ID]
    assert len(for_other) == 1
