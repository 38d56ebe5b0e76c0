from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from app.domain.jobs.db_models import Job
from app.domain.subscriptions import events_service, job_generation, schedule_service
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions.statuses import ScheduleStatus, SubscriptionStatus
from app.jobs import run as job_runner
from app.jobs import subscription_jobs
from app.jobs.heartbeat import latest_heartbeat, record_heartbeat
from app.settings import settings
from tests.conftest import create_subscription

TODAY = date(2024, 1, 15)


async def _job_count(session_maker) -> int:
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(Job))


@pytest.mark.anyio
async def test_job_sweep_materializes_lookahead_once(async_session_maker):
    await create_subscription(async_session_maker, today=TODAY)

    first = await subscription_jobs.run_subscription_jobs(async_session_maker, today=TODAY)
    second = await subscription_jobs.run_subscription_jobs(async_session_maker, today=TODAY)

    assert first == {
        "created": 2,
        "claimed_elsewhere": 0,
        "failed": 0,
        "resumed": 0,
        "completed": 0,
        "generated": 0,
    }
    assert second["created"] == 0
    assert await _job_count(async_session_maker) == 2


@pytest.mark.anyio
async def test_job_sweep_tops_up_window(async_session_maker):
    subscription_id = await create_subscription(
        async_session_maker, today=TODAY, frequency="monthly"
    )

    result = await subscription_jobs.run_subscription_jobs(async_session_maker, today=date(2024, 2, 20))

    assert result["generated"] == 1
    async with async_session_maker() as session:
        entries = await schedule_service.list_schedules(session, subscription_id)
    assert entries[-1].scheduled_date == date(2024, 5, 15)


@pytest.mark.anyio
async def test_job_sweep_records_failures(async_session_maker, monkeypatch):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)

    async def explode(session, schedule_id, *, today=None):
        raise RuntimeError("job store unavailable")

    monkeypatch.setattr(job_generation, "materialize_job", explode)
    result = await subscription_jobs.run_subscription_jobs(async_session_maker, today=TODAY)

    assert result["failed"] == 2
    assert result["created"] == 0
    async with async_session_maker() as session:
        events = await events_service.list_events(session, subscription_id)
        pending = await schedule_service.list_schedules(
            session, subscription_id, status=ScheduleStatus.PENDING, limit=2
        )
    failures = [event for event in events if event.event_type == "job_generation_failed"]
    assert len(failures) == 2
    assert failures[0].event_metadata["reason"] == "RuntimeError"
    assert [entry.scheduled_date for entry in pending] == [date(2024, 1, 15), date(2024, 1, 22)]


@pytest.mark.anyio
async def test_job_sweep_resumes_elapsed_pauses(async_session_maker):
    subscription_id = await create_subscription(async_session_maker, today=TODAY)
    async with async_session_maker() as session:
        await subscription_service.pause_subscription(
            session,
            subscription_id,
            start_date=date(2024, 1, 20),
            end_date=date(2024, 2, 1),
            today=TODAY,
        )
        await session.commit()

    result = await subscription_jobs.run_subscription_jobs(async_session_maker, today=date(2024, 2, 2))

    assert result["resumed"] == 1
    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.anyio
async def test_expired_subscriptions_complete_only_when_enabled(async_session_maker):
    subscription_id = await create_subscription(
        async_session_maker, today=TODAY, end_date=date(2024, 2, 1)
    )
    later = date(2024, 2, 5)

    result = await subscription_jobs.run_subscription_jobs(async_session_maker, today=later)
    assert result["completed"] == 0

    settings.auto_complete_expired_subscriptions = True
    result = await subscription_jobs.run_subscription_jobs(async_session_maker, today=later)
    assert result["completed"] == 1

    async with async_session_maker() as session:
        subscription = await subscription_service.get_subscription(session, subscription_id)
        entries = await schedule_service.list_schedules(session, subscription_id)
    assert subscription.status == SubscriptionStatus.COMPLETED
    assert subscription.next_service_date is None
    assert all(entry.status == ScheduleStatus.SKIPPED for entry in entries)


@pytest.mark.anyio
async def test_one_failing_subscription_does_not_stop_pause_sweep(async_session_maker, monkeypatch):
    broken = await create_subscription(async_session_maker, today=TODAY)
    healthy = await create_subscription(async_session_maker, today=TODAY)
    async with async_session_maker() as session:
        for subscription_id in (broken, healthy):
            await subscription_service.pause_subscription(
                session,
                subscription_id,
                start_date=date(2024, 1, 20),
                end_date=date(2024, 2, 1),
                today=TODAY,
            )
        await session.commit()

    resume = subscription_service.resume_subscription

    async def flaky_resume(session, subscription_id, **kwargs):
        if subscription_id == broken:
            raise RuntimeError("lock timeout")
        return await resume(session, subscription_id, **kwargs)

    monkeypatch.setattr(subscription_service, "resume_subscription", flaky_resume)
    resumed = await subscription_service.resume_elapsed_pauses(async_session_maker, today=date(2024, 2, 2))

    assert resumed == 1
    async with async_session_maker() as session:
        assert (await subscription_service.get_subscription(session, broken)).status == SubscriptionStatus.PAUSED
        assert (await subscription_service.get_subscription(session, healthy)).status == SubscriptionStatus.ACTIVE


@pytest.mark.anyio
async def test_one_failing_subscription_does_not_stop_top_up(async_session_maker, monkeypatch):
    broken = await create_subscription(async_session_maker, today=TODAY, frequency="monthly")
    healthy = await create_subscription(async_session_maker, today=TODAY, frequency="monthly")
    generate = schedule_service.generate_schedules

    async def flaky_generate(session, subscription_id, *args, **kwargs):
        if subscription_id == broken:
            raise RuntimeError("lock timeout")
        return await generate(session, subscription_id, *args, **kwargs)

    monkeypatch.setattr(schedule_service, "generate_schedules", flaky_generate)
    result = await schedule_service.generate_for_active_subscriptions(
        async_session_maker, today=date(2024, 2, 20)
    )

    assert result == {"subscriptions": 1, "generated": 1, "failed": 1}
    async with async_session_maker() as session:
        healthy_entries = await schedule_service.list_schedules(session, healthy)
        broken_entries = await schedule_service.list_schedules(session, broken)
    assert healthy_entries[-1].scheduled_date == date(2024, 5, 15)
    assert broken_entries[-1].scheduled_date == date(2024, 4, 15)


@pytest.mark.anyio
async def test_completion_sweep_uses_each_subscription_timezone(async_session_maker):
    settings.auto_complete_expired_subscriptions = True
    # Kiritimati is always one calendar day ahead of Honolulu
    ends_on = schedule_service.local_today("Pacific/Honolulu")
    starts_on = ends_on - timedelta(days=14)
    ahead = await create_subscription(
        async_session_maker,
        today=starts_on,
        start_date=starts_on,
        end_date=ends_on,
        timezone="Pacific/Kiritimati",
    )
    behind = await create_subscription(
        async_session_maker,
        today=starts_on,
        start_date=starts_on,
        end_date=ends_on,
        timezone="Pacific/Honolulu",
    )

    completed = await subscription_service.complete_expired_subscriptions(async_session_maker)

    assert completed == 1
    async with async_session_maker() as session:
        assert (await subscription_service.get_subscription(session, ahead)).status == SubscriptionStatus.COMPLETED
        assert (await subscription_service.get_subscription(session, behind)).status == SubscriptionStatus.ACTIVE


@pytest.mark.anyio
async def test_invoice_sweep_bills_due_prepay(async_session_maker):
    await create_subscription(async_session_maker, today=TODAY, billing_model="prepay")

    result = await subscription_jobs.run_subscription_invoices(async_session_maker, today=TODAY)

    assert result["periodic"] == 1
    assert result["failed"] == 0


@pytest.mark.anyio
async def test_heartbeat_counts_loops(async_session_maker):
    await record_heartbeat(async_session_maker)
    await record_heartbeat(async_session_maker, status="error")

    async with async_session_maker() as session:
        heartbeat = await latest_heartbeat(session)

    assert heartbeat.loops == 2
    assert heartbeat.last_status == "error"


@pytest.mark.anyio
async def test_runner_once_records_heartbeat(async_session_maker, monkeypatch):
    calls = []

    async def fake_jobs(session_factory, *, today=None, business_id=None):
        calls.append(("jobs", business_id))
        return {"created": 0}

    async def fake_invoices(session_factory, *, today=None, business_id=None):
        calls.append(("invoices", business_id))
        raise RuntimeError("billing down")

    monkeypatch.setattr(job_runner, "get_session_factory", lambda: async_session_maker)
    monkeypatch.setattr(job_runner, "configure_logging", lambda: None)
    monkeypatch.setattr(subscription_jobs, "run_subscription_jobs", fake_jobs)
    monkeypatch.setattr(subscription_jobs, "run_subscription_invoices", fake_invoices)

    await job_runner.main(["--once", "--business-id", "biz-1"])

    assert calls == [("jobs", "biz-1"), ("invoices", "biz-1")]
    async with async_session_maker() as session:
        heartbeat = await latest_heartbeat(session)
    assert heartbeat.last_status == "error"
