from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.customers.db_models import Customer
from app.domain.errors import InvalidTransitionError, NotFoundError
from app.domain.jobs.db_models import Job
from app.domain.jobs.statuses import JobStatus
from app.domain.numbering import service as numbering_service

logger = logging.getLogger(__name__)

JOB_PREFIX = "JOB"


async def next_job_number(session: AsyncSession, business_id: str) -> str:
    return await numbering_service.next_suffix_number(
        session,
        Job.job_number,
        Job.business_id,
        business_id,
        prefix=JOB_PREFIX,
    )


async def create_job(
    session: AsyncSession,
    *,
    business_id: str,
    customer: Customer,
    title: str,
    job_id: str | None = None,
    scheduled_start: datetime,
    scheduled_end: datetime,
    description: str | None = None,
    subscription_id: str | None = None,
    subscription_schedule_id: str | None = None,
    needs_invoice: bool = False,
) -> Job:
    """Create a job, copying the customer's current address onto it."""

    def build(job_number: str) -> Job:
        job = Job(
            business_id=business_id,
            customer_id=customer.customer_id,
            job_number=job_number,
            title=title,
            description=description,
            status=JobStatus.SCHEDULED,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            address_line1=customer.address_line1,
            city=customer.city,
            state=customer.state,
            zip=customer.zip,
            subscription_id=subscription_id,
            subscription_schedule_id=subscription_schedule_id,
            needs_invoice=needs_invoice,
        )
        if job_id:
            job.job_id = job_id
        return job

    return await numbering_service.add_with_unique_number(
        session,
        lambda: next_job_number(session, business_id),
        build,
    )


async def complete_job(session: AsyncSession, job_id: str, *, completed_at: datetime | None = None) -> Job:
    job = await session.get(Job, job_id, with_for_update=True)
    if job is None:
        raise NotFoundError("Job not found")
    if job.status != JobStatus.SCHEDULED:
        raise InvalidTransitionError(f"Cannot complete a {job.status} job")
    job.status = JobStatus.COMPLETED
    job.completed_at = completed_at or datetime.now(tz=timezone.utc)
    await session.flush()
    logger.info("job_completed", extra={"extra": {"job_id": job.job_id}})
    return job
