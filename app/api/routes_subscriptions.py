import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_auth import AdminIdentity, require_admin, require_dispatch, require_viewer
from app.domain.errors import NotFoundError
from app.domain.invoices import schemas as invoice_schemas
from app.domain.invoices import service as invoice_service
from app.domain.subscriptions import billing_service, events_service, job_generation, schedule_service
from app.domain.subscriptions import schemas as subscription_schemas
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions.db_models import Subscription, SubscriptionEvent, SubscriptionSchedule
from app.infra.db import get_db_session, get_session_factory
from app.jobs import subscription_jobs

router = APIRouter(prefix="/v1/admin", dependencies=[Depends(require_viewer)])
logger = logging.getLogger(__name__)


def _subscription_response(model: Subscription) -> subscription_schemas.SubscriptionResponse:
    return subscription_schemas.SubscriptionResponse(
        subscription_id=model.subscription_id,
        subscription_number=model.subscription_number,
        business_id=model.business_id,
        customer_id=model.customer_id,
        service_plan_id=model.service_plan_id,
        name=model.name,
        status=model.status,
        previous_status=model.previous_status,
        frequency=model.frequency,
        billing_model=model.billing_model,
        price_per_visit_cents=model.price_per_visit_cents,
        start_date=model.start_date,
        end_date=model.end_date,
        pause_start_date=model.pause_start_date,
        pause_end_date=model.pause_end_date,
        pause_reason=model.pause_reason,
        preferred_day_of_week=model.preferred_day_of_week,
        preferred_time_start=model.preferred_time_start,
        preferred_time_end=model.preferred_time_end,
        timezone=model.timezone,
        next_service_date=model.next_service_date,
        next_billing_date=model.next_billing_date,
        cancelled_at=model.cancelled_at,
        cancellation_reason=model.cancellation_reason,
        allow_customer_skip=model.allow_customer_skip,
        max_customer_skips_per_year=model.max_customer_skips_per_year,
        total_jobs_generated=model.total_jobs_generated,
        total_invoices_generated=model.total_invoices_generated,
        notes=model.notes,
        created_at=model.created_at,
        updated_at=model.updated_at,
        line_items=[
            subscription_schemas.LineItemResponse(
                line_item_id=item.line_item_id,
                description=item.description,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                total_cents=item.total_cents,
                sort_order=item.sort_order,
            )
            for item in model.line_items
        ],
    )


def schedule_response(entry: SubscriptionSchedule) -> subscription_schemas.ScheduleResponse:
    return subscription_schemas.ScheduleResponse(
        schedule_id=entry.schedule_id,
        subscription_id=entry.subscription_id,
        scheduled_date=entry.scheduled_date,
        preferred_time_start=entry.preferred_time_start,
        preferred_time_end=entry.preferred_time_end,
        status=entry.status,
        version=entry.version,
        job_id=entry.job_id,
        invoice_id=entry.invoice_id,
        skipped_at=entry.skipped_at,
        skip_reason=entry.skip_reason,
        is_customer_skip=entry.is_customer_skip,
    )


def _event_response(event: SubscriptionEvent) -> subscription_schemas.EventResponse:
    return subscription_schemas.EventResponse(
        event_id=event.event_id,
        subscription_id=event.subscription_id,
        event_type=event.event_type,
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        schedule_id=event.schedule_id,
        job_id=event.job_id,
        invoice_id=event.invoice_id,
        metadata=event.event_metadata or {},
        notes=event.notes,
        created_at=event.created_at,
    )


async def _committed_subscription(
    session: AsyncSession, subscription_id: str
) -> subscription_schemas.SubscriptionResponse:
    await session.commit()
    subscription = await subscription_service.get_subscription(session, subscription_id)
    return _subscription_response(subscription)


@router.post(
    "/subscriptions",
    response_model=subscription_schemas.SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    payload: subscription_schemas.SubscriptionCreateRequest,
    identity: AdminIdentity = Depends(require_dispatch),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.SubscriptionResponse:
    subscription = await subscription_service.create_subscription(session, payload, identity.actor)
    return await _committed_subscription(session, subscription.subscription_id)


@router.get("/subscriptions", response_model=list[subscription_schemas.SubscriptionResponse])
async def list_subscriptions(
    business_id: str | None = None,
    customer_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
) -> list[subscription_schemas.SubscriptionResponse]:
    subscriptions = await subscription_service.list_subscriptions(
        session,
        business_id=business_id,
        customer_id=customer_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return [_subscription_response(sub) for sub in subscriptions]


@router.get("/subscriptions/{subscription_id}", response_model=subscription_schemas.SubscriptionResponse)
async def get_subscription(
    subscription_id: str, session: AsyncSession = Depends(get_db_session)
) -> subscription_schemas.SubscriptionResponse:
    subscription = await subscription_service.get_subscription(session, subscription_id)
    return _subscription_response(subscription)


@router.post(
    "/subscriptions/{subscription_id}/activate",
    response_model=subscription_schemas.SubscriptionResponse,
)
async def activate_subscription(
    subscription_id: str,
    identity: AdminIdentity = Depends(require_dispatch),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.SubscriptionResponse:
    await subscription_service.activate_subscription(session, subscription_id, identity.actor)
    return await _committed_subscription(session, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/pause",
    response_model=subscription_schemas.SubscriptionResponse,
)
async def pause_subscription(
    subscription_id: str,
    payload: subscription_schemas.PauseRequest,
    identity: AdminIdentity = Depends(require_dispatch),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.SubscriptionResponse:
    await subscription_service.pause_subscription(
        session,
        subscription_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        actor=identity.actor,
    )
    return await _committed_subscription(session, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/resume",
    response_model=subscription_schemas.SubscriptionResponse,
)
async def resume_subscription(
    subscription_id: str,
    identity: AdminIdentity = Depends(require_dispatch),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.SubscriptionResponse:
    await subscription_service.resume_subscription(session, subscription_id, identity.actor)
    return await _committed_subscription(session, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=subscription_schemas.SubscriptionResponse,
)
async def cancel_subscription(
    subscription_id: str,
    payload: subscription_schemas.CancelRequest,
    identity: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.SubscriptionResponse:
    await subscription_service.cancel_subscription(
        session, subscription_id, reason=payload.reason, actor=identity.actor
    )
    return await _committed_subscription(session, subscription_id)


@router.put(
    "/subscriptions/{subscription_id}/line-items",
    response_model=subscription_schemas.SubscriptionResponse,
)
async def replace_line_items(
    subscription_id: str,
    payload: subscription_schemas.LineItemsReplaceRequest,
    identity: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.SubscriptionResponse:
    await subscription_service.replace_line_items(session, subscription_id, payload.items, identity.actor)
    return await _committed_subscription(session, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/invoices",
    response_model=invoice_schemas.InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def generate_invoice(
    subscription_id: str,
    payload: subscription_schemas.InvoiceGenerateRequest,
    identity: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> invoice_schemas.InvoiceResponse:
    invoice = await billing_service.generate_invoice(
        session,
        subscription_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
        schedule_id=payload.schedule_id,
        actor=identity.actor,
    )
    await session.commit()
    refreshed = await invoice_service.get_invoice(session, invoice.invoice_id)
    if refreshed is None:
        raise NotFoundError("Invoice not found")
    return invoice_schemas.InvoiceResponse(**invoice_service.build_invoice_response(refreshed))


@router.get(
    "/subscriptions/{subscription_id}/events",
    response_model=list[subscription_schemas.EventResponse],
)
async def list_subscription_events(
    subscription_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
) -> list[subscription_schemas.EventResponse]:
    await subscription_service.get_subscription(session, subscription_id)
    events = await events_service.list_events(session, subscription_id, limit=limit)
    return [_event_response(event) for event in events]


@router.get(
    "/subscriptions/{subscription_id}/schedules",
    response_model=list[subscription_schemas.ScheduleResponse],
)
async def list_subscription_schedules(
    subscription_id: str,
    status_filter: str | None = Query(default=None, alias="status"),
    from_date: date | None = None,
    limit: int = Query(default=200, ge=1, le=1000),
    session: AsyncSession = Depends(get_db_session),
) -> list[subscription_schemas.ScheduleResponse]:
    await subscription_service.get_subscription(session, subscription_id)
    entries = await schedule_service.list_schedules(
        session, subscription_id, status=status_filter, from_date=from_date, limit=limit
    )
    return [schedule_response(entry) for entry in entries]


@router.post(
    "/subscription-schedules/{schedule_id}/skip",
    response_model=subscription_schemas.ScheduleResponse,
)
async def skip_schedule(
    schedule_id: str,
    payload: subscription_schemas.SkipRequest,
    identity: AdminIdentity = Depends(require_dispatch),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.ScheduleResponse:
    entry = await subscription_service.skip_schedule(
        session,
        schedule_id,
        reason=payload.reason,
        actor=identity.actor,
        expected_version=payload.expected_version,
    )
    response = schedule_response(entry)
    await session.commit()
    return response


@router.post(
    "/subscription-schedules/{schedule_id}/job",
    response_model=subscription_schemas.MaterializeResponse,
)
async def materialize_schedule(
    schedule_id: str,
    _identity: AdminIdentity = Depends(require_dispatch),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.MaterializeResponse:
    job_id = await job_generation.materialize_job(session, schedule_id)
    await session.commit()
    if job_id is None:
        entry = await session.get(SubscriptionSchedule, schedule_id, populate_existing=True)
        return subscription_schemas.MaterializeResponse(
            schedule_id=schedule_id, job_id=entry.job_id if entry else None, created=False
        )
    return subscription_schemas.MaterializeResponse(schedule_id=schedule_id, job_id=job_id, created=True)


@router.post("/subscriptions/run", response_model=subscription_schemas.SweepResult)
async def run_subscriptions(
    request: Request,
    business_id: str | None = None,
    identity: AdminIdentity = Depends(require_admin),
) -> subscription_schemas.SweepResult:
    session_factory = getattr(request.app.state, "db_session_factory", None) or get_session_factory()
    jobs = await subscription_jobs.run_subscription_jobs(session_factory, business_id=business_id)
    invoices = await subscription_jobs.run_subscription_invoices(session_factory, business_id=business_id)
    logger.info(
        "subscription_sweep_requested",
        extra={"extra": {"admin": identity.username, "jobs": jobs, "invoices": invoices}},
    )
    return subscription_schemas.SweepResult(jobs=jobs, invoices=invoices)
