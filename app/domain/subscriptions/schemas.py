from datetime import date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from app.domain.subscriptions import statuses


class LineItemInput(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: int = Field(default=1, gt=0)
    unit_price_cents: int = Field(ge=0)


class SubscriptionCreateRequest(BaseModel):
    business_id: str = Field(min_length=1, max_length=36)
    customer_id: str = Field(min_length=1, max_length=36)
    service_plan_id: str | None = None
    name: str | None = Field(default=None, max_length=200)
    frequency: statuses.Frequency
    billing_model: statuses.BillingModel
    price_per_visit_cents: int = Field(default=0, ge=0)
    start_date: date
    end_date: date | None = None
    preferred_day_of_week: int | None = Field(default=None, ge=0, le=6)
    preferred_time_start: time | None = None
    preferred_time_end: time | None = None
    timezone: str | None = None
    notes: str | None = None
    internal_notes: str | None = None
    allow_customer_skip: bool = True
    max_customer_skips_per_year: int = Field(default=2, ge=0)
    activate: bool = True
    line_items: list[LineItemInput] = Field(default_factory=list, max_length=50)

    @field_validator("frequency", mode="before")
    @classmethod
    def normalize_frequency(cls, value: str) -> str:
        return statuses.normalize_frequency(value) if isinstance(value, str) else value

    @field_validator("billing_model", mode="before")
    @classmethod
    def normalize_billing_model(cls, value: str) -> str:
        return statuses.normalize_billing_model(value) if isinstance(value, str) else value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_ranges(self) -> "SubscriptionCreateRequest":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        if (
            self.preferred_time_start is not None
            and self.preferred_time_end is not None
            and self.preferred_time_end <= self.preferred_time_start
        ):
            raise ValueError("preferred_time_end must be after preferred_time_start")
        return self


class PauseRequest(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    reason: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class LineItemsReplaceRequest(BaseModel):
    items: list[LineItemInput] = Field(max_length=50)


class SkipRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    expected_version: int | None = Field(default=None, ge=1)


class InvoiceGenerateRequest(BaseModel):
    period_start: date | None = None
    period_end: date | None = None
    schedule_id: str | None = None


class LineItemResponse(BaseModel):
    line_item_id: int
    description: str
    quantity: int
    unit_price_cents: int
    total_cents: int
    sort_order: int


class SubscriptionResponse(BaseModel):
    subscription_id: str
    subscription_number: str
    business_id: str
    customer_id: str
    service_plan_id: str | None = None
    name: str
    status: str
    previous_status: str | None = None
    frequency: str
    billing_model: str
    price_per_visit_cents: int
    start_date: date
    end_date: date | None = None
    pause_start_date: date | None = None
    pause_end_date: date | None = None
    pause_reason: str | None = None
    preferred_day_of_week: int | None = None
    preferred_time_start: time | None = None
    preferred_time_end: time | None = None
    timezone: str
    next_service_date: date | None = None
    next_billing_date: date | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    allow_customer_skip: bool
    max_customer_skips_per_year: int
    total_jobs_generated: int
    total_invoices_generated: int
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    line_items: list[LineItemResponse]


class ScheduleResponse(BaseModel):
    schedule_id: str
    subscription_id: str
    scheduled_date: date
    preferred_time_start: time | None = None
    preferred_time_end: time | None = None
    status: str
    version: int
    job_id: str | None = None
    invoice_id: str | None = None
    skipped_at: datetime | None = None
    skip_reason: str | None = None
    is_customer_skip: bool


class EventResponse(BaseModel):
    event_id: str
    subscription_id: str
    event_type: str
    actor_type: str
    actor_id: str | None = None
    schedule_id: str | None = None
    job_id: str | None = None
    invoice_id: str | None = None
    metadata: dict
    notes: str | None = None
    created_at: datetime


class MaterializeResponse(BaseModel):
    schedule_id: str
    job_id: str | None
    created: bool


class ServicePlanSummary(BaseModel):
    service_plan_id: str
    name: str
    description: str | None = None


class UpcomingVisit(BaseModel):
    schedule_id: str
    scheduled_date: date
    preferred_time_start: time | None = None
    preferred_time_end: time | None = None
    version: int


class PortalSubscription(BaseModel):
    subscription_id: str
    subscription_number: str
    name: str
    status: str
    frequency: str
    billing_model: str
    price_per_visit_cents: int
    next_service_date: date | None = None
    allow_customer_skip: bool
    service_plan: ServicePlanSummary | None = None
    upcoming: list[UpcomingVisit]


class SweepResult(BaseModel):
    jobs: dict[str, int]
    invoices: dict[str, int]
