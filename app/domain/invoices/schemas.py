from datetime import date, datetime

from pydantic import BaseModel, Field


class InvoiceItemCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    qty: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0)


class InvoiceItemResponse(BaseModel):
    item_id: int
    description: str
    qty: int
    unit_price_cents: int
    line_total_cents: int
    sort_order: int


class InvoiceResponse(BaseModel):
    invoice_id: str
    invoice_number: str
    business_id: str
    customer_id: str
    subscription_id: str | None = None
    subscription_schedule_id: str | None = None
    status: str
    issue_date: date
    due_date: date | None
    billing_period_start: date | None = None
    billing_period_end: date | None = None
    currency: str
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    items: list[InvoiceItemResponse]
