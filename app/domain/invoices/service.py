from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.domain.invoices import statuses
from app.domain.invoices.db_models import Invoice, InvoiceItem
from app.domain.invoices.schemas import InvoiceItemCreate
from app.domain.numbering import service as numbering_service

INVOICE_PREFIX = "INV"


async def next_invoice_number(session: AsyncSession, business_id: str) -> str:
    return await numbering_service.next_suffix_number(
        session,
        Invoice.invoice_number,
        Invoice.business_id,
        business_id,
        prefix=INVOICE_PREFIX,
    )


async def create_invoice(
    session: AsyncSession,
    *,
    business_id: str,
    customer_id: str,
    items: list[InvoiceItemCreate],
    issue_date: date,
    due_date: date | None = None,
    currency: str = "USD",
    subscription_id: str | None = None,
    subscription_schedule_id: str | None = None,
    billing_period_start: date | None = None,
    billing_period_end: date | None = None,
    notes: str | None = None,
    created_by: str | None = None,
) -> Invoice:
    if not items:
        raise ValueError("Invoice requires at least one item")

    subtotal = 0
    for payload in items:
        if payload.qty <= 0:
            raise ValueError("Quantity must be positive")
        if payload.unit_price_cents < 0:
            raise ValueError("Unit price must be non-negative")
        subtotal += payload.qty * payload.unit_price_cents

    def build(invoice_number: str) -> Invoice:
        invoice = Invoice(
            business_id=business_id,
            invoice_number=invoice_number,
            customer_id=customer_id,
            subscription_id=subscription_id,
            subscription_schedule_id=subscription_schedule_id,
            status=statuses.INVOICE_STATUS_DRAFT,
            issue_date=issue_date,
            due_date=due_date,
            billing_period_start=billing_period_start,
            billing_period_end=billing_period_end,
            currency=currency.upper(),
            subtotal_cents=subtotal,
            tax_cents=0,
            total_cents=subtotal,
            notes=notes,
            created_by=created_by,
        )
        invoice.items = [
            InvoiceItem(
                description=payload.description,
                qty=payload.qty,
                unit_price_cents=payload.unit_price_cents,
                line_total_cents=payload.qty * payload.unit_price_cents,
                sort_order=index,
            )
            for index, payload in enumerate(items)
        ]
        return invoice

    return await numbering_service.add_with_unique_number(
        session,
        lambda: next_invoice_number(session, business_id),
        build,
    )


async def get_invoice(session: AsyncSession, invoice_id: str) -> Invoice | None:
    stmt = (
        select(Invoice)
        .options(selectinload(Invoice.items))
        .where(Invoice.invoice_id == invoice_id)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def build_invoice_response(invoice: Invoice) -> dict:
    return {
        "invoice_id": invoice.invoice_id,
        "invoice_number": invoice.invoice_number,
        "business_id": invoice.business_id,
        "customer_id": invoice.customer_id,
        "subscription_id": invoice.subscription_id,
        "subscription_schedule_id": invoice.subscription_schedule_id,
        "status": invoice.status,
        "issue_date": invoice.issue_date,
        "due_date": invoice.due_date,
        "billing_period_start": invoice.billing_period_start,
        "billing_period_end": invoice.billing_period_end,
        "currency": invoice.currency,
        "subtotal_cents": invoice.subtotal_cents,
        "tax_cents": invoice.tax_cents,
        "total_cents": invoice.total_cents,
        "notes": invoice.notes,
        "created_by": invoice.created_by,
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
        "items": [
            {
                "item_id": item.item_id,
                "description": item.description,
                "qty": item.qty,
                "unit_price_cents": item.unit_price_cents,
                "line_total_cents": item.line_total_cents,
                "sort_order": item.sort_order,
            }
            for item in invoice.items
        ],
    }
