INVOICE_STATUS_DRAFT = "DRAFT"
INVOICE_STATUS_SENT = "SENT"
INVOICE_STATUS_PAID = "PAID"
INVOICE_STATUS_VOID = "VOID"

INVOICE_STATUSES = {
    INVOICE_STATUS_DRAFT,
    INVOICE_STATUS_SENT,
    INVOICE_STATUS_PAID,
    INVOICE_STATUS_VOID,
}


def normalize_status(value: str) -> str:
    normalized = value.upper()
    if normalized not in INVOICE_STATUSES:
        raise ValueError("Invalid invoice status")
    return normalized
