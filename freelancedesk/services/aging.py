from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable

from ..models import Invoice, InvoiceStatus
from ..money import to_decimal

PAID = "Paid"
CURRENT = "Current"

# (upper bound in days overdue, label); anything past the last bound is "Over 90 Days".
BUCKETS = (
    (30, "1-30 Days"),
    (60, "31-60 Days"),
    (90, "61-90 Days"),
)
OVER_90 = "Over 90 Days"


def classify_aging(balance_due: Decimal, due_date: date, today: date) -> tuple[str, int]:
    """Return ``(bucket, days_overdue)``; days are 0 unless the invoice is past due."""
    if to_decimal(balance_due) <= 0:
        return PAID, 0
    if due_date >= today:
        return CURRENT, 0
    days = (today - due_date).days
    for limit, label in BUCKETS:
        if days <= limit:
            return label, days
    return OVER_90, days


def build_aging_report(invoices: Iterable[Invoice], today: date) -> list[dict]:
    rows = []
    for invoice in invoices:
        if invoice.is_cancelled or invoice.status in (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED):
            continue
        category, days = classify_aging(invoice.balance_due, invoice.due_date, today)
        rows.append(
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "client_name": invoice.client.display_name if invoice.client else None,
                "due_date": invoice.due_date,
                "total_amount": invoice.total_amount,
                "balance_due": invoice.balance_due,
                "days_overdue": days,
                "aging_category": category,
            }
        )
    return rows
