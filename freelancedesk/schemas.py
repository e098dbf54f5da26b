from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LineItemRequest(BaseModel):
    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    tax_rate: Decimal | None = None
    discount: Decimal | None = None
    sort_order: int | None = None


class ReorderRequest(BaseModel):
    item_ids: list[str] = Field(default_factory=list)


class QuoteRequest(BaseModel):
    """Create or update a quote. On update, omitted fields are left unchanged."""

    client_id: str | None = None
    project_id: str | None = None
    title: str | None = None
    summary: str | None = None
    valid_until: date | None = None
    terms_and_conditions: str | None = None
    notes: str | None = None
    tax_amount: Decimal | None = None
    discount_amount: Decimal | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    items: list[LineItemRequest] | None = None


class InvoiceRequest(BaseModel):
    """Create or update an invoice. On update, omitted fields are left unchanged."""

    client_id: str | None = None
    project_id: str | None = None
    quote_id: str | None = None
    title: str | None = None
    issue_date: date | None = None
    due_date: date | None = None
    payment_terms: str | None = None
    notes: str | None = None
    terms: str | None = None
    tax_amount: Decimal | None = None
    discount_amount: Decimal | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    payment_link: str | None = None
    items: list[LineItemRequest] | None = None


class StatusRequest(BaseModel):
    status: str


class PaymentRequest(BaseModel):
    payment_method: str | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    payment_date: date | None = None
    notes: str | None = None
    status: str | None = None
    metadata: dict[str, Any] | None = None


class _FromOrm(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class LineItemOut(_FromOrm):
    id: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    discount: Decimal
    total: Decimal
    sort_order: int


class QuoteOut(_FromOrm):
    id: str
    user_id: str
    client_id: str
    project_id: str | None = None
    quote_number: str
    title: str
    summary: str | None = None
    status: str
    valid_until: date | None = None
    terms_and_conditions: str | None = None
    notes: str | None = None
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    sent_at: datetime | None = None
    accepted_at: datetime | None = None
    viewed_at: datetime | None = None
    public_hash: str
    items: list[LineItemOut] = Field(default_factory=list)


class QuoteHistoryOut(_FromOrm):
    id: str
    quote_id: str
    action: str
    description: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime


class QuoteSummaryOut(BaseModel):
    id: str
    quote_number: str
    title: str
    client_name: str | None = None
    status: str
    total_amount: Decimal
    sent_at: datetime | None = None
    accepted_at: datetime | None = None
    valid_until: date | None = None
    is_expired: bool
    item_count: int


class PaymentOut(_FromOrm):
    id: str
    invoice_id: str
    payment_method: str
    transaction_id: str | None = None
    amount: Decimal
    currency: str
    payment_date: date
    notes: str | None = None
    status: str


class InvoiceOut(_FromOrm):
    id: str
    user_id: str
    client_id: str
    project_id: str | None = None
    quote_id: str | None = None
    invoice_number: str
    title: str
    status: str
    issue_date: date
    due_date: date
    paid_date: date | None = None
    payment_terms: str | None = None
    notes: str | None = None
    terms: str | None = None
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    currency: str
    sent_at: datetime | None = None
    viewed_at: datetime | None = None
    public_hash: str
    payment_link: str | None = None
    items: list[LineItemOut] = Field(default_factory=list)
    payments: list[PaymentOut] = Field(default_factory=list)


class InvoiceSummaryOut(BaseModel):
    id: str
    invoice_number: str
    title: str
    client_name: str | None = None
    status: str
    issue_date: date
    due_date: date
    total_amount: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    is_overdue: bool
    is_partially_paid: bool
    item_count: int
    payment_count: int


class AgingOut(BaseModel):
    invoice_id: str
    invoice_number: str
    client_name: str | None = None
    due_date: date
    total_amount: Decimal
    balance_due: Decimal
    days_overdue: int
    aging_category: str


class InvoiceTotalsOut(BaseModel):
    total_invoiced: Decimal
    total_paid: Decimal
    total_balance_due: Decimal
