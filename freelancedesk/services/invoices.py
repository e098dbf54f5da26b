"""
Invoice lifecycle.

Invoice status is derived, not assigned: after every item or payment change
``recompute_totals`` refreshes the money fields and re-derives the status
with ``derive_invoice_status``. Cancellation is a separate sticky flag that
recomputation never clears. ``update_invoice_status`` is the only way to set
a status by hand and is meant for administrative corrections.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..audit import RelatedEntity
from ..config import settings
from ..db import atomic
from ..errors import Conflict, InvalidArgument, InvalidState, NotFound, parse_id
from ..models import Invoice, InvoiceStatus, Quote
from ..money import ZERO, compute_aggregate, to_decimal
from ..schemas import InvoiceRequest
from .aging import build_aging_report
from .context import NO_META, BaseService, RequestMeta, ServiceContext, non_negative
from .line_items import INVOICE_ITEMS, LineItemStore
from .payments import PaymentLedger, completed_total

logger = logging.getLogger(__name__)


def derive_invoice_status(
    *,
    balance_due: Decimal,
    amount_paid: Decimal,
    due_date: date,
    sent_at: datetime | None,
    is_cancelled: bool,
    today: date,
) -> str:
    """
    Status from money and dates, first match wins:
    cancelled > paid > partial > overdue > sent > draft.
    """
    if is_cancelled:
        return InvoiceStatus.CANCELLED
    if balance_due <= 0:
        return InvoiceStatus.PAID
    if amount_paid > 0:
        return InvoiceStatus.PARTIAL
    if due_date < today:
        return InvoiceStatus.OVERDUE
    if sent_at is not None:
        return InvoiceStatus.SENT
    return InvoiceStatus.DRAFT


class InvoiceService(BaseService):
    def __init__(self, ctx: ServiceContext):
        super().__init__(ctx)
        self.items = LineItemStore(ctx, INVOICE_ITEMS, self._load_invoice, self.recompute_totals)
        self.payments = PaymentLedger(ctx, self._load_invoice, self.recompute_totals)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_invoice(self, user_id: str, invoice_id: str, lock: bool = False) -> Invoice:
        invoice_id = parse_id(invoice_id, "invoice")
        criteria = (Invoice.id == invoice_id, Invoice.user_id == str(user_id))
        stmt = select(Invoice).where(*criteria)
        if lock:
            self._claim_row(Invoice, *criteria)
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        invoice = self.db.scalar(stmt)
        if invoice is None:
            raise NotFound("Invoice not found")
        return invoice

    def _load_by_hash(self, public_hash: str, lock: bool = False) -> Invoice:
        stmt = select(Invoice).where(Invoice.public_hash == public_hash)
        if lock:
            self._claim_row(Invoice, Invoice.public_hash == public_hash)
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        invoice = self.db.scalar(stmt)
        if invoice is None:
            raise NotFound("Invoice not found")
        return invoice

    def _require_quote(self, quote_id, user_id: str) -> str | None:
        if quote_id is None or quote_id == "":
            return None
        quote_id = parse_id(quote_id, "quote")
        stmt = select(Quote.id).where(Quote.id == quote_id, Quote.user_id == user_id)
        if self.db.scalar(stmt) is None:
            raise NotFound("Quote not found or not authorized")
        return quote_id

    @staticmethod
    def _require_draft(invoice: Invoice, message: str) -> None:
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidState(message)

    def _flush(self) -> None:
        try:
            self.db.flush()
        except IntegrityError:
            raise Conflict("Invoice number or public link already in use; please retry") from None

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    def recompute_totals(self, invoice: Invoice, derive_status: bool = True) -> None:
        """Refresh the money fields; with ``derive_status`` also re-derive the status."""
        aggregate = compute_aggregate(
            [item.total for item in invoice.items],
            invoice.tax_amount,
            invoice.discount_amount,
        )
        paid = completed_total(self.db, invoice.id)
        invoice.subtotal = aggregate.subtotal
        invoice.total_amount = aggregate.total_amount
        invoice.amount_paid = paid
        invoice.balance_due = aggregate.total_amount - paid

        if derive_status:
            previous = invoice.status
            today = self.clock.today()
            invoice.status = derive_invoice_status(
                balance_due=invoice.balance_due,
                amount_paid=paid,
                due_date=invoice.due_date,
                sent_at=invoice.sent_at,
                is_cancelled=bool(invoice.is_cancelled),
                today=today,
            )
            if invoice.status == InvoiceStatus.PAID and invoice.paid_date is None:
                invoice.paid_date = today
            if invoice.status != previous:
                logger.info("Invoice %s status %s -> %s", invoice.invoice_number, previous, invoice.status)
        logger.debug(
            "Invoice %s totals: subtotal=%s total=%s paid=%s balance=%s",
            invoice.invoice_number,
            invoice.subtotal,
            invoice.total_amount,
            invoice.amount_paid,
            invoice.balance_due,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @atomic
    def create_invoice(self, user_id: str, request: InvoiceRequest, meta: RequestMeta = NO_META) -> Invoice:
        user_id = self._require_user(user_id)
        client_id = self._require_client(request.client_id, user_id)
        project_id = self._require_project(request.project_id, user_id)
        quote_id = self._require_quote(request.quote_id, user_id)
        if not request.title:
            raise InvalidArgument("Invoice title is required")

        issue_date = request.issue_date or self.clock.today()
        due_date = request.due_date or issue_date + timedelta(days=settings.invoice_due_days)
        if due_date < issue_date:
            raise InvalidArgument("Due date cannot be before issue date")

        invoice = Invoice(
            id=self.ctx.new_id(),
            user_id=user_id,
            client_id=client_id,
            project_id=project_id,
            quote_id=quote_id,
            invoice_number=self.ctx.sequencer.next_invoice_number(),
            public_hash=self.ctx.sequencer.next_public_hash(),
            title=request.title,
            status=InvoiceStatus.DRAFT,
            is_cancelled=False,
            issue_date=issue_date,
            due_date=due_date,
            payment_terms=request.payment_terms,
            notes=request.notes,
            terms=request.terms,
            tax_amount=non_negative(request.tax_amount, "Tax amount"),
            discount_amount=non_negative(request.discount_amount, "Discount amount"),
            currency=(request.currency or settings.default_currency).upper(),
            payment_link=request.payment_link,
            subtotal=ZERO,
            total_amount=ZERO,
            amount_paid=ZERO,
            balance_due=ZERO,
        )
        self.db.add(invoice)
        if request.items:
            self.items.replace_items(invoice, request.items)
        # A new invoice without items keeps its draft status.
        self.recompute_totals(invoice, derive_status=bool(invoice.items))
        self._flush()

        logger.info("Created invoice %s for user %s", invoice.invoice_number, user_id)
        self.ctx.audit.record(
            user_id,
            "created",
            RelatedEntity.invoice(invoice.id),
            f"Invoice {invoice.invoice_number} created",
            meta.ip_address,
            meta.user_agent,
        )
        return invoice

    @atomic
    def update_invoice(
        self,
        user_id: str,
        invoice_id: str,
        request: InvoiceRequest,
        meta: RequestMeta = NO_META,
    ) -> Invoice:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)
        self._require_draft(invoice, "Only draft invoices can be modified")

        if request.client_id is not None:
            invoice.client_id = self._require_client(request.client_id, invoice.user_id)
        if request.project_id is not None:
            invoice.project_id = self._require_project(request.project_id, invoice.user_id)
        if request.quote_id is not None:
            invoice.quote_id = self._require_quote(request.quote_id, invoice.user_id)

        issue_date = request.issue_date or invoice.issue_date
        due_date = request.due_date or invoice.due_date
        if due_date < issue_date:
            raise InvalidArgument("Due date cannot be before issue date")
        invoice.issue_date = issue_date
        invoice.due_date = due_date

        if request.title:
            invoice.title = request.title
        for field_name in ("payment_terms", "notes", "terms", "payment_link"):
            value = getattr(request, field_name)
            if value is not None:
                setattr(invoice, field_name, value)
        if request.tax_amount is not None:
            invoice.tax_amount = non_negative(request.tax_amount, "Tax amount")
        if request.discount_amount is not None:
            invoice.discount_amount = non_negative(request.discount_amount, "Discount amount")
        if request.currency is not None:
            invoice.currency = request.currency.upper()
        if request.items is not None:
            self.items.replace_items(invoice, request.items)

        self.recompute_totals(invoice)
        self.ctx.audit.record(
            invoice.user_id,
            "updated",
            RelatedEntity.invoice(invoice.id),
            f"Invoice {invoice.invoice_number} updated",
            meta.ip_address,
            meta.user_agent,
        )
        return invoice

    @atomic
    def delete_invoice(self, user_id: str, invoice_id: str, meta: RequestMeta = NO_META) -> None:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)
        self._require_draft(invoice, "Only draft invoices can be deleted")
        self.db.delete(invoice)
        self.ctx.audit.record(
            invoice.user_id,
            "deleted",
            RelatedEntity.invoice(invoice.id),
            f"Invoice {invoice.invoice_number} deleted",
            meta.ip_address,
            meta.user_agent,
        )

    @atomic
    def send_invoice(self, user_id: str, invoice_id: str, meta: RequestMeta = NO_META) -> Invoice:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)
        self._require_draft(invoice, "Only draft invoices can be sent")
        if not invoice.items:
            raise InvalidState("Cannot send invoice without items")

        invoice.sent_at = self.clock.now()
        self.recompute_totals(invoice)
        logger.info("Invoice %s sent", invoice.invoice_number)
        self.ctx.audit.record(
            invoice.user_id,
            "sent",
            RelatedEntity.invoice(invoice.id),
            f"Invoice {invoice.invoice_number} sent to client",
            meta.ip_address,
            meta.user_agent,
        )
        return invoice

    def _cancel(self, invoice: Invoice) -> None:
        if invoice.is_cancelled or invoice.status == InvoiceStatus.PAID:
            raise InvalidState("Cannot cancel a paid or already cancelled invoice")
        invoice.is_cancelled = True
        invoice.status = InvoiceStatus.CANCELLED
        logger.info("Invoice %s cancelled", invoice.invoice_number)

    @atomic
    def cancel_invoice(self, user_id: str, invoice_id: str, meta: RequestMeta = NO_META) -> Invoice:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)
        self._cancel(invoice)
        self.ctx.audit.record(
            invoice.user_id,
            "cancelled",
            RelatedEntity.invoice(invoice.id),
            f"Invoice {invoice.invoice_number} cancelled",
            meta.ip_address,
            meta.user_agent,
        )
        return invoice

    @atomic
    def update_invoice_status(
        self,
        user_id: str,
        invoice_id: str,
        status: str,
        meta: RequestMeta = NO_META,
    ) -> Invoice:
        """Administrative override; the next item or payment change re-derives the status."""
        if status not in InvoiceStatus.ALL:
            raise InvalidArgument("Invalid invoice status")
        invoice = self._load_invoice(user_id, invoice_id, lock=True)

        if status == InvoiceStatus.CANCELLED:
            self._cancel(invoice)
        else:
            if invoice.is_cancelled:
                raise InvalidState("Cancelled invoices cannot change status")
            if status == InvoiceStatus.DRAFT and invoice.sent_at is not None:
                raise InvalidState("A sent invoice cannot return to draft")
            if status == InvoiceStatus.SENT and not invoice.items:
                raise InvalidState("Cannot send invoice without items")
            previous = invoice.status
            invoice.status = status
            if status == InvoiceStatus.SENT and invoice.sent_at is None:
                invoice.sent_at = self.clock.now()
            elif status == InvoiceStatus.PAID and invoice.paid_date is None:
                invoice.paid_date = self.clock.today()
            elif status == InvoiceStatus.VIEWED and invoice.viewed_at is None:
                invoice.viewed_at = self.clock.now()
            logger.info("Invoice %s status overridden %s -> %s", invoice.invoice_number, previous, status)

        self.ctx.audit.record(
            invoice.user_id,
            "status_changed",
            RelatedEntity.invoice(invoice.id),
            f"Invoice {invoice.invoice_number} status set to {status}",
            meta.ip_address,
            meta.user_agent,
        )
        return invoice

    @atomic
    def view_invoice(self, public_hash: str, meta: RequestMeta = NO_META) -> Invoice:
        """Public link view. Only the first view is stamped; views are not written to any history."""
        invoice = self._load_by_hash(public_hash, lock=True)
        if invoice.viewed_at is None:
            invoice.viewed_at = self.clock.now()
        return invoice

    @atomic
    def duplicate_invoice(self, user_id: str, invoice_id: str, meta: RequestMeta = NO_META) -> Invoice:
        original = self._load_invoice(user_id, invoice_id)
        today = self.clock.today()
        invoice = Invoice(
            id=self.ctx.new_id(),
            user_id=original.user_id,
            client_id=original.client_id,
            project_id=original.project_id,
            quote_id=original.quote_id,
            invoice_number=self.ctx.sequencer.next_invoice_number(),
            public_hash=self.ctx.sequencer.next_public_hash(),
            title=f"{original.title} - Copy",
            status=InvoiceStatus.DRAFT,
            is_cancelled=False,
            issue_date=today,
            due_date=today + timedelta(days=settings.invoice_due_days),
            payment_terms=original.payment_terms,
            notes=original.notes,
            terms=original.terms,
            tax_amount=original.tax_amount,
            discount_amount=original.discount_amount,
            currency=original.currency,
            payment_link=original.payment_link,
        )
        self.db.add(invoice)
        self.items.copy_items(sorted(original.items, key=lambda item: item.sort_order), invoice)
        self.recompute_totals(invoice, derive_status=bool(invoice.items))
        self._flush()

        self.ctx.audit.record(
            invoice.user_id,
            "created",
            RelatedEntity.invoice(invoice.id),
            f"Invoice duplicated from {original.invoice_number}",
            meta.ip_address,
            meta.user_agent,
        )
        return invoice

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_invoice(self, user_id: str, invoice_id: str) -> Invoice:
        return self._load_invoice(user_id, invoice_id)

    def get_invoice_by_public_hash(self, public_hash: str) -> Invoice:
        return self._load_by_hash(public_hash)

    def list_invoices(self, user_id: str, status: str | None = None) -> list[Invoice]:
        stmt = select(Invoice).where(Invoice.user_id == str(user_id))
        if status:
            stmt = stmt.where(Invoice.status == status)
        stmt = stmt.order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc())
        return list(self.db.scalars(stmt))

    def list_overdue_invoices(self, user_id: str) -> list[Invoice]:
        today = self.clock.today()
        stmt = (
            select(Invoice)
            .where(
                Invoice.user_id == str(user_id),
                Invoice.is_cancelled.is_(False),
                Invoice.balance_due > 0,
                Invoice.due_date < today,
            )
            .order_by(Invoice.due_date)
        )
        return list(self.db.scalars(stmt))

    def get_invoice_summary(self, user_id: str, invoice_id: str) -> dict:
        invoice = self._load_invoice(user_id, invoice_id)
        amount_paid = to_decimal(invoice.amount_paid)
        balance_due = to_decimal(invoice.balance_due)
        return {
            "id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "title": invoice.title,
            "client_name": invoice.client.display_name if invoice.client else None,
            "status": invoice.status,
            "issue_date": invoice.issue_date,
            "due_date": invoice.due_date,
            "total_amount": invoice.total_amount,
            "amount_paid": amount_paid,
            "balance_due": balance_due,
            "is_overdue": invoice.due_date < self.clock.today() and balance_due > 0,
            "is_partially_paid": amount_paid > 0 and amount_paid < to_decimal(invoice.total_amount),
            "item_count": len(invoice.items),
            "payment_count": len(invoice.payments),
        }

    def invoice_totals(self, user_id: str) -> dict:
        """Totals across the user's invoices; cancelled invoices are left out."""
        invoices = [invoice for invoice in self.list_invoices(user_id) if not invoice.is_cancelled]
        return {
            "total_invoiced": sum((to_decimal(i.total_amount) for i in invoices), ZERO),
            "total_paid": sum((to_decimal(i.amount_paid) for i in invoices), ZERO),
            "total_balance_due": sum((to_decimal(i.balance_due) for i in invoices), ZERO),
        }

    def get_invoice_aging_report(self, user_id: str) -> list[dict]:
        return build_aging_report(self.list_invoices(user_id), self.clock.today())
