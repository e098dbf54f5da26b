"""
Payments recorded against invoices.

Only ``completed`` payments count toward ``amount_paid``. A payment can never
take the completed total past the invoice total, so ``balance_due`` cannot go
negative through payments; the check runs under the invoice row lock so two
concurrent payments cannot overpay together.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..audit import RelatedEntity
from ..db import atomic
from ..errors import Conflict, InvalidArgument, InvalidState, NotFound
from ..models import InvoicePayment, PaymentStatus
from ..money import ZERO, quantize_money, to_decimal
from ..schemas import PaymentRequest
from .context import NO_META, BaseService, RequestMeta, ServiceContext

logger = logging.getLogger(__name__)


def completed_total(db: Session, invoice_id: str, exclude_id: str | None = None) -> Decimal:
    """Sum of completed payments as stored; pending changes must be flushed first."""
    stmt = select(func.coalesce(func.sum(InvoicePayment.amount), 0)).where(
        InvoicePayment.invoice_id == invoice_id,
        InvoicePayment.status == PaymentStatus.COMPLETED,
    )
    if exclude_id is not None:
        stmt = stmt.where(InvoicePayment.id != exclude_id)
    return quantize_money(to_decimal(db.scalar(stmt), ZERO))


class PaymentLedger(BaseService):
    def __init__(
        self,
        ctx: ServiceContext,
        load_invoice: Callable[..., object],
        recompute: Callable[[object], None],
    ):
        super().__init__(ctx)
        self._load_invoice = load_invoice
        self._recompute = recompute

    def _transaction_exists(self, transaction_id: str) -> bool:
        stmt = select(InvoicePayment.id).where(InvoicePayment.transaction_id == transaction_id)
        return self.db.scalar(stmt) is not None

    def _owned_payment(self, invoice, payment_id: str) -> InvoicePayment:
        payment = self.db.get(InvoicePayment, str(payment_id))
        if payment is None:
            raise NotFound("Payment not found")
        if payment.invoice_id != invoice.id:
            raise InvalidArgument("Payment does not belong to the specified invoice")
        return payment

    @staticmethod
    def _check_status(status: str) -> str:
        if status not in PaymentStatus.ALL:
            raise InvalidArgument("Invalid payment status")
        return status

    @staticmethod
    def _check_amount(amount) -> Decimal:
        if amount is None:
            raise InvalidArgument("Payment amount is required")
        amount = quantize_money(to_decimal(amount))
        if amount <= 0:
            raise InvalidArgument("Payment amount must be greater than zero")
        return amount

    def _check_balance(self, invoice, amount: Decimal, exclude_id: str | None = None) -> None:
        remaining = to_decimal(invoice.total_amount) - completed_total(self.db, invoice.id, exclude_id)
        if amount > remaining:
            raise InvalidArgument(f"Payment amount {amount} exceeds remaining balance {remaining}")

    def _flush(self) -> None:
        try:
            self.db.flush()
        except IntegrityError:
            raise Conflict("A payment with this transaction ID already exists") from None

    @atomic
    def add_payment(
        self,
        user_id: str,
        invoice_id: str,
        request: PaymentRequest,
        meta: RequestMeta = NO_META,
    ) -> InvoicePayment:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)

        if invoice.is_cancelled:
            raise InvalidState("Cannot add payment to a cancelled invoice")

        transaction_id = (request.transaction_id or "").strip() or None
        if transaction_id and self._transaction_exists(transaction_id):
            raise Conflict("A payment with this transaction ID already exists")

        amount = self._check_amount(request.amount)
        self._check_balance(invoice, amount)

        if not request.payment_method:
            raise InvalidArgument("Payment method is required")
        status = self._check_status(request.status or PaymentStatus.COMPLETED)

        payment = InvoicePayment(
            id=self.ctx.new_id(),
            payment_method=request.payment_method,
            transaction_id=transaction_id,
            amount=amount,
            currency=(request.currency or invoice.currency).upper(),
            payment_date=request.payment_date or self.clock.today(),
            notes=request.notes,
            status=status,
            metadata_json=json.dumps(request.metadata or {}),
        )
        invoice.payments.append(payment)
        self._flush()
        self._recompute(invoice)

        logger.info(
            "Recorded %s payment %s of %s %s on invoice %s",
            status,
            payment.id,
            amount,
            payment.currency,
            invoice.invoice_number,
        )
        self.ctx.audit.record(
            invoice.user_id,
            "payment_added",
            RelatedEntity.payment(payment.id),
            f"Payment of {amount} {payment.currency} recorded for invoice {invoice.invoice_number}",
            meta.ip_address,
            meta.user_agent,
        )
        return payment

    @atomic
    def update_payment(
        self,
        user_id: str,
        invoice_id: str,
        payment_id: str,
        request: PaymentRequest,
        meta: RequestMeta = NO_META,
    ) -> InvoicePayment:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)
        if invoice.is_cancelled:
            raise InvalidState("Cannot change payments on a cancelled invoice")
        payment = self._owned_payment(invoice, payment_id)

        transaction_id = (request.transaction_id or "").strip() or None
        if transaction_id and transaction_id != payment.transaction_id and self._transaction_exists(transaction_id):
            raise Conflict("A payment with this transaction ID already exists")

        amount = self._check_amount(request.amount) if request.amount is not None else to_decimal(payment.amount)
        status = self._check_status(request.status) if request.status is not None else payment.status
        if status == PaymentStatus.COMPLETED:
            self._check_balance(invoice, amount, exclude_id=payment.id)

        if request.payment_method:
            payment.payment_method = request.payment_method
        if transaction_id is not None:
            payment.transaction_id = transaction_id
        if request.currency is not None:
            payment.currency = request.currency.upper()
        if request.payment_date is not None:
            payment.payment_date = request.payment_date
        if request.notes is not None:
            payment.notes = request.notes
        if request.metadata is not None:
            payment.metadata_json = json.dumps(request.metadata)
        payment.amount = amount
        payment.status = status

        self._flush()
        self._recompute(invoice)
        self.ctx.audit.record(
            invoice.user_id,
            "payment_updated",
            RelatedEntity.payment(payment.id),
            f"Payment updated on invoice {invoice.invoice_number}",
            meta.ip_address,
            meta.user_agent,
        )
        return payment

    @atomic
    def delete_payment(self, user_id: str, invoice_id: str, payment_id: str, meta: RequestMeta = NO_META) -> None:
        invoice = self._load_invoice(user_id, invoice_id, lock=True)
        payment = self._owned_payment(invoice, payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            raise InvalidState("Cannot delete a completed payment")

        invoice.payments.remove(payment)
        self.db.flush()
        self._recompute(invoice)
        self.ctx.audit.record(
            invoice.user_id,
            "payment_deleted",
            RelatedEntity.payment(payment.id),
            f"{payment.status.capitalize()} payment of {payment.amount} removed from invoice {invoice.invoice_number}",
            meta.ip_address,
            meta.user_agent,
        )

    def list_payments(self, user_id: str, invoice_id: str, status: str | None = None) -> list[InvoicePayment]:
        invoice = self._load_invoice(user_id, invoice_id)
        return [payment for payment in invoice.payments if status is None or payment.status == status]

    def get_payment(self, user_id: str, invoice_id: str, payment_id: str) -> InvoicePayment:
        invoice = self._load_invoice(user_id, invoice_id)
        return self._owned_payment(invoice, payment_id)
