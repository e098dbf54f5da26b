"""
Tests for the invoice lifecycle and derived invoice status.
"""
import re
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from factories import item
from freelancedesk.errors import InvalidArgument, InvalidState, NotFound
from freelancedesk.models import gen_id
from freelancedesk.schemas import InvoiceRequest, PaymentRequest
from freelancedesk.services import derive_invoice_status

TODAY = date(2026, 10, 15)
SENT = datetime(2026, 10, 1, tzinfo=timezone.utc)


def derive(balance="100", paid="0", due=date(2026, 11, 1), sent_at=None, cancelled=False):
    return derive_invoice_status(
        balance_due=Decimal(balance),
        amount_paid=Decimal(paid),
        due_date=due,
        sent_at=sent_at,
        is_cancelled=cancelled,
        today=TODAY,
    )


class TestDeriveInvoiceStatus:
    """Priority: cancelled > paid > partial > overdue > sent > draft."""

    def test_draft(self):
        assert derive() == "draft"

    def test_sent(self):
        assert derive(sent_at=SENT) == "sent"

    def test_overdue_beats_sent(self):
        assert derive(sent_at=SENT, due=date(2026, 10, 14)) == "overdue"

    def test_due_today_is_not_overdue(self):
        assert derive(sent_at=SENT, due=TODAY) == "sent"

    def test_partial_beats_overdue(self):
        assert derive(balance="40", paid="60", sent_at=SENT, due=date(2026, 9, 1)) == "partial"

    def test_paid(self):
        assert derive(balance="0", paid="100", sent_at=SENT, due=date(2026, 9, 1)) == "paid"

    def test_sent_zero_total_is_paid(self):
        assert derive(balance="0", sent_at=SENT) == "paid"

    def test_unsent_zero_balance_is_paid(self):
        assert derive(balance="0") == "paid"

    def test_cancelled_wins(self):
        assert derive(balance="0", paid="100", sent_at=SENT, cancelled=True) == "cancelled"

    def test_deterministic(self):
        args = dict(balance="10", paid="5", sent_at=SENT, due=date(2026, 1, 1))
        assert derive(**args) == derive(**args)


class TestCreateInvoice:
    def test_defaults(self, services, tenant, make_invoice):
        invoice = make_invoice(items=[item(unit_price="120")], project_id=tenant.project_id)

        assert re.fullmatch(r"INV-202610-\d{3}", invoice.invoice_number)
        assert re.fullmatch(r"[0-9a-f]{32}", invoice.public_hash)
        assert invoice.status == "draft"
        assert invoice.issue_date == TODAY
        assert invoice.due_date == date(2026, 11, 14)
        assert invoice.currency == "USD"
        assert invoice.total_amount == Decimal("120.00")
        assert invoice.balance_due == Decimal("120.00")
        assert invoice.amount_paid == Decimal("0.00")

    def test_totals_include_document_tax_and_discount(self, make_invoice):
        invoice = make_invoice(
            items=[item(unit_price="200")],
            tax_amount=Decimal("15"),
            discount_amount=Decimal("5"),
        )
        assert invoice.subtotal == Decimal("200.00")
        assert invoice.total_amount == Decimal("210.00")

    def test_empty_invoice_stays_draft(self, make_invoice):
        invoice = make_invoice()
        assert invoice.status == "draft"
        assert invoice.total_amount == Decimal("0.00")
        assert invoice.balance_due == Decimal("0.00")

    def test_numbers_are_sequential(self, make_invoice):
        first = make_invoice()
        second = make_invoice()
        assert first.invoice_number == "INV-202610-001"
        assert second.invoice_number == "INV-202610-002"
        assert first.public_hash != second.public_hash

    def test_due_date_before_issue_date(self, make_invoice):
        with pytest.raises(InvalidArgument):
            make_invoice(issue_date=date(2026, 10, 20), due_date=date(2026, 10, 10))

    def test_negative_document_tax(self, make_invoice):
        with pytest.raises(InvalidArgument):
            make_invoice(tax_amount=Decimal("-1"))

    def test_client_must_belong_to_user(self, make_invoice, other_tenant):
        with pytest.raises(NotFound):
            make_invoice(client_id=other_tenant.client_id)

    def test_malformed_client_id(self, make_invoice):
        with pytest.raises(InvalidArgument):
            make_invoice(client_id="not-a-uuid")

    def test_unknown_user(self, services, tenant):
        request = InvoiceRequest(client_id=tenant.client_id, title="Ghost")
        with pytest.raises(NotFound):
            services.invoices.create_invoice(gen_id(), request)

    def test_failed_create_keeps_number_free(self, make_invoice):
        with pytest.raises(InvalidArgument):
            make_invoice(items=[item(description=None)])
        assert make_invoice().invoice_number == "INV-202610-001"


class TestInvoiceTransitions:
    def test_send_requires_items(self, services, tenant, make_invoice):
        invoice = make_invoice()
        with pytest.raises(InvalidState):
            services.invoices.send_invoice(tenant.user_id, invoice.id)
        invoice = services.invoices.get_invoice(tenant.user_id, invoice.id)
        assert invoice.status == "draft"
        assert invoice.sent_at is None

    def test_send(self, services, tenant, sent_invoice):
        assert sent_invoice.status == "sent"
        assert sent_invoice.sent_at is not None

    def test_send_twice(self, services, tenant, sent_invoice):
        with pytest.raises(InvalidState):
            services.invoices.send_invoice(tenant.user_id, sent_invoice.id)

    def test_only_drafts_update_or_delete(self, services, tenant, sent_invoice):
        with pytest.raises(InvalidState):
            services.invoices.update_invoice(tenant.user_id, sent_invoice.id, InvoiceRequest(title="New"))
        with pytest.raises(InvalidState):
            services.invoices.delete_invoice(tenant.user_id, sent_invoice.id)

    def test_update_draft_replaces_items(self, services, tenant, make_invoice):
        invoice = make_invoice(items=[item(unit_price="100")])
        updated = services.invoices.update_invoice(
            tenant.user_id,
            invoice.id,
            InvoiceRequest(title="Revised", items=[item(unit_price="70"), item(unit_price="30")]),
        )
        assert updated.title == "Revised"
        assert len(updated.items) == 2
        assert updated.total_amount == Decimal("100.00")

    def test_delete_draft(self, services, tenant, make_invoice):
        invoice = make_invoice(items=[item()])
        services.invoices.delete_invoice(tenant.user_id, invoice.id)
        with pytest.raises(NotFound):
            services.invoices.get_invoice(tenant.user_id, invoice.id)

    def test_cancel_is_sticky(self, services, tenant, sent_invoice):
        services.invoices.payments.add_payment(
            tenant.user_id,
            sent_invoice.id,
            PaymentRequest(amount=Decimal("100"), payment_method="card"),
        )
        cancelled = services.invoices.cancel_invoice(tenant.user_id, sent_invoice.id)
        assert cancelled.status == "cancelled"

        services.invoices.recompute_totals(cancelled)
        assert cancelled.status == "cancelled"
        assert cancelled.amount_paid == Decimal("100.00")

    def test_cannot_cancel_twice(self, services, tenant, sent_invoice):
        services.invoices.cancel_invoice(tenant.user_id, sent_invoice.id)
        with pytest.raises(InvalidState):
            services.invoices.cancel_invoice(tenant.user_id, sent_invoice.id)

    def test_cannot_cancel_paid(self, services, tenant, sent_invoice):
        services.invoices.payments.add_payment(
            tenant.user_id,
            sent_invoice.id,
            PaymentRequest(amount=Decimal("500"), payment_method="card"),
        )
        with pytest.raises(InvalidState):
            services.invoices.cancel_invoice(tenant.user_id, sent_invoice.id)
        assert services.invoices.get_invoice(tenant.user_id, sent_invoice.id).status == "paid"

    def test_view_stamps_first_view_only(self, services, sent_invoice):
        first = services.invoices.view_invoice(sent_invoice.public_hash)
        first_seen = first.viewed_at
        assert first_seen is not None

        again = services.invoices.view_invoice(sent_invoice.public_hash)
        assert again.viewed_at == first_seen
        assert again.status == "sent"

    def test_view_unknown_hash(self, services):
        with pytest.raises(NotFound):
            services.invoices.view_invoice("0" * 32)

    def test_duplicate(self, services, tenant, clock, sent_invoice):
        services.invoices.payments.add_payment(
            tenant.user_id,
            sent_invoice.id,
            PaymentRequest(amount=Decimal("200"), payment_method="card"),
        )
        clock.advance(days=3)

        copy = services.invoices.duplicate_invoice(tenant.user_id, sent_invoice.id)

        assert copy.id != sent_invoice.id
        assert copy.invoice_number != sent_invoice.invoice_number
        assert copy.public_hash != sent_invoice.public_hash
        assert copy.title == "October retainer - Copy"
        assert copy.status == "draft"
        assert copy.sent_at is None
        assert copy.issue_date == date(2026, 10, 18)
        assert copy.due_date == date(2026, 11, 17)
        assert copy.amount_paid == Decimal("0.00")
        assert copy.balance_due == copy.total_amount == Decimal("500.00")
        assert [i.description for i in copy.items] == ["Design work"]
        assert copy.payments == []


class TestStatusOverride:
    def test_unknown_status(self, services, tenant, sent_invoice):
        with pytest.raises(InvalidArgument):
            services.invoices.update_invoice_status(tenant.user_id, sent_invoice.id, "archived")

    def test_sent_invoice_cannot_return_to_draft(self, services, tenant, sent_invoice):
        with pytest.raises(InvalidState):
            services.invoices.update_invoice_status(tenant.user_id, sent_invoice.id, "draft")

    def test_cannot_mark_empty_invoice_sent(self, services, tenant, make_invoice):
        invoice = make_invoice()
        with pytest.raises(InvalidState):
            services.invoices.update_invoice_status(tenant.user_id, invoice.id, "sent")
        invoice = services.invoices.get_invoice(tenant.user_id, invoice.id)
        assert invoice.status == "draft"
        assert invoice.sent_at is None

    def test_mark_viewed_stamps_viewed_at(self, services, tenant, sent_invoice):
        invoice = services.invoices.update_invoice_status(tenant.user_id, sent_invoice.id, "viewed")
        assert invoice.status == "viewed"
        assert invoice.viewed_at is not None

    def test_mark_paid_stamps_paid_date(self, services, tenant, sent_invoice):
        invoice = services.invoices.update_invoice_status(tenant.user_id, sent_invoice.id, "paid")
        assert invoice.paid_date == TODAY

    def test_cancel_through_override_follows_cancel_rules(self, services, tenant, sent_invoice):
        invoice = services.invoices.update_invoice_status(tenant.user_id, sent_invoice.id, "cancelled")
        assert invoice.is_cancelled
        with pytest.raises(InvalidState):
            services.invoices.update_invoice_status(tenant.user_id, sent_invoice.id, "sent")


class TestInvoiceQueries:
    def test_other_tenant_sees_nothing(self, services, tenant, other_tenant, sent_invoice):
        with pytest.raises(NotFound):
            services.invoices.get_invoice(other_tenant.user_id, sent_invoice.id)
        assert services.invoices.list_invoices(other_tenant.user_id) == []

    def test_malformed_invoice_id(self, services, tenant):
        with pytest.raises(InvalidArgument):
            services.invoices.get_invoice(tenant.user_id, "12345")

    def test_list_with_status_filter(self, services, tenant, make_invoice, sent_invoice):
        make_invoice(items=[item()])
        assert len(services.invoices.list_invoices(tenant.user_id)) == 2
        assert [i.id for i in services.invoices.list_invoices(tenant.user_id, "sent")] == [sent_invoice.id]

    def test_get_by_public_hash(self, services, sent_invoice):
        assert services.invoices.get_invoice_by_public_hash(sent_invoice.public_hash).id == sent_invoice.id

    def test_overdue_list_and_summary(self, services, tenant, clock, sent_invoice):
        services.invoices.payments.add_payment(
            tenant.user_id,
            sent_invoice.id,
            PaymentRequest(amount=Decimal("100"), payment_method="card"),
        )
        assert services.invoices.list_overdue_invoices(tenant.user_id) == []

        clock.advance(days=45)
        overdue = services.invoices.list_overdue_invoices(tenant.user_id)
        assert [i.id for i in overdue] == [sent_invoice.id]

        summary = services.invoices.get_invoice_summary(tenant.user_id, sent_invoice.id)
        assert summary["is_overdue"] is True
        assert summary["is_partially_paid"] is True
        assert summary["client_name"] == "Acme Studio"
        assert summary["item_count"] == 1
        assert summary["payment_count"] == 1
        assert summary["balance_due"] == Decimal("400.00")

    def test_totals_skip_cancelled(self, services, tenant, make_invoice, sent_invoice):
        services.invoices.payments.add_payment(
            tenant.user_id,
            sent_invoice.id,
            PaymentRequest(amount=Decimal("150"), payment_method="card"),
        )
        doomed = make_invoice(items=[item(unit_price="999")])
        services.invoices.cancel_invoice(tenant.user_id, doomed.id)

        totals = services.invoices.invoice_totals(tenant.user_id)
        assert totals == {
            "total_invoiced": Decimal("500.00"),
            "total_paid": Decimal("150.00"),
            "total_balance_due": Decimal("350.00"),
        }
