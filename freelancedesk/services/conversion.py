from __future__ import annotations

from datetime import timedelta

from ..config import settings
from ..db import atomic
from ..errors import InvalidState
from ..models import Invoice, Quote, QuoteStatus
from ..schemas import InvoiceRequest, LineItemRequest
from .context import NO_META, BaseService, RequestMeta, ServiceContext
from .invoices import InvoiceService
from .quotes import QuoteService


class ConversionWorkflow(BaseService):
    """Turns an accepted quote into a new draft invoice."""

    def __init__(self, ctx: ServiceContext, quotes: QuoteService, invoices: InvoiceService):
        super().__init__(ctx)
        self.quotes = quotes
        self.invoices = invoices

    def _request_from_quote(self, quote: Quote) -> InvoiceRequest:
        today = self.clock.today()
        return InvoiceRequest(
            client_id=quote.client_id,
            project_id=quote.project_id,
            quote_id=quote.id,
            title=f"Invoice for {quote.title}",
            issue_date=today,
            due_date=today + timedelta(days=settings.invoice_due_days),
            notes=f"Invoice created from quote: {quote.quote_number}",
            tax_amount=quote.tax_amount,
            discount_amount=quote.discount_amount,
            currency=quote.currency,
            items=[
                LineItemRequest(
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    tax_rate=item.tax_rate,
                    discount=item.discount,
                    sort_order=item.sort_order,
                )
                for item in sorted(quote.items, key=lambda item: item.sort_order)
            ],
        )

    @atomic
    def create_invoice_from_quote(
        self,
        user_id: str,
        quote_id: str,
        override: InvoiceRequest | None = None,
        meta: RequestMeta = NO_META,
    ) -> Invoice:
        """
        Without ``override`` the invoice copies the quote's client, project,
        money fields and items. An override is used as given, except that it
        always links back to the quote and falls back to the quote's client.
        """
        quote = self.quotes.get_quote(user_id, quote_id)
        if quote.status != QuoteStatus.ACCEPTED:
            raise InvalidState("Cannot create invoice from a non-accepted quote")

        if override is None:
            request = self._request_from_quote(quote)
        else:
            request = override.model_copy(
                update={
                    "quote_id": quote.id,
                    "client_id": override.client_id or quote.client_id,
                }
            )
        return self.invoices.create_invoice(user_id, request, meta)
