from __future__ import annotations

from .aging import build_aging_report, classify_aging
from .context import NO_META, RequestMeta, ServiceContext
from .conversion import ConversionWorkflow
from .invoices import InvoiceService, derive_invoice_status
from .quotes import QuoteService


class BillingServices:
    """All billing services bound to one session."""

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.quotes = QuoteService(ctx)
        self.invoices = InvoiceService(ctx)
        self.conversion = ConversionWorkflow(ctx, self.quotes, self.invoices)


__all__ = [
    "BillingServices",
    "ConversionWorkflow",
    "InvoiceService",
    "NO_META",
    "QuoteService",
    "RequestMeta",
    "ServiceContext",
    "build_aging_report",
    "classify_aging",
    "derive_invoice_status",
]
