from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .audit import AuditSink, SqlAuditSink
from .auth import decode_token
from .config import settings
from .db import Base, SessionLocal, engine, get_db
from .directory import Clock, SystemClock
from .errors import Conflict, DomainError, InvalidArgument, InvalidState, NotFound
from .schemas import (
    AgingOut,
    InvoiceOut,
    InvoiceRequest,
    InvoiceSummaryOut,
    InvoiceTotalsOut,
    LineItemOut,
    LineItemRequest,
    PaymentOut,
    PaymentRequest,
    QuoteHistoryOut,
    QuoteOut,
    QuoteRequest,
    QuoteSummaryOut,
    ReorderRequest,
    StatusRequest,
)
from .services import BillingServices, RequestMeta, ServiceContext

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FreelanceDesk Billing API", version="0.1.0")

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

_STATUS_BY_ERROR: tuple[tuple[type[DomainError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidArgument, status.HTTP_400_BAD_REQUEST),
    (InvalidState, status.HTTP_409_CONFLICT),
    (Conflict, status.HTTP_409_CONFLICT),
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


class AcceptedTotalOut(BaseModel):
    total: Decimal


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_clock() -> Clock:
    return SystemClock()


def get_audit_sink(clock: Clock = Depends(get_clock)) -> AuditSink | None:
    return SqlAuditSink(SessionLocal, clock)


def get_services(
    db=Depends(get_db),
    clock: Clock = Depends(get_clock),
    sink: AuditSink | None = Depends(get_audit_sink),
) -> BillingServices:
    return BillingServices(ServiceContext(db=db, clock=clock, audit_sink=sink))


def _get_access_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return None


def current_user_id(request: Request) -> str:
    token = _get_access_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")

    subject = decode_token(token)
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token")
    return subject.user_id


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@app.on_event("startup")
def startup() -> None:
    if settings.create_schema:
        logger.info("Creating schema for %s environment", settings.app_env)
        Base.metadata.create_all(bind=engine)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# ----------------------------------------------------------------------
# Quotes
# ----------------------------------------------------------------------


@app.post("/api/quotes", response_model=QuoteOut, status_code=status.HTTP_201_CREATED)
def create_quote(
    payload: QuoteRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.create_quote(user_id, payload, meta)


@app.get("/api/quotes", response_model=list[QuoteOut])
def list_quotes(
    status_filter: str | None = Query(default=None, alias="status"),
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.list_quotes(user_id, status_filter)


@app.get("/api/quotes/expired", response_model=list[QuoteOut])
def list_expired_quotes(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.list_expired_quotes(user_id)


@app.get("/api/quotes/accepted-total", response_model=AcceptedTotalOut)
def accepted_quotes_total(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return AcceptedTotalOut(total=services.quotes.accepted_quotes_total(user_id))


@app.get("/api/quotes/{quote_id}", response_model=QuoteOut)
def get_quote(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.get_quote(user_id, quote_id)


@app.put("/api/quotes/{quote_id}", response_model=QuoteOut)
def update_quote(
    quote_id: str,
    payload: QuoteRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.update_quote(user_id, quote_id, payload, meta)


@app.delete("/api/quotes/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quote(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
) -> Response:
    services.quotes.delete_quote(user_id, quote_id, meta)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/quotes/{quote_id}/send", response_model=QuoteOut)
def send_quote(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.send_quote(user_id, quote_id, meta)


@app.post("/api/quotes/{quote_id}/duplicate", response_model=QuoteOut, status_code=status.HTTP_201_CREATED)
def duplicate_quote(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.duplicate_quote(user_id, quote_id, meta)


@app.patch("/api/quotes/{quote_id}/status", response_model=QuoteOut)
def update_quote_status(
    quote_id: str,
    payload: StatusRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.update_quote_status(user_id, quote_id, payload.status, meta)


@app.get("/api/quotes/{quote_id}/history", response_model=list[QuoteHistoryOut])
def get_quote_history(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.get_quote_history(user_id, quote_id)


@app.get("/api/quotes/{quote_id}/summary", response_model=QuoteSummaryOut)
def get_quote_summary(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.get_quote_summary(user_id, quote_id)


@app.post("/api/quotes/{quote_id}/convert", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def convert_quote(
    quote_id: str,
    payload: InvoiceRequest | None = None,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.conversion.create_invoice_from_quote(user_id, quote_id, payload, meta)


@app.get("/api/quotes/{quote_id}/items", response_model=list[LineItemOut])
def list_quote_items(
    quote_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.items.list_items(user_id, quote_id)


@app.post("/api/quotes/{quote_id}/items", response_model=LineItemOut, status_code=status.HTTP_201_CREATED)
def add_quote_item(
    quote_id: str,
    payload: LineItemRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.items.add_item(user_id, quote_id, payload)


@app.post("/api/quotes/{quote_id}/items/reorder", response_model=list[LineItemOut])
def reorder_quote_items(
    quote_id: str,
    payload: ReorderRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.items.reorder(user_id, quote_id, payload.item_ids)


@app.get("/api/quotes/{quote_id}/items/{item_id}", response_model=LineItemOut)
def get_quote_item(
    quote_id: str,
    item_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.items.get_item(user_id, quote_id, item_id)


@app.put("/api/quotes/{quote_id}/items/{item_id}", response_model=LineItemOut)
def update_quote_item(
    quote_id: str,
    item_id: str,
    payload: LineItemRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.items.update_item(user_id, quote_id, item_id, payload)


@app.delete("/api/quotes/{quote_id}/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quote_item(
    quote_id: str,
    item_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> Response:
    services.quotes.items.delete_item(user_id, quote_id, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Invoices
# ----------------------------------------------------------------------


@app.post("/api/invoices", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.create_invoice(user_id, payload, meta)


@app.get("/api/invoices", response_model=list[InvoiceOut])
def list_invoices(
    status_filter: str | None = Query(default=None, alias="status"),
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.list_invoices(user_id, status_filter)


@app.get("/api/invoices/overdue", response_model=list[InvoiceOut])
def list_overdue_invoices(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.list_overdue_invoices(user_id)


@app.get("/api/invoices/aging", response_model=list[AgingOut])
def invoice_aging_report(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.get_invoice_aging_report(user_id)


@app.get("/api/invoices/totals", response_model=InvoiceTotalsOut)
def invoice_totals(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.invoice_totals(user_id)


@app.get("/api/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.get_invoice(user_id, invoice_id)


@app.put("/api/invoices/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: str,
    payload: InvoiceRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.update_invoice(user_id, invoice_id, payload, meta)


@app.delete("/api/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
) -> Response:
    services.invoices.delete_invoice(user_id, invoice_id, meta)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/invoices/{invoice_id}/send", response_model=InvoiceOut)
def send_invoice(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.send_invoice(user_id, invoice_id, meta)


@app.post("/api/invoices/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.cancel_invoice(user_id, invoice_id, meta)


@app.post("/api/invoices/{invoice_id}/duplicate", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def duplicate_invoice(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.duplicate_invoice(user_id, invoice_id, meta)


@app.patch("/api/invoices/{invoice_id}/status", response_model=InvoiceOut)
def update_invoice_status(
    invoice_id: str,
    payload: StatusRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.update_invoice_status(user_id, invoice_id, payload.status, meta)


@app.get("/api/invoices/{invoice_id}/summary", response_model=InvoiceSummaryOut)
def get_invoice_summary(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.get_invoice_summary(user_id, invoice_id)


@app.get("/api/invoices/{invoice_id}/items", response_model=list[LineItemOut])
def list_invoice_items(
    invoice_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.items.list_items(user_id, invoice_id)


@app.post("/api/invoices/{invoice_id}/items", response_model=LineItemOut, status_code=status.HTTP_201_CREATED)
def add_invoice_item(
    invoice_id: str,
    payload: LineItemRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.items.add_item(user_id, invoice_id, payload)


@app.post("/api/invoices/{invoice_id}/items/reorder", response_model=list[LineItemOut])
def reorder_invoice_items(
    invoice_id: str,
    payload: ReorderRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.items.reorder(user_id, invoice_id, payload.item_ids)


@app.get("/api/invoices/{invoice_id}/items/{item_id}", response_model=LineItemOut)
def get_invoice_item(
    invoice_id: str,
    item_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.items.get_item(user_id, invoice_id, item_id)


@app.put("/api/invoices/{invoice_id}/items/{item_id}", response_model=LineItemOut)
def update_invoice_item(
    invoice_id: str,
    item_id: str,
    payload: LineItemRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.items.update_item(user_id, invoice_id, item_id, payload)


@app.delete("/api/invoices/{invoice_id}/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice_item(
    invoice_id: str,
    item_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> Response:
    services.invoices.items.delete_item(user_id, invoice_id, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/invoices/{invoice_id}/payments", response_model=list[PaymentOut])
def list_payments(
    invoice_id: str,
    status_filter: str | None = Query(default=None, alias="status"),
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.payments.list_payments(user_id, invoice_id, status_filter)


@app.post("/api/invoices/{invoice_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def add_payment(
    invoice_id: str,
    payload: PaymentRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.payments.add_payment(user_id, invoice_id, payload, meta)


@app.get("/api/invoices/{invoice_id}/payments/{payment_id}", response_model=PaymentOut)
def get_payment(
    invoice_id: str,
    payment_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.payments.get_payment(user_id, invoice_id, payment_id)


@app.put("/api/invoices/{invoice_id}/payments/{payment_id}", response_model=PaymentOut)
def update_payment(
    invoice_id: str,
    payment_id: str,
    payload: PaymentRequest,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.payments.update_payment(user_id, invoice_id, payment_id, payload, meta)


@app.delete("/api/invoices/{invoice_id}/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment(
    invoice_id: str,
    payment_id: str,
    user_id: str = Depends(current_user_id),
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
) -> Response:
    services.invoices.payments.delete_payment(user_id, invoice_id, payment_id, meta)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Public share links (no authentication; the hash is the credential)
# ----------------------------------------------------------------------


@app.get("/api/public/quotes/{public_hash}", response_model=QuoteOut)
def public_view_quote(
    public_hash: str,
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.view_quote(public_hash, meta)


@app.post("/api/public/quotes/{public_hash}/accept", response_model=QuoteOut)
def public_accept_quote(
    public_hash: str,
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.accept_quote(public_hash, meta)


@app.post("/api/public/quotes/{public_hash}/reject", response_model=QuoteOut)
def public_reject_quote(
    public_hash: str,
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.quotes.reject_quote(public_hash, meta)


@app.get("/api/public/invoices/{public_hash}", response_model=InvoiceOut)
def public_view_invoice(
    public_hash: str,
    meta: RequestMeta = Depends(request_meta),
    services: BillingServices = Depends(get_services),
):
    return services.invoices.view_invoice(public_hash, meta)
