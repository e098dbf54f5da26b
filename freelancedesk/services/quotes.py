"""
Quote lifecycle.

    draft --send--> sent --accept--> accepted
                         --reject--> rejected
                         (validUntil passed) -> expired

Accept, reject and view are public actions keyed by the quote's public hash;
the hash is the only credential. Every transition and every public view is
appended to the quote's history.
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..audit import RelatedEntity
from ..config import settings
from ..db import atomic
from ..errors import Conflict, InvalidArgument, InvalidState, NotFound, parse_id
from ..models import Quote, QuoteHistory, QuoteStatus
from ..money import ZERO, compute_aggregate, to_decimal
from ..schemas import QuoteRequest
from .context import NO_META, BaseService, RequestMeta, ServiceContext, non_negative
from .line_items import QUOTE_ITEMS, LineItemStore

logger = logging.getLogger(__name__)


class QuoteService(BaseService):
    def __init__(self, ctx: ServiceContext):
        super().__init__(ctx)
        self.items = LineItemStore(ctx, QUOTE_ITEMS, self._load_quote, self.recompute_totals)

    def _load_quote(self, user_id: str, quote_id: str, lock: bool = False) -> Quote:
        quote_id = parse_id(quote_id, "quote")
        criteria = (Quote.id == quote_id, Quote.user_id == str(user_id))
        stmt = select(Quote).where(*criteria)
        if lock:
            self._claim_row(Quote, *criteria)
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        quote = self.db.scalar(stmt)
        if quote is None:
            raise NotFound("Quote not found")
        return quote

    def _load_by_hash(self, public_hash: str, lock: bool = False) -> Quote:
        stmt = select(Quote).where(Quote.public_hash == public_hash)
        if lock:
            self._claim_row(Quote, Quote.public_hash == public_hash)
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        quote = self.db.scalar(stmt)
        if quote is None:
            raise NotFound("Quote not found")
        return quote

    def _flush(self) -> None:
        try:
            self.db.flush()
        except IntegrityError:
            raise Conflict("Quote number or public link already in use; please retry") from None

    def _add_history(
        self,
        quote: Quote,
        action: str,
        description: str,
        meta: RequestMeta = NO_META,
        metadata: dict | None = None,
    ) -> QuoteHistory:
        entry = QuoteHistory(
            id=self.ctx.new_id(),
            action=action,
            description=description,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata_json=json.dumps(metadata or {}),
            created_at=self.clock.now(),
        )
        quote.history.append(entry)
        return entry

    def _audit(self, quote: Quote, action: str, description: str, meta: RequestMeta) -> None:
        self.ctx.audit.record(
            quote.user_id,
            action,
            RelatedEntity.quote(quote.id),
            description,
            meta.ip_address,
            meta.user_agent,
        )

    def recompute_totals(self, quote: Quote) -> None:
        aggregate = compute_aggregate(
            [item.total for item in quote.items],
            quote.tax_amount,
            quote.discount_amount,
        )
        quote.subtotal = aggregate.subtotal
        quote.total_amount = aggregate.total_amount
        logger.debug("Quote %s totals: subtotal=%s total=%s", quote.quote_number, quote.subtotal, quote.total_amount)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @atomic
    def create_quote(self, user_id: str, request: QuoteRequest, meta: RequestMeta = NO_META) -> Quote:
        user_id = self._require_user(user_id)
        client_id = self._require_client(request.client_id, user_id)
        project_id = self._require_project(request.project_id, user_id)
        if not request.title:
            raise InvalidArgument("Quote title is required")

        quote = Quote(
            id=self.ctx.new_id(),
            user_id=user_id,
            client_id=client_id,
            project_id=project_id,
            quote_number=self.ctx.sequencer.next_quote_number(),
            public_hash=self.ctx.sequencer.next_public_hash(),
            title=request.title,
            summary=request.summary,
            status=QuoteStatus.DRAFT,
            valid_until=request.valid_until,
            terms_and_conditions=request.terms_and_conditions,
            notes=request.notes,
            tax_amount=non_negative(request.tax_amount, "Tax amount"),
            discount_amount=non_negative(request.discount_amount, "Discount amount"),
            currency=(request.currency or settings.default_currency).upper(),
            subtotal=ZERO,
            total_amount=ZERO,
        )
        self.db.add(quote)
        if request.items:
            self.items.replace_items(quote, request.items)
        self.recompute_totals(quote)
        self._add_history(quote, "created", "Quote created", meta)
        self._flush()

        logger.info("Created quote %s for user %s", quote.quote_number, user_id)
        self._audit(quote, "created", f"Quote {quote.quote_number} created", meta)
        return quote

    @atomic
    def update_quote(self, user_id: str, quote_id: str, request: QuoteRequest, meta: RequestMeta = NO_META) -> Quote:
        quote = self._load_quote(user_id, quote_id, lock=True)
        if quote.status != QuoteStatus.DRAFT:
            raise InvalidState("Only draft quotes can be modified")

        if request.client_id is not None:
            quote.client_id = self._require_client(request.client_id, quote.user_id)
        if request.project_id is not None:
            quote.project_id = self._require_project(request.project_id, quote.user_id)
        if request.title:
            quote.title = request.title
        for field_name in ("summary", "valid_until", "terms_and_conditions", "notes"):
            value = getattr(request, field_name)
            if value is not None:
                setattr(quote, field_name, value)
        if request.tax_amount is not None:
            quote.tax_amount = non_negative(request.tax_amount, "Tax amount")
        if request.discount_amount is not None:
            quote.discount_amount = non_negative(request.discount_amount, "Discount amount")
        if request.currency is not None:
            quote.currency = request.currency.upper()
        if request.items is not None:
            self.items.replace_items(quote, request.items)

        self.recompute_totals(quote)
        self._add_history(quote, "updated", "Quote updated", meta)
        self._audit(quote, "updated", f"Quote {quote.quote_number} updated", meta)
        return quote

    @atomic
    def delete_quote(self, user_id: str, quote_id: str, meta: RequestMeta = NO_META) -> None:
        quote = self._load_quote(user_id, quote_id, lock=True)
        if quote.status != QuoteStatus.DRAFT:
            raise InvalidState("Only draft quotes can be deleted")
        self.db.delete(quote)
        self._audit(quote, "deleted", f"Quote {quote.quote_number} deleted", meta)

    @atomic
    def send_quote(self, user_id: str, quote_id: str, meta: RequestMeta = NO_META) -> Quote:
        quote = self._load_quote(user_id, quote_id, lock=True)
        if quote.status != QuoteStatus.DRAFT:
            raise InvalidState("Only draft quotes can be sent")
        if not quote.items:
            raise InvalidState("Cannot send quote without items")

        quote.status = QuoteStatus.SENT
        quote.sent_at = self.clock.now()
        self._add_history(quote, "sent", "Quote sent to client", meta)
        logger.info("Quote %s sent", quote.quote_number)
        self._audit(quote, "sent", f"Quote {quote.quote_number} sent to client", meta)
        return quote

    @atomic
    def accept_quote(self, public_hash: str, meta: RequestMeta = NO_META) -> Quote:
        quote = self._load_by_hash(public_hash, lock=True)
        if quote.status != QuoteStatus.SENT:
            raise InvalidState("Only sent quotes can be accepted")
        if quote.valid_until is not None and quote.valid_until < self.clock.today():
            raise InvalidState("Quote has expired")

        now = self.clock.now()
        quote.status = QuoteStatus.ACCEPTED
        quote.accepted_at = now
        if quote.viewed_at is None:
            quote.viewed_at = now
        self._add_history(quote, "accepted", "Quote accepted by client", meta)
        logger.info("Quote %s accepted", quote.quote_number)
        self._audit(quote, "accepted", f"Quote {quote.quote_number} accepted by client", meta)
        return quote

    @atomic
    def reject_quote(self, public_hash: str, meta: RequestMeta = NO_META) -> Quote:
        quote = self._load_by_hash(public_hash, lock=True)
        if quote.status != QuoteStatus.SENT:
            raise InvalidState("Only sent quotes can be rejected")

        quote.status = QuoteStatus.REJECTED
        if quote.viewed_at is None:
            quote.viewed_at = self.clock.now()
        self._add_history(quote, "rejected", "Quote rejected by client", meta)
        logger.info("Quote %s rejected", quote.quote_number)
        self._audit(quote, "rejected", f"Quote {quote.quote_number} rejected by client", meta)
        return quote

    @atomic
    def view_quote(self, public_hash: str, meta: RequestMeta = NO_META) -> Quote:
        quote = self._load_by_hash(public_hash, lock=True)
        if quote.viewed_at is None:
            quote.viewed_at = self.clock.now()
        # Every view is recorded, not just the first.
        self._add_history(quote, "viewed", "Quote viewed by client", meta)
        return quote

    @atomic
    def duplicate_quote(self, user_id: str, quote_id: str, meta: RequestMeta = NO_META) -> Quote:
        original = self._load_quote(user_id, quote_id)
        quote = Quote(
            id=self.ctx.new_id(),
            user_id=original.user_id,
            client_id=original.client_id,
            project_id=original.project_id,
            quote_number=self.ctx.sequencer.next_quote_number(),
            public_hash=self.ctx.sequencer.next_public_hash(),
            title=f"{original.title} - Copy",
            summary=original.summary,
            status=QuoteStatus.DRAFT,
            valid_until=original.valid_until,
            terms_and_conditions=original.terms_and_conditions,
            notes=original.notes,
            tax_amount=original.tax_amount,
            discount_amount=original.discount_amount,
            currency=original.currency,
        )
        self.db.add(quote)
        self.items.copy_items(sorted(original.items, key=lambda item: item.sort_order), quote)
        self.recompute_totals(quote)
        self._add_history(
            quote,
            "created",
            f"Quote duplicated from {original.quote_number}",
            meta,
            {"source_quote_id": original.id},
        )
        self._flush()
        self._audit(quote, "created", f"Quote duplicated from {original.quote_number}", meta)
        return quote

    @atomic
    def update_quote_status(self, user_id: str, quote_id: str, status: str, meta: RequestMeta = NO_META) -> Quote:
        """Administrative override of the quote status."""
        if status not in QuoteStatus.ALL:
            raise InvalidArgument("Invalid quote status")
        quote = self._load_quote(user_id, quote_id, lock=True)
        if status == QuoteStatus.DRAFT and quote.sent_at is not None:
            raise InvalidState("A sent quote cannot return to draft")
        if quote.status in QuoteStatus.TERMINAL and status != QuoteStatus.EXPIRED:
            raise InvalidState(f"Quote is already {quote.status}")

        previous = quote.status
        now = self.clock.now()
        quote.status = status
        if status == QuoteStatus.SENT and quote.sent_at is None:
            quote.sent_at = now
        elif status == QuoteStatus.ACCEPTED and quote.accepted_at is None:
            quote.accepted_at = now
        elif status == QuoteStatus.EXPIRED and quote.valid_until is None:
            quote.valid_until = self.clock.today()

        self._add_history(
            quote,
            "status_changed",
            f"Quote status changed from {previous} to {status}",
            meta,
            {"from": previous, "to": status},
        )
        logger.info("Quote %s status overridden %s -> %s", quote.quote_number, previous, status)
        self._audit(quote, "status_changed", f"Quote {quote.quote_number} status set to {status}", meta)
        return quote

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_quote(self, user_id: str, quote_id: str) -> Quote:
        return self._load_quote(user_id, quote_id)

    def get_quote_by_public_hash(self, public_hash: str) -> Quote:
        return self._load_by_hash(public_hash)

    def list_quotes(self, user_id: str, status: str | None = None) -> list[Quote]:
        stmt = select(Quote).where(Quote.user_id == str(user_id))
        if status:
            stmt = stmt.where(Quote.status == status)
        stmt = stmt.order_by(Quote.created_at.desc(), Quote.quote_number.desc())
        return list(self.db.scalars(stmt))

    def list_expired_quotes(self, user_id: str) -> list[Quote]:
        """Sent quotes whose ``valid_until`` has passed; their stored status is untouched."""
        stmt = (
            select(Quote)
            .where(
                Quote.user_id == str(user_id),
                Quote.status == QuoteStatus.SENT,
                Quote.valid_until < self.clock.today(),
            )
            .order_by(Quote.valid_until)
        )
        return list(self.db.scalars(stmt))

    def get_quote_history(self, user_id: str, quote_id: str) -> list[QuoteHistory]:
        quote = self._load_quote(user_id, quote_id)
        stmt = (
            select(QuoteHistory)
            .where(QuoteHistory.quote_id == quote.id)
            .order_by(QuoteHistory.created_at.desc())
        )
        return list(self.db.scalars(stmt))

    def get_quote_summary(self, user_id: str, quote_id: str) -> dict:
        quote = self._load_quote(user_id, quote_id)
        return {
            "id": quote.id,
            "quote_number": quote.quote_number,
            "title": quote.title,
            "client_name": quote.client.display_name if quote.client else None,
            "status": quote.status,
            "total_amount": quote.total_amount,
            "sent_at": quote.sent_at,
            "accepted_at": quote.accepted_at,
            "valid_until": quote.valid_until,
            "is_expired": quote.valid_until is not None and quote.valid_until < self.clock.today(),
            "item_count": len(quote.items),
        }

    def accepted_quotes_total(self, user_id: str) -> Decimal:
        stmt = select(func.sum(Quote.total_amount)).where(
            Quote.user_id == str(user_id),
            Quote.status == QuoteStatus.ACCEPTED,
        )
        return to_decimal(self.db.scalar(stmt), ZERO)
