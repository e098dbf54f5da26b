"""
Activity audit trail.

Services never write audit rows themselves: they queue a record with
``AuditTrail.record`` and the record is delivered to the sink after the
surrounding unit of work commits. A failing sink is logged and ignored; it
never undoes the business operation that was audited.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from sqlalchemy.orm import Session, sessionmaker

from .db import on_commit
from .models import ActivityLog, Client, Invoice, InvoicePayment, Project, Quote, Reminder, gen_id

logger = logging.getLogger(__name__)


class EntityKind(str, enum.Enum):
    CLIENT = "client"
    PROJECT = "project"
    QUOTE = "quote"
    INVOICE = "invoice"
    PAYMENT = "payment"
    REMINDER = "reminder"


@dataclass(frozen=True)
class RelatedEntity:
    kind: EntityKind
    id: str

    @classmethod
    def quote(cls, quote_id: str) -> "RelatedEntity":
        return cls(EntityKind.QUOTE, quote_id)

    @classmethod
    def invoice(cls, invoice_id: str) -> "RelatedEntity":
        return cls(EntityKind.INVOICE, invoice_id)

    @classmethod
    def payment(cls, payment_id: str) -> "RelatedEntity":
        return cls(EntityKind.PAYMENT, payment_id)


def _client_name(db: Session, entity_id: str) -> str | None:
    client = db.get(Client, entity_id)
    return client.display_name if client else None


def _project_name(db: Session, entity_id: str) -> str | None:
    project = db.get(Project, entity_id)
    return project.name if project else None


def _quote_name(db: Session, entity_id: str) -> str | None:
    quote = db.get(Quote, entity_id)
    return f"{quote.title} ({quote.quote_number})" if quote else None


def _invoice_name(db: Session, entity_id: str) -> str | None:
    invoice = db.get(Invoice, entity_id)
    return f"{invoice.title} ({invoice.invoice_number})" if invoice else None


def _payment_name(db: Session, entity_id: str) -> str | None:
    payment = db.get(InvoicePayment, entity_id)
    return f"Payment: {payment.amount} {payment.currency}" if payment else None


def _reminder_name(db: Session, entity_id: str) -> str | None:
    reminder = db.get(Reminder, entity_id)
    return reminder.title if reminder else None


ENTITY_NAME_RESOLVERS: dict[EntityKind, Callable[[Session, str], str | None]] = {
    EntityKind.CLIENT: _client_name,
    EntityKind.PROJECT: _project_name,
    EntityKind.QUOTE: _quote_name,
    EntityKind.INVOICE: _invoice_name,
    EntityKind.PAYMENT: _payment_name,
    EntityKind.REMINDER: _reminder_name,
}

_missing = set(EntityKind) - set(ENTITY_NAME_RESOLVERS)
if _missing:
    raise RuntimeError(f"No entity name resolver for: {sorted(k.value for k in _missing)}")


def resolve_entity_name(db: Session, entity: RelatedEntity) -> str | None:
    return ENTITY_NAME_RESOLVERS[entity.kind](db, entity.id)


@dataclass(frozen=True)
class AuditEntry:
    user_id: str
    action: str
    entity: RelatedEntity
    description: str
    ip_address: str | None = None
    user_agent: str | None = None


class AuditSink(Protocol):
    def record(self, entry: AuditEntry) -> None: ...


class SqlAuditSink:
    """Writes ``activity_logs`` rows in a session of its own."""

    def __init__(self, session_factory: sessionmaker, clock):
        self.session_factory = session_factory
        self.clock = clock

    def record(self, entry: AuditEntry) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    ActivityLog(
                        id=gen_id(),
                        user_id=entry.user_id,
                        action=entry.action,
                        entity_type=entry.entity.kind.value,
                        entity_id=entry.entity.id,
                        entity_name=resolve_entity_name(db, entry.entity),
                        description=entry.description,
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        created_at=self.clock.now(),
                    )
                )
                db.commit()
        except Exception as exc:
            logger.warning("Audit record %s on %s %s failed: %s", entry.action, entry.entity.kind.value, entry.entity.id, exc)


class AuditTrail:
    """Queues audit entries on a session until its unit of work commits."""

    def __init__(self, db: Session, sink: AuditSink | None):
        self.db = db
        self.sink = sink

    def record(
        self,
        user_id: str,
        action: str,
        entity: RelatedEntity,
        description: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        if self.sink is None:
            return
        entry = AuditEntry(user_id, action, entity, description, ip_address, user_agent)
        on_commit(self.db, lambda: self._deliver(entry))

    def _deliver(self, entry: AuditEntry) -> None:
        try:
            self.sink.record(entry)
        except Exception as exc:
            logger.warning("Audit sink rejected %s on %s: %s", entry.action, entry.entity.id, exc)
