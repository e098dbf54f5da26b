from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..audit import AuditSink, AuditTrail
from ..directory import Clock, Directory, IdGenerator, SqlDirectory, SystemClock, new_id
from ..errors import InvalidArgument, NotFound, parse_id
from ..money import ZERO, to_decimal
from ..numbering import NumberSequencer


@dataclass(frozen=True)
class RequestMeta:
    """Where a request came from; recorded on quote history and audit entries."""

    ip_address: str | None = None
    user_agent: str | None = None


NO_META = RequestMeta()


@dataclass
class ServiceContext:
    db: Session
    clock: Clock = field(default_factory=SystemClock)
    directory: Directory | None = None
    audit_sink: AuditSink | None = None
    new_id: IdGenerator = new_id

    def __post_init__(self):
        if self.directory is None:
            self.directory = SqlDirectory(self.db)
        self.audit = AuditTrail(self.db, self.audit_sink)
        self.sequencer = NumberSequencer(self.db, self.clock)


class BaseService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx
        self.db = ctx.db
        self.clock = ctx.clock

    def _claim_row(self, model, *criteria) -> None:
        """
        Take the write lock on a parent row before reading it.

        SQLite ignores ``FOR UPDATE`` and pysqlite only opens the transaction
        at the first write, so a mutating operation starts with this
        touch of ``updated_at``; on PostgreSQL it takes the same row lock ``FOR UPDATE`` would.
        Callers must reload the row with ``populate_existing`` afterwards.
        """
        self.db.execute(
            update(model).where(*criteria).values(updated_at=func.now()),
            execution_options={"synchronize_session": False},
        )

    def _require_user(self, user_id: str) -> str:
        user_id = parse_id(user_id, "user")
        if not self.ctx.directory.user_exists(user_id):
            raise NotFound("User not found")
        return user_id

    def _require_client(self, client_id, user_id: str) -> str:
        if client_id is None or client_id == "":
            raise InvalidArgument("Client ID is required")
        client_id = parse_id(client_id, "client")
        if not self.ctx.directory.client_belongs_to(client_id, user_id):
            raise NotFound("Client not found or not authorized")
        return client_id

    def _require_project(self, project_id, user_id: str) -> str | None:
        if project_id is None or project_id == "":
            return None
        project_id = parse_id(project_id, "project")
        if not self.ctx.directory.project_belongs_to(project_id, user_id):
            raise NotFound("Project not found or not authorized")
        return project_id


def non_negative(value, label: str) -> Decimal:
    amount = to_decimal(value, ZERO)
    if amount < 0:
        raise InvalidArgument(f"{label} cannot be negative")
    return amount
