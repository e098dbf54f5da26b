"""
Collaborators the billing services consume but do not own: ownership lookups
for users, clients and projects, the entity id generator, and the clock.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Client, Project, User, gen_id

IdGenerator = Callable[[], str]

new_id: IdGenerator = gen_id


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class Directory(Protocol):
    def user_exists(self, user_id: str) -> bool: ...

    def client_belongs_to(self, client_id: str, user_id: str) -> bool: ...

    def project_belongs_to(self, project_id: str, user_id: str) -> bool: ...


class SqlDirectory:
    """Ownership checks against the user, client and project tables."""

    def __init__(self, db: Session):
        self.db = db

    def user_exists(self, user_id: str) -> bool:
        return self.db.scalar(select(User.id).where(User.id == user_id, User.is_active.is_(True))) is not None

    def client_belongs_to(self, client_id: str, user_id: str) -> bool:
        stmt = select(Client.id).where(Client.id == client_id, Client.user_id == user_id)
        return self.db.scalar(stmt) is not None

    def project_belongs_to(self, project_id: str, user_id: str) -> bool:
        stmt = select(Project.id).where(Project.id == project_id, Project.user_id == user_id)
        return self.db.scalar(stmt) is not None
