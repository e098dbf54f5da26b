from __future__ import annotations

import functools
from typing import Any, Callable, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import settings

F = TypeVar("F", bound=Callable[..., Any])

_DEPTH_KEY = "atomic_depth"
_AFTER_COMMIT_KEY = "after_commit"


def _connect_args(database_url: str) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def build_engine(database_url: str, **kwargs: Any):
    connect_args = {**_connect_args(database_url), **kwargs.pop("connect_args", {})}
    return create_engine(database_url, connect_args=connect_args, **kwargs)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def on_commit(db: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the outermost unit of work has committed.

    Callbacks are dropped when the unit of work rolls back.
    """
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def _run_after_commit(db: Session) -> None:
    callbacks = db.info.pop(_AFTER_COMMIT_KEY, [])
    for callback in callbacks:
        callback()


def atomic(func: F) -> F:
    """Unit of work for service methods (``self.db`` must be a Session).

    The outermost call commits on success and rolls back on any exception.
    Nested calls join the outer unit, so a conversion that creates an
    invoice commits once, or not at all.
    """

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        db: Session = self.db
        depth = db.info.get(_DEPTH_KEY, 0)
        db.info[_DEPTH_KEY] = depth + 1
        try:
            result = func(self, *args, **kwargs)
            if depth == 0:
                db.commit()
        except Exception:
            if depth == 0:
                db.rollback()
                db.info.pop(_AFTER_COMMIT_KEY, None)
            raise
        finally:
            db.info[_DEPTH_KEY] = depth
        if depth == 0:
            _run_after_commit(db)
        return result

    return wrapper  # type: ignore[return-value]
