"""
Human-facing document numbers and public share hashes.

Numbers look like ``QUO-202610-001``: a prefix, the year-month of issue, and a
zero-padded sequence that restarts at 001 every month. The last issued value
for each (prefix, month) lives in ``number_sequences`` and is bumped with an
``UPDATE ... last_value + 1`` before it is read, so concurrent transactions
queue on the row lock instead of reading the same value.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import Conflict
from .models import NumberSequence

logger = logging.getLogger(__name__)

QUOTE_PREFIX = "QUO"
INVOICE_PREFIX = "INV"

_NUMBER_RE = re.compile(r"^(?P<prefix>[A-Z0-9]+)-(?P<period>\d{6})-(?P<seq>\d{3,})$")


def _period_key(d: date) -> str:
    return f"{d.year}{d.month:02d}"


def format_number(prefix: str, period: str, sequence: int) -> str:
    return f"{prefix}-{period}-{sequence:03d}"


def extract_sequence(number: str | None) -> int:
    """Sequence part of a generated number, or 0 when it does not parse."""
    match = _NUMBER_RE.match(number or "")
    if not match:
        return 0
    return int(match.group("seq"))


def is_valid_format(number: str | None, expected_prefix: str) -> bool:
    match = _NUMBER_RE.match(number or "")
    if not match or match.group("prefix") != expected_prefix:
        return False
    month = int(match.group("period")[4:])
    return 1 <= month <= 12


def new_public_hash(num_bytes: int | None = None) -> str:
    """Unguessable share token; 16 bytes (128 bits) gives 32 hex characters."""
    return secrets.token_hex(max(16, num_bytes or settings.public_hash_bytes))


class NumberSequencer:
    def __init__(self, db: Session, clock):
        self.db = db
        self.clock = clock

    def next_quote_number(self) -> str:
        return self.next_number(QUOTE_PREFIX)

    def next_invoice_number(self) -> str:
        return self.next_number(INVOICE_PREFIX)

    def next_public_hash(self) -> str:
        return new_public_hash()

    def next_number(self, prefix: str) -> str:
        """
        Reserve the next number for ``prefix`` in the current month.

        Runs inside the caller's transaction; the reservation becomes durable
        with the caller's commit and disappears with its rollback.
        """
        period = _period_key(self.clock.today())
        for attempt in range(settings.number_retry_attempts):
            value = self._bump(prefix, period)
            if value is not None:
                return format_number(prefix, period, value)
            try:
                with self.db.begin_nested():
                    self.db.add(NumberSequence(prefix=prefix, period=period, last_value=1))
                return format_number(prefix, period, 1)
            except IntegrityError:
                # Another transaction opened this month's sequence first; bump theirs.
                logger.debug("Sequence %s/%s created concurrently (attempt %s)", prefix, period, attempt + 1)
        raise Conflict(f"Could not allocate a {prefix} number for {period}; please retry")

    def _bump(self, prefix: str, period: str) -> int | None:
        result = self.db.execute(
            update(NumberSequence)
            .where(NumberSequence.prefix == prefix, NumberSequence.period == period)
            .values(last_value=NumberSequence.last_value + 1)
        )
        if result.rowcount == 0:
            return None
        return self.db.scalar(
            select(NumberSequence.last_value).where(
                NumberSequence.prefix == prefix,
                NumberSequence.period == period,
            )
        )
