from __future__ import annotations

import uuid


class DomainError(Exception):
    """Base for user-facing failures raised by the billing services."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DomainError):
    """Entity is absent or not owned by the caller (deliberately indistinguishable)."""


class InvalidArgument(DomainError):
    pass


class InvalidState(DomainError):
    """Operation is illegal for the entity's current lifecycle state."""


class Conflict(DomainError):
    pass


def parse_id(value: str | uuid.UUID | None, label: str) -> str:
    """Normalise an entity id, rejecting anything that is not a UUID."""
    if isinstance(value, uuid.UUID):
        return str(value)
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise InvalidArgument(f"Invalid {label} ID format") from None
