"""Result envelope for datastore lookups that can legitimately miss.

Lookups such as "the event for this email" return a ``Result`` instead of
raising, so callers branch on ``ErrorKind.NOT_FOUND`` explicitly::

    result = await datastore.get_event_by_email(email)
    if result.is_not_found:
        ...
    host_event, event = result.unwrap()
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Enumerated failure kinds a lookup can report."""

    NOT_FOUND = "not_found"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an (ErrorKind, message) pair.

    Prefer the classmethods ``ok()``, ``not_found()`` and ``err()`` over
    direct construction.
    """

    value: T | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        """Return a successful result."""
        return cls(value=value)

    @classmethod
    def not_found(cls, message: str = "not found") -> Result[T]:
        """Return a result signalling the requested record does not exist."""
        return cls(error_kind=ErrorKind.NOT_FOUND, error_message=message)

    @classmethod
    def err(cls, message: str, kind: ErrorKind = ErrorKind.INTERNAL) -> Result[T]:
        """Return an error result."""
        return cls(error_kind=kind, error_message=message)

    @property
    def is_ok(self) -> bool:
        return self.error_kind is None

    @property
    def is_not_found(self) -> bool:
        return self.error_kind is ErrorKind.NOT_FOUND

    def unwrap(self) -> T:
        """Return the value or raise ``ValueError`` for an error result."""
        if self.error_kind is not None:
            raise ValueError(f"unwrap() on {self.error_kind.value} result: {self.error_message}")
        return self.value  # type: ignore[return-value]

    def __repr__(self) -> str:
        if self.is_ok:
            return f"Result.ok({self.value!r})"
        return f"Result.err({self.error_kind.value!r}, {self.error_message!r})"  # type: ignore[union-attr]
