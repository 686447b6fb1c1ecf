"""Typed outcome returned by the record store and calendar clients.

Clients never decide whether a failure matters.  They return a ``Result``
carrying either the value or the typed exception, and the caller picks the
policy:

>>> store.list_faqs().unwrap_or([])                 # best-effort
>>> store.create_service_request(req).unwrap()      # load-bearing (re-raises)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success-or-failure-with-reason for a single external operation."""

    value: T | None = None
    error: Exception | None = None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> Result[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> str:
        """Human-readable failure reason (empty on success)."""
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"

    def unwrap(self) -> T:
        """Return the value, or re-raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def unwrap_or(self, default: T) -> T:
        """Return the value, or *default* when the operation failed."""
        if self.error is not None:
            return default
        return self.value  # type: ignore[return-value]
