"""Error types and the explicit result returned by registry operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class AuthcastError(Exception):
    """Base class for all authcast errors."""


class StoreError(AuthcastError):
    """The shared registry store is unreachable or returned an error."""


class SessionLookupError(AuthcastError):
    """The session store could not be queried."""


class ConnectionGoneError(AuthcastError):
    """An event could not be emitted because the connection is closed."""


class HandshakeError(AuthcastError):
    """A connection presented no usable session at connect time."""


@dataclass(frozen=True)
class OpResult:
    """Outcome of a registry operation. Callers may ignore it."""

    ok: bool
    value: Any = None
    error: Exception | None = None

    @classmethod
    def success(cls, value: Any = None) -> OpResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> OpResult:
        return cls(ok=False, error=error)
