"""
taskwatch Protocol Definitions
==============================

Interface contracts and the error hierarchy shared by the local store,
the sync engine and the remote gateways.

Error handling philosophy:
- Storage faults are caught where they happen and reported as skipped work
- Decoders never raise; they return DecodeError values
- Remote faults are classified once, at the gateway boundary, into ErrorKind
- Only an identity mismatch blocks work outright (IdentityMismatchError)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

# =============================================================================
# ERRORS
# =============================================================================


class TaskwatchError(Exception):
    """Base for all taskwatch errors."""

    pass


class StorageError(TaskwatchError):
    """Raised by a key-value backend that cannot read or write."""

    pass


class IdentityMismatchError(TaskwatchError):
    """Raised when records would be pushed under the wrong owner."""

    def __init__(self, expected: Optional[str], actual: Optional[str]) -> None:
        super().__init__(f"Owner mismatch: bound to {expected!r}, session is {actual!r}")
        self.expected = expected
        self.actual = actual


class BootstrapError(TaskwatchError):
    """Raised when guest data could not be migrated to an account."""

    pass


class ErrorKind(str, Enum):
    """Classification of a failed remote call."""

    MISSING_COLUMN = "missing_column"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


class RemoteStoreError(TaskwatchError):
    """A remote call failure with a typed classification.

    Args:
        kind: What class of failure this is.
        message: Human-readable description.
        code: Remote error code (SQLSTATE or PostgREST code), if any.
        details: Remote detail text, kept for narrower matching.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.details = details

    def mentions(self, name: str) -> bool:
        """Whether the message or details reference ``name``."""
        haystack = f"{self} {self.details or ''}".lower()
        return name.lower() in haystack


@dataclass
class DecodeError:
    """Why a raw value could not be decoded into a record.

    Returned, not raised, by decoders.
    """

    reason: str
    field: Optional[str] = None
    record_id: Optional[str] = None

    def __str__(self) -> str:
        where = f" ({self.field})" if self.field else ""
        return f"{self.reason}{where}"


# =============================================================================
# PROTOCOLS
# =============================================================================


@runtime_checkable
class KeyValueStorage(Protocol):
    """Durable string key -> string value storage.

    Implementations may raise OSError or StorageError; callers in
    taskwatch catch those at the point of use.
    """

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


@dataclass
class OwnerSession:
    """The authenticated owner all remote calls are scoped to."""

    owner_id: str
    access_token: Optional[str] = None


@runtime_checkable
class SessionProvider(Protocol):
    """Supplies the current session, or None when signed out/offline."""

    async def get_current_session(self) -> Optional[OwnerSession]: ...


class Subscriber(Protocol):
    def __call__(self, payload: Any) -> None: ...
