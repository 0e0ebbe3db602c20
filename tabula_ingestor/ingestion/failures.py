"""Classification of backend insert failures."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import exc as sa_exc

from ..exceptions import (
    BackendPermissionError,
    BackendTimeoutError,
    BackendUnavailableError,
    DuplicateRowError,
)


class FailureKind(str, Enum):
    """Recovery-relevant category of an insert failure."""

    TIMEOUT = "timeout"
    PERMISSION = "permission"
    DUPLICATE = "duplicate"
    CONNECTION = "connection"
    OTHER = "other"


TIMEOUT_MARKERS: tuple[str, ...] = (
    "maximum allowed execution time",
    "p6004",
    "query did not produce a result",
    "interactive transactions running through accelerate are limited",
    "canceling statement due to statement timeout",
    "canceling statement due to lock timeout",
    "transaction already closed",
)

PERMISSION_MARKERS: tuple[str, ...] = (
    "permission denied for schema",
    "permission denied for table",
    "42501",
    "attempt to write a readonly database",
)

DUPLICATE_MARKERS: tuple[str, ...] = (
    "unique constraint failed",
    "duplicate key value violates unique constraint",
)

CONNECTION_MARKERS: tuple[str, ...] = (
    "could not connect to server",
    "connection refused",
    "server closed the connection unexpectedly",
    "connection reset by peer",
    "terminating connection",
)

_TIMEOUT_PGCODES = {"57014", "55P03"}
_PERMISSION_PGCODES = {"42501"}
_DUPLICATE_PGCODES = {"23505"}


def _pgcode(exc: BaseException) -> str | None:
    original = getattr(exc, "orig", None)
    for candidate in (original, exc):
        code = getattr(candidate, "pgcode", None) or getattr(candidate, "sqlstate", None)
        if isinstance(code, str):
            return code
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    """Return the recovery category for an exception raised by an insert attempt."""

    if isinstance(exc, BackendTimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, BackendPermissionError):
        return FailureKind.PERMISSION
    if isinstance(exc, DuplicateRowError):
        return FailureKind.DUPLICATE
    if isinstance(exc, BackendUnavailableError):
        return FailureKind.CONNECTION

    code = _pgcode(exc)
    if code in _TIMEOUT_PGCODES:
        return FailureKind.TIMEOUT
    if code in _PERMISSION_PGCODES:
        return FailureKind.PERMISSION
    if code in _DUPLICATE_PGCODES:
        return FailureKind.DUPLICATE

    message = str(exc).lower()
    if any(marker in message for marker in TIMEOUT_MARKERS):
        return FailureKind.TIMEOUT
    if any(marker in message for marker in PERMISSION_MARKERS):
        return FailureKind.PERMISSION
    if any(marker in message for marker in DUPLICATE_MARKERS):
        return FailureKind.DUPLICATE
    if isinstance(exc, sa_exc.IntegrityError) and "unique" in message:
        return FailureKind.DUPLICATE

    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return FailureKind.CONNECTION
    if isinstance(exc, (sa_exc.InterfaceError, ConnectionError)):
        return FailureKind.CONNECTION
    if any(marker in message for marker in CONNECTION_MARKERS):
        return FailureKind.CONNECTION

    return FailureKind.OTHER


def is_duplicate(exc: BaseException) -> bool:
    return classify_failure(exc) is FailureKind.DUPLICATE
