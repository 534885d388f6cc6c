"""Error taxonomy for the synchronization layer.

Transient        — network failure, timeout, 5xx; eligible for retry on reads.
Permanent-Remote — not-found / conflict / permission-denied / invalid;
                   surfaced immediately, never retried.
Local-Invariant  — a caller bug such as reconciling an unknown temp key.

Feed drift is not an exception: it cannot be detected directly and is
handled by ``SynchronizedCollection.resync()``.
"""
from __future__ import annotations

import enum


class ErrorCode(str, enum.Enum):
    """Machine-readable gateway error codes."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"
    INVALID = "invalid"


class GatewayError(Exception):
    """A failed request against the hosted store.

    Args:
        code: Classification used by retry and error-display logic.
        message: Human-readable message (safe to show inline).
        status: HTTP status when the failure came from a response.
    """

    def __init__(self, code: ErrorCode, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    @property
    def is_transient(self) -> bool:
        return self.code is ErrorCode.TRANSIENT

    def __repr__(self) -> str:
        return f"GatewayError(code={self.code.value!r}, message={self.message!r}, status={self.status!r})"


class LocalInvariantError(Exception):
    """Raised when a caller breaks a local bookkeeping invariant."""


class ProfileIncompleteError(Exception):
    """Raised when an action needs a profile the user has not created yet."""

    def __init__(self, message: str = "Please complete your profile before applying") -> None:
        super().__init__(message)
