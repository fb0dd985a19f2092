"""
rrl_core/errors.py — Error taxonomy for ledger operations.

Every failed operation raises exactly one LedgerError subclass. The kind
travels with the exception so front ends can render a tagged failure
without matching on class names.

Pool shortfall is NOT represented here: it is a normal boolean outcome
of the reward routines.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    """Failure reasons, one per precondition family."""
    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"
    INVALID_RATING = "invalid-rating"
    INVALID_INPUT = "invalid-input"
    INVALID_HASH = "invalid-hash"
    UNAUTHORIZED = "unauthorized"
    TRANSFER_FAILURE = "transfer-failure"


class LedgerError(Exception):
    """Base class for all ledger failures.

    Raised before any write for precondition failures; raised from inside
    a transaction (which then rolls back) for TransferFailure and
    arithmetic overflow.
    """

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Tagged failure form returned by Ledger.execute()."""
        return {"ok": False, "error": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class NotFound(LedgerError):
    """Referenced restaurant, review or media id is outside the allocated range."""
    kind = ErrorKind.NOT_FOUND


class AlreadyExists(LedgerError):
    """The caller already reviewed this restaurant."""
    kind = ErrorKind.ALREADY_EXISTS


class InvalidRating(LedgerError):
    kind = ErrorKind.INVALID_RATING


class InvalidInput(LedgerError):
    """Bad text, list shape, media type, counter at ceiling, or overflow."""
    kind = ErrorKind.INVALID_INPUT


class InvalidHash(LedgerError):
    kind = ErrorKind.INVALID_HASH


class Unauthorized(LedgerError):
    """Caller is not the owner/admin, or the restaurant is inactive."""
    kind = ErrorKind.UNAUTHORIZED


class TransferFailure(LedgerError):
    """The value-transfer primitive itself failed. Always fatal."""
    kind = ErrorKind.TRANSFER_FAILURE
