"""Error taxonomy for the reconciliation engine."""

from __future__ import annotations

from typing import Optional


class ReconcilerError(Exception):
    """Base class; ``error_kind`` is the value recorded in commit results."""

    error_kind = "unknown"
    retryable = False

    def __init__(self, message: str, status: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class ValidationError(ReconcilerError):
    """Bad configuration. Raised at startup, never during a run."""

    error_kind = "validation"


class TransientError(ReconcilerError):
    """Network failure, timeout or RPC throttling."""

    error_kind = "transient"
    retryable = True


class AuthorizationError(ReconcilerError):
    """Signer mismatch or signing unavailable."""

    error_kind = "authorization"


class StateConflictError(ReconcilerError):
    """Subject already in a terminal state on the ledger."""

    error_kind = "state_conflict"


class RequestRejectedError(ReconcilerError):
    """Ledger rejected the request as malformed; a retry cannot help."""

    error_kind = "rejected"


class CommitTimeoutError(ReconcilerError):
    error_kind = "timeout"


class CommitCancelledError(ReconcilerError):
    error_kind = "cancelled"


class StoreUnavailableError(ReconcilerError):
    """Candidate collection failed; aborts the whole run."""

    error_kind = "store_unavailable"


def error_kind_of(exc: BaseException) -> str:
    if isinstance(exc, ReconcilerError):
        return exc.error_kind
    return "unknown"
