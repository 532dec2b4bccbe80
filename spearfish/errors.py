"""Error taxonomy shared by the scoring engine, research orchestrator and API."""
from __future__ import annotations


class SpearfishError(Exception):
    """Base class for errors surfaced to callers.

    ``kind`` is a stable machine-readable tag used in API envelopes and MCP
    tool responses; ``status_code`` is the HTTP status the API maps it to.
    """
    kind = "internal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SpearfishError):
    """Malformed input: missing company id, bad research config, unknown template."""
    kind = "validation"
    status_code = 400


class NotFoundError(SpearfishError):
    kind = "not_found"
    status_code = 404


class NotReadyError(SpearfishError):
    """Results requested for a session that has not reached a terminal state."""
    kind = "not_ready"
    status_code = 202


class BudgetExceededError(SpearfishError):
    kind = "budget_exceeded"
    status_code = 402


class ResearchTimeoutError(SpearfishError):
    kind = "timeout"
    status_code = 504


class ExternalProviderError(SpearfishError):
    """Query provider call failed. ``retryable`` marks transient failures."""
    kind = "provider"
    status_code = 502

    def __init__(
        self, message: str, retryable: bool = False,
        status: int | None = None, retry_after: float | None = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status = status
        self.retry_after = retry_after


class PersistenceError(SpearfishError):
    kind = "persistence"
    status_code = 500


class SessionStateError(SpearfishError):
    """Illegal session state transition (e.g. leaving a terminal state)."""
    kind = "conflict"
    status_code = 409


class AuthenticationError(SpearfishError):
    kind = "unauthorized"
    status_code = 401
