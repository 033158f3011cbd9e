from typing import Optional


class DeskRelayError(Exception):
    code = "error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class TransientProviderError(DeskRelayError):
    """AI/network timeout or run conflict. Retried a bounded number of times."""

    code = "transient_provider_error"


class RunConflictError(TransientProviderError):
    """The provider refused a write because a run is still active on the thread."""

    code = "run_conflict"


class PollTimeoutError(TransientProviderError):
    code = "poll_timeout"


class RateLimitedError(TransientProviderError):
    code = "rate_limited"


class ProviderError(DeskRelayError):
    """Non-retryable provider failure (failed/expired run, malformed response)."""

    code = "provider_error"


class ValidationError(DeskRelayError):
    """Bad tool arguments or an illegal state transition. Never retried."""

    code = "validation_error"


class InvalidTransitionError(ValidationError):
    code = "invalid_transition"

    def __init__(self, from_state: str, action: str, detail: Optional[str] = None):
        self.from_state = from_state
        self.action = action
        message = f"Invalid transition: {action} from {from_state}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PermissionDeniedError(ValidationError):
    code = "permission_denied"


class NotFoundError(DeskRelayError):
    code = "not_found"


class ConcurrencyConflict(DeskRelayError):
    """Stale read: the row changed between read and compare-and-update."""

    code = "concurrency_conflict"


class FatalConfigError(DeskRelayError):
    """Missing credentials or settings. Raised at startup, not per message."""

    code = "config_error"
