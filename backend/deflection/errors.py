"""Error taxonomy for the deflection core.

Decision outcomes ("this ticket needs a human") are never modelled as
exceptions. Everything here means the system could not decide, and the
job processor owns what happens next based on ``retryable``.
"""


class DeflectionError(Exception):
    """Base class for deflection errors."""


class InputValidationError(DeflectionError):
    """Malformed ticket or request. No job is created."""


class SettingsMissingError(InputValidationError):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"No deflection settings found for tenant {tenant_id}")


class NotFoundError(DeflectionError):
    pass


class BackendError(DeflectionError):
    """Failure talking to the reasoning backend."""

    retryable = True
    kind = "backend_error"

    def __init__(self, message: str, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class BackendAuthError(BackendError):
    retryable = False
    kind = "auth"


class BackendRateLimitError(BackendError):
    kind = "rate_limit"


class BackendTimeoutError(BackendError):
    kind = "timeout"


class BackendUnavailableError(BackendError):
    kind = "network"


class MalformedResponseError(BackendError):
    kind = "malformed_response"


class BudgetExceededError(BackendError):
    kind = "budget"

    def __init__(self, reason: str, limit_type: str):
        self.reason = reason
        self.limit_type = limit_type
        super().__init__(reason)


class CircuitOpenError(BackendError):
    kind = "circuit_open"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def classify_error(error: BaseException) -> tuple[bool, str]:
    """Return ``(retryable, kind)`` for an exception raised while processing a job."""
    if isinstance(error, BackendError):
        return error.retryable, error.kind
    if isinstance(error, InputValidationError):
        return False, "invalid_input"
    # Unclassified failures are retried; max_retries bounds them.
    return True, "unexpected"
