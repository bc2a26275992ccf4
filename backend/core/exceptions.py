"""Custom exceptions for the task orchestration engine."""

from typing import Any, Optional

from core.constants import ErrorCode, RETRYABLE_ERROR_CODES


class EngineException(Exception):
    """Base exception for the orchestration engine."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
    ):
        """Initialize exception with message, error code and status code.

        Args:
            message: Exception message
            code: Machine-readable error code
            status_code: HTTP-style status code for transport layers
        """
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_ERROR_CODES

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
        }


class NotFoundError(EngineException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, ErrorCode.NOT_FOUND, 404)


class ValidationError(EngineException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, ErrorCode.VALIDATION_ERROR, 422)


class InvalidStateTransitionError(EngineException):
    """Refused status transition."""

    def __init__(self, current: str, target: str, entity: str = "task"):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            ErrorCode.INVALID_STATE_TRANSITION,
            409,
        )
        self.current = current
        self.target = target


# ─── Submission-time errors ───────────────────────────────────

class RateLimitedError(EngineException):
    """Tenant exceeded its submission rate. Never retried by the engine."""

    def __init__(self, tenant_id: str, retry_after: Optional[int] = None):
        super().__init__(
            "Organization rate limit exceeded. Please wait before submitting more tasks.",
            ErrorCode.RATE_LIMITED,
            429,
        )
        self.tenant_id = tenant_id
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return False


class QuotaExceededError(EngineException):
    """Tenant used up its monthly quota for a task type."""

    def __init__(self, tenant_id: str, task_type: str, limit: int):
        super().__init__(
            f"Monthly {task_type} quota exceeded. Please upgrade your plan.",
            ErrorCode.QUOTA_EXCEEDED,
            429,
        )
        self.tenant_id = tenant_id
        self.task_type = task_type
        self.limit = limit


# ─── Execution-time errors ────────────────────────────────────

class StepError(EngineException):
    """Raised by step functions or by the engine while running a step."""


class RetryableStepError(StepError):
    """Transient upstream failure. Retried with backoff."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR):
        super().__init__(message, code, 503)

    @property
    def retryable(self) -> bool:
        return True


class UpstreamRateLimitedError(RetryableStepError):
    """The external generation service throttled the call."""

    def __init__(self, message: str = "Upstream service rate limited the request"):
        super().__init__(message, ErrorCode.RATE_LIMITED)


class StepTimeoutError(RetryableStepError):
    """The step's own timeout expired."""

    def __init__(self, message: str = "Step timed out"):
        super().__init__(message, ErrorCode.TIMEOUT)


class ExternalServiceError(RetryableStepError):
    """The external service is unavailable or answered with a server error."""

    def __init__(self, message: str = "External service error"):
        super().__init__(message, ErrorCode.EXTERNAL_SERVICE_ERROR)


class FatalStepError(StepError):
    """Non-transient step failure. Never retried."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.VALIDATION_ERROR):
        super().__init__(message, code, 422)

    @property
    def retryable(self) -> bool:
        return False


class StepValidationError(FatalStepError):
    """Step input failed validation."""


class MissingUpstreamResultError(FatalStepError):
    """A step needs data that no upstream step produced (or it is not visible yet)."""

    def __init__(self, task_type: str, kinds: list[str]):
        super().__init__(
            f"{task_type} step requires {', '.join(kinds)} but none was provided or produced upstream",
            ErrorCode.MISSING_UPSTREAM_RESULT,
        )
        self.task_type = task_type
        self.kinds = kinds


class TaskCancelledError(FatalStepError):
    """Raised by a step function that observed its cancellation flag."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} was cancelled", ErrorCode.CANCELLED)
        self.task_id = task_id
