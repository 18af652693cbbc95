"""Exception hierarchy with stable error codes."""

from typing import Any


class RefineLoopError(Exception):
    """Base exception for refinement loop errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the structured error returned to synchronous callers."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return {"error": payload}


# Validation errors


class InputValidationError(RefineLoopError):
    """Submission failed validation."""

    code = "INPUT_VALIDATION_ERROR"
    status_code = 400


class InputSizeExceededError(InputValidationError):
    """Task text is larger than the configured limit."""

    code = "INPUT_SIZE_EXCEEDED"

    def __init__(self, size_bytes: int, max_bytes: int):
        super().__init__(
            f"Input size {size_bytes} bytes exceeds maximum of {max_bytes} bytes",
            details={"size_bytes": size_bytes, "max_bytes": max_bytes},
        )


class CriteriaCountExceededError(InputValidationError):
    """Too many evaluation criteria."""

    code = "CRITERIA_COUNT_EXCEEDED"

    def __init__(self, count: int, max_count: int):
        super().__init__(
            f"Criteria count {count} exceeds maximum of {max_count}",
            details={"count": count, "max_count": max_count},
        )


class MaxCostExceededError(InputValidationError):
    """Estimated execution cost is above the configured ceiling."""

    code = "MAX_COST_EXCEEDED"

    def __init__(self, estimated_cost: float, max_cost: float):
        super().__init__(
            f"Estimated cost ${estimated_cost:.4f} exceeds maximum of ${max_cost:.2f}",
            details={"estimated_cost_usd": estimated_cost, "max_cost_usd": max_cost},
        )


class RateLimitExceededError(RefineLoopError):
    """Admission rate limit exhausted."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, retry_after: float):
        super().__init__(
            f"Rate limit exceeded. Retry after {retry_after:.0f} seconds",
            details={"retry_after_seconds": retry_after},
        )
        self.retry_after = retry_after


# Provider errors


class ProviderError(RefineLoopError):
    """Generic completion provider failure."""

    code = "LLM_PROVIDER_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message,
            status_code=status_code,
            details={"provider": provider, **(details or {})},
        )
        self.provider = provider


class ProviderConnectionError(ProviderError):
    """The provider could not be reached."""

    status_code = 503


class ProviderTimeoutError(ProviderError):
    """The provider did not answer in time."""

    code = "LLM_TIMEOUT"
    status_code = 504


class ProviderRateLimitError(ProviderError):
    """The provider rejected the call with a rate limit."""

    code = "LLM_RATE_LIMIT"
    status_code = 429

    def __init__(self, message: str, provider: str = "unknown", retry_after: float | None = None):
        super().__init__(
            message,
            provider=provider,
            details={"retry_after_seconds": retry_after} if retry_after is not None else None,
        )
        self.retry_after = retry_after


class ProviderAuthenticationError(ProviderError):
    """Credentials were rejected."""

    code = "LLM_AUTHENTICATION_ERROR"
    status_code = 401


class ModelNotFoundError(ProviderError):
    """The requested model does not exist for the provider."""

    code = "LLM_MODEL_NOT_FOUND"
    status_code = 404


class ProviderConfigurationError(RefineLoopError):
    """Unknown provider identifier or missing credentials."""

    code = "LLM_CONFIGURATION_ERROR"
    status_code = 500


# Execution errors


class ExecutionNotFoundError(RefineLoopError):
    """No execution with the given id."""

    code = "EXECUTION_NOT_FOUND"
    status_code = 404

    def __init__(self, execution_id: str):
        super().__init__(
            f"Execution not found: {execution_id}",
            details={"execution_id": execution_id},
        )
        self.execution_id = execution_id


class ExecutionNotCancellableError(RefineLoopError):
    """The execution is already terminal."""

    code = "EXECUTION_NOT_CANCELLABLE"
    status_code = 409

    def __init__(self, execution_id: str, status: str):
        super().__init__(
            f"Execution {execution_id} is already {status} and cannot be cancelled",
            details={"execution_id": execution_id, "status": status},
        )
        self.execution_id = execution_id
        self.status = status


class ExecutionFailedError(RefineLoopError):
    """The refinement loop aborted on an unrecoverable error."""

    code = "EXECUTION_FAILED"
    status_code = 500

    def __init__(self, execution_id: str, cause: BaseException, iterations_completed: int):
        super().__init__(
            f"Execution {execution_id} failed after {iterations_completed} "
            f"iteration(s): {cause}",
            details={
                "execution_id": execution_id,
                "iterations_completed": iterations_completed,
                "cause": getattr(cause, "code", type(cause).__name__),
            },
        )
        self.execution_id = execution_id
        self.cause = cause
        self.iterations_completed = iterations_completed
