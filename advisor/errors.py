from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ValidationError(ApiError):
    """Malformed submission, rejected before a job is created."""

    def __init__(self, message: str, *, code: str = "REQ_VALIDATION_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "ADVICE_JOB_NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class ToolExecutionError(RuntimeError):
    """Raised inside a tool handler; always converted to an error-shaped tool result."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class UpstreamError(RuntimeError):
    """Generative-text or retrieval backend unavailable after local retries."""

    def __init__(self, message: str, *, backend: str = "llm", attempts: int = 0) -> None:
        super().__init__(message)
        self.backend = backend
        self.attempts = attempts


class SchemaRepairExhausted(RuntimeError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"advice output repair exhausted: {reason}")
        self.reason = reason


class CacheError(RuntimeError):
    pass


class JobCancelled(RuntimeError):
    """Cooperative cancellation observed at a checkpoint; never retried."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} cancelled")
        self.job_id = job_id
