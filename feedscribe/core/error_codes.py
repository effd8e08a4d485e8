"""
Standardised error handling for feedscribe.

TaskError (base: code + message + retryable)
├── ConfigurationError     missing credential / model; fails before any request
├── AuthenticationError    401/403; fatal for the whole task
├── RateLimitError         429; retried after Retry-After
├── NetworkError           connection reset, DNS, timeout; retried with backoff
├── ServerError            5xx; retried with backoff
├── EndpointError          other 4xx; not retried
├── RetryExhaustedError    retries used up; cause is network / rate_limit / server
├── SliceError             decode/slice failure; fatal for one chunk only
├── ChunkTooLargeError     sliced payload above the upload cap; one chunk only
├── AllChunksFailedError   every chunk of a phase failed
└── TaskCancelled          user cancellation; not an error state
"""

from feedscribe.core.constants import ErrorCode, RETRYABLE_ERRORS


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


class TaskError(Exception):
    """Raised when a task encounters a known error condition."""

    code = ErrorCode.UNEXPECTED

    def __init__(self, message: str, code: str | None = None, retryable: bool | None = None):
        self.code = code or self.code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else is_retryable(self.code)
        super().__init__(f"[{self.code}] {message}")


class ConfigurationError(TaskError):
    code = ErrorCode.CONFIGURATION


class AuthenticationError(TaskError):
    code = ErrorCode.AUTH

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, retryable=False)


class RateLimitError(TaskError):
    code = ErrorCode.RATE_LIMIT

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class NetworkError(TaskError):
    code = ErrorCode.NETWORK


class ServerError(TaskError):
    code = ErrorCode.SERVER

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class EndpointError(TaskError):
    code = ErrorCode.ENDPOINT

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BadResponseError(TaskError):
    code = ErrorCode.BAD_RESPONSE


class RetryExhaustedError(TaskError):
    """All attempts failed; `cause` tells network, rate limit and server apart."""

    code = ErrorCode.RETRIES_EXHAUSTED

    CAUSE_NETWORK = "network"
    CAUSE_RATE_LIMIT = "rate_limit"
    CAUSE_SERVER = "server"

    def __init__(self, message: str, cause: str, attempts: int):
        self.cause = cause
        self.attempts = attempts
        super().__init__(message, retryable=False)


class SliceError(TaskError):
    code = ErrorCode.SLICE


class ChunkTooLargeError(TaskError):
    code = ErrorCode.CHUNK_TOO_LARGE


class AllChunksFailedError(TaskError):
    code = ErrorCode.ALL_CHUNKS_FAILED

    def __init__(self, message: str, failures: list[str] | None = None):
        self.failures = list(failures or [])
        super().__init__(message, retryable=False)


class TaskCancelled(TaskError):
    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Task cancelled by user"):
        super().__init__(message, retryable=False)
