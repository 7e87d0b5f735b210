from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    timeout = "timeout"
    network_error = "network_error"
    unauthorized = "unauthorized"
    rate_limited = "rate_limited"
    invalid_request = "invalid_request"
    server_error = "server_error"

    @property
    def is_transient(self) -> bool:
        return self in (
            ErrorKind.timeout,
            ErrorKind.network_error,
            ErrorKind.rate_limited,
            ErrorKind.server_error,
        )


class PollErrorKind(str, Enum):
    cancelled = "cancelled"
    status_extraction_failed = "status_extraction_failed"


class ProvisioningErrorKind(str, Enum):
    create_failed = "create_failed"
    cleanup_failed = "cleanup_failed"


class ProvisioningClientError(Exception):
    """Base class for every error raised by the client."""

    kind = "error"


class ConfigurationError(ProvisioningClientError):
    kind = "configuration_error"


class ExecutionError(ProvisioningClientError):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        return self.kind.is_transient

    def __str__(self) -> str:
        if self.status_code is None:
            return f"{self.kind.value}: {self.message}"
        return f"{self.kind.value} (HTTP {self.status_code}): {self.message}"


class RetryExhausted(ProvisioningClientError):
    kind = "retry_exhausted"

    def __init__(self, last_error: ExecutionError, attempts: int):
        super().__init__(f"gave up after {attempts} attempts, last error: {last_error}")
        self.last_error = last_error
        self.attempts = attempts

    @property
    def status_code(self) -> Optional[int]:
        return self.last_error.status_code


class PollError(ProvisioningClientError):
    def __init__(self, kind: PollErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class ProvisioningError(ProvisioningClientError):
    def __init__(self, kind: ProvisioningErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
