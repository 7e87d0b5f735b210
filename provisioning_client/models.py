from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OperationStatus(str, Enum):
    pending = "PENDING"
    running = "RUNNING"
    succeeded = "SUCCEEDED"
    failed = "FAILED"
    timed_out = "TIMED_OUT"
    unknown = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.succeeded,
            OperationStatus.failed,
            OperationStatus.timed_out,
        )


class Credential(BaseModel):
    """Bearer token plus the control plane base URL. The token never leaves repr or dumps."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False, exclude=True)
    base_url: str

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"


class ApiRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: str
    path: str
    body: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, str]] = None

    def describe(self) -> str:
        return f"{self.method} {self.path}"


class ApiResponse(BaseModel):
    status_code: int
    body: Dict[str, Any] = Field(default_factory=dict)
    raw_body: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class CallRecord(BaseModel):
    method: str
    path: str
    attempt: int
    status_code: Optional[int] = None
    outcome: str
    elapsed: float


class ErrorDetail(BaseModel):
    kind: str
    message: str
    last_status_code: Optional[int] = None
    last_observed_state: Optional[str] = None
    attempts: int = 0


class ProvisionResult(BaseModel):
    resource_kind: str
    operation: str
    resource_id: Optional[str] = None
    status: OperationStatus
    calls: List[CallRecord] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None
    cleanup_error: Optional[ErrorDetail] = None
    last_observed_state: Optional[str] = None
    reused_existing: bool = False

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class RetryDecision(BaseModel):
    retry: bool
    delay: float = 0.0
    reason: Optional[str] = None


class PollOutcome(BaseModel):
    status: OperationStatus
    last_state: Optional[str] = None
    checks: int
    elapsed: float


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = Field(default=0.2, ge=0.0, lt=1.0)


class PollingConfig(BaseModel):
    timeout: float = 1800.0  # 30 minutes
    interval: float = 15.0


class ExecutorConfig(BaseModel):
    request_timeout: float = 30.0


class OrchestratorConfig(BaseModel):
    retry: RetryConfig = Field(default_factory=RetryConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    budget: Optional[float] = None  # overall wall-clock seconds from the host
    cleanup_on_failure: bool = True
    reuse_existing: bool = False
