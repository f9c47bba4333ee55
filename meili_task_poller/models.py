from enum import Enum
from typing import Callable, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

OperationHandle = Union[int, str]


class OperationStatus(str, Enum):
    enqueued = "enqueued"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    unknown = "unknown"


class Outcome(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


def is_succeeded(status: str) -> bool:
    return status == "succeeded"


def is_failed(status: str) -> bool:
    # Meilisearch reports tasks cancelled on the engine side as "canceled"
    return status in ("failed", "canceled")


class PollConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval: float = Field(default=5.0, gt=0)
    max_wait: float = Field(default=300.0, ge=0)  # 5 minutes
    backoff_multiplier: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=60.0, gt=0)
    jitter: bool = False
    status_field: str = "status"
    success_predicate: Callable[[str], bool] = is_succeeded
    failure_predicate: Callable[[str], bool] = is_failed
    enqueued_statuses: Tuple[str, ...] = ("enqueued",)
    processing_statuses: Tuple[str, ...] = ("processing",)


class OperationError(BaseModel):
    """Failure cause reported by the remote engine for a task"""

    model_config = ConfigDict(frozen=True)

    message: str = ""
    code: Optional[str] = None
    type: Optional[str] = None
    link: Optional[str] = None


class StatusResponse(BaseModel):
    handle: OperationHandle
    status: OperationStatus
    raw_response: dict
    elapsed_time: float
    attempt: int


class OperationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    handle: OperationHandle
    outcome: Outcome
    payload: Optional[dict] = None
    error: Optional[OperationError] = None
    polls: int
    elapsed_time: float

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.succeeded


class ProvisionedKeys(BaseModel):
    search_key: str
    admin_key: str
