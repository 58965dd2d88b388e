from enum import Enum
from typing import Any, Optional

from nosql_client.exceptions import (
    CallerCanceledError,
    RemoteCanceledError,
    RemoteFailureError,
    WaiterError,
)
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class OperationStatus(str, Enum):
    accepted = "ACCEPTED"
    in_progress = "IN_PROGRESS"
    succeeded = "SUCCEEDED"
    failed = "FAILED"
    canceling = "CANCELING"
    canceled = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.succeeded,
            OperationStatus.failed,
            OperationStatus.canceled,
        )


class StatusResponse(BaseModel):
    status: OperationStatus
    raw_response: dict = Field(default_factory=dict)
    reason: Optional[str] = None
    elapsed_time: float = 0.0


class PollConfig(BaseModel):
    """How often and for how long a work request is polled.

    A ``backoff_factor`` of 1.0 gives a fixed ``interval``. ``timeout`` and
    ``max_attempts`` bound the wait; leaving both unset polls until a
    terminal status is observed.
    """

    model_config = ConfigDict(frozen=True)

    interval: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=32.0, gt=0)
    jitter: bool = False
    max_attempts: Optional[int] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=300.0, gt=0)  # 5 minutes


class OutcomeKind(str, Enum):
    completed = "completed"
    failed = "failed"
    canceled = "canceled"
    caller_canceled = "caller_canceled"


class WaitOutcome(BaseModel):
    handle: str
    kind: OutcomeKind
    last_status: Optional[OperationStatus] = None
    reason: Optional[str] = None
    attempts: int = 0
    elapsed_time: float = 0.0

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.completed

    @property
    def error(self) -> Optional[WaiterError]:
        """The exception describing a non-successful outcome, if any."""
        if self.kind == OutcomeKind.failed:
            return RemoteFailureError(self.handle, self.reason)
        if self.kind == OutcomeKind.canceled:
            return RemoteCanceledError(self.handle)
        if self.kind == OutcomeKind.caller_canceled:
            return CallerCanceledError(self.handle)
        return None

    def raise_for_outcome(self) -> None:
        error = self.error
        if error is not None:
            raise error


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TableLimits(_WireModel):
    max_read_units: int
    max_write_units: int
    max_storage_in_gbs: int = Field(alias="maxStorageInGBs")


class CreateTableDetails(_WireModel):
    compartment_id: str
    name: str
    ddl_statement: str
    table_limits: Optional[TableLimits] = None


class WorkRequestError(_WireModel):
    code: str
    message: str


class WorkRequest(_WireModel):
    id: str
    status: OperationStatus
    operation_type: str
    compartment_id: Optional[str] = None
    percent_complete: float = 0.0
    resources: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[WorkRequestError] = Field(default_factory=list)
