from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    not_found = "not_found"


class SessionState(str, Enum):
    idle = "idle"
    submitting = "submitting"
    awaiting_initial_delay = "awaiting_initial_delay"
    polling = "polling"
    completed = "completed"
    failed = "failed"
    timed_out = "timed_out"
    not_found = "not_found"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        SessionState.completed,
        SessionState.failed,
        SessionState.timed_out,
        SessionState.not_found,
        SessionState.cancelled,
    }
)


class PollingPolicy(BaseModel):
    """Timing and budget for one task. The caller supplies every value."""

    model_config = ConfigDict(frozen=True)

    initial_delay: float = Field(ge=0, description="Seconds before the first status check")
    poll_interval: float = Field(ge=0, description="Seconds between status checks")
    max_attempts: int = Field(ge=1, description="Status checks before giving up")
    per_call_timeout: float = Field(gt=0, description="Seconds allowed for one HTTP call")
    not_found_grace_attempts: int = Field(
        ge=0, description="Leading attempts where 'not found' means 'not visible yet'"
    )
    malformed_tolerance: int = Field(
        ge=0, description="Consecutive malformed responses tolerated before failing"
    )

    @property
    def session_budget(self) -> float:
        return self.initial_delay + self.max_attempts * self.poll_interval


class TaskDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    submit_url: str
    payload: dict
    policy: PollingPolicy
    status_url_template: Optional[str] = None  # e.g. "https://host/status/{task_id}"
    name: str = "task"


class TaskHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    status_url: str
    created_at: datetime = Field(default_factory=datetime.now)


class PollAttempt(BaseModel):
    """One status check. `http_status` is None when the call never got a response."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: datetime = Field(default_factory=datetime.now)
    http_status: Optional[int] = None
    body: Any = None
    error: Optional[str] = None

    @property
    def is_transport_error(self) -> bool:
        return self.http_status is None


class _ResultBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: Optional[str] = None
    attempts_made: int = 0
    elapsed_time: float = 0.0


class TaskCompleted(_ResultBase):
    outcome: Literal["completed"] = "completed"
    payload: Any = None
    duration: float = 0.0

    @property
    def message(self) -> str:
        return f"Task {self.task_id} completed in {self.duration:.1f}s"


class TaskFailed(_ResultBase):
    outcome: Literal["failed"] = "failed"
    reason: str

    @property
    def message(self) -> str:
        return f"Task {self.task_id} failed: {self.reason}"


class TaskTimedOut(_ResultBase):
    outcome: Literal["timed_out"] = "timed_out"

    @property
    def message(self) -> str:
        return (
            f"Task {self.task_id} did not finish after {self.attempts_made} status checks. "
            "It may still complete; check its status again later."
        )


class TaskNotFound(_ResultBase):
    outcome: Literal["not_found"] = "not_found"

    @property
    def message(self) -> str:
        return f"Task {self.task_id} is unknown to the server"


class TaskCancelled(_ResultBase):
    outcome: Literal["cancelled"] = "cancelled"

    @property
    def message(self) -> str:
        return "Task was cancelled"


TaskResult = Union[TaskCompleted, TaskFailed, TaskTimedOut, TaskNotFound, TaskCancelled]

RESULT_STATES = {
    TaskCompleted: SessionState.completed,
    TaskFailed: SessionState.failed,
    TaskTimedOut: SessionState.timed_out,
    TaskNotFound: SessionState.not_found,
    TaskCancelled: SessionState.cancelled,
}


class TaskProgress(BaseModel):
    state: SessionState
    task_id: Optional[str] = None
    attempt: int = 0
    max_attempts: int
    elapsed_time: float = 0.0
    remote_status: Optional[TaskStatus] = None

    @property
    def percent(self) -> float:
        if self.state == SessionState.submitting:
            return 10.0
        if self.state == SessionState.awaiting_initial_delay:
            return 25.0
        if self.state == SessionState.polling:
            return min(30 + (self.attempt / self.max_attempts) * 65, 95.0)
        if self.state == SessionState.completed:
            return 100.0
        return 0.0
