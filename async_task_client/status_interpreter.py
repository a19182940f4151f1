import json
import math
from typing import Optional

from loguru import logger

from async_task_client.errors import MalformedResponse
from async_task_client.models import (
    PollAttempt,
    PollingPolicy,
    TaskCompleted,
    TaskFailed,
    TaskHandle,
    TaskNotFound,
    TaskResult,
    TaskStatus,
)

MALFORMED_REASON = "malformed response"
DEFAULT_FAILURE_REASON = "Task processing failed"


class StatusInterpreter:
    """Maps status responses for one task onto the session state machine.

    `evaluate` returns None while the task should keep being polled, or the
    terminal TaskResult once the remote reached a final state. One interpreter
    belongs to one session since it counts consecutive malformed responses.
    """

    def __init__(self, handle: TaskHandle, policy: PollingPolicy):
        self.handle = handle
        self.policy = policy
        self.malformed_count = 0
        self.last_status: Optional[TaskStatus] = None
        self.logger = logger

    def evaluate(self, attempt: PollAttempt, elapsed_time: float = 0.0) -> Optional[TaskResult]:
        if attempt.is_transport_error:
            raise ValueError("Transport failures are not status responses")

        if attempt.http_status == 404:
            return self._not_found(attempt, elapsed_time)

        try:
            data, status = self._parse(attempt.body)
        except MalformedResponse as e:
            return self._malformed(attempt, elapsed_time, str(e))

        self.malformed_count = 0
        self.last_status = status

        if status in (TaskStatus.pending, TaskStatus.processing):
            self.logger.debug(f"Task {self.handle.task_id} is {status.value}")
            return None

        if status == TaskStatus.not_found:
            return self._not_found(attempt, elapsed_time)

        if status == TaskStatus.completed:
            duration = self._remote_duration(data.get("duration"), elapsed_time)
            return TaskCompleted(
                task_id=self.handle.task_id,
                attempts_made=attempt.sequence,
                elapsed_time=elapsed_time,
                payload=data.get("result"),
                duration=duration,
            )

        return TaskFailed(
            task_id=self.handle.task_id,
            attempts_made=attempt.sequence,
            elapsed_time=elapsed_time,
            reason=str(data.get("error") or DEFAULT_FAILURE_REASON),
        )

    @staticmethod
    def _remote_duration(value, fallback: float) -> float:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return fallback
        try:
            value = float(value)
        except OverflowError:
            return fallback
        return value if math.isfinite(value) else fallback

    @staticmethod
    def _parse(body):
        if isinstance(body, (str, bytes)):
            if not body.strip():
                raise MalformedResponse("empty response")
            try:
                body = json.loads(body)
            except ValueError:
                raise MalformedResponse("response is not valid JSON")

        if not isinstance(body, dict):
            raise MalformedResponse("response is not a JSON object")

        raw_status = body.get("status")
        if raw_status is None:
            raise MalformedResponse("response has no status field")
        try:
            return body, TaskStatus(raw_status)
        except ValueError:
            raise MalformedResponse(f"unknown status {raw_status!r}")

    def _not_found(self, attempt: PollAttempt, elapsed_time: float) -> Optional[TaskResult]:
        self.malformed_count = 0
        self.last_status = TaskStatus.not_found
        if attempt.sequence <= self.policy.not_found_grace_attempts:
            self.logger.warning(
                f"Task {self.handle.task_id} not found on attempt {attempt.sequence}, "
                "server may not have stored it yet"
            )
            return None
        self.logger.warning(f"Task {self.handle.task_id} reported as not found")
        return TaskNotFound(
            task_id=self.handle.task_id,
            attempts_made=attempt.sequence,
            elapsed_time=elapsed_time,
        )

    def _malformed(self, attempt: PollAttempt, elapsed_time: float, detail: str) -> Optional[TaskResult]:
        self.malformed_count += 1
        if self.malformed_count <= self.policy.malformed_tolerance:
            self.logger.warning(
                f"Ignoring malformed status for task {self.handle.task_id} "
                f"({detail}), {self.malformed_count}/{self.policy.malformed_tolerance}"
            )
            return None
        self.logger.error(
            f"Giving up on task {self.handle.task_id} after "
            f"{self.malformed_count} malformed responses in a row"
        )
        return TaskFailed(
            task_id=self.handle.task_id,
            attempts_made=attempt.sequence,
            elapsed_time=elapsed_time,
            reason=MALFORMED_REASON,
        )
