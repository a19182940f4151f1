import asyncio
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from loguru import logger

from async_task_client.errors import InvalidTransition, SubmissionFailed, TransportError
from async_task_client.models import (
    RESULT_STATES,
    PollAttempt,
    SessionState,
    TaskCancelled,
    TaskDescriptor,
    TaskHandle,
    TaskProgress,
    TaskResult,
    TaskTimedOut,
)
from async_task_client.status_interpreter import StatusInterpreter
from async_task_client.submission_client import SubmissionClient

ProgressCallback = Callable[[TaskProgress], Awaitable[Any]]

ALLOWED_TRANSITIONS = {
    SessionState.idle: {SessionState.submitting, SessionState.cancelled},
    SessionState.submitting: {
        SessionState.awaiting_initial_delay,
        SessionState.failed,
        SessionState.cancelled,
    },
    SessionState.awaiting_initial_delay: {SessionState.polling, SessionState.cancelled},
    SessionState.polling: {
        SessionState.completed,
        SessionState.failed,
        SessionState.timed_out,
        SessionState.not_found,
        SessionState.cancelled,
    },
}

# Warn on every 10th consecutive failure after the 10th
FAILURE_WARNING_EVERY = 10


class PollingSession:
    """Drives one task from submission to exactly one terminal result.

    The session is the only writer of its state. Cancellation is cooperative:
    `cancel()` sets an event that is checked before every sleep and every
    network call, and wakes a sleep immediately. A call already in flight is
    allowed to finish and its response is then discarded.
    """

    def __init__(
        self,
        descriptor: TaskDescriptor,
        http_session: aiohttp.ClientSession,
        on_status_change: Optional[ProgressCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.descriptor = descriptor
        self.policy = descriptor.policy
        self.http_session = http_session
        self.on_status_change = on_status_change
        self.on_progress = on_progress
        self.logger = logger

        self.state = SessionState.idle
        self.handle: Optional[TaskHandle] = None
        self.result: Optional[TaskResult] = None
        self.attempts_made = 0
        self._cancel_event = asyncio.Event()
        self._interpreter: Optional[StatusInterpreter] = None
        self._consecutive_failures = 0
        self._started_at: Optional[float] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def elapsed_time(self) -> float:
        if self._started_at is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._started_at

    def cancel(self) -> None:
        if not self.state.is_terminal:
            self.logger.info(f"Cancellation requested for {self.descriptor.name}")
        self._cancel_event.set()

    async def run(self) -> TaskResult:
        if self.state != SessionState.idle:
            raise RuntimeError("A polling session can only be run once")
        self._started_at = asyncio.get_running_loop().time()

        try:
            if self.cancelled:
                return await self._finish(self._cancelled_result())

            await self._transition(SessionState.submitting)
            try:
                handle = await SubmissionClient(self.http_session).submit(self.descriptor)
            except SubmissionFailed:
                await self._transition(SessionState.failed)
                raise

            self.handle = handle
            if self.cancelled:
                self.logger.info(
                    f"Task {handle.task_id} was submitted after cancellation, not polling it"
                )
                return await self._finish(self._cancelled_result())

            self._interpreter = StatusInterpreter(handle, self.policy)
            await self._transition(SessionState.awaiting_initial_delay)
            self.logger.debug(
                f"Waiting {self.policy.initial_delay:.2f}s before first status check "
                f"of task {handle.task_id}"
            )
            if await self._sleep(self.policy.initial_delay):
                return await self._finish(self._cancelled_result())

            await self._transition(SessionState.polling)
            return await self._poll_until_terminal()
        except asyncio.CancelledError:
            # The surrounding asyncio task was cancelled, e.g. on shutdown
            if not self.state.is_terminal:
                self.state = SessionState.cancelled
            raise

    async def _poll_until_terminal(self) -> TaskResult:
        while True:
            if self.attempts_made > 0 and await self._sleep(self.policy.poll_interval):
                return await self._finish(self._cancelled_result())
            if self.cancelled:
                return await self._finish(self._cancelled_result())

            attempt = await self._poll_once()
            self.attempts_made += 1

            if self.cancelled:
                self.logger.debug(
                    f"Discarding attempt {attempt.sequence} for task {self.handle.task_id}, "
                    "session was cancelled"
                )
                return await self._finish(self._cancelled_result())

            result = None
            if not attempt.is_transport_error:
                previous = self._interpreter.last_status
                result = self._interpreter.evaluate(attempt, self.elapsed_time)
                if self._interpreter.last_status != previous:
                    await self._notify(self.on_status_change)
            await self._notify(self.on_progress)

            if result is not None:
                return await self._finish(result)

            if self.attempts_made >= self.policy.max_attempts:
                self.logger.warning(
                    f"Task {self.handle.task_id} still not finished after "
                    f"{self.attempts_made} attempts"
                )
                return await self._finish(
                    TaskTimedOut(
                        task_id=self.handle.task_id,
                        attempts_made=self.attempts_made,
                        elapsed_time=self.elapsed_time,
                    )
                )

    async def _poll_once(self) -> PollAttempt:
        sequence = self.attempts_made + 1
        self.logger.debug(
            f"Polling task {self.handle.task_id}, attempt {sequence}/{self.policy.max_attempts}"
        )
        try:
            attempt = await self._get_status_once(sequence)
        except TransportError as e:
            self._consecutive_failures += 1
            self.logger.warning(f"Error polling task {self.handle.task_id}: {e}")
            if (
                self._consecutive_failures > FAILURE_WARNING_EVERY
                and self._consecutive_failures % FAILURE_WARNING_EVERY == 0
            ):
                self.logger.warning(
                    f"Polling failed {self._consecutive_failures} times in a row, "
                    f"check the worker for task {self.handle.task_id}"
                )
            return PollAttempt(sequence=sequence, error=str(e))

        self._consecutive_failures = 0
        return attempt

    async def _get_status_once(self, sequence: int) -> PollAttempt:
        """Fetches the task status once. 404 is returned as a response, other failures raise TransportError"""
        url = self.handle.status_url
        timeout = aiohttp.ClientTimeout(total=self.policy.per_call_timeout)

        try:
            async with self.http_session.get(url, timeout=timeout) as response:
                try:
                    body = await response.text()
                except UnicodeDecodeError:
                    # Undecodable bytes go to the interpreter, which counts them as malformed
                    body = await response.read()
                if response.status >= 300 and response.status != 404:
                    raise TransportError(f"HTTP error {response.status} at {url}")
                return PollAttempt(sequence=sequence, http_status=response.status, body=body)
        except aiohttp.ClientError as e:
            raise TransportError(f"{type(e).__name__} at {url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"No response from {url} within {self.policy.per_call_timeout}s"
            ) from e

    async def _sleep(self, delay: float) -> bool:
        """Waits for `delay` seconds. Returns True if the session was cancelled meanwhile"""
        if self.cancelled:
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _transition(self, target: SessionState) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.state, ()):
            raise InvalidTransition(self.state, target)
        self.logger.debug(f"{self.descriptor.name}: {self.state.value} -> {target.value}")
        self.state = target
        await self._notify(self.on_progress)

    async def _finish(self, result: TaskResult) -> TaskResult:
        await self._transition(RESULT_STATES[type(result)])
        self.result = result
        self.logger.info(f"{self.descriptor.name} finished: {result.outcome}")
        return result

    def _cancelled_result(self) -> TaskCancelled:
        return TaskCancelled(
            task_id=self.handle.task_id if self.handle else None,
            attempts_made=self.attempts_made,
            elapsed_time=self.elapsed_time,
        )

    def progress(self) -> TaskProgress:
        return TaskProgress(
            state=self.state,
            task_id=self.handle.task_id if self.handle else None,
            attempt=self.attempts_made,
            max_attempts=self.policy.max_attempts,
            elapsed_time=self.elapsed_time,
            remote_status=self._interpreter.last_status if self._interpreter else None,
        )

    async def _notify(self, callback: Optional[ProgressCallback]) -> None:
        if callback is None:
            return
        try:
            await callback(self.progress())
        except Exception:
            self.logger.exception(f"Progress callback failed for {self.descriptor.name}")
