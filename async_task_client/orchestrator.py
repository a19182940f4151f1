import asyncio
import threading
from typing import Optional

import aiohttp
from loguru import logger

from async_task_client.errors import AlreadyRunning
from async_task_client.models import SessionState, TaskDescriptor, TaskResult
from async_task_client.polling_session import PollingSession, ProgressCallback


class TaskOrchestrator:
    """Runs at most one remote task at a time.

    `start` returns an asyncio.Task resolving to the terminal TaskResult so the
    caller is never blocked; `run` is the awaiting shortcut. Starting while a
    task is in flight raises AlreadyRunning before any network call is made.
    Give each kind of task its own orchestrator if they may overlap.
    """

    def __init__(
        self,
        http_session: Optional[aiohttp.ClientSession] = None,
        on_status_change: Optional[ProgressCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.http_session = http_session
        self.on_status_change = on_status_change
        self.on_progress = on_progress
        self.logger = logger
        self._guard = threading.Lock()
        self._session: Optional[PollingSession] = None

    @property
    def is_running(self) -> bool:
        with self._guard:
            return self._session is not None

    @property
    def state(self) -> SessionState:
        with self._guard:
            return self._session.state if self._session else SessionState.idle

    def start(self, descriptor: TaskDescriptor) -> "asyncio.Task[TaskResult]":
        with self._guard:
            if self._session is not None:
                self.logger.warning(
                    f"Rejected {descriptor.name}: {self._session.descriptor.name} is still running"
                )
                raise AlreadyRunning(
                    f"{self._session.descriptor.name} is already running on this orchestrator"
                )
            session = PollingSession(
                descriptor,
                self.http_session,
                on_status_change=self.on_status_change,
                on_progress=self.on_progress,
            )
            self._session = session

        try:
            task = asyncio.create_task(self._drive(session))
        except BaseException:
            self._release(session)
            raise
        # Also covers a task cancelled before its first step
        task.add_done_callback(lambda _: self._release(session))
        return task

    async def run(self, descriptor: TaskDescriptor) -> TaskResult:
        return await self.start(descriptor)

    def cancel(self) -> bool:
        """Requests cancellation of the running task. Returns False if nothing is running"""
        with self._guard:
            session = self._session
        if session is None:
            return False
        session.cancel()
        return True

    async def _drive(self, session: PollingSession) -> TaskResult:
        try:
            if self.http_session is not None:
                return await session.run()

            async with aiohttp.ClientSession() as http_session:
                session.http_session = http_session
                return await session.run()
        finally:
            self._release(session)

    def _release(self, session: PollingSession) -> None:
        with self._guard:
            if self._session is session:
                self._session = None
