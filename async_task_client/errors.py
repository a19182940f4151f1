from typing import Any, Optional


class TaskClientError(Exception):
    """Base class for errors raised by the task client"""


class SubmissionFailed(TaskClientError):
    """The start-work call was rejected or never answered. Never retried here."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class AlreadyRunning(TaskClientError):
    """A task is already in flight on this orchestrator"""


class TransportError(TaskClientError):
    """A single status check failed at the HTTP level"""


class MalformedResponse(TaskClientError):
    """A status response had no usable status field"""


class InvalidTransition(TaskClientError):
    def __init__(self, current, target):
        super().__init__(f"Illegal session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
