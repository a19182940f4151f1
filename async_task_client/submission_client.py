import asyncio
import json
from typing import Any, Optional
from urllib.parse import quote, urljoin

import aiohttp
from loguru import logger

from async_task_client.errors import SubmissionFailed
from async_task_client.models import TaskDescriptor, TaskHandle, TaskStatus

TASK_ID_KEYS = ("taskId", "taskid", "id")
ACCEPTED_STATUSES = (TaskStatus.pending.value, TaskStatus.processing.value)


class SubmissionClient:
    """Performs the single start-work call for a task and builds its handle"""

    def __init__(self, session: aiohttp.ClientSession):
        self.session = session
        self.logger = logger

    async def submit(self, descriptor: TaskDescriptor) -> TaskHandle:
        """POSTs the payload once and returns the handle. Raises SubmissionFailed on any failure."""
        url = descriptor.submit_url
        timeout = aiohttp.ClientTimeout(total=descriptor.policy.per_call_timeout)
        self.logger.info(f"Submitting {descriptor.name} to {url}")

        try:
            async with self.session.post(
                url, json=descriptor.payload, timeout=timeout
            ) as response:
                try:
                    text = await response.text()
                except UnicodeDecodeError as e:
                    raise SubmissionFailed(
                        f"Submission response for {descriptor.name} is not valid text",
                        status=response.status,
                        body=await response.read(),
                    ) from e
                if response.status >= 300:
                    self.logger.error(
                        f"Submission of {descriptor.name} rejected with HTTP {response.status}"
                    )
                    raise SubmissionFailed(
                        f"Failed to submit {descriptor.name}: HTTP {response.status}",
                        status=response.status,
                        body=text,
                    )
                status = response.status
                data = self._decode(text, status)
        except aiohttp.ClientError as e:
            self.logger.error(f"Submission of {descriptor.name} failed: {e}")
            raise SubmissionFailed(f"Failed to submit {descriptor.name}: {e}") from e
        except asyncio.TimeoutError as e:
            self.logger.error(f"Submission of {descriptor.name} timed out")
            raise SubmissionFailed(f"Submission of {descriptor.name} timed out") from e

        task_id = self._extract_task_id(data)
        if task_id is None:
            raise SubmissionFailed(
                "Invalid submission response: expected a task id", status=status, body=data
            )

        remote_status = data.get("status")
        if remote_status is not None and remote_status not in ACCEPTED_STATUSES:
            raise SubmissionFailed(
                f"Unexpected status {remote_status!r} for new task {task_id}",
                status=status,
                body=data,
            )

        status_url = self._resolve_status_url(descriptor, data, task_id)
        self.logger.info(f"Task {task_id} created, status at {status_url}")
        return TaskHandle(task_id=task_id, status_url=status_url)

    def _decode(self, text: str, status: int) -> dict:
        try:
            data = json.loads(text) if text.strip() else None
        except ValueError:
            raise SubmissionFailed(
                "Submission response is not valid JSON", status=status, body=text
            )

        # Workflow engines often wrap the single item in a list
        if isinstance(data, list) and data:
            self.logger.debug("Submission response is a list, using the first item")
            data = data[0]

        if not isinstance(data, dict):
            raise SubmissionFailed(
                "Submission response is not a JSON object", status=status, body=text
            )
        return data

    @staticmethod
    def _extract_task_id(data: dict) -> Optional[str]:
        for key in TASK_ID_KEYS:
            value = data.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    @staticmethod
    def _resolve_status_url(descriptor: TaskDescriptor, data: dict, task_id: str) -> str:
        literal: Any = data.get("statusUrl")
        if isinstance(literal, str) and literal:
            return urljoin(descriptor.submit_url, literal)

        if descriptor.status_url_template:
            return descriptor.status_url_template.replace(
                "{task_id}", quote(task_id, safe="")
            )

        raise SubmissionFailed(
            f"No status URL for task {task_id}: response has no statusUrl "
            "and the descriptor has no template",
            body=data,
        )
