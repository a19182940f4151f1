from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from async_task_client.models import PollingPolicy, TaskDescriptor
from task_server import TaskServer

BASE_URL_TEMPLATE = "http://127.0.0.1:{}"


@pytest_asyncio.fixture
async def server() -> AsyncGenerator[Tuple[TaskServer, str], None]:
    """Start a TaskServer whose tasks complete on the first unscripted check."""
    server_instance = TaskServer(completion_time=0.0, error_rate=0.0)
    port = await server_instance.start()
    try:
        yield server_instance, BASE_URL_TEMPLATE.format(port)
    finally:
        await server_instance.stop()


@pytest.fixture
def policy() -> PollingPolicy:
    """Fast policy so every scenario finishes well under a second."""
    return PollingPolicy(
        initial_delay=0.01,
        poll_interval=0.01,
        max_attempts=5,
        per_call_timeout=1.0,
        not_found_grace_attempts=1,
        malformed_tolerance=2,
    )


def make_descriptor(base_url: str, policy: PollingPolicy, **kwargs) -> TaskDescriptor:
    return TaskDescriptor(
        submit_url=f"{base_url}/tasks",
        payload={"content": "Write a post about autumn"},
        policy=policy,
        **kwargs,
    )
