import asyncio

from async_task_client.models import PollingPolicy, TaskDescriptor, TaskProgress
from async_task_client.orchestrator import TaskOrchestrator
from task_server import TaskServer

# Production values used for AI generation tasks: 2 minutes of warm-up,
# then a check every 15 seconds for up to 20 minutes.
PRODUCTION_POLICY = PollingPolicy(
    initial_delay=120.0,
    poll_interval=15.0,
    max_attempts=80,
    per_call_timeout=30.0,
    not_found_grace_attempts=4,
    malformed_tolerance=3,
)

DEMO_POLICY = PollingPolicy(
    initial_delay=2.0,
    poll_interval=1.0,
    max_attempts=30,
    per_call_timeout=5.0,
    not_found_grace_attempts=2,
    malformed_tolerance=3,
)


async def status_changed(progress: TaskProgress):
    print(f"Status changed to: {progress.remote_status.value}")


async def progress_changed(progress: TaskProgress):
    print(
        f"[{progress.percent:5.1f}%] {progress.state.value} "
        f"check {progress.attempt}/{progress.max_attempts} "
        f"({progress.elapsed_time:.1f}s elapsed)"
    )


async def main():
    server = TaskServer(completion_time=8.0, error_rate=0.05)
    port = await server.start()
    print(f"Server started on http://127.0.0.1:{port}")

    descriptor = TaskDescriptor(
        name="subject generation",
        submit_url=f"http://127.0.0.1:{port}/tasks",
        payload={"subject": "Autumn skincare routine"},
        policy=DEMO_POLICY,
    )
    orchestrator = TaskOrchestrator(
        on_status_change=status_changed, on_progress=progress_changed
    )

    try:
        result = await orchestrator.run(descriptor)
        print(f"Final outcome: {result.outcome}")
        print(result.message)
        if result.outcome == "completed":
            print(f"Result payload: {result.payload}")
    except Exception as e:
        print(f"Error occurred: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
