import pytest
from async_task_client.errors import InvalidTransition
from async_task_client.models import (
    PollingPolicy,
    SessionState,
    TaskCancelled,
    TaskDescriptor,
    TaskProgress,
)
from async_task_client.polling_session import PollingSession
from conftest import make_descriptor
from pydantic import ValidationError


@pytest.fixture
def descriptor(policy) -> TaskDescriptor:
    return make_descriptor("http://127.0.0.1:1", policy)


@pytest.mark.asyncio
async def test_cancel_before_run_makes_no_network_call(descriptor):
    session = PollingSession(descriptor, http_session=None)
    session.cancel()

    result = await session.run()

    assert isinstance(result, TaskCancelled)
    assert result.task_id is None
    assert result.attempts_made == 0
    assert session.state == SessionState.cancelled
    assert session.result is result


@pytest.mark.asyncio
async def test_session_runs_only_once(descriptor):
    session = PollingSession(descriptor, http_session=None)
    session.cancel()
    await session.run()

    with pytest.raises(RuntimeError):
        await session.run()


@pytest.mark.asyncio
async def test_transitions_cannot_skip_states(descriptor):
    session = PollingSession(descriptor, http_session=None)

    with pytest.raises(InvalidTransition):
        await session._transition(SessionState.polling)
    assert session.state == SessionState.idle


@pytest.mark.asyncio
async def test_terminal_states_are_final(descriptor):
    session = PollingSession(descriptor, http_session=None)
    for state in (
        SessionState.submitting,
        SessionState.awaiting_initial_delay,
        SessionState.polling,
        SessionState.timed_out,
    ):
        await session._transition(state)

    assert session.state.is_terminal
    with pytest.raises(InvalidTransition):
        await session._transition(SessionState.polling)
    with pytest.raises(InvalidTransition):
        await session._transition(SessionState.cancelled)


def test_policy_requires_sane_values():
    with pytest.raises(ValidationError):
        PollingPolicy(
            initial_delay=1.0,
            poll_interval=1.0,
            max_attempts=0,
            per_call_timeout=1.0,
            not_found_grace_attempts=0,
            malformed_tolerance=0,
        )
    with pytest.raises(ValidationError):
        PollingPolicy(initial_delay=1.0, poll_interval=1.0, max_attempts=3)


def test_session_budget(policy):
    policy = policy.model_copy(
        update={"initial_delay": 120.0, "poll_interval": 15.0, "max_attempts": 80}
    )
    assert policy.session_budget == 1320.0


def test_descriptor_is_immutable(descriptor):
    with pytest.raises(ValidationError):
        descriptor.submit_url = "http://elsewhere.test/tasks"


def test_progress_percent():
    def progress(state, attempt=0):
        return TaskProgress(state=state, attempt=attempt, max_attempts=10).percent

    assert progress(SessionState.submitting) == 10.0
    assert progress(SessionState.awaiting_initial_delay) == 25.0
    assert progress(SessionState.polling, attempt=5) == 62.5
    assert progress(SessionState.polling, attempt=10) == 95.0
    assert progress(SessionState.completed) == 100.0
    assert progress(SessionState.timed_out) == 0.0
