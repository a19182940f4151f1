import pytest
from async_task_client.models import (
    PollAttempt,
    TaskCompleted,
    TaskFailed,
    TaskHandle,
    TaskNotFound,
    TaskStatus,
)
from async_task_client.status_interpreter import StatusInterpreter


@pytest.fixture
def interpreter(policy) -> StatusInterpreter:
    handle = TaskHandle(task_id="T1", status_url="http://example.test/tasks/T1/status")
    return StatusInterpreter(handle, policy)


def _response(sequence: int, body, http_status: int = 200) -> PollAttempt:
    return PollAttempt(sequence=sequence, http_status=http_status, body=body)


@pytest.mark.parametrize("status", ["pending", "processing"])
def test_in_progress_statuses_continue(interpreter, status):
    assert interpreter.evaluate(_response(1, f'{{"status": "{status}"}}')) is None
    assert interpreter.last_status == TaskStatus(status)


def test_completed_carries_result_and_remote_duration(interpreter):
    body = '{"taskId": "T1", "status": "completed", "result": {"x": 1}, "duration": 12}'

    result = interpreter.evaluate(_response(3, body), elapsed_time=40.0)

    assert isinstance(result, TaskCompleted)
    assert result.payload == {"x": 1}
    assert result.duration == 12.0
    assert result.elapsed_time == 40.0
    assert result.attempts_made == 3
    assert result.task_id == "T1"


def test_completed_accepts_already_decoded_body(interpreter):
    result = interpreter.evaluate(_response(1, {"status": "completed", "result": [1, 2]}), 2.5)

    assert isinstance(result, TaskCompleted)
    assert result.payload == [1, 2]
    assert result.duration == 2.5


def test_failed_uses_remote_error_or_default(interpreter):
    result = interpreter.evaluate(_response(1, '{"status": "failed", "error": "bad input"}'))
    assert isinstance(result, TaskFailed)
    assert result.reason == "bad input"

    result = interpreter.evaluate(_response(2, '{"status": "failed"}'))
    assert result.reason == "Task processing failed"


def test_http_404_is_only_authoritative_after_grace_period(interpreter):
    assert interpreter.evaluate(_response(1, "", http_status=404)) is None

    result = interpreter.evaluate(_response(2, "", http_status=404))

    assert isinstance(result, TaskNotFound)
    assert result.attempts_made == 2


def test_not_found_body_matches_404_handling(interpreter):
    assert interpreter.evaluate(_response(1, '{"status": "not_found"}')) is None
    assert isinstance(interpreter.evaluate(_response(2, '{"status": "not_found"}')), TaskNotFound)


def test_zero_grace_period_trusts_first_not_found(policy):
    handle = TaskHandle(task_id="T1", status_url="http://example.test/status/T1")
    interpreter = StatusInterpreter(
        handle, policy.model_copy(update={"not_found_grace_attempts": 0})
    )

    assert isinstance(interpreter.evaluate(_response(1, "", http_status=404)), TaskNotFound)


@pytest.mark.parametrize(
    "body",
    ["", "   ", "<html></html>", "[1, 2]", '{"result": 1}', '{"status": "queued"}', "null"],
)
def test_single_malformed_response_continues(interpreter, body):
    assert interpreter.evaluate(_response(1, body)) is None
    assert interpreter.malformed_count == 1


def test_persistent_malformed_responses_escalate(interpreter):
    assert interpreter.evaluate(_response(1, "oops")) is None
    assert interpreter.evaluate(_response(2, "oops")) is None

    result = interpreter.evaluate(_response(3, "oops"))

    assert isinstance(result, TaskFailed)
    assert result.reason == "malformed response"


def test_valid_response_resets_malformed_count(interpreter):
    interpreter.evaluate(_response(1, "oops"))
    interpreter.evaluate(_response(2, "oops"))
    interpreter.evaluate(_response(3, '{"status": "processing"}'))

    assert interpreter.malformed_count == 0
    assert interpreter.evaluate(_response(4, "oops")) is None


def test_transport_failures_are_rejected(interpreter):
    with pytest.raises(ValueError):
        interpreter.evaluate(PollAttempt(sequence=1, error="connection refused"))


@pytest.mark.parametrize("duration", ["1" + "0" * 400, "Infinity", "NaN"])
def test_unusable_remote_duration_falls_back_to_elapsed_time(interpreter, duration):
    body = f'{{"status": "completed", "result": 1, "duration": {duration}}}'

    result = interpreter.evaluate(_response(1, body), elapsed_time=7.0)

    assert isinstance(result, TaskCompleted)
    assert result.duration == 7.0


def test_undecodable_bytes_are_malformed(interpreter):
    assert interpreter.evaluate(_response(1, b'{"status": "\xff\xfe"}')) is None
    assert interpreter.malformed_count == 1
