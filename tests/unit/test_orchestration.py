# tests/unit/test_orchestration.py
"""Unit tests for the `TaskNotifier`."""

import json
from typing import Type

import pytest
from botocore.exceptions import ClientError

from tests.fakes import FakeSFNClient, client_error
from tidewater.exceptions import OrchestrationExpiredError, ThrottlingError
from tidewater.orchestration import TaskNotifier


@pytest.mark.asyncio
async def test_notifier_without_token_sends_nothing() -> None:
    """
    Tests that every notification is skipped when no task token is configured.

    Assert:
        - No heartbeat, success or failure reached the client.
    """
    sfn: FakeSFNClient = FakeSFNClient()
    notifier: TaskNotifier = TaskNotifier(sfn, None)

    await notifier.heartbeat()
    await notifier.report_success({"copied": 1})
    await notifier.report_failure("Error", "cause")

    assert not notifier.enabled
    assert sfn.heartbeats == 0
    assert sfn.successes == []
    assert sfn.failures == []


@pytest.mark.asyncio
async def test_report_success_sends_json_payload() -> None:
    """Tests that the success payload is sent as JSON output for the token."""
    sfn: FakeSFNClient = FakeSFNClient()
    notifier: TaskNotifier = TaskNotifier(sfn, "token")

    await notifier.report_success({"copied_in_memory": 2, "failed": 0})

    assert sfn.successes[0]["taskToken"] == "token"
    assert json.loads(sfn.successes[0]["output"]) == {
        "copied_in_memory": 2,
        "failed": 0,
    }


@pytest.mark.asyncio
async def test_report_failure_truncates_fields() -> None:
    """Tests that the error and cause are cut to the orchestrator's limits."""
    sfn: FakeSFNClient = FakeSFNClient()
    notifier: TaskNotifier = TaskNotifier(sfn, "token")

    await notifier.report_failure("E" * 300, "c" * 40000)

    assert len(sfn.failures[0]["error"]) == 256
    assert len(sfn.failures[0]["cause"]) == 32768


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code, expected",
    [
        ("TaskTimedOut", OrchestrationExpiredError),
        ("TaskDoesNotExist", OrchestrationExpiredError),
        ("InvalidToken", OrchestrationExpiredError),
        ("ThrottlingException", ThrottlingError),
        ("AccessDeniedException", ClientError),
    ],
)
async def test_heartbeat_error_mapping(code: str, expected: Type[Exception]) -> None:
    """
    Tests how heartbeat rejections are surfaced.

    Args:
        code (str): The error code returned by the orchestrator.
        expected (Type[Exception]): The exception the notifier must raise.
    """
    sfn: FakeSFNClient = FakeSFNClient()
    sfn.heartbeat_errors = [client_error(code, "SendTaskHeartbeat")]
    notifier: TaskNotifier = TaskNotifier(sfn, "token")

    with pytest.raises(expected):
        await notifier.heartbeat()

    await notifier.heartbeat()
    assert sfn.heartbeats == 2


@pytest.mark.asyncio
async def test_expired_token_silences_final_reports() -> None:
    """
    Tests that a token rejected on a heartbeat is not used for the outcome.

    Assert:
        - The notifier is marked as expired.
        - Neither success nor failure is sent afterwards.
    """
    sfn: FakeSFNClient = FakeSFNClient()
    sfn.heartbeat_errors = [client_error("TaskTimedOut", "SendTaskHeartbeat")]
    notifier: TaskNotifier = TaskNotifier(sfn, "token")

    with pytest.raises(OrchestrationExpiredError):
        await notifier.heartbeat()
    await notifier.report_failure("Error", "cause")
    await notifier.report_success({"copied": 1})

    assert notifier.expired
    assert sfn.successes == []
    assert sfn.failures == []


@pytest.mark.asyncio
async def test_report_on_timed_out_task_marks_expiry() -> None:
    """Tests that a success rejected with `TaskTimedOut` does not raise."""
    sfn: FakeSFNClient = FakeSFNClient()
    sfn.timed_out = True
    notifier: TaskNotifier = TaskNotifier(sfn, "token")

    await notifier.report_success({"copied": 1})

    assert notifier.expired
    assert sfn.successes == []


@pytest.mark.asyncio
async def test_report_failure_propagates_other_errors(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Tests that a report rejected for another reason still raises."""
    sfn: FakeSFNClient = FakeSFNClient()

    async def _denied(**_: str) -> None:
        raise client_error("AccessDeniedException", "SendTaskFailure")

    monkeypatch.setattr(sfn, "send_task_failure", _denied)
    notifier: TaskNotifier = TaskNotifier(sfn, "token")

    with pytest.raises(ClientError):
        await notifier.report_failure("Error", "cause")
    assert not notifier.expired
