# src/tidewater/orchestration.py
"""
Reports job progress to the orchestrating Step Functions execution.

A replication job may be started by a state machine task that waits for a
callback. The task token correlates this run with that task; without a token
every notification is skipped.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from botocore.exceptions import ClientError

from tidewater.exceptions import OrchestrationExpiredError, ThrottlingError

if TYPE_CHECKING:
    from types_aiobotocore_stepfunctions.client import SFNClient

logger: logging.Logger = logging.getLogger(__name__)

_EXPIRED_ERROR_CODES = frozenset({"TaskTimedOut", "TaskDoesNotExist", "InvalidToken"})
_THROTTLING_ERROR_CODES = frozenset({"ThrottlingException", "Throttling"})

# Step Functions limits for SendTaskFailure
_MAX_ERROR_LENGTH: int = 256
_MAX_CAUSE_LENGTH: int = 32768


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class TaskNotifier:
    """Sends heartbeats and the final outcome for a task token."""

    def __init__(self, client: "SFNClient", task_token: Optional[str]) -> None:
        """
        Args:
            client (SFNClient): An initialized Step Functions client.
            task_token (str, optional): The orchestrator's task token.
        """
        self._client: "SFNClient" = client
        self._task_token: Optional[str] = task_token
        self.expired: bool = False

    @property
    def enabled(self) -> bool:
        return self._task_token is not None

    async def heartbeat(self) -> None:
        """
        Tells the orchestrator the job is still alive.

        Raises:
            OrchestrationExpiredError: If the task no longer exists, e.g. the
                execution was stopped or timed out.
            ThrottlingError: If the heartbeat was throttled.
        """
        if self._task_token is None:
            return
        try:
            await self._client.send_task_heartbeat(taskToken=self._task_token)
        except ClientError as e:
            code: str = _error_code(e)
            if code in _EXPIRED_ERROR_CODES:
                self.expired = True
                raise OrchestrationExpiredError(
                    f"Orchestrator rejected the task token: {code}"
                ) from e
            if code in _THROTTLING_ERROR_CODES:
                raise ThrottlingError(f"Heartbeat throttled: {e}") from e
            raise

    async def report_success(self, payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Completes the orchestrator task successfully.

        Skipped once the orchestrator has rejected the token, as the task is
        already closed on its side.

        Args:
            payload (Dict[str, Any], optional): JSON-serializable task output.
        """
        if self._task_token is None:
            return
        if self.expired:
            logger.warning("Task token expired, not reporting job success.")
            return
        logger.info("Reporting job success to the orchestrator.")
        try:
            await self._client.send_task_success(
                taskToken=self._task_token, output=json.dumps(payload or {})
            )
        except ClientError as e:
            self._raise_unless_expired(e)

    async def report_failure(self, error: str, cause: str) -> None:
        """
        Fails the orchestrator task.

        Args:
            error (str): A short error name, usually the exception class.
            cause (str): A human readable description of the failure.
        """
        if self._task_token is None:
            return
        if self.expired:
            logger.warning(f"Task token expired, not reporting failure: {error}")
            return
        logger.info(f"Reporting failure to the orchestrator: {error}")
        try:
            await self._client.send_task_failure(
                taskToken=self._task_token,
                error=error[:_MAX_ERROR_LENGTH],
                cause=cause[:_MAX_CAUSE_LENGTH],
            )
        except ClientError as e:
            self._raise_unless_expired(e)

    def _raise_unless_expired(self, error: ClientError) -> None:
        """Swallows a rejected token, which means the task was already closed."""
        code: str = _error_code(error)
        if code not in _EXPIRED_ERROR_CODES:
            raise error
        self.expired = True
        logger.warning(f"Orchestrator rejected the task token: {code}")
