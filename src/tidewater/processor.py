# src/tidewater/processor.py
"""
The per-shard record processor.

One processor is created for every shard lease. It decodes the object
descriptors delivered by the stream worker, hands them to the replicator,
checkpoints progress on an interval, and asks for a worker shutdown when the
scan's terminal marker comes through.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from tidewater.checkpoint import SHARD_END, ShardCheckpointer
from tidewater.config import AppConfig
from tidewater.exceptions import (
    CheckpointStoreError,
    LeaseLostError,
    MalformedRecordError,
    OrchestrationExpiredError,
    ThrottlingError,
)
from tidewater.orchestration import TaskNotifier
from tidewater.records import ObjectDescriptor
from tidewater.replicator import FileReplicator

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamRecord:
    """
    A single record as delivered by the stream.

    Attributes:
        data (bytes): The raw payload.
        sequence_number (str): The record's position in its shard.
        partition_key (str): The key the producer routed the record by.
    """

    data: bytes
    sequence_number: str
    partition_key: str = ""


class ProcessorState(Enum):
    INITIALIZED = "initialized"
    PROCESSING = "processing"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ShutdownReason(Enum):
    """Why a processor is being shut down."""

    # The shard was read to its end, e.g. after a reshard
    TERMINATE = "terminate"
    # The worker is stopping gracefully
    REQUESTED = "requested"
    # The lease was lost to another worker
    ZOMBIE = "zombie"


class RecordProcessor:
    """
    Processes the records of a single shard, strictly in delivery order.

    Instances are never shared across shards.
    """

    def __init__(
        self,
        replicator: FileReplicator,
        notifier: TaskNotifier,
        request_shutdown: Callable[[], None],
        app_config: AppConfig,
    ) -> None:
        """
        Args:
            replicator (FileReplicator): Copies the described objects.
            notifier (TaskNotifier): Receives a heartbeat after each checkpoint.
            request_shutdown (Callable[[], None]): Starts a graceful worker
                shutdown without blocking.
            app_config (AppConfig): Retry and checkpoint settings.
        """
        self._replicator: FileReplicator = replicator
        self._notifier: TaskNotifier = notifier
        self._request_shutdown: Callable[[], None] = request_shutdown
        self._config: AppConfig = app_config
        self.shard_id: Optional[str] = None
        self.state: ProcessorState = ProcessorState.INITIALIZED
        self._shutdown_requested: bool = False
        self._next_checkpoint_at: float = 0.0

    def initialize(self, shard_id: str) -> None:
        self.shard_id = shard_id
        self.state = ProcessorState.PROCESSING
        logger.info(f"Shard [{shard_id}]: initialize")

    async def process_records(
        self, records: Sequence[StreamRecord], checkpointer: ShardCheckpointer
    ) -> None:
        """
        Processes one batch, then checkpoints if the interval has elapsed.

        Args:
            records (Sequence[StreamRecord]): The batch, in shard order.
            checkpointer (ShardCheckpointer): The shard's checkpoint handle.
        """
        logger.info(f"Shard [{self.shard_id}]: processes {len(records)} records")
        for record in records:
            await self._process_with_retry(record)

        if time.monotonic() > self._next_checkpoint_at:
            await self.checkpoint(checkpointer)
            self._next_checkpoint_at = (
                time.monotonic() + self._config.checkpoint_interval_s
            )

    async def _process_with_retry(self, record: StreamRecord) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._config.record_max_attempts),
                wait=wait_fixed(self._config.retry_backoff_s),
                reraise=True,
            ):
                with attempt:
                    await self._process(record)
        except Exception:
            logger.exception(
                f"Shard [{self.shard_id}]: giving up on record "
                f"{record.sequence_number} after "
                f"{self._config.record_max_attempts} attempts"
            )

    async def _process(self, record: StreamRecord) -> None:
        try:
            descriptor: ObjectDescriptor = ObjectDescriptor.decode(record.data)
        except MalformedRecordError as e:
            logger.error(
                f"Shard [{self.shard_id}]: malformed record "
                f"{record.sequence_number} with content {record.data!r}: {e}"
            )
            return

        if descriptor.is_terminal:
            self._shutdown_once()
            return

        await self._replicator.copy(descriptor)

    def _shutdown_once(self) -> None:
        if self._shutdown_requested:
            logger.debug(f"Shard [{self.shard_id}]: shutdown already requested")
            return
        self._shutdown_requested = True
        logger.info(f"Shard [{self.shard_id}]: shutdown gracefully")
        self._request_shutdown()

    async def checkpoint(
        self, checkpointer: ShardCheckpointer, sequence_number: Optional[str] = None
    ) -> None:
        """
        Persists the shard position and sends a heartbeat.

        Only throttling is retried, a bounded number of times. Every other
        failure ends the attempt: the checkpoint is retried at the next
        interval at the earliest.

        Args:
            checkpointer (ShardCheckpointer): The shard's checkpoint handle.
            sequence_number (str, optional): An explicit position to persist.
        """
        logger.info(f"Shard [{self.shard_id}]: checkpoint")
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ThrottlingError),
                stop=stop_after_attempt(self._config.checkpoint_max_attempts),
                wait=wait_fixed(self._config.checkpoint_backoff_s),
                before_sleep=self._log_throttled,
            ):
                with attempt:
                    await checkpointer.checkpoint(sequence_number)
                    await self._notifier.heartbeat()
        except RetryError as e:
            logger.error(
                f"Shard [{self.shard_id}]: checkpoint failed after "
                f"{e.last_attempt.attempt_number} attempts: "
                f"{e.last_attempt.exception()}"
            )
        except OrchestrationExpiredError as e:
            logger.warning(
                f"Shard [{self.shard_id}]: orchestration is thought to be "
                f"stopped: {e}"
            )
            self._shutdown_once()
        except LeaseLostError:
            # Another worker owns the shard now (fail-over)
            logger.info(f"Shard [{self.shard_id}]: lease lost, skipping checkpoint.")
        except CheckpointStoreError as e:
            logger.error(
                f"Shard [{self.shard_id}]: cannot save checkpoint to the store: {e}"
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(
                f"Shard [{self.shard_id}]: checkpoint abandoned until the next "
                f"interval: {type(e).__name__} - {e}"
            )

    def _log_throttled(self, retry_state: RetryCallState) -> None:
        logger.info(
            f"Shard [{self.shard_id}]: transient issue when checkpointing - "
            f"attempt {retry_state.attempt_number} of "
            f"{self._config.checkpoint_max_attempts}"
        )

    async def shutdown(
        self, reason: ShutdownReason, checkpointer: ShardCheckpointer
    ) -> None:
        """
        Terminates the processor.

        A shard read to its end is checkpointed at `SHARD_END` so it is never
        read again; a graceful stop checkpoints the furthest processed record;
        a lost lease terminates without checkpointing.

        Args:
            reason (ShutdownReason): Why the processor is being shut down.
            checkpointer (ShardCheckpointer): The shard's checkpoint handle.
        """
        logger.info(f"Shard [{self.shard_id}]: shutdown ({reason.value})")
        self.state = ProcessorState.SHUTTING_DOWN
        if reason is ShutdownReason.TERMINATE:
            await self.checkpoint(checkpointer, SHARD_END)
        elif reason is ShutdownReason.REQUESTED:
            await self.checkpoint(checkpointer)
        self.state = ProcessorState.TERMINATED
