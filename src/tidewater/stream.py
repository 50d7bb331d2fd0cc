# src/tidewater/stream.py
"""
A compact Kinesis consumer worker.

The worker leases shards of the stream, runs one consumer task per leased
shard and feeds each batch of records to that shard's `RecordProcessor`.
Positions and leases are kept in the LMDB `CheckpointStore`. Shards created
by a reshard are picked up once their parent was read to its end.
"""

import asyncio
import logging
import socket
import uuid
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from botocore.exceptions import ClientError

from tidewater.checkpoint import SHARD_END, CheckpointStore, ShardCheckpointer
from tidewater.config import AppConfig
from tidewater.exceptions import CheckpointStoreError, LeaseLostError
from tidewater.processor import RecordProcessor, ShutdownReason, StreamRecord

if TYPE_CHECKING:
    from types_aiobotocore_kinesis.client import KinesisClient

logger: logging.Logger = logging.getLogger(__name__)

ProcessorFactory = Callable[[], RecordProcessor]


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def default_worker_id() -> str:
    """Returns an identifier unique to this process."""
    return f"tidewater-worker-{socket.getfqdn()}-{uuid.uuid4()}"


class StreamWorker:
    """Runs one record processor per leased shard of a stream."""

    def __init__(
        self,
        client: "KinesisClient",
        stream_name: str,
        store: CheckpointStore,
        processor_factory: ProcessorFactory,
        app_config: AppConfig,
        worker_id: Optional[str] = None,
    ) -> None:
        """
        Args:
            client (KinesisClient): An initialized Kinesis client.
            stream_name (str): The stream to consume.
            store (CheckpointStore): Holds shard leases and checkpoints.
            processor_factory (ProcessorFactory): Creates one processor per shard.
            app_config (AppConfig): Polling, lease and back-off settings.
            worker_id (str, optional): The lease owner name of this worker.
        """
        self._client: "KinesisClient" = client
        self._stream_name: str = stream_name
        self._store: CheckpointStore = store
        self._processor_factory: ProcessorFactory = processor_factory
        self._config: AppConfig = app_config
        self.worker_id: str = worker_id or default_worker_id()
        self._stop_event: asyncio.Event = asyncio.Event()
        self._stopped: asyncio.Event = asyncio.Event()
        self._running: bool = False
        self._consumers: Dict[str, "asyncio.Task[None]"] = {}
        self._finished: Set[str] = set()

    @property
    def active_shards(self) -> List[str]:
        return list(self._consumers)

    @property
    def finished_shards(self) -> Set[str]:
        return set(self._finished)

    async def run(self) -> None:
        """
        Consumes the stream until a shutdown is requested.

        Returns once every shard consumer has finished.
        """
        self._running = True
        logger.info(
            f"Worker {self.worker_id} started on stream '{self._stream_name}'."
        )
        try:
            while not self._stop_event.is_set():
                await self._sync_shards()
                await self._pause(self._config.shard_sync_interval_s)
        except (Exception, asyncio.CancelledError):
            self.shutdown()
            raise
        finally:
            await asyncio.gather(*self._consumers.values(), return_exceptions=True)
            self._running = False
            self._stopped.set()
            logger.info(f"Worker {self.worker_id} stopped.")

    def start_graceful_shutdown(self) -> "asyncio.Future[None]":
        """
        Stops taking new batches and lets every consumer finish its current one.

        Each call returns a new awaitable that completes once every consumer
        has finished and checkpointed.
        """
        logger.info("Graceful shutdown requested.")
        self._stop_event.set()
        return asyncio.ensure_future(self._wait_until_stopped())

    def shutdown(self) -> None:
        """Stops the worker immediately, cancelling in-flight work."""
        logger.warning(f"Stopping worker {self.worker_id} immediately.")
        self._stop_event.set()
        for task in self._consumers.values():
            task.cancel()

    async def _wait_until_stopped(self) -> None:
        consumers: List["asyncio.Task[None]"] = list(self._consumers.values())
        if consumers:
            await asyncio.gather(
                *(asyncio.shield(task) for task in consumers), return_exceptions=True
            )
        if self._running:
            await self._stopped.wait()

    async def _pause(self, seconds: float) -> None:
        """Sleeps, waking up early if a shutdown is requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _list_shards(self) -> List[Dict[str, Any]]:
        shards: List[Dict[str, Any]] = []
        paginator = self._client.get_paginator("list_shards")
        async for page in paginator.paginate(StreamName=self._stream_name):
            shards.extend(page.get("Shards", []))
        return shards

    async def _sync_shards(self) -> None:
        """Leases every shard that is ready and not yet consumed."""
        try:
            shards: List[Dict[str, Any]] = await self._list_shards()
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                raise
            logger.warning(f"Unable to list shards of '{self._stream_name}': {e}")
            return

        known: Set[str] = {shard["ShardId"] for shard in shards}
        checkpoints: Dict[str, Optional[str]] = {}
        for shard_id in known:
            checkpoints[shard_id] = self._store.get_checkpoint(shard_id)
            if checkpoints[shard_id] == SHARD_END:
                self._finished.add(shard_id)

        for shard in shards:
            shard_id: str = shard["ShardId"]
            if shard_id in self._consumers or shard_id in self._finished:
                continue
            parent: Optional[str] = shard.get("ParentShardId")
            if parent in known and parent not in self._finished:
                continue
            if self._stop_event.is_set():
                return
            try:
                leased: bool = self._store.take_lease(
                    shard_id, self.worker_id, self._config.lease_duration_s
                )
            except CheckpointStoreError as e:
                logger.error(f"Shard [{shard_id}]: unable to take lease: {e}")
                continue
            if not leased:
                logger.debug(f"Shard [{shard_id}]: leased by another worker.")
                continue

            logger.info(f"Shard [{shard_id}]: leased by {self.worker_id}")
            self._consumers[shard_id] = asyncio.create_task(
                self._consume(shard_id, checkpoints[shard_id])
            )

    async def _shard_iterator(self, shard_id: str, position: Optional[str]) -> str:
        if position is None:
            response: Dict[str, Any] = await self._client.get_shard_iterator(
                StreamName=self._stream_name,
                ShardId=shard_id,
                ShardIteratorType="TRIM_HORIZON",
            )
        else:
            response = await self._client.get_shard_iterator(
                StreamName=self._stream_name,
                ShardId=shard_id,
                ShardIteratorType="AFTER_SEQUENCE_NUMBER",
                StartingSequenceNumber=position,
            )
        return response["ShardIterator"]

    async def _renew_lease(self, shard_id: str, lease_lost: asyncio.Event) -> None:
        interval: float = self._config.lease_duration_s / 3
        while True:
            await asyncio.sleep(interval)
            try:
                self._store.renew_lease(
                    shard_id, self.worker_id, self._config.lease_duration_s
                )
            except LeaseLostError as e:
                logger.warning(f"Shard [{shard_id}]: {e}")
                lease_lost.set()
                return
            except CheckpointStoreError as e:
                logger.error(f"Shard [{shard_id}]: unable to renew lease: {e}")

    async def _consume(self, shard_id: str, checkpoint: Optional[str]) -> None:
        """Reads one shard and feeds its batches to a fresh processor."""
        processor: RecordProcessor = self._processor_factory()
        processor.initialize(shard_id)
        checkpointer: ShardCheckpointer = ShardCheckpointer(
            self._store, shard_id, self.worker_id
        )
        lease_lost: asyncio.Event = asyncio.Event()
        renewal: "asyncio.Task[None]" = asyncio.create_task(
            self._renew_lease(shard_id, lease_lost)
        )
        reason: Optional[ShutdownReason] = None
        try:
            iterator: Optional[str] = await self._shard_iterator(shard_id, checkpoint)
            while reason is None:
                if lease_lost.is_set():
                    reason = ShutdownReason.ZOMBIE
                elif self._stop_event.is_set():
                    reason = ShutdownReason.REQUESTED
                elif iterator is None:
                    reason = ShutdownReason.TERMINATE
                else:
                    iterator = await self._read_batch(
                        shard_id, iterator, processor, checkpointer
                    )
            await processor.shutdown(reason, checkpointer)
        except asyncio.CancelledError:
            logger.warning(f"Shard [{shard_id}]: consumer cancelled.")
            raise
        except Exception:
            logger.exception(f"Shard [{shard_id}]: consumer failed.")
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)
            if reason is ShutdownReason.TERMINATE:
                self._finished.add(shard_id)
            self._consumers.pop(shard_id, None)
            if reason is not ShutdownReason.ZOMBIE:
                try:
                    self._store.release_lease(shard_id, self.worker_id)
                except CheckpointStoreError as e:
                    logger.error(f"Shard [{shard_id}]: unable to release lease: {e}")

    async def _read_batch(
        self,
        shard_id: str,
        iterator: str,
        processor: RecordProcessor,
        checkpointer: ShardCheckpointer,
    ) -> Optional[str]:
        """
        Reads and processes one batch.

        Returns:
            Optional[str]: The next iterator, or None at the end of the shard.
        """
        try:
            response: Dict[str, Any] = await self._client.get_records(
                ShardIterator=iterator, Limit=self._config.max_records_per_read
            )
        except ClientError as e:
            code: str = _error_code(e)
            if code == "ProvisionedThroughputExceededException":
                logger.info(f"Shard [{shard_id}]: read throttled, backing off.")
                await self._pause(self._config.throttle_backoff_s)
                return iterator
            if code == "ExpiredIteratorException":
                logger.info(f"Shard [{shard_id}]: iterator expired, refreshing.")
                return await self._shard_iterator(
                    shard_id,
                    checkpointer.largest_sequence_number
                    or self._store.get_checkpoint(shard_id),
                )
            raise

        records: List[StreamRecord] = [
            StreamRecord(
                data=record["Data"],
                sequence_number=record["SequenceNumber"],
                partition_key=record.get("PartitionKey", ""),
            )
            for record in response.get("Records", [])
        ]
        next_iterator: Optional[str] = response.get("NextShardIterator")
        if records:
            for record in records:
                checkpointer.advance(record.sequence_number)
            await processor.process_records(records, checkpointer)
        elif next_iterator is not None:
            await self._pause(self._config.idle_time_between_reads_s)
        return next_iterator
