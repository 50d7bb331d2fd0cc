# src/tidewater/scanner.py
"""
Enumerates the source bucket onto the stream.

Every object becomes one descriptor record; once the listing is exhausted a
single terminal marker follows. The scan returns only after the stream has
accepted every record, so a finished scan means everything is queued.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from tidewater.config import Config
from tidewater.exceptions import ScanError, StreamPublishError
from tidewater.records import ObjectDescriptor

if TYPE_CHECKING:
    from types_aiobotocore_kinesis.client import KinesisClient
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.paginator import ListObjectsV2Paginator

logger: logging.Logger = logging.getLogger(__name__)

# Kinesis PutRecords limits
MAX_BATCH_RECORDS: int = 500
MAX_BATCH_BYTES: int = 5 * 1024 * 1024
MAX_PARTITION_KEY_LENGTH: int = 256


class _RecordsRejected(Exception):
    """Some records of a batch were throttled and must be resent."""


class StreamProducer:
    """Buffers descriptor records and publishes them with `put_records`."""

    def __init__(
        self,
        client: "KinesisClient",
        stream_name: str,
        max_attempts: int = 10,
        backoff_s: float = 1.0,
    ) -> None:
        """
        Args:
            client (KinesisClient): An initialized Kinesis client.
            stream_name (str): The stream to publish to.
            max_attempts (int): Attempts for records the stream rejects.
            backoff_s (float): Delay between attempts.
        """
        self._client: "KinesisClient" = client
        self._stream_name: str = stream_name
        self._max_attempts: int = max_attempts
        self._backoff_s: float = backoff_s
        self._buffer: List[Dict[str, Any]] = []
        self._buffer_bytes: int = 0
        self.published: int = 0

    async def add(self, descriptor: ObjectDescriptor) -> None:
        """Queues a descriptor, publishing the buffer once a batch is full."""
        data: bytes = descriptor.encode()
        partition_key: str = descriptor.key[:MAX_PARTITION_KEY_LENGTH]
        size: int = len(data) + len(partition_key.encode("utf-8"))
        if (
            len(self._buffer) >= MAX_BATCH_RECORDS
            or self._buffer_bytes + size > MAX_BATCH_BYTES
        ):
            await self.flush()
        self._buffer.append({"Data": data, "PartitionKey": partition_key})
        self._buffer_bytes += size

    async def flush(self) -> None:
        """
        Publishes every buffered record.

        Raises:
            StreamPublishError: If records are still rejected after all attempts.
        """
        if not self._buffer:
            return
        batch: List[Dict[str, Any]] = self._buffer
        self._buffer = []
        self._buffer_bytes = 0

        pending: List[Dict[str, Any]] = batch
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RecordsRejected),
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_fixed(self._backoff_s),
            ):
                with attempt:
                    pending = await self._put(pending)
                    if pending:
                        raise _RecordsRejected(f"{len(pending)} records rejected")
        except RetryError as e:
            raise StreamPublishError(
                f"{len(pending)} records rejected by '{self._stream_name}' after "
                f"{e.last_attempt.attempt_number} attempts"
            ) from e
        except (ClientError, BotoCoreError) as e:
            raise StreamPublishError(
                f"Unable to publish to '{self._stream_name}': {e}"
            ) from e
        self.published += len(batch)

    async def _put(self, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        response: Dict[str, Any] = await self._client.put_records(
            StreamName=self._stream_name, Records=entries
        )
        if not response.get("FailedRecordCount"):
            return []
        # Results line up with the request entries
        rejected: List[Dict[str, Any]] = [
            entry
            for entry, result in zip(entries, response["Records"])
            if result.get("ErrorCode")
        ]
        logger.info(f"{len(rejected)} records rejected by the stream.")
        return rejected


class BucketScanner:
    """Publishes one descriptor per source object, then the terminal marker."""

    def __init__(
        self,
        config: Config,
        source_client: "S3Client",
        producer: StreamProducer,
    ) -> None:
        """
        Args:
            config (Config): The replication job.
            source_client (S3Client): An initialized client for the source bucket.
            producer (StreamProducer): Publishes the records.
        """
        self._config: Config = config
        self._source: "S3Client" = source_client
        self._producer: StreamProducer = producer

    async def scan(
        self, on_object: Optional[Callable[[ObjectDescriptor], None]] = None
    ) -> int:
        """
        Enumerates the whole bucket onto the stream.

        Args:
            on_object (Callable, optional): Called for every enumerated object.

        Returns:
            int: The number of objects enumerated.

        Raises:
            ScanError: If listing the bucket fails. The scan is not resumable.
            StreamPublishError: If records cannot be published.
        """
        bucket: str = self._config.source.name
        logger.info(f"Scanning 's3://{bucket}'...")
        count: int = 0
        try:
            paginator: "ListObjectsV2Paginator" = self._source.get_paginator(
                "list_objects_v2"
            )
            async for page in paginator.paginate(Bucket=bucket):
                for obj in page.get("Contents", []):
                    descriptor: ObjectDescriptor = ObjectDescriptor(
                        key=obj["Key"], size=obj["Size"]
                    )
                    await self._producer.add(descriptor)
                    count += 1
                    if on_object is not None:
                        on_object(descriptor)
        except (ClientError, BotoCoreError) as e:
            raise ScanError(f"Unable to list 's3://{bucket}': {e}") from e

        # The marker must not overtake objects resent after a rejection
        await self._producer.flush()
        await self._producer.add(ObjectDescriptor.terminal())
        await self._producer.flush()
        logger.info(f"Scanned {count} objects")
        return count
