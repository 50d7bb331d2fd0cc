# src/tidewater/replicator.py
"""
Defines the per-object copy logic.

The replicator copies one object from the source bucket to the target bucket,
choosing a strategy by size: small objects are copied in memory, large ones
are staged chunk by chunk through a temporary file into a multipart upload,
and objects beyond the policy limit are skipped. A failed copy never raises;
it is logged and reported to the orchestrator, and the caller moves on.
"""

import logging
import tempfile
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import IO, TYPE_CHECKING, Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from tidewater.config import MIB, TIB, Config
from tidewater.exceptions import TransferError
from tidewater.orchestration import TaskNotifier
from tidewater.records import ObjectDescriptor

if TYPE_CHECKING:
    from aiobotocore.response import StreamingBody
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.paginator import ListMultipartUploadsPaginator
    from types_aiobotocore_s3.type_defs import (
        GetObjectOutputTypeDef,
        HeadObjectOutputTypeDef,
    )

logger: logging.Logger = logging.getLogger(__name__)

_READ_SIZE: int = 8 * MIB


class TransferStrategy(Enum):
    """How an object of a given size is copied."""

    IN_MEMORY = "memory"
    MULTIPART = "multipart"
    SKIP = "skip"


def select_strategy(
    size: int,
    in_memory_limit: int = 100 * MIB,
    max_object_size: int = TIB,
) -> TransferStrategy:
    """
    Chooses the copy strategy for an object.

    Args:
        size (int): The object size in bytes.
        in_memory_limit (int): Objects smaller than this are copied in memory.
        max_object_size (int): Objects at least this large are skipped.

    Returns:
        TransferStrategy: The strategy to use.
    """
    if size < in_memory_limit:
        return TransferStrategy.IN_MEMORY
    if size < max_object_size:
        return TransferStrategy.MULTIPART
    return TransferStrategy.SKIP


def chunk_size_for(length: int, min_chunk: int = 10 * MIB, max_parts: int = 1000) -> int:
    """
    Computes the multipart chunk size for an object.

    The chunk grows with the object so that the part count stays at or below
    `max_parts`, but never drops below `min_chunk`.

    Args:
        length (int): The object content length in bytes.
        min_chunk (int): The smallest chunk size.
        max_parts (int): The largest number of parts.

    Returns:
        int: The chunk size in bytes.
    """
    return max(min_chunk, -(-length // max_parts))


@dataclass
class ReplicationStats:
    """
    Job-wide counters, reported as the orchestrator's success payload.

    Attributes:
        copied_in_memory (int): Objects copied with a single GET/PUT.
        copied_multipart (int): Objects copied through a multipart upload.
        skipped (int): Objects over the size policy.
        failed (int): Objects whose copy failed.
        bytes_copied (int): Total bytes written to the target.
    """

    copied_in_memory: int = 0
    copied_multipart: int = 0
    skipped: int = 0
    failed: int = 0
    bytes_copied: int = 0

    def as_payload(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class MultipartSession:
    """
    State of one in-flight chunked copy.

    Attributes:
        upload_id (str): The target's multipart upload identifier.
        target_key (str): The key being written.
        chunk_size (int): The size of every part but the last.
        parts (List[Dict[str, Any]]): Completed parts, in part number order.
        bytes_transferred (int): Bytes uploaded so far.
    """

    upload_id: str
    target_key: str
    chunk_size: int = 0
    parts: List[Dict[str, Any]] = field(default_factory=list)
    bytes_transferred: int = 0

    @property
    def next_part_number(self) -> int:
        return len(self.parts) + 1


class FileReplicator:
    """Copies single objects from the source to the target bucket."""

    def __init__(
        self,
        config: Config,
        source_client: "S3Client",
        target_client: "S3Client",
        notifier: TaskNotifier,
        stats: Optional[ReplicationStats] = None,
    ) -> None:
        """
        Args:
            config (Config): The replication job.
            source_client (S3Client): An initialized client for the source bucket.
            target_client (S3Client): An initialized client for the target bucket.
            notifier (TaskNotifier): Receives per-object failure reports.
            stats (ReplicationStats, optional): Counters to update.
        """
        self._config: Config = config
        self._source: "S3Client" = source_client
        self._target: "S3Client" = target_client
        self._notifier: TaskNotifier = notifier
        self.stats: ReplicationStats = stats or ReplicationStats()

    @property
    def _source_bucket(self) -> str:
        return self._config.source.name

    @property
    def _target_bucket(self) -> str:
        return self._config.target.name

    async def copy(self, descriptor: ObjectDescriptor) -> None:
        """
        Copies one object. Never raises for transfer failures.

        Args:
            descriptor (ObjectDescriptor): The object to copy.
        """
        app = self._config.app
        strategy: TransferStrategy = select_strategy(
            descriptor.size, app.in_memory_limit_bytes, app.max_object_bytes
        )
        if strategy is TransferStrategy.SKIP:
            logger.warning(
                f"Skip '{descriptor.key}' ({descriptor.size} bytes) as it is "
                f"not smaller than {app.max_object_bytes} bytes."
            )
            self.stats.skipped += 1
            return

        start_time: float = time.monotonic()
        if strategy is TransferStrategy.IN_MEMORY:
            copied: bool = await self._copy_in_memory(descriptor)
        else:
            copied = await self._copy_multipart(descriptor)

        if copied:
            logger.info(
                f"Transferred '{descriptor.key}' via {strategy.value} "
                f"in {time.monotonic() - start_time:.2f}s"
            )

    async def _copy_in_memory(self, descriptor: ObjectDescriptor) -> bool:
        """
        Fetches the whole object, then writes it to the target in one request.

        Returns:
            bool: True if the object was copied.
        """
        try:
            response: "GetObjectOutputTypeDef" = await self._source.get_object(
                Bucket=self._source_bucket, Key=descriptor.key
            )
            stream: "StreamingBody" = response["Body"]
            body_bytes: bytes = await stream.read()
            if not body_bytes:
                logger.debug(f"Object '{descriptor.key}' is empty.")

            extra: Dict[str, Any] = {}
            if response.get("ContentType"):
                extra["ContentType"] = response["ContentType"]
            if response.get("Metadata"):
                extra["Metadata"] = response["Metadata"]

            await self._target.put_object(
                Bucket=self._target_bucket,
                Key=descriptor.key,
                Body=body_bytes,
                ContentLength=len(body_bytes),
                **extra,
            )
        except Exception as e:
            await self._handle_failure(descriptor, "memory", e)
            return False

        self.stats.copied_in_memory += 1
        self.stats.bytes_copied += len(body_bytes)
        return True

    async def _copy_multipart(self, descriptor: ObjectDescriptor) -> bool:
        """
        Copies the object one chunk at a time through a multipart upload.

        Each chunk is downloaded into a temporary file and uploaded as the
        next part. Any failure aborts the upload together with every other
        outstanding multipart upload on the target bucket.

        Returns:
            bool: True if the upload was completed.
        """
        session: Optional[MultipartSession] = None
        try:
            with tempfile.TemporaryFile(prefix="tidewater-", suffix=".tmp") as buffer:
                upload: Dict[str, Any] = await self._target.create_multipart_upload(
                    Bucket=self._target_bucket, Key=descriptor.key
                )
                session = MultipartSession(
                    upload_id=upload["UploadId"], target_key=descriptor.key
                )
                meta: "HeadObjectOutputTypeDef" = await self._source.head_object(
                    Bucket=self._source_bucket, Key=descriptor.key
                )
                length: int = meta["ContentLength"]
                session.chunk_size = chunk_size_for(
                    length,
                    self._config.app.min_chunk_bytes,
                    self._config.app.max_parts,
                )

                position: int = 0
                while position < length:
                    part_size: int = min(session.chunk_size, length - position)
                    logger.debug(
                        f"Multipart [{descriptor.key}]: part "
                        f"{session.next_part_number}, pos {position}, "
                        f"size {part_size}"
                    )
                    transferred: int = await self._copy_part(
                        session, buffer, position, part_size
                    )
                    position += transferred

                await self._target.complete_multipart_upload(
                    Bucket=self._target_bucket,
                    Key=descriptor.key,
                    UploadId=session.upload_id,
                    MultipartUpload={"Parts": session.parts},
                )
        except Exception as e:
            if session is not None:
                logger.warning(
                    f"Multipart [{descriptor.key}]: failed at part "
                    f"{session.next_part_number} after "
                    f"{session.bytes_transferred} bytes"
                )
                await self._abort_outstanding_uploads(session)
            await self._handle_failure(descriptor, "multipart", e)
            return False

        self.stats.copied_multipart += 1
        self.stats.bytes_copied += session.bytes_transferred
        return True

    async def _copy_part(
        self,
        session: MultipartSession,
        buffer: IO[bytes],
        position: int,
        part_size: int,
    ) -> int:
        """
        Downloads one byte range into `buffer` and uploads it as the next part.

        Returns:
            int: The number of bytes transferred.
        """
        buffer.seek(0)
        buffer.truncate()
        response: "GetObjectOutputTypeDef" = await self._source.get_object(
            Bucket=self._source_bucket,
            Key=session.target_key,
            Range=f"bytes={position}-{position + part_size - 1}",
        )
        stream: "StreamingBody" = response["Body"]
        downloaded: int = 0
        while downloaded < part_size:
            chunk: bytes = await stream.read(min(_READ_SIZE, part_size - downloaded))
            if not chunk:
                break
            buffer.write(chunk)
            downloaded += len(chunk)

        if downloaded == 0:
            raise TransferError(
                f"Empty range at offset {position} of '{session.target_key}'"
            )

        buffer.flush()
        buffer.seek(0)
        part_number: int = session.next_part_number
        result: Dict[str, Any] = await self._target.upload_part(
            Bucket=self._target_bucket,
            Key=session.target_key,
            UploadId=session.upload_id,
            PartNumber=part_number,
            Body=buffer,
            ContentLength=downloaded,
        )
        session.parts.append({"PartNumber": part_number, "ETag": result["ETag"]})
        session.bytes_transferred += downloaded
        return downloaded

    async def _abort_outstanding_uploads(self, session: MultipartSession) -> None:
        """
        Aborts the failed upload and every other multipart upload on the target.

        The sweep also removes uploads orphaned by earlier interrupted runs.
        It is not scoped to this job, so only one job may write a target
        bucket at a time.
        """
        uploads: List[Dict[str, Any]] = [
            {"Key": session.target_key, "UploadId": session.upload_id}
        ]
        try:
            paginator: "ListMultipartUploadsPaginator" = self._target.get_paginator(
                "list_multipart_uploads"
            )
            async for page in paginator.paginate(Bucket=self._target_bucket):
                for upload in page.get("Uploads", []):
                    if upload["UploadId"] != session.upload_id:
                        uploads.append(upload)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Unable to list multipart uploads: {e}")

        logger.warning(f"Abort {len(uploads)} multipart uploads")
        for upload in uploads:
            try:
                await self._target.abort_multipart_upload(
                    Bucket=self._target_bucket,
                    Key=upload["Key"],
                    UploadId=upload["UploadId"],
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning(
                    f"Unable to abort upload {upload['UploadId']} "
                    f"of '{upload['Key']}': {e}"
                )

    async def _handle_failure(
        self, descriptor: ObjectDescriptor, via: str, error: Exception
    ) -> None:
        """Logs a failed copy and reports it to the orchestrator."""
        self.stats.failed += 1
        cause: str = (
            f"Unable to copy '{self._source_bucket}/{descriptor.key}' "
            f"({descriptor.size} bytes) from {self._config.source.region} "
            f"to {self._config.target.region} via {via}. "
        )
        if isinstance(error, (ClientError, BotoCoreError, TransferError, OSError)):
            logger.error(f"{cause}{type(error).__name__} - {error}")
        else:
            logger.exception(f"An unexpected error occurred. {cause}")

        try:
            await self._notifier.report_failure(
                type(error).__name__, f"{cause}{error}"
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Unable to report failure of '{descriptor.key}': {e}")
