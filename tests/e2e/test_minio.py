# tests/e2e/test_minio.py
"""
Integration tests against live, Docker-based S3 services.

The object copies run through aiobotocore against two MinIO instances, so
ranged reads, part uploads from a staging file and the part checks of
`complete_multipart_upload` are exercised on a real S3 API. The stream and
the orchestrator stay in memory.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

import pytest
from aiobotocore.session import AioSession, get_session
from botocore.exceptions import ClientError
from types_aiobotocore_s3.paginator import ListObjectsV2Paginator

from tests.fakes import FakeKinesisClient, FakeSFNClient
from tidewater.clients import s3_client
from tidewater.config import MIB, Config
from tidewater.orchestration import TaskNotifier
from tidewater.pipeline import ReplicationPipeline
from tidewater.records import ObjectDescriptor
from tidewater.replicator import FileReplicator, ReplicationStats


async def get_all_objects(
    bucket_name: str, s3_config: Dict[str, Any]
) -> Dict[str, bytes]:
    """
    Retrieve every object of a bucket with its content.

    Args:
        bucket_name (str): The name of the bucket to read.
        s3_config (Dict[str, Any]): Connection details for the S3 service.

    Returns:
        Dict[str, bytes]: The object contents by key.
    """
    session: AioSession = get_session()
    contents: Dict[str, bytes] = {}
    async with session.create_client("s3", **s3_config) as client:
        paginator: ListObjectsV2Paginator = client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=bucket_name):
            for entry in page.get("Contents", []):
                response = await client.get_object(Bucket=bucket_name, Key=entry["Key"])
                async with response["Body"] as stream:
                    contents[entry["Key"]] = await stream.read()
    return contents


async def upload_test_data(
    s3_config: Dict[str, Any], bucket: str, objects: Dict[str, bytes]
) -> None:
    """
    Upload a set of objects to a bucket.

    Args:
        s3_config (Dict[str, Any]): Connection details for the S3 service.
        bucket (str): The bucket name.
        objects (Dict[str, bytes]): The object contents by key.
    """
    session: AioSession = get_session()
    async with session.create_client("s3", **s3_config) as client:
        for key, data in objects.items():
            await client.put_object(Bucket=bucket, Key=key, Body=data)


@asynccontextmanager
async def _replicator(config: Config) -> AsyncIterator[FileReplicator]:
    session: AioSession = get_session()
    async with (
        s3_client(session, config.source, config.app) as source,
        s3_client(session, config.target, config.app) as target,
    ):
        yield FileReplicator(
            config, source, target, TaskNotifier(FakeSFNClient(), None)
        )


@pytest.mark.asyncio
async def test_in_memory_copy_keeps_metadata(
    minio_job_config: Config,
    source_s3_service: Dict[str, Any],
    target_s3_service: Dict[str, Any],
) -> None:
    """
    Tests a single GET/PUT copy between two S3 services.

    Assert:
        - The content, content type and user metadata are copied.
    """
    session: AioSession = get_session()
    data: bytes = os.urandom(300 * 1024)
    async with session.create_client("s3", **source_s3_service) as client:
        await client.put_object(
            Bucket=minio_job_config.source.name,
            Key="docs/report.json",
            Body=data,
            ContentType="application/json",
            Metadata={"origin": "ingest"},
        )

    async with _replicator(minio_job_config) as replicator:
        await replicator.copy(ObjectDescriptor(key="docs/report.json", size=len(data)))

    assert replicator.stats.copied_in_memory == 1
    async with session.create_client("s3", **target_s3_service) as client:
        response = await client.get_object(
            Bucket=minio_job_config.target.name, Key="docs/report.json"
        )
        async with response["Body"] as stream:
            assert await stream.read() == data
        assert response["ContentType"] == "application/json"
        assert response["Metadata"] == {"origin": "ingest"}


@pytest.mark.asyncio
async def test_multipart_copy_is_byte_identical(
    minio_job_config: Config,
    source_s3_service: Dict[str, Any],
    target_s3_service: Dict[str, Any],
) -> None:
    """
    Tests a chunked copy through ranged reads and part uploads.

    Arrange:
        - Store a 12 MiB object, which is copied as 5 + 5 + 2 MiB parts.
    Assert:
        - The target object is byte-identical.
        - S3 assembled it from three parts.
    """
    key: str = "nested/dir/large.bin"
    data: bytes = os.urandom(12 * MIB + 123)
    await upload_test_data(
        source_s3_service, minio_job_config.source.name, {key: data}
    )

    async with _replicator(minio_job_config) as replicator:
        await replicator.copy(ObjectDescriptor(key=key, size=len(data)))

    assert replicator.stats.copied_multipart == 1
    assert replicator.stats.bytes_copied == len(data)
    copied: Dict[str, bytes] = await get_all_objects(
        minio_job_config.target.name, target_s3_service
    )
    assert copied == {key: data}

    session: AioSession = get_session()
    async with session.create_client("s3", **target_s3_service) as client:
        head = await client.head_object(Bucket=minio_job_config.target.name, Key=key)
    assert head["ETag"].strip('"').endswith("-3")


@pytest.mark.asyncio
async def test_failed_multipart_copy_is_aborted(
    minio_job_config: Config, target_s3_service: Dict[str, Any]
) -> None:
    """
    Tests a chunked copy whose source disappeared after the scan.

    Assert:
        - The failure is counted and nothing is written to the target.
        - The multipart upload opened for the object was aborted.
    """
    key: str = "vanished.bin"

    async with _replicator(minio_job_config) as replicator:
        await replicator.copy(ObjectDescriptor(key=key, size=12 * MIB))

    assert replicator.stats.failed == 1
    session: AioSession = get_session()
    async with session.create_client("s3", **target_s3_service) as client:
        uploads = await client.list_multipart_uploads(
            Bucket=minio_job_config.target.name, Prefix=key
        )
        assert uploads.get("Uploads", []) == []
        with pytest.raises(ClientError):
            await client.head_object(Bucket=minio_job_config.target.name, Key=key)


@pytest.mark.asyncio
async def test_full_replication_against_s3(
    minio_job_config: Config,
    source_s3_service: Dict[str, Any],
    target_s3_service: Dict[str, Any],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """
    Tests a full scan and replicate run between the two S3 services.

    Arrange:
        - Seed the source with objects for every copy strategy.
        - Serve the stream and the orchestrator from memory.
    Act:
        - Scan the source, then replicate.
    Assert:
        - Every object under the size policy is byte-identical in the target.
        - The oversized object was skipped.
    """
    kinesis: FakeKinesisClient = FakeKinesisClient()
    sfn: FakeSFNClient = FakeSFNClient()

    @asynccontextmanager
    async def _serve(client: Any) -> AsyncIterator[Any]:
        yield client

    monkeypatch.setattr(
        "tidewater.pipeline.kinesis_client", lambda *_: _serve(kinesis)
    )
    monkeypatch.setattr(
        "tidewater.pipeline.stepfunctions_client", lambda *_: _serve(sfn)
    )

    expected: Dict[str, bytes] = {
        "small.txt": os.urandom(200 * 1024),
        "empty": b"",
        "data/part-0001.bin": os.urandom(11 * MIB),
    }
    await upload_test_data(
        source_s3_service,
        minio_job_config.source.name,
        {**expected, "huge.bin": os.urandom(17 * MIB)},
    )

    pipeline: ReplicationPipeline = ReplicationPipeline(
        minio_job_config, asyncio.Event()
    )
    assert await pipeline.scan() == 4
    stats: ReplicationStats = await asyncio.wait_for(pipeline.replicate(), timeout=60)

    assert stats.copied_in_memory == 2
    assert stats.copied_multipart == 1
    assert stats.skipped == 1
    assert stats.failed == 0
    assert (
        await get_all_objects(minio_job_config.target.name, target_s3_service)
        == expected
    )
