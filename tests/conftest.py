# tests/conftest.py
"""
Pytest configuration and fixtures for the tidewater test suite.

This module sets up the testing environment, including:
- Job configurations with retry delays set to zero.
- Fresh instances of the in-memory AWS clients from `tests.fakes`.
- Docker containers for source and target S3 services (MinIO), with
  isolated buckets created and cleaned up for each test function.
"""

import shutil
import subprocess
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncGenerator, Dict

import boto3
import pytest
import pytest_asyncio
import requests
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from requests.exceptions import ConnectionError
from types_boto3_s3.service_resource import Bucket, S3ServiceResource

from tests.fakes import FakeKinesisClient, FakeS3Client, FakeSFNClient
from tidewater.config import MIB, AppConfig, BucketConfig, Config, StreamConfig

# --- Constants ---
S3_ACCESS_KEY: str = "minio-key"
S3_SECRET_KEY: str = "minio-secret"
S3_REGION: str = "us-east-1"


# --- Application Fixtures ---
@pytest.fixture(scope="function")
def app_config(tmp_path: Path) -> AppConfig:
    """
    Provide an AppConfig with production size thresholds and no retry delays.

    Args:
        tmp_path (Path): The pytest fixture for a temporary directory.

    Returns:
        AppConfig: The application settings.
    """
    return AppConfig(
        data_dir=tmp_path,
        db_map_size_mb=8,
        retry_backoff_s=0,
        checkpoint_backoff_s=0,
        idle_time_between_reads_s=0.01,
        throttle_backoff_s=0.01,
        shard_sync_interval_s=0.01,
        shutdown_timeout_s=5,
    )


@pytest.fixture(scope="function")
def job_config(app_config: AppConfig) -> Config:
    """
    Provide a replication job between two fake buckets, without a task token.

    Args:
        app_config (AppConfig): The application settings.

    Returns:
        Config: A Config instance for use in tests.
    """
    return Config(
        source=BucketConfig(name="source-bucket", region="us-east-1"),
        target=BucketConfig(name="target-bucket", region="eu-west-1"),
        stream=StreamConfig(name="test-stream", region="eu-west-1"),
        task_token=None,
        app=app_config,
    )


@pytest.fixture(scope="function")
def small_job_config(job_config: Config) -> Config:
    """
    Provide a job with scaled-down size thresholds.

    Objects under 1 KiB are copied in memory, chunks are at least 256 bytes
    and objects of 1 MiB or more are skipped, so multipart copies can be
    exercised with small payloads.
    """
    return replace(
        job_config,
        app=replace(
            job_config.app,
            in_memory_limit_bytes=1024,
            min_chunk_bytes=256,
            max_object_bytes=1024 * 1024,
        ),
    )


@pytest.fixture(scope="function")
def s3() -> FakeS3Client:
    """Provide a fresh in-memory S3 client."""
    return FakeS3Client()


@pytest.fixture(scope="function")
def kinesis() -> FakeKinesisClient:
    """Provide a fresh single-shard in-memory Kinesis stream."""
    return FakeKinesisClient()


@pytest.fixture(scope="function")
def sfn() -> FakeSFNClient:
    """Provide a fresh Step Functions recorder."""
    return FakeSFNClient()


# --- Docker Fixtures ---
@pytest.fixture(scope="session")
def docker_compose_file(pytestconfig: pytest.Config) -> str:
    """
    Locate the docker-compose.yml file for the test suite.

    Args:
        pytestconfig (pytest.Config): The pytest configuration object.

    Returns:
        str: The absolute path to the docker-compose.yml file.
    """
    return str(Path(pytestconfig.rootdir) / "tests" / "docker-compose.yml")


@pytest.fixture(scope="session")
def docker_compose_project_name() -> str:
    """Define a unique, static project name for the Docker stack."""
    return "tidewater-tests"


def _is_docker_available() -> bool:
    """Check that a Docker daemon answers, so the MinIO services can start."""
    if shutil.which("docker") is None:
        return False
    try:
        result = subprocess.run(
            ["docker", "info"], capture_output=True, timeout=10, check=False
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def _is_s3_responsive(url: str) -> bool:
    """
    Check if the MinIO health endpoint is responsive.

    Args:
        url (str): The base URL of the MinIO API.

    Returns:
        bool: True if the service is responsive, False otherwise.
    """
    try:
        response: requests.Response = requests.get(f"{url}/minio/health/live")
        return response.status_code == 200
    except ConnectionError:
        return False


def _s3_service(request: pytest.FixtureRequest, service: str) -> Dict[str, Any]:
    """
    Ensure one MinIO service is running and return its connection details.

    The test is skipped when no Docker daemon is reachable.

    Args:
        request (pytest.FixtureRequest): Used to start the pytest-docker stack lazily.
        service (str): The service name in docker-compose.yml.

    Returns:
        Dict[str, Any]: Client parameters for the service.
    """
    if not _is_docker_available():
        pytest.skip("Docker is required for the MinIO-backed tests")
    docker_ip: str = request.getfixturevalue("docker_ip")
    docker_services: Any = request.getfixturevalue("docker_services")
    port: int = docker_services.port_for(service, 9000)
    api_url: str = f"http://{docker_ip}:{port}"
    docker_services.wait_until_responsive(
        timeout=30.0, pause=0.1, check=lambda: _is_s3_responsive(api_url)
    )
    return {
        "endpoint_url": api_url,
        "aws_access_key_id": S3_ACCESS_KEY,
        "aws_secret_access_key": S3_SECRET_KEY,
        "region_name": S3_REGION,
    }


@pytest.fixture(scope="session")
def source_s3_service(request: pytest.FixtureRequest) -> Dict[str, Any]:
    """Connection details for the source MinIO service."""
    return _s3_service(request, "minio-source")


@pytest.fixture(scope="session")
def target_s3_service(request: pytest.FixtureRequest) -> Dict[str, Any]:
    """Connection details for the target MinIO service."""
    return _s3_service(request, "minio-target")


@pytest_asyncio.fixture(scope="function")
async def s3_buckets(
    source_s3_service: Dict[str, Any],
    target_s3_service: Dict[str, Any],
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create unique, isolated S3 buckets for a single test function.

    Args:
        source_s3_service (Dict[str, Any]): Connection details for the source S3.
        target_s3_service (Dict[str, Any]): Connection details for the target S3.

    Yield:
        AsyncGenerator[Dict[str, str], None]: A dictionary with the names of
            the created source and target buckets.
    """
    session: AioSession = get_session()
    suffix: str = f"test-bucket-{uuid.uuid4()}"
    source_bucket: str = f"source-{suffix}"
    target_bucket: str = f"target-{suffix}"

    async with (
        session.create_client("s3", **source_s3_service) as s3_source,
        session.create_client("s3", **target_s3_service) as s3_target,
    ):
        await s3_source.create_bucket(Bucket=source_bucket)
        await s3_target.create_bucket(Bucket=target_bucket)

    yield {"source": source_bucket, "target": target_bucket}

    # Cleanup: boto3 is simpler for synchronous, recursive delete
    boto_config: BotoConfig = BotoConfig(
        retries={"max_attempts": 0, "mode": "standard"}
    )
    for service, bucket in [
        (source_s3_service, source_bucket),
        (target_s3_service, target_bucket),
    ]:
        resource: S3ServiceResource = boto3.resource(
            "s3", **service, config=boto_config
        )
        try:
            bucket_obj: Bucket = resource.Bucket(bucket)
            for upload in bucket_obj.multipart_uploads.all():
                upload.abort()
            bucket_obj.objects.all().delete()
            bucket_obj.delete()
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchBucket":
                raise


@pytest.fixture(scope="function")
def minio_job_config(
    app_config: AppConfig,
    s3_buckets: Dict[str, str],
    source_s3_service: Dict[str, Any],
    target_s3_service: Dict[str, Any],
) -> Config:
    """
    Provide a job between the MinIO buckets.

    S3 refuses parts under 5 MiB except the last, so chunks are 5 MiB.
    Objects under 1 MiB are copied in memory and objects of 16 MiB or more
    are skipped.
    """

    def _bucket(name: str, service: Dict[str, Any]) -> BucketConfig:
        return BucketConfig(
            name=name,
            region=S3_REGION,
            endpoint_url=service["endpoint_url"],
            access_key_id=S3_ACCESS_KEY,
            secret_access_key=S3_SECRET_KEY,
        )

    return Config(
        source=_bucket(s3_buckets["source"], source_s3_service),
        target=_bucket(s3_buckets["target"], target_s3_service),
        stream=StreamConfig(name="test-stream", region=S3_REGION),
        task_token=None,
        app=replace(
            app_config,
            in_memory_limit_bytes=MIB,
            min_chunk_bytes=5 * MIB,
            max_object_bytes=16 * MIB,
        ),
    )
