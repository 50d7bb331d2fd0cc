# src/tidewater/clients.py
"""Factories for the AWS clients used by the pipeline."""

from typing import TYPE_CHECKING, Any, Dict

from aiobotocore.session import AioSession
from botocore.config import Config as BotoConfig

from tidewater.config import AppConfig, BucketConfig, StreamConfig

if TYPE_CHECKING:
    from aiobotocore.session import ClientCreatorContext


def boto_config(app_config: AppConfig) -> BotoConfig:
    """
    Builds the botocore configuration shared by every client.

    Transport-level retries for throttling and network errors are handled
    here, below the application's own retry loops.

    Args:
        app_config (AppConfig): The application configuration.

    Returns:
        BotoConfig: The client configuration.
    """
    return BotoConfig(
        signature_version="s3v4",
        max_pool_connections=app_config.max_pool_connections,
        retries={
            "max_attempts": app_config.transfer_max_attempts,
            "mode": "standard",
        },
    )


def s3_client(
    session: AioSession, bucket: BucketConfig, app_config: AppConfig
) -> "ClientCreatorContext":
    """Creates an S3 client for one side of the replication."""
    return session.create_client(
        "s3", **bucket.as_boto_dict(), config=boto_config(app_config)
    )


def kinesis_client(
    session: AioSession, stream: StreamConfig, app_config: AppConfig
) -> "ClientCreatorContext":
    """Creates a Kinesis client in the stream's region."""
    params: Dict[str, Any] = {"region_name": stream.region}
    if stream.endpoint_url:
        params["endpoint_url"] = stream.endpoint_url
    return session.create_client("kinesis", **params, config=boto_config(app_config))


def stepfunctions_client(
    session: AioSession, stream: StreamConfig, app_config: AppConfig
) -> "ClientCreatorContext":
    """Creates a Step Functions client; the orchestrator runs next to the stream."""
    return session.create_client(
        "stepfunctions", region_name=stream.region, config=boto_config(app_config)
    )
