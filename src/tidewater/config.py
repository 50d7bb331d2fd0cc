# src/tidewater/config.py
"""
Configuration for the tidewater replication job.

This module centralizes all configuration, loading the job description from
environment variables and providing typed, immutable dataclasses that are
shared read-only by the scanner and every shard consumer.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from tidewater.exceptions import ConfigError

MIB: int = 1024 * 1024
TIB: int = 1024 * 1024 * MIB


def _get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Retrieves a required environment variable.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        str: The value of the environment variable.
    """
    value: Optional[str] = os.environ.get(name, default)
    if not value:
        raise ConfigError(f"Environment variable '{name}' must be set.")
    return value


def _get_optional_env_var(name: str) -> Optional[str]:
    """Returns an environment variable, treating empty values as unset."""
    return os.environ.get(name) or None


@dataclass(frozen=True)
class BucketConfig:
    """
    Represents one side of the replication: a bucket and how to reach it.

    Credentials are optional. When they are omitted the default botocore
    credential chain is used.

    Attributes:
        name (str): The bucket name.
        region (str): The AWS region of the bucket.
        endpoint_url (str, optional): A custom S3 endpoint URL.
        access_key_id (str, optional): The access key ID.
        secret_access_key (str, optional): The secret access key.
    """

    name: str
    region: str
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    def as_boto_dict(self) -> Dict[str, str]:
        """
        Returns the configuration as a dictionary suitable for aiobotocore clients.

        Returns:
            Dict[str, str]: A dictionary of client parameters.
        """
        params: Dict[str, Optional[str]] = {
            "region_name": self.region,
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
        }
        return {k: v for k, v in params.items() if v is not None}

    @classmethod
    def from_env(cls, prefix: str) -> "BucketConfig":
        """
        Builds a bucket configuration from `<prefix>_*` environment variables.

        Args:
            prefix (str): The variable prefix, e.g. `TIDEWATER_SOURCE`.

        Returns:
            BucketConfig: The loaded configuration.
        """
        return cls(
            name=_get_env_var(f"{prefix}_BUCKET"),
            region=_get_env_var(f"{prefix}_REGION", "us-east-1"),
            endpoint_url=_get_optional_env_var(f"{prefix}_ENDPOINT_URL"),
            access_key_id=_get_optional_env_var(f"{prefix}_ACCESS_KEY_ID"),
            secret_access_key=_get_optional_env_var(f"{prefix}_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class StreamConfig:
    """
    The provisioned Kinesis stream carrying object descriptors.

    Attributes:
        name (str): The stream name.
        region (str): The region the stream (and orchestrator) lives in.
        endpoint_url (str, optional): A custom Kinesis endpoint URL.
    """

    name: str
    region: str
    endpoint_url: Optional[str] = None

    @property
    def application_name(self) -> str:
        """The name under which leases and checkpoints of this stream are kept."""
        return f"tidewater-{self.name}"[:255]


def _stream_from_env() -> StreamConfig:
    """The stream defaults to the target region, where the consumers run."""
    return StreamConfig(
        name=_get_env_var("TIDEWATER_STREAM_NAME"),
        region=_get_env_var(
            "TIDEWATER_STREAM_REGION",
            os.environ.get("TIDEWATER_TARGET_REGION", "us-east-1"),
        ),
        endpoint_url=_get_optional_env_var("TIDEWATER_STREAM_ENDPOINT_URL"),
    )


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the application's operational parameters.

    Attributes:
        data_dir (Path): Directory to store the LMDB checkpoint database.
        db_map_size_mb (int): The maximum size of the checkpoint database in MiB.
        in_memory_limit_bytes (int): Objects below this size are copied in memory.
        max_object_bytes (int): Objects at or above this size are skipped.
        min_chunk_bytes (int): The smallest multipart chunk size.
        max_parts (int): The part count a multipart copy is sized for.
        record_max_attempts (int): Attempts for replicating one stream record.
        checkpoint_max_attempts (int): Attempts for one throttled checkpoint.
        retry_backoff_s (float): Fixed delay between record attempts.
        checkpoint_backoff_s (float): Fixed delay between checkpoint attempts.
        checkpoint_interval_s (float): Minimum time between two checkpoints.
        shutdown_timeout_s (float): Ceiling for a graceful worker shutdown.
        lease_duration_s (float): How long a shard lease stays valid unrenewed.
        shard_sync_interval_s (float): How often the shard list is refreshed.
        idle_time_between_reads_s (float): Pause after an empty read.
        throttle_backoff_s (float): Pause after a throttled read.
        max_records_per_read (int): `Limit` for a single `get_records` call.
        publish_max_attempts (int): Attempts for records rejected by the stream.
        transfer_max_attempts (int): botocore-level retry attempts.
        max_pool_connections (int): HTTP connection pool size per client.
    """

    data_dir: Path = field(default_factory=lambda: Path("data"))
    db_map_size_mb: int = 64
    in_memory_limit_bytes: int = 100 * MIB
    max_object_bytes: int = TIB
    min_chunk_bytes: int = 10 * MIB
    max_parts: int = 1000
    record_max_attempts: int = 10
    checkpoint_max_attempts: int = 10
    retry_backoff_s: float = 3.0
    checkpoint_backoff_s: float = 1.0
    checkpoint_interval_s: float = 60.0
    shutdown_timeout_s: float = 24 * 60 * 60.0
    lease_duration_s: float = 600.0
    shard_sync_interval_s: float = 60.0
    idle_time_between_reads_s: float = 1.0
    throttle_backoff_s: float = 1.0
    max_records_per_read: int = 1000
    publish_max_attempts: int = 10
    transfer_max_attempts: int = 5
    max_pool_connections: int = 50


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container: one immutable replication job.

    Attributes:
        source (BucketConfig): The bucket objects are copied from.
        target (BucketConfig): The bucket objects are copied to.
        stream (StreamConfig): The stream carrying object descriptors.
        task_token (str, optional): Orchestrator token for heartbeats and
            success/failure reports. Signalling is skipped when absent.
        app (AppConfig): General application settings.
    """

    source: BucketConfig = field(
        default_factory=lambda: BucketConfig.from_env("TIDEWATER_SOURCE")
    )
    target: BucketConfig = field(
        default_factory=lambda: BucketConfig.from_env("TIDEWATER_TARGET")
    )
    stream: StreamConfig = field(default_factory=_stream_from_env)
    task_token: Optional[str] = field(
        default_factory=lambda: _get_optional_env_var("TIDEWATER_TASK_TOKEN")
    )
    app: AppConfig = field(default_factory=AppConfig)
