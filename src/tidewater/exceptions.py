# src/tidewater/exceptions.py
"""Custom exceptions for the tidewater application."""


class TidewaterError(Exception):
    """Base exception for all application-specific errors."""

    pass


class ConfigError(TidewaterError):
    """Raised for configuration-related issues."""

    pass


class MalformedRecordError(TidewaterError):
    """Raised when a stream record payload cannot be decoded."""

    pass


class TransferError(TidewaterError):
    """Raised when an object transfer fails permanently."""

    pass


class ScanError(TidewaterError):
    """Raised when the source bucket cannot be enumerated."""

    pass


class StreamPublishError(TidewaterError):
    """Raised when records are still rejected by the stream after all retries."""

    pass


class CheckpointError(TidewaterError):
    """Base class for failures while persisting a shard checkpoint."""

    pass


class ThrottlingError(CheckpointError):
    """Raised when the checkpoint store or orchestrator throttles a request."""

    pass


class LeaseLostError(CheckpointError):
    """Raised when the worker no longer owns the lease of a shard."""

    pass


class CheckpointStoreError(CheckpointError):
    """Raised for LMDB-specific errors, like the database being full."""

    pass


class OrchestrationExpiredError(TidewaterError):
    """Raised when the orchestrator no longer recognizes the job's task token."""

    pass
