# src/tidewater/__init__.py
"""
tidewater: stream-driven replication of an S3 bucket into another bucket.

A scanner publishes one record per source object onto a Kinesis stream. A
worker consumes the stream shard by shard, copies every object into the
target bucket, checkpoints its progress and shuts down gracefully once the
scan's end marker comes through.

The primary entry point for programmatic use is the `ReplicationPipeline` class.
"""

from typing import List

from tidewater.pipeline import ReplicationPipeline

__all__: List[str] = ["ReplicationPipeline"]
