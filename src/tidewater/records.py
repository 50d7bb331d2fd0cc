# src/tidewater/records.py
"""
Object descriptors and their stream payload format.

Every object in the source bucket travels through the stream as a small JSON
document holding its key and size. A reserved key/size pair marks the end of
the scan.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict

from tidewater.exceptions import MalformedRecordError

TERMINAL_KEY: str = "TIDEWATER-FinalMarker"
TERMINAL_SIZE: int = -1

_INT64_MIN: int = -(2**63)
_INT64_MAX: int = 2**63 - 1


@dataclass(frozen=True)
class ObjectDescriptor:
    """
    Identifies one object to replicate.

    Attributes:
        key (str): The object key in the source bucket.
        size (int): The object size in bytes, or -1 for the terminal marker.
    """

    key: str
    size: int

    @classmethod
    def terminal(cls) -> "ObjectDescriptor":
        """Returns the marker published once the scan is complete."""
        return cls(key=TERMINAL_KEY, size=TERMINAL_SIZE)

    @property
    def is_terminal(self) -> bool:
        return self.key == TERMINAL_KEY and self.size == TERMINAL_SIZE

    def encode(self) -> bytes:
        """
        Serializes the descriptor into its stream payload.

        Returns:
            bytes: UTF-8 encoded JSON.
        """
        return json.dumps({"key": self.key, "size": self.size}).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> "ObjectDescriptor":
        """
        Parses a stream payload.

        Args:
            data (bytes): The raw record data.

        Returns:
            ObjectDescriptor: The decoded descriptor.

        Raises:
            MalformedRecordError: If the payload is not a valid descriptor.
        """
        try:
            payload: Any = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedRecordError(f"Undecodable payload: {e}") from e

        if not isinstance(payload, dict):
            raise MalformedRecordError("Payload is not a JSON object.")
        fields: Dict[str, Any] = payload

        key: Any = fields.get("key")
        size: Any = fields.get("size")
        if not isinstance(key, str) or not key:
            raise MalformedRecordError(f"Invalid object key: {key!r}")
        # bool is a subclass of int, reject it explicitly
        if not isinstance(size, int) or isinstance(size, bool):
            raise MalformedRecordError(f"Invalid object size: {size!r}")
        if not _INT64_MIN <= size <= _INT64_MAX:
            raise MalformedRecordError(f"Object size out of range: {size}")

        descriptor: ObjectDescriptor = cls(key=key, size=size)
        if size < 0 and not descriptor.is_terminal:
            raise MalformedRecordError(f"Negative size {size} for '{key}'")
        return descriptor
