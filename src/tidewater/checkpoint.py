# src/tidewater/checkpoint.py
"""
Handles shard leases and checkpoints using an LMDB database.

LMDB is chosen for its transactional integrity and multi-process safety: each
shard's lease and last processed sequence number are updated atomically in a
single write transaction, so a checkpoint can never be written by a worker
that lost the lease in the meantime.
"""

import json
import logging
import shutil
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

import lmdb

from tidewater.exceptions import CheckpointStoreError, LeaseLostError

logger: logging.Logger = logging.getLogger(__name__)

SHARD_END: str = "SHARD_END"


def _check_disk_space(check_path: Path, required_bytes: int) -> None:
    """
    Verify that there is enough disk space for the LMDB map size.

    Args:
        check_path (Path): The path to the directory to check for space.
        required_bytes (int): The configured map size in bytes.
    """
    path_to_check: Path = check_path if check_path.is_dir() else check_path.parent
    free_space: int = shutil.disk_usage(path_to_check).free
    if free_space < required_bytes:
        raise CheckpointStoreError(
            f"Insufficient disk space for LMDB. Required: "
            f"{required_bytes / 1024**2:.2f} MiB, "
            f"Available: {free_space / 1024**2:.2f} MiB on '{check_path}'. "
        )


def _is_newer(candidate: str, current: Optional[str]) -> bool:
    """Kinesis sequence numbers are decimal strings, compared numerically."""
    if current is None:
        return True
    if current == SHARD_END:
        return False
    if candidate == SHARD_END:
        return True
    return int(candidate) >= int(current)


@dataclass
class ShardLease:
    """
    The persisted state of one shard.

    Attributes:
        shard_id (str): The shard identifier.
        owner (str, optional): The worker currently holding the lease.
        expires_at (float): Wall-clock time after which the lease may be taken.
        checkpoint (str, optional): The last committed sequence number, or
            `SHARD_END` once the shard was read to its end.
    """

    shard_id: str
    owner: Optional[str] = None
    expires_at: float = 0.0
    checkpoint: Optional[str] = None

    def is_held_by_other(self, owner: str, now: float) -> bool:
        return self.owner is not None and self.owner != owner and self.expires_at > now


class CheckpointStore:
    """
    A wrapper around an LMDB environment for shard leases and checkpoints.

    One store holds the state of one stream application. Every mutation runs
    in a single write transaction that first verifies lease ownership.
    """

    def __init__(self, db_path: Path, map_size_mb: int = 64) -> None:
        """
        Initializes and opens the LMDB environment.

        Args:
            db_path (Path): The file path for the LMDB database.
            map_size_mb (int): The maximum size of the database in MiB.
        """
        self._env: Optional[lmdb.Environment] = None
        map_size: int = map_size_mb * 1024**2
        try:
            db_dir: Path = db_path.parent
            db_dir.mkdir(parents=True, exist_ok=True)
            _check_disk_space(db_dir, map_size)
            self._env = lmdb.open(str(db_path), map_size=map_size)
            logger.info(f"Checkpoint database opened at '{db_path}'")
        except lmdb.Error as e:
            logger.error(f"Failed to open LMDB database at '{db_path}': {e}")
            raise CheckpointStoreError(f"LMDB initialization failed: {e}") from e

    def __enter__(self) -> "CheckpointStore":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _require_env(self) -> lmdb.Environment:
        if not self._env:
            raise CheckpointStoreError("LMDB environment is not open.")
        return self._env

    @staticmethod
    def _read(txn: lmdb.Transaction, shard_id: str) -> ShardLease:
        value: Optional[bytes] = txn.get(shard_id.encode("utf-8"))
        if value is None:
            return ShardLease(shard_id=shard_id)
        return ShardLease(**json.loads(value))

    @staticmethod
    def _write(txn: lmdb.Transaction, lease: ShardLease) -> None:
        txn.put(lease.shard_id.encode("utf-8"), json.dumps(asdict(lease)).encode())

    def get_lease(self, shard_id: str) -> ShardLease:
        """
        Retrieves the persisted state of a shard.

        Args:
            shard_id (str): The shard to look up.

        Returns:
            ShardLease: The stored state, or an empty lease for unknown shards.
        """
        with self._require_env().begin() as txn:
            return self._read(txn, shard_id)

    def get_checkpoint(self, shard_id: str) -> Optional[str]:
        """
        Returns the last committed sequence number of a shard, if any.

        Args:
            shard_id (str): The shard to look up.
        """
        return self.get_lease(shard_id).checkpoint

    def take_lease(self, shard_id: str, owner: str, duration_s: float) -> bool:
        """
        Acquires the lease of a shard unless another worker holds a live one.

        Args:
            shard_id (str): The shard to lease.
            owner (str): The worker identifier.
            duration_s (float): How long the lease is valid without renewal.

        Returns:
            bool: True if the lease is now held by `owner`.
        """
        now: float = time.time()
        try:
            with self._require_env().begin(write=True) as txn:
                lease: ShardLease = self._read(txn, shard_id)
                if lease.is_held_by_other(owner, now):
                    return False
                lease.owner = owner
                lease.expires_at = now + duration_s
                self._write(txn, lease)
                return True
        except lmdb.Error as e:
            raise CheckpointStoreError(f"Unable to lease shard {shard_id}: {e}") from e

    def renew_lease(self, shard_id: str, owner: str, duration_s: float) -> None:
        """
        Extends a lease held by `owner`.

        Raises:
            LeaseLostError: If the lease now belongs to someone else.
        """
        try:
            with self._require_env().begin(write=True) as txn:
                lease: ShardLease = self._read(txn, shard_id)
                if lease.owner != owner:
                    raise LeaseLostError(
                        f"Lease of shard {shard_id} is held by {lease.owner}"
                    )
                lease.expires_at = time.time() + duration_s
                self._write(txn, lease)
        except lmdb.Error as e:
            raise CheckpointStoreError(f"Unable to renew lease {shard_id}: {e}") from e

    def release_lease(self, shard_id: str, owner: str) -> None:
        """Gives up a lease held by `owner`; a lease owned by others is left alone."""
        try:
            with self._require_env().begin(write=True) as txn:
                lease: ShardLease = self._read(txn, shard_id)
                if lease.owner == owner:
                    lease.owner = None
                    lease.expires_at = 0.0
                    self._write(txn, lease)
        except lmdb.Error as e:
            raise CheckpointStoreError(
                f"Unable to release lease {shard_id}: {e}"
            ) from e

    def checkpoint(self, shard_id: str, owner: str, sequence_number: str) -> None:
        """
        Records the furthest processed position of a shard.

        Positions never move backwards: an older sequence number is ignored.

        Args:
            shard_id (str): The shard being checkpointed.
            owner (str): The worker that must hold the lease.
            sequence_number (str): The sequence number or `SHARD_END`.

        Raises:
            LeaseLostError: If `owner` no longer holds the lease.
            CheckpointStoreError: If the database rejects the write.
        """
        try:
            with self._require_env().begin(write=True) as txn:
                lease: ShardLease = self._read(txn, shard_id)
                if lease.owner != owner:
                    raise LeaseLostError(
                        f"Lease of shard {shard_id} is held by {lease.owner}"
                    )
                if _is_newer(sequence_number, lease.checkpoint):
                    lease.checkpoint = sequence_number
                    self._write(txn, lease)
        except lmdb.MapFullError as e:
            raise CheckpointStoreError("LMDB database is full.") from e
        except lmdb.Error as e:
            raise CheckpointStoreError(
                f"Unable to checkpoint shard {shard_id}: {e}"
            ) from e

    def close(self) -> None:
        """Closes the LMDB environment."""
        if self._env:
            db_path: str = self._env.path()
            self._env.sync(True)
            self._env.close()
            self._env = None
            logger.info(f"Checkpoint database closed at '{db_path}'.")


class ShardCheckpointer:
    """
    The checkpoint handle given to the consumer of one shard.

    The stream worker advances `largest_sequence_number` as it delivers
    batches; a checkpoint persists the largest position delivered so far.
    """

    def __init__(self, store: CheckpointStore, shard_id: str, owner: str) -> None:
        self._store: CheckpointStore = store
        self.shard_id: str = shard_id
        self.owner: str = owner
        self.largest_sequence_number: Optional[str] = None

    def advance(self, sequence_number: str) -> None:
        if _is_newer(sequence_number, self.largest_sequence_number):
            self.largest_sequence_number = sequence_number

    async def checkpoint(self, sequence_number: Optional[str] = None) -> None:
        """
        Persists `sequence_number`, defaulting to the largest one delivered.

        Raises:
            LeaseLostError: If the lease was taken over by another worker.
            CheckpointStoreError: If the store cannot be written.
        """
        position: Optional[str] = sequence_number or self.largest_sequence_number
        if position is None:
            logger.debug(f"Shard [{self.shard_id}]: nothing to checkpoint yet.")
            return
        self._store.checkpoint(self.shard_id, self.owner, position)
