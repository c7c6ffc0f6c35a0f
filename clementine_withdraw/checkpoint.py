"""
Durable withdrawal checkpoint.

One JSON file per withdrawal, named after the marker address. The file is
rewritten in full (temp file + rename) after every state transition, and is
held under an exclusive lock for the duration of a run.
"""

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterator

from .errors import CheckpointLockedError, InvalidCheckpointError

logger = logging.getLogger(__name__)

# JSON key -> WithdrawalRecord attribute
_KEYS = {
    "descriptor": "descriptor",
    "address": "address",
    "markerTxid": "marker_txid",
    "markerVout": "marker_vout",
    "destinationAddress": "destination_address",
    "burnTxHash": "burn_tx_hash",
    "burnNonce": "burn_nonce",
    "burnRawTx": "burn_raw_tx",
    "payoutIndex": "payout_index",
    "replacedBurnTxHashes": "replaced_burn_tx_hashes",
}

# Keys written by the earlier node tool
_LEGACY_KEYS = {
    "txid": "marker_txid",
    "vout": "marker_vout",
    "withdrawalAddress": "destination_address",
    "withdrawalIdx": "payout_index",
}


@dataclass
class WithdrawalRecord:
    """Persistent state for resumability"""
    descriptor: Optional[str] = None
    address: Optional[str] = None
    marker_txid: Optional[str] = None
    marker_vout: Optional[int] = None
    destination_address: Optional[str] = None
    burn_tx_hash: Optional[str] = None
    burn_nonce: Optional[int] = None
    burn_raw_tx: Optional[str] = None
    payout_index: Optional[int] = None
    replaced_burn_tx_hashes: List[str] = field(default_factory=list)
    # Unrecognised keys are carried through rewrites untouched
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def id(self) -> Optional[str]:
        return self.address

    @property
    def marker_outpoint(self) -> str:
        return f"{self.marker_txid}:{self.marker_vout}"

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for key, attr in _KEYS.items():
            value = getattr(self, attr)
            if value is None or value == []:
                continue
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WithdrawalRecord":
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            if key in _KEYS:
                values[_KEYS[key]] = value
            elif key in _LEGACY_KEYS:
                values.setdefault(_LEGACY_KEYS[key], value)
            else:
                extra[key] = value

        # Legacy files may hold integers as strings
        for attr in ("marker_vout", "payout_index", "burn_nonce"):
            if values.get(attr) is not None:
                try:
                    values[attr] = int(values[attr])
                except (TypeError, ValueError):
                    raise InvalidCheckpointError(f"Invalid {attr} in checkpoint: {values[attr]!r}",
                                                 field=attr, reason="not an integer")
        return cls(extra=extra, **values)


class CheckpointStore:
    """JSON file store for a single WithdrawalRecord"""

    def __init__(self, path):
        self.path = Path(path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> WithdrawalRecord:
        """Load the record from disk

        Raises:
            InvalidCheckpointError: file missing or not a JSON object
        """
        if not self.path.exists():
            raise InvalidCheckpointError(f"Backup file not found: {self.path}",
                                         field="checkpoint", reason="missing")
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidCheckpointError(f"Error reading backup data from {self.path}: {e}",
                                         field="checkpoint", reason=str(e))
        if not isinstance(data, dict):
            raise InvalidCheckpointError(f"Backup file {self.path} does not hold a JSON object",
                                         field="checkpoint", reason="not an object")

        logger.debug(f"Checkpoint loaded from {self.path}")
        return WithdrawalRecord.from_dict(data)

    def save(self, record: WithdrawalRecord) -> None:
        """Atomically replace the checkpoint with `record`"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Checkpoint saved to {self.path}")

    def create(self, record: WithdrawalRecord) -> None:
        """Write a brand new record; refuses to clobber an existing withdrawal"""
        if self.path.exists():
            raise InvalidCheckpointError(f"Backup file already exists: {self.path}",
                                         field="checkpoint", reason="exists")
        self.save(record)

    @contextmanager
    def lock(self) -> Iterator["CheckpointStore"]:
        """Hold an exclusive, non-blocking lock on the checkpoint

        Raises:
            CheckpointLockedError: another process is running this withdrawal
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self.lock_path, 'a')
        try:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise CheckpointLockedError(str(self.path))
            try:
                yield self
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()
