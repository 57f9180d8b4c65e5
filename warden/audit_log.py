"""
Audit Log - append-only, hash-chained record of every tamper event.

Each line is one JSON record carrying the hash of the record before it, so
any edit, deletion or reordering of past lines breaks `verify_chain()`.
Every append is fsync'd before it returns. A record that cannot be written
raises AuditLogError, which is fatal to the daemon: enforcement without an
audit trail is not allowed to continue.
"""

import hashlib
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .constants import SECURE_DIR_MODE, SECURE_FILE_MODE
from .event_bus import TamperEvent
from .utils.error_handling import AuditLogError

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditRecordType(Enum):
    """Kinds of audit records"""
    TAMPER_EVENT = "tamper_event"
    DAEMON_START = "daemon_start"
    DAEMON_STOP = "daemon_stop"
    POLICY_RELOAD = "policy_reload"
    POLICY_RELOAD_FAILED = "policy_reload_failed"


@dataclass
class AuditRecord:
    """A single line of the audit log"""
    record_id: str
    timestamp: str
    record_type: AuditRecordType
    details: str
    metadata: Dict
    hash_chain: str  # Hash of previous record

    def to_dict(self) -> Dict:
        return {
            'record_id': self.record_id,
            'timestamp': self.timestamp,
            'record_type': self.record_type.value,
            'details': self.details,
            'metadata': self.metadata,
            'hash_chain': self.hash_chain,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def compute_hash(self) -> str:
        """SHA-256 over everything but the chain link"""
        data = {
            'record_id': self.record_id,
            'timestamp': self.timestamp,
            'record_type': self.record_type.value,
            'details': self.details,
            'metadata': self.metadata,
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()

    @classmethod
    def from_dict(cls, data: Dict) -> 'AuditRecord':
        return cls(
            record_id=data['record_id'],
            timestamp=data['timestamp'],
            record_type=AuditRecordType(data['record_type']),
            details=data['details'],
            metadata=data.get('metadata', {}),
            hash_chain=data['hash_chain'],
        )


class AuditLog:
    """Tamper-evident JSON-lines audit trail."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH
        self._record_count = 0

        directory = os.path.dirname(os.path.abspath(path))
        try:
            os.makedirs(directory, mode=SECURE_DIR_MODE, exist_ok=True)
        except OSError as e:
            raise AuditLogError(f"Cannot create audit log directory {directory}: {e}") from e

        self._load_existing()

    def _load_existing(self) -> None:
        """Resume the chain from the last record on disk."""
        if not os.path.exists(self.path):
            return

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                lines = [line for line in f.read().splitlines() if line.strip()]
        except OSError as e:
            raise AuditLogError(f"Cannot read audit log {self.path}: {e}") from e

        if not lines:
            return

        try:
            last = AuditRecord.from_dict(json.loads(lines[-1]))
        except (ValueError, KeyError) as e:
            # Keep appending; verify_chain will flag the damaged tail
            logger.error(f"Last audit record is unreadable, chain restarts from genesis: {e}")
            self._record_count = len(lines)
            return

        self._last_hash = last.compute_hash()
        self._record_count = len(lines)

    def _append(self, record_type: AuditRecordType, details: str, metadata: Optional[Dict]) -> AuditRecord:
        with self._lock:
            record = AuditRecord(
                record_id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
                record_type=record_type,
                details=details,
                metadata=metadata or {},
                hash_chain=self._last_hash,
            )

            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, SECURE_FILE_MODE)
                with os.fdopen(fd, 'a', encoding='utf-8') as f:
                    f.write(record.to_json() + '\n')
                    f.flush()
                    os.fsync(f.fileno())
            except (OSError, TypeError, ValueError) as e:
                logger.critical(f"Failed to write audit record: {e}")
                raise AuditLogError(f"Cannot append to audit log {self.path}: {e}") from e

            self._last_hash = record.compute_hash()
            self._record_count += 1
            return record

    def record_event(self, event: TamperEvent) -> AuditRecord:
        """Append a tamper event. Raises AuditLogError."""
        return self._append(
            AuditRecordType.TAMPER_EVENT,
            f"{event.source.value}/{event.category} {event.entity}: {event.detail}",
            event.to_dict(),
        )

    def record_lifecycle(
        self,
        record_type: AuditRecordType,
        details: str,
        metadata: Optional[Dict] = None,
    ) -> AuditRecord:
        """Append a daemon lifecycle record. Raises AuditLogError."""
        if record_type == AuditRecordType.TAMPER_EVENT:
            raise ValueError("use record_event for tamper events")
        return self._append(record_type, details, metadata)

    def get_record_count(self) -> int:
        with self._lock:
            return self._record_count

    def get_last_hash(self) -> str:
        with self._lock:
            return self._last_hash

    def read_records(self, limit: Optional[int] = None) -> List[AuditRecord]:
        """Records in file order, the last `limit` of them if given."""
        if not os.path.exists(self.path):
            return []
        with open(self.path, 'r', encoding='utf-8') as f:
            lines = [line for line in f.read().splitlines() if line.strip()]
        if limit is not None:
            lines = lines[-limit:]
        return [AuditRecord.from_dict(json.loads(line)) for line in lines]

    def verify_chain(self) -> Tuple[bool, Optional[str]]:
        """
        Verify the integrity of the entire chain.

        Returns:
            (is_valid, error_message)
        """
        if not os.path.exists(self.path):
            return (True, None)

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                lines = f.read().splitlines()
        except OSError as e:
            return (False, f"Cannot read audit log: {e}")

        expected_hash = GENESIS_HASH
        for i, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                record = AuditRecord.from_dict(json.loads(line))
            except (ValueError, KeyError) as e:
                return (False, f"Record {i} is malformed: {e}")

            if record.hash_chain != expected_hash:
                return (False, f"Hash chain broken at record {i}: expected {expected_hash}, got {record.hash_chain}")
            expected_hash = record.compute_hash()

        return (True, None)
