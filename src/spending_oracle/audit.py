"""
Audit trail for reconciliation outcomes.

Each line of the JSONL file is one reconciliation step for one sub-account,
sealed with an HMAC over the previous line's hash. Reads walk the chain and
refuse to return anything once a link fails to verify.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from .errors import OracleError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".spending-oracle" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".spending-oracle-secrets" / "audit_hmac.key"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class AuditChainError(OracleError):
    """The audit file does not verify against its hash chain."""

    def __init__(self, line_number: int, problem: str):
        self.line_number = line_number
        super().__init__(f"Audit chain broken at line {line_number}: {problem}")


class EventType(str, Enum):
    RECONCILE_STARTED = "reconcile_started"
    UPDATE_PUBLISHED = "update_published"
    UPDATE_SKIPPED = "update_skipped"
    RECONCILE_FAILED = "reconcile_failed"
    EVENT_SKIPPED = "event_skipped"


@dataclass
class AuditEvent:
    event_type: str
    timestamp: float
    account: Optional[str] = None
    allowance: Optional[str] = None
    receipt: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> "AuditEvent":
        return cls(**{k: v for k, v in record.items() if k in cls.__dataclass_fields__})


class AuditTrail:
    """Hash-chained reconciliation log shared by all sweep workers."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._lock = threading.Lock()
        self._key = self._load_key()
        self._head = ""
        for record in self._records():
            self._head = record.get("event_hash", "")

    def _load_key(self) -> bytes:
        env_key = os.getenv("ORACLE_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.key_path)
        stored = self.key_path.read_bytes().strip()
        if stored:
            return stored
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        return key

    def _seal(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _records(self) -> Iterator[dict]:
        with open(self.path) as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _verified(self) -> Iterator[dict]:
        expected_prev = ""
        for line_number, record in enumerate(self._records(), start=1):
            prev_hash = record.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise AuditChainError(line_number, "previous hash mismatch")
            payload = {k: v for k, v in record.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._seal(payload, prev_hash), record.get("event_hash", "")):
                raise AuditChainError(line_number, "event hash mismatch")
            expected_prev = record["event_hash"]
            yield record

    def log(
        self,
        event_type: EventType,
        account: Optional[str] = None,
        allowance: Optional[int] = None,
        receipt: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
    ) -> AuditEvent:
        payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "account": account,
            "allowance": None if allowance is None else str(allowance),
            "receipt": receipt,
            "success": success,
            "reason": reason,
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        with self._lock:
            event = AuditEvent(**payload, prev_hash=self._head or None)
            event.event_hash = self._seal(payload, self._head)
            record = {k: v for k, v in asdict(event).items() if v is not None}
            with open(self.path, "a") as f:
                f.write(json.dumps(record, separators=(",", ":")) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._head = event.event_hash
        return event

    def read_events(
        self,
        account: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain and return the latest matching events.

        ``limit <= 0`` returns every match.
        """
        events = [
            AuditEvent.from_record(record)
            for record in self._verified()
            if (account is None or record.get("account") == account)
            and (event_type is None or record.get("event_type") == event_type.value)
        ]
        return events[-limit:] if limit > 0 else events
