"""Append-only audit trail of alert and rule actions (SHA256-chained)."""
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .types import utcnow


@dataclass(frozen=True)
class AuditEntry:
    """Single audit record: who did what to which alert or rule, and when."""
    action: str
    actor: str
    resource_type: str
    resource_id: str
    tenant_id: str = "default"
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid4()))
    prev_hash: Optional[str] = None


class AuditLog:
    """
    Hash-chained audit log.

    Entries are kept in memory and, when ``storage_dir`` is given, appended
    to a daily JSONL file as well. Each entry stores the hash of its
    predecessor so tampering breaks the chain.
    """

    def __init__(self, storage_dir: Optional[Path] = None):
        """
        Initialize the audit log.

        Args:
            storage_dir: Directory for JSONL files. In-memory only if None.
        """
        self.storage_dir = Path(storage_dir) if storage_dir else None
        if self.storage_dir:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._records: List[Dict[str, Any]] = []
        self._lock = Lock()
        self._last_hash: Optional[str] = self._recover_last_hash()

    def _recover_last_hash(self) -> Optional[str]:
        """Recover the last hash from existing logs."""
        if not self.storage_dir:
            return None
        files = sorted(self.storage_dir.glob("*.jsonl"))
        if not files:
            return None
        try:
            with open(files[-1], 'r') as f:
                lines = f.readlines()
                if lines:
                    return self._calculate_hash(json.loads(lines[-1]))
                return None
        except (json.JSONDecodeError, IndexError, KeyError):
            return None

    def _entry_to_dict(self, entry: AuditEntry) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "timestamp": entry.timestamp.isoformat(),
            "tenant_id": entry.tenant_id,
            "action": entry.action,
            "actor": entry.actor,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "details": entry.details,
            "prev_hash": entry.prev_hash,
        }

    def _dict_to_entry(self, data: Dict[str, Any]) -> AuditEntry:
        return AuditEntry(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            tenant_id=data.get("tenant_id", "default"),
            action=data["action"],
            actor=data["actor"],
            resource_type=data["resource_type"],
            resource_id=data["resource_id"],
            details=data.get("details", {}),
            prev_hash=data.get("prev_hash"),
        )

    def _calculate_hash(self, data: Dict[str, Any]) -> str:
        """SHA256 of the entry, excluding its own prev_hash link."""
        payload = {k: v for k, v in data.items() if k != "prev_hash"}
        encoded = json.dumps(payload, sort_keys=True, default=str).encode()
        return hashlib.sha256(encoded).hexdigest()

    def append(self, entry: AuditEntry) -> str:
        """
        Append an entry, linking it to the previous one.

        Returns:
            The SHA256 hash of the recorded entry
        """
        with self._lock:
            entry_dict = self._entry_to_dict(entry)
            entry_dict["prev_hash"] = self._last_hash
            entry_hash = self._calculate_hash(entry_dict)

            self._records.append(entry_dict)
            if self.storage_dir:
                log_file = self.storage_dir / f"{entry.timestamp.strftime('%Y-%m-%d')}.jsonl"
                with open(log_file, 'a') as f:
                    f.write(json.dumps(entry_dict, default=str) + '\n')

            self._last_hash = entry_hash
            return entry_hash

    def record(
        self,
        action: str,
        actor: str,
        resource_type: str,
        resource_id: str,
        tenant_id: str = "default",
        timestamp: Optional[datetime] = None,
        **details: Any,
    ) -> str:
        """Convenience wrapper around :meth:`append`."""
        return self.append(AuditEntry(
            action=action,
            actor=actor,
            resource_type=resource_type,
            resource_id=resource_id,
            tenant_id=tenant_id,
            details=details,
            timestamp=timestamp or utcnow(),
        ))

    def query(
        self,
        resource_id: Optional[str] = None,
        action: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """
        Query recorded entries, oldest first.

        Args:
            resource_id: Only entries for this alert or rule
            action: Only entries with this action name
            start_time: Entries at or after this time
            end_time: Entries at or before this time
            limit: Maximum entries to return
        """
        results = []
        with self._lock:
            records = list(self._records)
        for data in records:
            entry = self._dict_to_entry(data)
            if resource_id and entry.resource_id != resource_id:
                continue
            if action and entry.action != action:
                continue
            if start_time and entry.timestamp < start_time:
                continue
            if end_time and entry.timestamp > end_time:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def verify_chain(self) -> bool:
        """
        Validate the integrity of the persisted chain (or the in-memory one).

        Returns:
            True if intact, False if any entry was altered
        """
        prev_hash = None
        for data in self._iter_persisted():
            if data.get("prev_hash") != prev_hash:
                return False
            prev_hash = self._calculate_hash(data)
        return True

    def _iter_persisted(self):
        if not self.storage_dir:
            with self._lock:
                records = list(self._records)
            yield from records
            return
        for file_path in sorted(self.storage_dir.glob("*.jsonl")):
            with open(file_path, 'r') as f:
                for line in f:
                    if line.strip():
                        yield json.loads(line)

    def __len__(self) -> int:
        return len(self._records)


__all__ = ["AuditEntry", "AuditLog"]
