"""Process-wide bounded audit trail."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timezone

from .models import AuditRecord

DEFAULT_AUDIT_CAPACITY = 100


class AuditSink:
    """Ring buffer of audit records; the oldest record is evicted once full.

    One sink is shared by every session in the process, so appends and reads
    are serialized with a single lock.
    """

    def __init__(self, capacity: int = DEFAULT_AUDIT_CAPACITY) -> None:
        if capacity <= 0:
            msg = f"Audit capacity must be positive, got {capacity}"
            raise ValueError(msg)
        self.capacity = capacity
        self._records: deque[AuditRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def record(
        self,
        *,
        action_type: str,
        command_text: str,
        success: bool,
        error_message: str | None = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action_type=action_type,
            command_text=command_text,
            success=success,
            error_message=error_message,
        )
        self.append(entry)
        return entry

    def records(self) -> list[AuditRecord]:
        """Snapshot of the retained records, oldest first."""
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
