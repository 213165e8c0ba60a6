from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional

logger = logging.getLogger("agentplane.gateway")

AuditStatus = Literal["success", "error", "denied"]


@dataclass(frozen=True)
class AuditEntry:
    id: str
    timestamp: str
    server: Optional[str]
    tool: str
    op_type: str
    permission: str
    status: AuditStatus
    duration_ms: int
    actor_key: Optional[str] = None
    error: Optional[str] = None
    input_summary: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "server": self.server,
            "tool": self.tool,
            "opType": self.op_type,
            "permission": self.permission,
            "status": self.status,
            "durationMs": self.duration_ms,
        }
        if self.actor_key is not None:
            d["projectKey"] = self.actor_key
        if self.error is not None:
            d["error"] = self.error
        if self.input_summary is not None:
            d["inputSummary"] = self.input_summary
        return d


def new_audit_id() -> str:
    return uuid.uuid4().hex


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLog:
    """Bounded in-memory trace of gated calls. Oldest entries are evicted first."""

    def __init__(self, capacity: int = 500) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> bool:
        """Record `entry`. Returns False instead of raising if recording failed."""
        try:
            with self._lock:
                self._entries.append(entry)
        except Exception:  # noqa: BLE001
            logger.exception("audit append failed for %s", getattr(entry, "id", "?"))
            return False
        logger.debug("audit %s %s %s %s", entry.status, entry.tool, entry.permission, entry.id)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def query(
        self,
        *,
        limit: int = 50,
        server: Optional[str] = None,
        op_type: Optional[str] = None,
        actor_key: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Newest first. `op_type` matches the chain op type or, for generic tools, the risk tier."""

        with self._lock:
            entries = list(reversed(self._entries))

        if server:
            entries = [e for e in entries if e.server == server]
        if op_type:
            entries = [e for e in entries if e.op_type == op_type]
        if actor_key:
            entries = [e for e in entries if e.actor_key == actor_key]
        return entries[: max(0, limit)]
