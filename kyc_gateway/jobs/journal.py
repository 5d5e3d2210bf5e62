"""Bounded in-memory journals for operator visibility.

``incidents`` collects inconsistent callbacks and reconciliation conflicts;
``callbacks`` keeps the most recent raw callback deliveries for debugging.
"""

import threading
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional

from kyc_gateway.jobs.models import utcnow


class IncidentJournal:
    def __init__(self, max_entries: int = 500):
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, kind: str, job_id: Optional[str], **details: Any) -> Dict[str, Any]:
        entry = {
            "kind": kind,
            "job_id": job_id,
            "recorded_at": utcnow().isoformat(),
            **details,
        }
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self, kind: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = [e for e in self._entries if kind is None or e["kind"] == kind]
        if limit is not None:
            items = items[-limit:]
        return items

    def __len__(self) -> int:
        return len(self._entries)


class CallbackJournal:
    """Latest callback per (user_id, job_id), oldest evicted first."""

    def __init__(self, max_entries: int = 1000):
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id: str, job_id: str) -> str:
        return f"{user_id}_{job_id}"

    def record(self, user_id: str, job_id: str, payload: Dict[str, Any], **meta: Any) -> Dict[str, Any]:
        entry = {**payload, "receivedAt": utcnow().isoformat(), **meta}
        key = self._key(user_id, job_id)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return entry

    def get(self, user_id: str, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._entries.get(self._key(user_id, job_id))

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            items = [{"key": k, **v} for k, v in self._entries.items()]
        return items[-limit:]

    def __len__(self) -> int:
        return len(self._entries)
