"""
In-memory diagnostic ring buffer of recent webhook events.

Operator troubleshooting only: bounded, process-local, never persisted and
outside the correctness contract of ingestion.
"""
import json
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SECRET_FIELDS = {"apikey", "token", "authorization", "mediakey", "media_key"}


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "***" if str(key).lower() in SECRET_FIELDS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


class DiagnosticBuffer:
    """Most recent events, oldest evicted first, with a last-seen summary per instance."""

    def __init__(self, max_events: int = 200, preview_chars: int = 4000):
        self.preview_chars = preview_chars
        self._events: deque = deque(maxlen=max_events)
        self._last_seen: Dict[str, Dict[str, Any]] = {}
        self._connection_state: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def record(self, instance_id: Optional[str], kind: str, payload: Any,
               outcome: Optional[str] = None) -> Dict[str, Any]:
        try:
            preview = json.dumps(_redact(payload), default=str)
        except (TypeError, ValueError):
            preview = repr(payload)
        if len(preview) > self.preview_chars:
            preview = preview[:self.preview_chars] + "…"

        at = datetime.now(timezone.utc).isoformat()
        entry = {
            "at": at,
            "instance_id": instance_id,
            "event": kind,
            "outcome": outcome,
            "preview": preview,
        }
        keys = list(payload.keys())[:15] if isinstance(payload, dict) else []
        with self._lock:
            self._events.append(entry)
            self._last_seen[instance_id or "unknown"] = {"at": at, "event": kind, "keys": keys}
        return entry

    def note_outcome(self, entry: Dict[str, Any], outcome: str) -> None:
        with self._lock:
            entry["outcome"] = outcome

    def note_connection(self, instance_id: str, connected: bool, phone: Optional[str] = None) -> None:
        with self._lock:
            self._connection_state[instance_id] = {
                "at": datetime.now(timezone.utc).isoformat(),
                "connected": connected,
                "phone": phone,
            }

    def recent(self, instance_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest first, optionally filtered by instance."""
        with self._lock:
            events = [dict(e) for e in self._events if instance_id is None or e["instance_id"] == instance_id]
        return list(reversed(events))[:max(limit, 0)]

    def last_seen(self, instance_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            summary = {
                key: dict(value, connection=self._connection_state.get(key))
                for key, value in self._last_seen.items()
            }
        if instance_id is not None:
            return {key: value for key, value in summary.items() if key == instance_id}
        return summary

    def connection_state(self, instance_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            state = self._connection_state.get(instance_id)
            return dict(state) if state else None

    def clear(self, instance_id: Optional[str] = None) -> int:
        """Drop buffered events (all, or one instance's); returns how many were removed."""
        with self._lock:
            before = len(self._events)
            if instance_id is None:
                self._events.clear()
                self._last_seen.clear()
                self._connection_state.clear()
            else:
                kept = [e for e in self._events if e["instance_id"] != instance_id]
                self._events.clear()
                self._events.extend(kept)
                self._last_seen.pop(instance_id, None)
                self._connection_state.pop(instance_id, None)
            return before - len(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
