"""cyber_governor.history

Per-session call history.

Hook processes are short-lived and stateless; they cooperate through one
history record per session, read at hook entry and written at hook exit.

.. warning:: NOT TRANSACTIONAL

   Read-then-write is best effort. There is no locking or versioning: two
   hook processes running concurrently for the same session can both read the
   same history, and the later write wins (one update is lost). Corrupt or
   unreadable history is treated as empty; failed writes are logged and
   swallowed.

Storage format (one JSON file per session, overwritten on every update):

    [
      {"tool": "Read", "input": {...}, "timestamp": 1700000000000,
       "failed": false, "failureReason": null},
      ...
    ]
"""

from __future__ import annotations

import json
import logging
import re
import time as _time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import GovernorConfig
from .types import HistoryEntry, HistoryStats

logger = logging.getLogger("cyber_governor.history")

MAX_SUMMARY_STRING = 200
TRUNCATION_MARKER = "...[truncated]"

_UNSAFE_SESSION_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")


def now_ms() -> int:
    return int(_time.time() * 1000)


def sanitize_session_id(session_id: Any) -> str:
    return _UNSAFE_SESSION_CHARS.sub("_", str(session_id or "unknown"))


def summarize_input(tool_input: Any) -> Any:
    """Shallow copy of the call input, bounded for storage.

    Long strings are truncated and lists collapse to a count marker.
    Non-mapping inputs are returned unchanged.
    """
    if not isinstance(tool_input, dict):
        return tool_input

    summary: Dict[str, Any] = {}
    for key, value in tool_input.items():
        if isinstance(value, str) and len(value) > MAX_SUMMARY_STRING:
            summary[key] = value[:MAX_SUMMARY_STRING] + TRUNCATION_MARKER
        elif isinstance(value, (list, tuple)):
            summary[key] = f"[Array: {len(value)} items]"
        else:
            summary[key] = value
    return summary


def create_history_entry(tool: Any, tool_input: Any, timestamp: Optional[int] = None) -> HistoryEntry:
    """New entry for a call whose outcome is not known yet."""
    return HistoryEntry(
        tool=tool,
        input=summarize_input(tool_input),
        timestamp=now_ms() if timestamp is None else timestamp,
    )


def windowed(history: List[HistoryEntry], window_ms: int, at_ms: int) -> List[HistoryEntry]:
    """Entries whose timestamp falls within the trailing window ending at ``at_ms``."""
    start = at_ms - window_ms
    return [h for h in history if h.timestamp >= start]


def history_stats(
    history: List[HistoryEntry],
    config: Optional[GovernorConfig] = None,
    at_ms: Optional[int] = None,
) -> HistoryStats:
    """Counts over the trailing window; ``total_calls`` covers the whole history."""
    cfg = config or GovernorConfig()
    recent = windowed(history, cfg.oscillation_window_ms, now_ms() if at_ms is None else at_ms)

    tool_counts: Dict[str, int] = {}
    failure_counts: Dict[str, int] = {}
    for entry in recent:
        tool_counts[entry.tool] = tool_counts.get(entry.tool, 0) + 1
        if entry.failed:
            failure_counts[entry.tool] = failure_counts.get(entry.tool, 0) + 1

    return HistoryStats(
        total_calls=len(history),
        recent_calls=len(recent),
        tool_counts=tool_counts,
        failure_counts=failure_counts,
        window_ms=cfg.oscillation_window_ms,
    )


def entries_from_json(data: Any) -> List[HistoryEntry]:
    """Decode persisted history. Anything that is not a list decodes as empty."""
    if not isinstance(data, list):
        return []
    return [HistoryEntry.from_dict(item) for item in data if isinstance(item, dict)]


def entries_to_json(history: List[HistoryEntry]) -> List[Dict[str, Any]]:
    return [h.to_dict() for h in history]


# ================================
# Session State Store
# ================================

class SessionStateStore:
    """Capability for reading and writing per-session history.

    Backends implement :meth:`_read` and :meth:`_write`; trimming, failure
    annotation and the fail-open policy live here.
    """

    def __init__(self, max_history_size: int = 100):
        self.max_history_size = max_history_size

    def _read(self, key: str) -> List[HistoryEntry]:
        raise NotImplementedError

    def _write(self, key: str, history: List[HistoryEntry]) -> None:
        raise NotImplementedError

    def load(self, session_id: Any) -> List[HistoryEntry]:
        if not session_id:
            return []
        try:
            return self._read(sanitize_session_id(session_id))
        except (OSError, ValueError) as exc:
            # Corrupted history: start fresh.
            logger.warning("Failed to load history for session %s: %s", session_id, exc)
            return []

    def save(self, session_id: Any, history: List[HistoryEntry]) -> bool:
        """Persist the trimmed history. Returns False when the write failed."""
        if not session_id:
            return False
        trimmed = list(history)[-self.max_history_size:]
        try:
            self._write(sanitize_session_id(session_id), trimmed)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to save history for session %s: %s", session_id, exc)
            return False
        return True

    def append_and_trim(
        self,
        session_id: Any,
        entry: HistoryEntry,
        history: Optional[List[HistoryEntry]] = None,
    ) -> bool:
        """Append ``entry`` and persist the trimmed history.

        Pass ``history`` when it was already loaded in this process to skip the
        second read. Returns False when the write failed.
        """
        updated = list(self.load(session_id) if history is None else history)
        updated.append(entry)
        return self.save(session_id, updated)

    def mark_last_failed(self, session_id: Any, tool: Any, reason: Optional[str]) -> List[HistoryEntry]:
        """Flag the most recent not-yet-failed entry for ``tool`` as failed."""
        history = self.load(session_id)
        for entry in reversed(history):
            if entry.tool == tool and not entry.failed:
                entry.failed = True
                entry.failure_reason = reason
                break
        self.save(session_id, history)
        return history

    def clear(self, session_id: Any) -> None:
        if not session_id:
            return
        self.save(session_id, [])


class FileSessionStore(SessionStateStore):
    """One JSON file per session under ``state_dir``."""

    def __init__(self, state_dir: Path, max_history_size: int = 100):
        super().__init__(max_history_size=max_history_size)
        self.state_dir = Path(state_dir)

    @classmethod
    def from_config(cls, config: GovernorConfig) -> "FileSessionStore":
        return cls(config.state_dir, max_history_size=config.max_history_size)

    def path_for(self, session_id: Any) -> Path:
        return self.state_dir / f"history-{sanitize_session_id(session_id)}.json"

    def _read(self, key: str) -> List[HistoryEntry]:
        path = self.state_dir / f"history-{key}.json"
        if not path.exists():
            return []
        return entries_from_json(json.loads(path.read_text(encoding="utf-8")))

    def _write(self, key: str, history: List[HistoryEntry]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_dir / f"history-{key}.json"
        path.write_text(json.dumps(entries_to_json(history), indent=2), encoding="utf-8")


class InMemorySessionStore(SessionStateStore):
    """Process-local store. Entries are copied in and out, like the file store."""

    def __init__(self, max_history_size: int = 100):
        super().__init__(max_history_size=max_history_size)
        self.records: Dict[str, List[Dict[str, Any]]] = {}

    def _read(self, key: str) -> List[HistoryEntry]:
        return entries_from_json(self.records.get(key, []))

    def _write(self, key: str, history: List[HistoryEntry]) -> None:
        self.records[key] = entries_to_json(history)
