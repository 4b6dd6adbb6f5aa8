from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
    """Return an aware UTC timestamp.

    Example:
        ```python
        stamp = _utcnow()
        ```
    """
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One finished execution as handed to a history sink.

    Example:
        ```python
        entry = HistoryEntry(user_id=1, snippet_id=None, code="2 + 2", output="4", error="", execution_time_ms=9)
        ```
    """

    user_id: Any
    snippet_id: Any
    code: str
    output: str
    error: str
    execution_time_ms: int
    created_at: datetime = field(default_factory=_utcnow)
    id: int | None = None


class HistorySink(Protocol):
    def record(self, entry: HistoryEntry) -> None:
        """Persist one finished execution.

        Example:
            ```python
            sink.record(entry)
            ```
        """
        ...


class InMemoryHistorySink:
    """Thread-safe history store kept in process memory.

    Example:
        ```python
        sink = InMemoryHistorySink()
        sandbox = Sandbox(history_sink=sink)
        ```
    """

    def __init__(self) -> None:
        """Create an empty store.

        Example:
            ```python
            sink = InMemoryHistorySink()
            ```
        """
        self._entries: list[HistoryEntry] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def record(self, entry: HistoryEntry) -> None:
        """Store an entry under a fresh id.

        Example:
            ```python
            sink.record(entry)
            ```
        """
        with self._lock:
            self._entries.append(replace(entry, id=next(self._ids)))

    def entries_for(self, user_id: Any, limit: int = 50, offset: int = 0) -> list[HistoryEntry]:
        """Return a user's entries newest first; `limit` is capped at 100.

        Example:
            ```python
            page = sink.entries_for(user_id=1, limit=20, offset=20)
            ```
        """
        limit = min(max(int(limit), 0), MAX_PAGE_SIZE)
        offset = max(int(offset), 0)
        with self._lock:
            owned = [entry for entry in self._entries if entry.user_id == user_id]
        owned.sort(key=lambda entry: (entry.created_at, entry.id or 0), reverse=True)
        return owned[offset : offset + limit]

    def get(self, entry_id: int, user_id: Any) -> HistoryEntry | None:
        """Return one entry if it exists and belongs to `user_id`.

        Example:
            ```python
            entry = sink.get(3, user_id=1)
            ```
        """
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id and entry.user_id == user_id:
                    return entry
        return None

    def stats(self, user_id: Any) -> dict[str, Any]:
        """Summarize a user's executions.

        Example:
            ```python
            summary = sink.stats(user_id=1)
            ```
        """
        with self._lock:
            times = [entry.execution_time_ms for entry in self._entries if entry.user_id == user_id]
            errors = sum(
                1 for entry in self._entries if entry.user_id == user_id and entry.error != ""
            )
        return {
            "total_executions": len(times),
            "avg_execution_time": (sum(times) / len(times)) if times else 0,
            "max_execution_time": max(times, default=0),
            "error_count": errors,
        }
