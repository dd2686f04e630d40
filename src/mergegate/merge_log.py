from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
import logging
import threading

from mergegate.models import MergeLogAction, MergeLogEntry
from mergegate.observability import log_event


LOGGER = logging.getLogger("mergegate.merge_log")


class MergeAttemptLog:
    """Bounded, append-only record of sweep decisions.

    Observability only; task state lives in the store. Entries past
    ``max_entries`` are rotated out oldest first.
    """

    def __init__(self, max_entries: int = 200) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._entries: deque[MergeLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def append(
        self,
        *,
        task_id: str,
        pr_url: str,
        action: MergeLogAction,
        detail: str,
    ) -> MergeLogEntry:
        entry = MergeLogEntry(
            task_id=task_id,
            pr_url=pr_url,
            action=action,
            detail=detail,
            timestamp=_utc_now_iso8601(),
        )
        with self._lock:
            self._entries.append(entry)
        log_event(
            LOGGER,
            "merge_log_entry",
            task_id=task_id,
            pr_url=pr_url,
            action=action,
            detail=detail,
        )
        return entry

    def recent(self, limit: int | None = None) -> tuple[MergeLogEntry, ...]:
        with self._lock:
            entries = tuple(self._entries)
        if limit is None:
            return entries
        if limit < 1:
            return ()
        return entries[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
