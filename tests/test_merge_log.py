from __future__ import annotations

import pytest

from mergegate.merge_log import MergeAttemptLog


def test_append_records_entry_with_utc_timestamp() -> None:
    log = MergeAttemptLog()

    entry = log.append(
        task_id="task-1",
        pr_url="https://github.com/acme/app/pull/1",
        action="merge_attempted",
        detail="PR is green and approved, attempting merge",
    )

    assert entry.timestamp.endswith("Z")
    assert log.recent() == (entry,)
    assert len(log) == 1


def test_log_rotates_oldest_entries_out() -> None:
    log = MergeAttemptLog(max_entries=3)
    for index in range(5):
        log.append(task_id=f"task-{index}", pr_url="", action="merge_skipped", detail="pending")

    assert len(log) == 3
    assert [entry.task_id for entry in log.recent()] == ["task-2", "task-3", "task-4"]


def test_recent_limit_and_clear() -> None:
    log = MergeAttemptLog()
    for index in range(4):
        log.append(task_id=f"task-{index}", pr_url="", action="auto_closed", detail="done")

    assert [entry.task_id for entry in log.recent(2)] == ["task-2", "task-3"]
    assert log.recent(0) == ()

    log.clear()
    assert log.recent() == ()
    assert len(log) == 0


def test_max_entries_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_entries must be >= 1"):
        MergeAttemptLog(max_entries=0)
