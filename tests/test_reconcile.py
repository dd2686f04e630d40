from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from mergegate.close_gate import CloseGateManager, MergeExecutor
from mergegate.github_gateway import GitHubGatewayError
from mergegate.merge_log import MergeAttemptLog
from mergegate.mergeability import MergeabilityChecker
from mergegate.models import (
    MergeMethod,
    PullRequestStatus,
    StatusCheck,
    SweepResult,
    Task,
    TaskStatus,
)
from mergegate.pr_url import PullRequestRef
from mergegate.reconcile import ReconciliationSweep, SweepRunner
from mergegate.state import StateStore


GREEN_URL = "https://github.com/acme/app/pull/1"
MERGED_URL = "https://github.com/acme/app/pull/2"
RED_URL = "https://github.com/acme/app/pull/3"
BROKEN_URL = "https://github.com/acme/app/pull/4"
MERGE_SHA = "0badc0de11111111111111111111111111111111"
HANDOFF = {
    "artifact_path": "process/TASK-1.md",
    "test_proof": "pytest -q: 80 passed",
    "known_caveats": "none",
}


def _status(state: str, review_decision: str, *checks: tuple[str, str]) -> PullRequestStatus:
    return PullRequestStatus(
        state=state,
        review_decision=review_decision,
        checks=tuple(StatusCheck(name=name, conclusion=conclusion) for name, conclusion in checks),
    )


@dataclass
class FakeGitHub:
    statuses: dict[int, PullRequestStatus] = field(default_factory=dict)
    merge_errors: dict[int, str] = field(default_factory=dict)
    explode_on: set[int] = field(default_factory=set)
    merged: list[tuple[int, str]] = field(default_factory=list)
    status_reads: int = 0

    def get_pull_request_status(self, ref: PullRequestRef) -> PullRequestStatus:
        self.status_reads += 1
        if ref.number in self.explode_on:
            raise RuntimeError(f"unexpected payload for #{ref.number}")
        return self.statuses[ref.number]

    def merge_pull_request(self, ref: PullRequestRef, *, method: MergeMethod) -> None:
        if ref.number in self.merge_errors:
            raise GitHubGatewayError(self.merge_errors[ref.number])
        self.merged.append((ref.number, method))
        self.statuses[ref.number] = _status("MERGED", "APPROVED", ("build", "SUCCESS"))

    def get_merge_commit_sha(self, ref: PullRequestRef) -> str | None:
        _ = ref
        return MERGE_SHA


@dataclass
class Harness:
    store: StateStore
    github: FakeGitHub
    checker: MergeabilityChecker
    log: MergeAttemptLog
    sweep: ReconciliationSweep
    runner: SweepRunner


def _harness(tmp_path: Path, github: FakeGitHub) -> Harness:
    store = StateStore(tmp_path / "state.db")
    checker = MergeabilityChecker(github, clock=lambda: 0.0)
    log = MergeAttemptLog(max_entries=50)
    sweep = ReconciliationSweep(
        checker=checker,
        executor=MergeExecutor(github=github),
        close_gates=CloseGateManager(store, github),
        log=log,
    )
    return Harness(
        store=store,
        github=github,
        checker=checker,
        log=log,
        sweep=sweep,
        runner=SweepRunner(store, sweep, log),
    )


def _validating(store: StateStore, task_id: str, pr_url: str | None, **metadata: object) -> None:
    payload: dict[str, object] = {
        "eta": "~2h",
        "artifact_path": "process/TASK-1.md",
        "review_handoff": HANDOFF,
        **metadata,
    }
    if pr_url is not None:
        payload["pr_url"] = pr_url
    store.create_task(task_id, f"Task {task_id}", status="validating", metadata=payload)


def test_green_approved_pr_is_merged_and_task_auto_closed(tmp_path: Path) -> None:
    github = FakeGitHub(statuses={1: _status("OPEN", "APPROVED", ("build", "SUCCESS"))})
    h = _harness(tmp_path, github)
    _validating(h.store, "task-1", GREEN_URL)

    result = h.runner.run_once()

    assert result is not None
    assert result.tasks_scanned == 1
    assert result.merge_attempts == 1
    assert result.merge_successes == 1
    assert result.auto_closes == 1
    assert result.skipped == 0
    assert [(entry.action, entry.detail) for entry in result.entries] == [
        ("merge_attempted", "PR is green and approved, attempting merge"),
        ("merge_succeeded", "Merged successfully (0badc0d)"),
        ("auto_closed", "All close gates satisfied"),
    ]
    assert github.merged == [(1, "squash")]

    task = h.store.require_task("task-1")
    assert task.status == "done"
    assert task.metadata.pr_merged is True
    assert task.metadata.reviewer_approved is True
    assert task.metadata.commit_sha == MERGE_SHA
    assert task.metadata.auto_close_reason == "close_gates_satisfied"
    assert h.runner.merge_attempt_log() == result.entries


def test_already_merged_pr_backfills_gates_and_closes(tmp_path: Path) -> None:
    github = FakeGitHub(statuses={2: _status("MERGED", "APPROVED")})
    h = _harness(tmp_path, github)
    _validating(h.store, "task-2", MERGED_URL)

    result = h.sweep.run(h.store.list_tasks(status="validating"))

    assert result.merge_attempts == 0
    assert result.auto_closes == 1
    assert [(entry.action, entry.detail) for entry in result.entries] == [
        ("merge_skipped", "PR already merged"),
        ("auto_closed", "All close gates satisfied"),
    ]
    assert github.merged == []
    task = h.store.require_task("task-2")
    assert task.status == "done"
    assert task.metadata.pr_merged is True
    assert task.metadata.extra["pr_merged_at"]


def test_merged_pr_without_approval_stays_validating(tmp_path: Path) -> None:
    github = FakeGitHub(statuses={2: _status("MERGED", "REVIEW_REQUIRED")})
    h = _harness(tmp_path, github)
    _validating(h.store, "task-2", MERGED_URL)

    result = h.sweep.run(h.store.list_tasks(status="validating"))

    assert result.auto_closes == 0
    task = h.store.require_task("task-2")
    assert task.status == "validating"
    assert task.metadata.pr_merged is True
    assert task.metadata.reviewer_approved is None


def test_not_mergeable_and_unlinked_tasks_are_skipped(tmp_path: Path) -> None:
    github = FakeGitHub(
        statuses={3: _status("OPEN", "APPROVED", ("build", "SUCCESS"), ("lint", "FAILURE"))}
    )
    h = _harness(tmp_path, github)
    _validating(h.store, "task-3", RED_URL)
    _validating(h.store, "task-4", None)

    result = h.sweep.run(h.store.list_tasks(status="validating"))

    assert result.tasks_scanned == 2
    assert result.skipped == 2
    assert result.merge_attempts == 0
    assert [(entry.task_id, entry.action, entry.detail) for entry in result.entries] == [
        ("task-3", "merge_skipped", "Failing checks: lint"),
    ]


def test_failed_merge_is_logged_and_task_left_open(tmp_path: Path) -> None:
    github = FakeGitHub(
        statuses={1: _status("OPEN", "APPROVED")},
        merge_errors={1: "Pull request is in a merge conflict state"},
    )
    h = _harness(tmp_path, github)
    _validating(h.store, "task-1", GREEN_URL)

    result = h.sweep.run(h.store.list_tasks(status="validating"))

    assert result.merge_attempts == 1
    assert result.merge_successes == 0
    assert result.entries[-1].detail == "Merge failed: Pull request is in a merge conflict state"
    assert h.store.require_task("task-1").status == "validating"


def test_gates_already_satisfied_close_without_reading_github(tmp_path: Path) -> None:
    github = FakeGitHub()
    h = _harness(tmp_path, github)
    _validating(h.store, "task-5", None, pr_merged=True, reviewer_approved=True)

    result = h.sweep.run(h.store.list_tasks(status="validating"))

    assert result.auto_closes == 1
    assert result.entries[0].pr_url == ""
    assert github.status_reads == 0
    assert h.store.require_task("task-5").status == "done"


def test_one_task_failure_does_not_stop_the_sweep(tmp_path: Path) -> None:
    github = FakeGitHub(
        statuses={1: _status("OPEN", "APPROVED", ("build", "SUCCESS"))},
        explode_on={4},
    )
    h = _harness(tmp_path, github)
    _validating(h.store, "task-0", BROKEN_URL)
    _validating(h.store, "task-1", GREEN_URL)

    result = h.sweep.run(h.store.list_tasks(status="validating"))

    assert result.tasks_scanned == 2
    assert result.merge_successes == 1
    assert h.store.require_task("task-0").status == "validating"
    assert h.store.require_task("task-1").status == "done"


def test_sweep_ignores_non_validating_tasks(tmp_path: Path) -> None:
    h = _harness(tmp_path, FakeGitHub())
    h.store.create_task("task-1", "Doing", status="doing", metadata={"pr_url": GREEN_URL})

    result = h.sweep.run(h.store.list_tasks())

    assert result.tasks_scanned == 0
    assert result.entries == ()


def test_run_once_skips_when_a_sweep_is_in_flight(tmp_path: Path) -> None:
    h = _harness(tmp_path, FakeGitHub())

    assert h.runner._in_flight.acquire(blocking=False)
    try:
        assert h.runner.run_once() is None
    finally:
        h.runner._in_flight.release()

    assert h.runner.run_once() is not None


def test_run_forever_sleeps_between_iterations_and_survives_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    github = FakeGitHub(statuses={1: _status("OPEN", "REVIEW_REQUIRED")})
    h = _harness(tmp_path, github)
    _validating(h.store, "task-1", GREEN_URL)
    sleeps: list[float] = []
    results: list[SweepResult] = []
    calls = {"count": 0}
    original_list = h.store.list_tasks

    def flaky_list(*, status: TaskStatus | None = None) -> tuple[Task, ...]:
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("database is locked")
        return original_list(status=status)

    monkeypatch.setattr(h.store, "list_tasks", flaky_list)

    h.runner.run_forever(30, sleep=sleeps.append, on_result=results.append, max_iterations=3)

    assert sleeps == [30, 30]
    assert len(results) == 2
    assert all(result.skipped == 1 for result in results)
    assert h.runner._in_flight.acquire(blocking=False)


def test_sweep_leaves_unproven_duplicate_validating(tmp_path: Path) -> None:
    github = FakeGitHub()
    h = _harness(tmp_path, github)
    _validating(
        h.store,
        "task-6",
        None,
        pr_merged=True,
        reviewer_approved=True,
        auto_close_reason="duplicate",
        duplicate_proof="N/A",
    )

    result = h.runner.run_once()

    assert result is not None
    assert result.auto_closes == 0
    assert result.skipped == 1
    assert result.entries == ()
    assert github.status_reads == 0
    assert h.store.require_task("task-6").status == "validating"


def test_merged_duplicate_without_canonical_reference_is_not_closed(tmp_path: Path) -> None:
    github = FakeGitHub(statuses={1: _status("OPEN", "APPROVED", ("build", "SUCCESS"))})
    h = _harness(tmp_path, github)
    _validating(h.store, "task-1", GREEN_URL, duplicate_proof="N/A - duplicate")

    result = h.runner.run_once()

    assert result is not None
    assert result.merge_successes == 1
    assert result.auto_closes == 0
    assert [entry.action for entry in result.entries] == ["merge_attempted", "merge_succeeded"]
    task = h.store.require_task("task-1")
    assert task.status == "validating"
    assert task.metadata.pr_merged is True


def test_successful_merge_only_evicts_its_own_mergeability_entry(tmp_path: Path) -> None:
    github = FakeGitHub(
        statuses={
            1: _status("OPEN", "APPROVED", ("build", "SUCCESS")),
            3: _status("OPEN", "REVIEW_REQUIRED"),
        }
    )
    h = _harness(tmp_path, github)
    h.checker.check(RED_URL)
    _validating(h.store, "task-1", GREEN_URL)

    h.runner.run_once()

    assert github.status_reads == 2
    h.checker.check(RED_URL)
    assert github.status_reads == 2
    assert h.checker.check(GREEN_URL).state == "MERGED"
    assert github.status_reads == 3
