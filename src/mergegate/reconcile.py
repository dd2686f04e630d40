from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import logging
import threading
import time

from mergegate.close_gate import CloseGateManager, MergeExecutor
from mergegate.merge_log import MergeAttemptLog
from mergegate.mergeability import MergeabilityChecker
from mergegate.models import MergeLogAction, MergeLogEntry, SweepResult, Task
from mergegate.observability import log_event, log_warning_event
from mergegate.pr_url import extract_task_pr_url
from mergegate.state import StateStore


LOGGER = logging.getLogger("mergegate.reconcile")


@dataclass
class _SweepTally:
    merge_attempts: int = 0
    merge_successes: int = 0
    auto_closes: int = 0
    skipped: int = 0
    tasks_scanned: int = 0
    entries: list[MergeLogEntry] = field(default_factory=list)


class ReconciliationSweep:
    """One pass over validating tasks: merge what is ready, close what is merged."""

    def __init__(
        self,
        *,
        checker: MergeabilityChecker,
        executor: MergeExecutor,
        close_gates: CloseGateManager,
        log: MergeAttemptLog,
    ) -> None:
        self._checker = checker
        self._executor = executor
        self._close_gates = close_gates
        self._log = log

    def run(self, tasks: Sequence[Task]) -> SweepResult:
        tally = _SweepTally()
        for task in tasks:
            if task.status != "validating":
                continue
            tally.tasks_scanned += 1
            try:
                self._reconcile_task(task, tally)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "sweep_task_failed",
                    task_id=task.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return SweepResult(
            merge_attempts=tally.merge_attempts,
            merge_successes=tally.merge_successes,
            auto_closes=tally.auto_closes,
            skipped=tally.skipped,
            tasks_scanned=tally.tasks_scanned,
            entries=tuple(tally.entries),
        )

    def _reconcile_task(self, task: Task, tally: _SweepTally) -> None:
        pr_url = extract_task_pr_url(task.metadata)
        if task.metadata.close_gates_satisfied:
            if not self._auto_close(task.id, pr_url or "", tally):
                tally.skipped += 1
            return
        if pr_url is None:
            tally.skipped += 1
            return

        verdict = self._checker.check(pr_url)
        if verdict.state == "MERGED":
            self._close_gates.auto_populate_close_gate(
                task.id, pr_url, review_decision=verdict.review_decision
            )
            self._record(tally, task.id, pr_url, "merge_skipped", "PR already merged")
            self._auto_close(task.id, pr_url, tally)
            return

        if not verdict.mergeable:
            self._record(tally, task.id, pr_url, "merge_skipped", verdict.reason)
            tally.skipped += 1
            return

        tally.merge_attempts += 1
        self._record(
            tally,
            task.id,
            pr_url,
            "merge_attempted",
            "PR is green and approved, attempting merge",
        )
        result = self._executor.attempt_merge(pr_url)
        if not result.success:
            self._record(
                tally,
                task.id,
                pr_url,
                "merge_attempted",
                f"Merge failed: {result.error or 'unknown error'}",
            )
            return

        tally.merge_successes += 1
        detail = "Merged successfully"
        if result.merge_commit_sha:
            detail += f" ({result.merge_commit_sha[:7]})"
        self._record(tally, task.id, pr_url, "merge_succeeded", detail)
        self._checker.invalidate(pr_url)
        self._close_gates.auto_populate_close_gate(
            task.id,
            pr_url,
            review_decision=verdict.review_decision,
            merge_commit_sha=result.merge_commit_sha,
        )
        self._auto_close(task.id, pr_url, tally)

    def _auto_close(self, task_id: str, pr_url: str, tally: _SweepTally) -> bool:
        result = self._close_gates.try_auto_close_task(task_id)
        if result.closed:
            tally.auto_closes += 1
            self._record(tally, task_id, pr_url, "auto_closed", result.reason)
        return result.closed

    def _record(
        self,
        tally: _SweepTally,
        task_id: str,
        pr_url: str,
        action: MergeLogAction,
        detail: str,
    ) -> None:
        tally.entries.append(
            self._log.append(task_id=task_id, pr_url=pr_url, action=action, detail=detail)
        )


class SweepRunner:
    """Serializes sweeps within a process.

    A tick that arrives while a sweep is running is dropped rather than queued.
    """

    def __init__(
        self,
        store: StateStore,
        sweep: ReconciliationSweep,
        log: MergeAttemptLog,
    ) -> None:
        self._store = store
        self._sweep = sweep
        self._log = log
        self._in_flight = threading.Lock()

    def run_once(self) -> SweepResult | None:
        if not self._in_flight.acquire(blocking=False):
            log_event(LOGGER, "sweep_skipped_in_flight")
            return None
        try:
            log_event(LOGGER, "sweep_started")
            tasks = self._store.list_tasks(status="validating")
            result = self._sweep.run(tasks)
            log_event(
                LOGGER,
                "sweep_completed",
                tasks_scanned=result.tasks_scanned,
                merge_attempts=result.merge_attempts,
                merge_successes=result.merge_successes,
                auto_closes=result.auto_closes,
                skipped=result.skipped,
            )
            return result
        finally:
            self._in_flight.release()

    def run_forever(
        self,
        interval_seconds: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_result: Callable[[SweepResult], None] | None = None,
        max_iterations: int | None = None,
    ) -> None:
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            try:
                result = self.run_once()
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "sweep_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                if result is not None and on_result is not None:
                    on_result(result)
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            sleep(interval_seconds)

    def merge_attempt_log(self, limit: int | None = 50) -> tuple[MergeLogEntry, ...]:
        return self._log.recent(limit)
