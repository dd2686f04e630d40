from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import sqlite3

from mergegate.duplicate_closure import duplicate_closure_error
from mergegate.github_gateway import GitHubGateway, GitHubGatewayError
from mergegate.models import (
    AutoCloseResult,
    CloseGateResult,
    MergeAttemptResult,
    MergeMethod,
    Task,
)
from mergegate.observability import log_event
from mergegate.pr_url import parse_pr_url
from mergegate.state import StateStore, TaskConflictError


LOGGER = logging.getLogger("mergegate.close_gate")
_AUTO_CLOSE_REASON = "close_gates_satisfied"
_BLOCKING_REVIEW_STATES = frozenset({"changes_requested", "rejected"})


@dataclass(frozen=True)
class MergeExecutor:
    github: GitHubGateway
    method: MergeMethod = "squash"

    def attempt_merge(self, pr_url: str) -> MergeAttemptResult:
        ref = parse_pr_url(pr_url)
        if ref is None:
            return MergeAttemptResult(
                success=False, error="invalid PR URL format", merge_commit_sha=None
            )

        try:
            self.github.merge_pull_request(ref, method=self.method)
        except GitHubGatewayError as exc:
            return MergeAttemptResult(success=False, error=str(exc), merge_commit_sha=None)

        merge_commit_sha: str | None = None
        try:
            merge_commit_sha = self.github.get_merge_commit_sha(ref)
        except GitHubGatewayError as exc:
            # The merge went through; the commit may not be visible yet.
            log_event(LOGGER, "merge_commit_lookup_failed", pr_url=pr_url, error=str(exc))
        return MergeAttemptResult(success=True, error=None, merge_commit_sha=merge_commit_sha)


class CloseGateManager:
    """Back-fills the merge and review close gates and auto-closes tasks that pass them."""

    def __init__(self, store: StateStore, github: GitHubGateway) -> None:
        self._store = store
        self._github = github

    def auto_populate_close_gate(
        self,
        task_id: str,
        pr_url: str | None = None,
        *,
        review_decision: str | None = None,
        merge_commit_sha: str | None = None,
    ) -> CloseGateResult:
        """Record an out-of-band merge on the task.

        Raises ``TaskNotFoundError`` for an unknown task. Everything else is
        best effort and reported through ``CloseGateResult.error``.
        """
        task = self._store.require_task(task_id)
        meta = task.metadata
        patch: dict[str, object] = {}

        if meta.pr_merged is not True:
            patch["pr_merged"] = True
        if "pr_merged_at" not in meta.extra:
            patch["pr_merged_at"] = _utc_now_iso8601()
        if not meta.pr_url and pr_url:
            patch["pr_url"] = pr_url

        effective_pr_url = pr_url or meta.pr_url
        artifacts = meta.artifacts or ()
        if effective_pr_url and effective_pr_url not in artifacts:
            patch["artifacts"] = [*artifacts, effective_pr_url]

        if review_decision == "APPROVED" and meta.reviewer_approved is not True:
            patch["reviewer_approved"] = True

        if not meta.commit_sha and effective_pr_url:
            sha = merge_commit_sha or self._lookup_merge_commit(effective_pr_url)
            if sha:
                patch["commit_sha"] = sha
                handoff = meta.review_handoff
                if handoff is not None and not handoff.commit_sha:
                    patch["review_handoff"] = {**handoff.to_dict(), "commit_sha": sha}

        if not patch:
            return CloseGateResult(populated=False, fields=(), error=None)

        fields = tuple(sorted(patch))
        try:
            self._store.update_task(task_id, metadata=patch, expected_version=task.version)
        except (TaskConflictError, sqlite3.Error) as exc:
            log_event(
                LOGGER,
                "close_gate_populate_failed",
                task_id=task_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return CloseGateResult(populated=False, fields=(), error=str(exc))

        log_event(LOGGER, "close_gate_populated", task_id=task_id, fields=fields)
        return CloseGateResult(populated=True, fields=fields, error=None)

    def try_auto_close_task(self, task_id: str) -> AutoCloseResult:
        task = self._store.get_task(task_id)
        if task is None:
            return AutoCloseResult(
                closed=False, reason=f"Task {task_id} not found", failed_gates=("task_exists",)
            )
        if task.status != "validating":
            return AutoCloseResult(
                closed=False, reason=f"not validating (status={task.status})", failed_gates=()
            )

        failed_gates = _failed_close_gates(task)
        if failed_gates:
            reason = f"Close gates not met: {', '.join(failed_gates)}"
            log_event(LOGGER, "task_auto_close_blocked", task_id=task_id, reason=reason)
            return AutoCloseResult(closed=False, reason=reason, failed_gates=failed_gates)

        duplicate_error = duplicate_closure_error(task.id, task.metadata)
        if duplicate_error is not None:
            reason = f"Duplicate closure not proven: {duplicate_error}"
            log_event(LOGGER, "task_auto_close_blocked", task_id=task_id, reason=reason)
            return AutoCloseResult(closed=False, reason=reason, failed_gates=("duplicate_proof",))

        metadata_patch: dict[str, object] = {
            "auto_closed": True,
            "auto_closed_at": _utc_now_iso8601(),
        }
        if task.metadata.auto_close_reason is None:
            metadata_patch["auto_close_reason"] = _AUTO_CLOSE_REASON
        try:
            self._store.update_task(
                task_id,
                status="done",
                metadata=metadata_patch,
                expected_version=task.version,
                expected_status="validating",
            )
        except (TaskConflictError, sqlite3.Error) as exc:
            log_event(
                LOGGER,
                "task_auto_close_failed",
                task_id=task_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AutoCloseResult(
                closed=False, reason=f"Failed to update task: {exc}", failed_gates=()
            )

        log_event(LOGGER, "task_auto_closed", task_id=task_id)
        return AutoCloseResult(closed=True, reason="All close gates satisfied", failed_gates=())

    def _lookup_merge_commit(self, pr_url: str) -> str | None:
        ref = parse_pr_url(pr_url)
        if ref is None:
            return None
        try:
            return self._github.get_merge_commit_sha(ref)
        except GitHubGatewayError as exc:
            log_event(LOGGER, "merge_commit_lookup_failed", pr_url=pr_url, error=str(exc))
            return None


def _failed_close_gates(task: Task) -> tuple[str, ...]:
    """List unmet auto-close gates in a stable order.

    A rejection recorded after an earlier approval blocks the close even when
    ``reviewer_approved`` is still set.
    """
    meta = task.metadata
    failed: list[str] = []
    if meta.pr_merged is not True:
        failed.append("pr_merged")
    if meta.reviewer_approved is not True:
        failed.append("reviewer_approved")
    review_state = meta.extra.get("review_state")
    if review_state in _BLOCKING_REVIEW_STATES:
        failed.append(f"review_state_blocked:{review_state}")
    reviewer_decision = meta.extra.get("reviewer_decision")
    if isinstance(reviewer_decision, Mapping) and reviewer_decision.get("decision") == "rejected":
        failed.append("reviewer_decision_rejected")
    if not meta.artifact_path:
        failed.append("artifact_path")
    return tuple(failed)


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
