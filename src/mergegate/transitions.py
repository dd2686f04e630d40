from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from typing import Literal, cast

from mergegate.duplicate_closure import duplicate_closure_error
from mergegate.integrity import IntegrityValidator
from mergegate.models import (
    TASK_STATUSES,
    IntegrityRejected,
    IntegritySkipped,
    Task,
    TaskMetadata,
    TaskStatus,
)
from mergegate.observability import log_event
from mergegate.state import StateStore, TaskConflictError, merge_metadata


LOGGER = logging.getLogger("mergegate.transitions")

GateId = Literal[
    "eta_required",
    "artifact_path_required",
    "review_handoff_required",
    "duplicate_proof",
    "pr_integrity",
    "close_gate",
    "invalid_transition",
    "terminal_status",
    "invalid_status",
    "concurrent_update",
]
PrecheckSeverity = Literal["error", "warning"]

_ALLOWED_MOVES: dict[TaskStatus, frozenset[TaskStatus]] = {
    "todo": frozenset({"doing"}),
    "doing": frozenset({"validating", "blocked"}),
    "validating": frozenset({"done", "blocked"}),
    "blocked": frozenset({"todo", "doing", "validating"}),
    "done": frozenset(),
}
_DEFAULT_ETA = "~4h"


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    gate: GateId | None = None
    error: str | None = None
    details: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class TransitionResponse:
    success: bool
    task: Task | None
    gate: GateId | None = None
    error: str | None = None
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        if self.success:
            return {
                "success": True,
                "task": self.task.to_dict() if self.task is not None else None,
            }
        out: dict[str, object] = {"success": False, "gate": self.gate, "error": self.error}
        if self.details:
            out["details"] = dict(self.details)
        return out


@dataclass(frozen=True)
class PrecheckItem:
    field: str
    severity: PrecheckSeverity
    message: str
    auto_default: str | None = None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "field": self.field,
            "severity": self.severity,
            "message": self.message,
        }
        if self.auto_default is not None:
            out["auto_default"] = self.auto_default
        return out


@dataclass(frozen=True)
class PrecheckResult:
    task_id: str
    current_status: TaskStatus
    target_status: str
    ready: bool
    items: tuple[PrecheckItem, ...]
    auto_defaults: Mapping[str, str]

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "current_status": self.current_status,
            "target_status": self.target_status,
            "ready": self.ready,
            "items": [item.to_dict() for item in self.items],
            "auto_defaults": dict(self.auto_defaults),
        }


@dataclass(frozen=True)
class _GateFailure:
    gate: GateId
    field: str
    message: str
    details: Mapping[str, object] = field(default_factory=dict)
    auto_default: str | None = None


def evaluate_transition(
    task: Task,
    requested_status: str,
    metadata_patch: Mapping[str, object] | None,
    *,
    integrity: IntegrityValidator,
) -> GateDecision:
    """Decide whether ``task`` may move to ``requested_status``.

    Gates run against the current metadata with ``metadata_patch`` merged on
    top. The first failing gate wins. Nothing is written here.
    """
    structural = _structural_failure(task, requested_status)
    if structural is not None:
        return _reject(structural)
    target = cast(TaskStatus, requested_status)
    merged = _merged_view(task, metadata_patch)
    if target == task.status:
        # Metadata-only patch; a validating task may not be relabelled as an unproven duplicate.
        duplicate = _duplicate_failure(task.id, merged) if target == "validating" else None
        if duplicate is not None:
            return _reject(duplicate)
        return GateDecision(approved=True)

    failures = _admission_failures(task.id, target, merged)
    if failures:
        return _reject(failures[0])

    if target == "done":
        integrity_failure = _integrity_failure(metadata_patch, merged, integrity)
        if integrity_failure is not None:
            return _reject(integrity_failure)
        close_failure = _close_gate_failure(merged)
        if close_failure is not None:
            return _reject(close_failure)
    return GateDecision(approved=True)


def precheck_transition(task: Task, target_status: str) -> PrecheckResult:
    """Report every unmet gate for ``target_status`` without touching the task.

    Live PR integrity is not consulted.
    """
    failures: list[_GateFailure] = []
    structural = _structural_failure(task, target_status)
    if structural is not None:
        failures.append(structural)
    elif target_status != task.status:
        target = cast(TaskStatus, target_status)
        failures.extend(_admission_failures(task.id, target, task.metadata))
        if target == "done":
            close_failure = _close_gate_failure(task.metadata)
            if close_failure is not None:
                failures.append(close_failure)

    items = tuple(
        PrecheckItem(
            field=failure.field,
            severity="error",
            message=failure.message,
            auto_default=failure.auto_default,
        )
        for failure in failures
    )
    auto_defaults = {
        failure.field: failure.auto_default
        for failure in failures
        if failure.auto_default is not None
    }
    return PrecheckResult(
        task_id=task.id,
        current_status=task.status,
        target_status=target_status,
        ready=not items,
        items=items,
        auto_defaults=auto_defaults,
    )


class TransitionService:
    def __init__(self, store: StateStore, integrity: IntegrityValidator) -> None:
        self._store = store
        self._integrity = integrity

    def request_transition(
        self,
        task_id: str,
        status: str,
        metadata_patch: Mapping[str, object] | None = None,
    ) -> TransitionResponse:
        task = self._store.require_task(task_id)
        decision = evaluate_transition(task, status, metadata_patch, integrity=self._integrity)
        if not decision.approved:
            log_event(
                LOGGER,
                "transition_rejected",
                task_id=task_id,
                from_status=task.status,
                to_status=status,
                gate=decision.gate,
                error=decision.error,
            )
            return TransitionResponse(
                success=False,
                task=None,
                gate=decision.gate,
                error=decision.error,
                details=decision.details,
            )

        next_status = cast(TaskStatus, status)
        try:
            updated = self._store.update_task(
                task_id,
                status=None if next_status == task.status else next_status,
                metadata=metadata_patch,
                expected_version=task.version,
            )
        except TaskConflictError as exc:
            log_event(
                LOGGER,
                "transition_rejected",
                task_id=task_id,
                from_status=task.status,
                to_status=status,
                gate="concurrent_update",
                error=str(exc),
            )
            return TransitionResponse(
                success=False,
                task=None,
                gate="concurrent_update",
                error=f"{exc}; re-read the task and retry",
            )

        log_event(
            LOGGER,
            "transition_applied",
            task_id=task_id,
            from_status=task.status,
            to_status=updated.status,
            version=updated.version,
        )
        return TransitionResponse(success=True, task=updated)


def _reject(failure: _GateFailure) -> GateDecision:
    return GateDecision(
        approved=False,
        gate=failure.gate,
        error=failure.message,
        details=failure.details,
    )


def _merged_view(task: Task, metadata_patch: Mapping[str, object] | None) -> TaskMetadata:
    if not metadata_patch:
        return task.metadata
    return TaskMetadata.from_dict(merge_metadata(task.metadata.to_dict(), metadata_patch))


def _structural_failure(task: Task, requested_status: str) -> _GateFailure | None:
    if requested_status not in TASK_STATUSES:
        return _GateFailure(
            gate="invalid_status",
            field="status",
            message=(
                f"Unknown status {requested_status!r}; expected one of "
                f"{', '.join(TASK_STATUSES)}"
            ),
        )
    if task.status == "done":
        return _GateFailure(
            gate="terminal_status",
            field="status",
            message=f"Task {task.id} is done; done is terminal",
        )
    if requested_status == task.status:
        return None
    if requested_status not in _ALLOWED_MOVES[task.status]:
        allowed = sorted(_ALLOWED_MOVES[task.status])
        return _GateFailure(
            gate="invalid_transition",
            field="status",
            message=f"Cannot move {task.status} -> {requested_status}",
            details={"allowed": allowed},
        )
    return None


def _admission_failures(
    task_id: str, target: TaskStatus, metadata: TaskMetadata
) -> list[_GateFailure]:
    failures: list[_GateFailure] = []
    if target == "doing" and not _present(metadata.eta):
        failures.append(
            _GateFailure(
                gate="eta_required",
                field="metadata.eta",
                message="metadata.eta is required to start work",
                auto_default=_DEFAULT_ETA,
            )
        )

    if target == "validating":
        if not _present(metadata.artifact_path):
            failures.append(
                _GateFailure(
                    gate="artifact_path_required",
                    field="metadata.artifact_path",
                    message="metadata.artifact_path is required for validating",
                    auto_default=f"process/TASK-{task_id.split('-')[-1]}.md",
                )
            )
        missing = _missing_handoff_fields(metadata)
        if missing:
            failures.append(
                _GateFailure(
                    gate="review_handoff_required",
                    field="metadata.review_handoff",
                    message=(
                        "metadata.review_handoff is incomplete; missing "
                        f"{', '.join(missing)}"
                    ),
                    details={"missing": list(missing)},
                )
            )

    if target in ("validating", "done"):
        duplicate = _duplicate_failure(task_id, metadata)
        if duplicate is not None:
            failures.append(duplicate)
    return failures


def _duplicate_failure(task_id: str, metadata: TaskMetadata) -> _GateFailure | None:
    duplicate_error = duplicate_closure_error(task_id, metadata)
    if duplicate_error is None:
        return None
    return _GateFailure(
        gate="duplicate_proof",
        field="metadata.duplicate_proof",
        message=duplicate_error,
    )


def _missing_handoff_fields(metadata: TaskMetadata) -> tuple[str, ...]:
    handoff = metadata.review_handoff
    if handoff is None:
        return ("artifact_path", "test_proof", "known_caveats")
    present = {
        "artifact_path": _present(handoff.artifact_path),
        "test_proof": _present(handoff.test_proof),
        "known_caveats": _present(handoff.known_caveats),
    }
    return tuple(name for name, ok in present.items() if not ok)


def _integrity_failure(
    metadata_patch: Mapping[str, object] | None,
    merged: TaskMetadata,
    integrity: IntegrityValidator,
) -> _GateFailure | None:
    pr_url = _patched_handoff_pr_url(metadata_patch)
    if pr_url is None:
        return None
    handoff = merged.review_handoff
    packet_commit = (handoff.commit_sha if handoff is not None else None) or merged.commit_sha
    packet_files = (handoff.changed_files if handoff is not None else None) or ()
    result = integrity.validate(
        pr_url=pr_url,
        packet_commit=packet_commit or "",
        packet_changed_files=packet_files,
    )
    outcome = result.outcome
    if isinstance(outcome, IntegrityRejected):
        return _GateFailure(
            gate="pr_integrity",
            field="metadata.review_handoff",
            message="Review packet does not match the live pull request",
            details={"errors": [error.to_dict() for error in outcome.errors]},
        )
    if isinstance(outcome, IntegritySkipped):
        log_event(LOGGER, "integrity_check_skipped", pr_url=pr_url, reason=outcome.reason)
    return None


def _patched_handoff_pr_url(metadata_patch: Mapping[str, object] | None) -> str | None:
    if not metadata_patch:
        return None
    handoff = metadata_patch.get("review_handoff")
    if not isinstance(handoff, Mapping):
        return None
    pr_url = cast(Mapping[str, object], handoff).get("pr_url")
    if isinstance(pr_url, str) and pr_url.strip():
        return pr_url.strip()
    return None


def _close_gate_failure(metadata: TaskMetadata) -> _GateFailure | None:
    failed_gates: list[str] = []
    if metadata.pr_merged is not True:
        failed_gates.append("pr_merged")
    if metadata.reviewer_approved is not True:
        failed_gates.append("reviewer_approved")
    if not failed_gates:
        return None
    return _GateFailure(
        gate="close_gate",
        field="metadata." + failed_gates[0],
        message=f"Close gates not met: {', '.join(failed_gates)}",
        details={"failed_gates": failed_gates},
    )


def _present(value: str | None) -> bool:
    return value is not None and bool(value.strip())
