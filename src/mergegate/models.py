from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal, cast


TaskStatus = Literal["todo", "doing", "blocked", "validating", "done"]
PrState = Literal["OPEN", "MERGED", "CLOSED", "UNKNOWN"]
ChecksStatus = Literal["passing", "failing", "pending"]
MergeLogAction = Literal["merge_attempted", "merge_succeeded", "merge_skipped", "auto_closed"]
IntegrityField = Literal["pr_url", "commit", "changed_files"]
MergeMethod = Literal["squash", "merge", "rebase"]

TASK_STATUSES: tuple[TaskStatus, ...] = ("todo", "doing", "blocked", "validating", "done")


@dataclass(frozen=True)
class ReviewHandoff:
    artifact_path: str | None = None
    test_proof: str | None = None
    known_caveats: str | None = None
    pr_url: str | None = None
    commit_sha: str | None = None
    changed_files: tuple[str, ...] | None = None
    doc_only: bool = False
    config_only: bool = False
    extra: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> ReviewHandoff:
        extra: dict[str, object] = {}
        return cls(
            artifact_path=_take_str(raw, "artifact_path", extra),
            test_proof=_take_str(raw, "test_proof", extra),
            known_caveats=_take_str(raw, "known_caveats", extra),
            pr_url=_take_str(raw, "pr_url", extra),
            commit_sha=_take_str(raw, "commit_sha", extra),
            changed_files=_take_str_tuple(raw, "changed_files", extra),
            doc_only=_take_bool(raw, "doc_only", extra) is True,
            config_only=_take_bool(raw, "config_only", extra) is True,
            extra=_residual(raw, _HANDOFF_KEYS, extra),
        )

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = dict(self.extra)
        _put(out, "artifact_path", self.artifact_path)
        _put(out, "test_proof", self.test_proof)
        _put(out, "known_caveats", self.known_caveats)
        _put(out, "pr_url", self.pr_url)
        _put(out, "commit_sha", self.commit_sha)
        if self.changed_files is not None:
            out["changed_files"] = list(self.changed_files)
        if self.doc_only:
            out["doc_only"] = True
        if self.config_only:
            out["config_only"] = True
        return out


@dataclass(frozen=True)
class TaskMetadata:
    """Typed view over a task's open metadata map.

    Gate-relevant keys get typed fields. Everything else, and any known key whose
    value has an unexpected type, is kept verbatim in ``extra`` so that
    ``from_dict(raw).to_dict()`` never drops data written by upstream producers.
    """

    eta: str | None = None
    artifact_path: str | None = None
    review_handoff: ReviewHandoff | None = None
    pr_url: str | None = None
    pr_merged: bool | None = None
    reviewer_approved: bool | None = None
    duplicate_of: str | None = None
    duplicate_proof: str | None = None
    auto_close_reason: str | None = None
    artifacts: tuple[str, ...] | None = None
    commit_sha: str | None = None
    extra: Mapping[str, object] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, object] | None) -> TaskMetadata:
        if raw is None:
            return cls()
        extra: dict[str, object] = {}
        handoff_raw = raw.get("review_handoff")
        review_handoff: ReviewHandoff | None = None
        if isinstance(handoff_raw, Mapping):
            review_handoff = ReviewHandoff.from_dict(cast(Mapping[str, object], handoff_raw))
        elif handoff_raw is not None:
            extra["review_handoff"] = handoff_raw
        return cls(
            eta=_take_str(raw, "eta", extra),
            artifact_path=_take_str(raw, "artifact_path", extra),
            review_handoff=review_handoff,
            pr_url=_take_str(raw, "pr_url", extra),
            pr_merged=_take_bool(raw, "pr_merged", extra),
            reviewer_approved=_take_bool(raw, "reviewer_approved", extra),
            duplicate_of=_take_str(raw, "duplicate_of", extra),
            duplicate_proof=_take_str(raw, "duplicate_proof", extra),
            auto_close_reason=_take_str(raw, "auto_close_reason", extra),
            artifacts=_take_str_tuple(raw, "artifacts", extra),
            commit_sha=_take_str(raw, "commit_sha", extra),
            extra=_residual(raw, _METADATA_KEYS, extra),
        )

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = dict(self.extra)
        _put(out, "eta", self.eta)
        _put(out, "artifact_path", self.artifact_path)
        if self.review_handoff is not None:
            out["review_handoff"] = self.review_handoff.to_dict()
        _put(out, "pr_url", self.pr_url)
        _put(out, "pr_merged", self.pr_merged)
        _put(out, "reviewer_approved", self.reviewer_approved)
        _put(out, "duplicate_of", self.duplicate_of)
        _put(out, "duplicate_proof", self.duplicate_proof)
        _put(out, "auto_close_reason", self.auto_close_reason)
        if self.artifacts is not None:
            out["artifacts"] = list(self.artifacts)
        _put(out, "commit_sha", self.commit_sha)
        return out

    @property
    def close_gates_satisfied(self) -> bool:
        return self.pr_merged is True and self.reviewer_approved is True


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    status: TaskStatus
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    assignee: str | None = None
    reviewer: str | None = None
    version: int = 1
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "assignee": self.assignee,
            "reviewer": self.reviewer,
            "metadata": self.metadata.to_dict(),
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class StatusCheck:
    name: str
    conclusion: str


@dataclass(frozen=True)
class PullRequestStatus:
    state: str
    review_decision: str
    checks: tuple[StatusCheck, ...]


@dataclass(frozen=True)
class IntegrityError:
    field: IntegrityField
    message: str
    expected: str | None = None
    actual: str | None = None
    extra_files: tuple[str, ...] = ()
    missing_files: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"field": self.field, "message": self.message}
        _put(out, "expected", self.expected)
        _put(out, "actual", self.actual)
        if self.extra_files:
            out["extra_files"] = list(self.extra_files)
        if self.missing_files:
            out["missing_files"] = list(self.missing_files)
        return out


@dataclass(frozen=True)
class IntegrityApproved:
    live_head_sha: str
    live_changed_files: tuple[str, ...]


@dataclass(frozen=True)
class IntegritySkipped:
    reason: str


@dataclass(frozen=True)
class IntegrityRejected:
    errors: tuple[IntegrityError, ...]


IntegrityOutcome = IntegrityApproved | IntegritySkipped | IntegrityRejected


@dataclass(frozen=True)
class PrIntegrityResult:
    valid: bool
    live_head_sha: str | None
    live_changed_files: tuple[str, ...] | None
    errors: tuple[IntegrityError, ...]
    skipped: bool
    skip_reason: str | None = None

    @property
    def outcome(self) -> IntegrityOutcome:
        if self.errors:
            return IntegrityRejected(errors=self.errors)
        if self.skipped:
            return IntegritySkipped(reason=self.skip_reason or "skipped")
        return IntegrityApproved(
            live_head_sha=self.live_head_sha or "",
            live_changed_files=self.live_changed_files or (),
        )

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "valid": self.valid,
            "live_head_sha": self.live_head_sha,
            "live_changed_files": (
                list(self.live_changed_files) if self.live_changed_files is not None else None
            ),
            "errors": [error.to_dict() for error in self.errors],
            "skipped": self.skipped,
        }
        _put(out, "skip_reason", self.skip_reason)
        return out


@dataclass(frozen=True)
class MergeabilityVerdict:
    mergeable: bool
    state: PrState
    review_decision: str
    checks_status: ChecksStatus
    failing_checks: tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class MergeAttemptResult:
    success: bool
    error: str | None
    merge_commit_sha: str | None


@dataclass(frozen=True)
class CloseGateResult:
    populated: bool
    fields: tuple[str, ...]
    error: str | None


@dataclass(frozen=True)
class AutoCloseResult:
    closed: bool
    reason: str
    failed_gates: tuple[str, ...]


@dataclass(frozen=True)
class MergeLogEntry:
    task_id: str
    pr_url: str
    action: MergeLogAction
    detail: str
    timestamp: str

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "pr_url": self.pr_url,
            "action": self.action,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class SweepResult:
    merge_attempts: int
    merge_successes: int
    auto_closes: int
    skipped: int
    tasks_scanned: int
    entries: tuple[MergeLogEntry, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "merge_attempts": self.merge_attempts,
            "merge_successes": self.merge_successes,
            "auto_closes": self.auto_closes,
            "skipped": self.skipped,
            "tasks_scanned": self.tasks_scanned,
            "entries": [entry.to_dict() for entry in self.entries],
        }


_HANDOFF_KEYS = frozenset(
    {
        "artifact_path",
        "test_proof",
        "known_caveats",
        "pr_url",
        "commit_sha",
        "changed_files",
        "doc_only",
        "config_only",
    }
)
_METADATA_KEYS = frozenset(
    {
        "eta",
        "artifact_path",
        "review_handoff",
        "pr_url",
        "pr_merged",
        "reviewer_approved",
        "duplicate_of",
        "duplicate_proof",
        "auto_close_reason",
        "artifacts",
        "commit_sha",
    }
)


def _take_str(raw: Mapping[str, object], key: str, extra: dict[str, object]) -> str | None:
    value = raw.get(key)
    if value is None or isinstance(value, str):
        return value
    extra[key] = value
    return None


def _take_bool(raw: Mapping[str, object], key: str, extra: dict[str, object]) -> bool | None:
    value = raw.get(key)
    if value is None or isinstance(value, bool):
        return value
    extra[key] = value
    return None


def _take_str_tuple(
    raw: Mapping[str, object], key: str, extra: dict[str, object]
) -> tuple[str, ...] | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, list | tuple) and all(isinstance(item, str) for item in value):
        return tuple(cast(list[str], list(value)))
    extra[key] = value
    return None


def _residual(
    raw: Mapping[str, object], known: frozenset[str], extra: dict[str, object]
) -> dict[str, object]:
    out = {key: value for key, value in raw.items() if key not in known}
    out.update(extra)
    return out


def _put(out: dict[str, object], key: str, value: object) -> None:
    if value is not None:
        out[key] = value
