from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from mergegate.config import DriftConfig
from mergegate.models import Task
from mergegate.pr_url import extract_task_pr_url, parse_pr_url


DriftIssue = Literal["stale_validating", "pr_merged_not_closed", "orphan_pr", "no_pr_linked", "clean"]

NO_REMEDIATION = "No automated remediation available"


def generate_remediation(task_id: str, issue: str, pr_url: str | None = None) -> str:
    """Render operator-facing fix instructions for a drift issue code."""
    if issue == "stale_validating":
        where = f" at {pr_url}" if pr_url else ""
        return (
            "Reviewer needs to act. Remediation:\n"
            f"  1. Review the PR{where}\n"
            f'  2. Then: PATCH /tasks/{task_id} {{ "metadata": {{ "reviewer_approved": true }} }}'
        )
    if issue == "pr_merged_not_closed":
        return (
            "PR merged but task still validating. Remediation:\n"
            f'  PATCH /tasks/{task_id} {{ "status": "done", '
            '"metadata": { "reviewer_approved": true } }\n'
            f'  Or if not ready: PATCH /tasks/{task_id} '
            '{ "metadata": { "reviewer_approved": true } } (auto-close will handle the rest)'
        )
    if issue == "orphan_pr":
        ref = parse_pr_url(pr_url) if pr_url else None
        if ref is None:
            return "PR may still be open after task completion. Remediation:\n  Close or merge the PR manually"
        return (
            "PR may still be open after task completion. Remediation:\n"
            f"  gh pr merge {ref.number} --repo {ref.repo} --squash\n"
            f"  Or: gh pr close {ref.number} --repo {ref.repo}"
        )
    if issue == "no_pr_linked":
        return (
            "No PR URL in task metadata. Remediation:\n"
            f'  PATCH /tasks/{task_id} {{ "metadata": '
            '{ "pr_url": "https://github.com/OWNER/REPO/pull/NUM" } }'
        )
    return NO_REMEDIATION


@dataclass(frozen=True)
class DriftReportEntry:
    task_id: str
    title: str
    status: str
    assignee: str | None
    reviewer: str | None
    age_minutes: int
    pr_url: str | None
    pr_merged: bool
    issue: DriftIssue
    detail: str
    remediation: str | None
    critical: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status,
            "assignee": self.assignee,
            "reviewer": self.reviewer,
            "age_minutes": self.age_minutes,
            "pr_url": self.pr_url,
            "pr_merged": self.pr_merged,
            "issue": self.issue,
            "detail": self.detail,
            "remediation": self.remediation,
            "critical": self.critical,
        }


@dataclass(frozen=True)
class DriftReport:
    generated_at: str
    validating: tuple[DriftReportEntry, ...]
    orphan_prs: tuple[DriftReportEntry, ...]

    @property
    def summary(self) -> dict[str, int]:
        issues = [entry.issue for entry in self.validating]
        return {
            "total_validating": len(self.validating),
            "stale_validating": issues.count("stale_validating") + issues.count("no_pr_linked"),
            "pr_drift": issues.count("pr_merged_not_closed"),
            "orphan_prs": len(self.orphan_prs),
            "clean": issues.count("clean"),
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "generated_at": self.generated_at,
            "validating": [entry.to_dict() for entry in self.validating],
            "orphan_prs": [entry.to_dict() for entry in self.orphan_prs],
            "summary": self.summary,
        }


def generate_drift_report(
    tasks: Sequence[Task], *, now: datetime, config: DriftConfig
) -> DriftReport:
    """Classify validating tasks and find PRs left behind by finished tasks.

    Reads metadata only; no task is modified and GitHub is not contacted.
    """
    validating = tuple(
        _classify_validating(task, now=now, config=config)
        for task in tasks
        if task.status == "validating"
    )
    return DriftReport(
        generated_at=now.astimezone(timezone.utc).isoformat(),
        validating=validating,
        orphan_prs=_find_orphan_prs(tasks, now=now),
    )


def _classify_validating(task: Task, *, now: datetime, config: DriftConfig) -> DriftReportEntry:
    meta = task.metadata
    entered_at = _parse_instant(meta.extra.get("entered_validating_at")) or _parse_instant(
        task.updated_at
    )
    last_activity = _parse_instant(meta.extra.get("review_last_activity_at")) or entered_at
    age_minutes = _minutes_between(last_activity, now)
    pr_url = extract_task_pr_url(meta)
    pr_merged = meta.pr_merged is True

    issue: DriftIssue = "clean"
    detail = "On track"
    critical = False
    if pr_merged:
        issue = "pr_merged_not_closed"
        detail = f"PR merged but task still validating ({age_minutes}m since last activity)"
    elif pr_url is None:
        issue = "no_pr_linked"
        detail = "No PR URL found in task metadata; cannot verify PR state"
    elif age_minutes >= config.validating_critical_minutes:
        issue = "stale_validating"
        critical = True
        detail = (
            f"{age_minutes}m without reviewer activity "
            f"(CRITICAL threshold: {config.validating_critical_minutes}m)"
        )
    elif age_minutes >= config.validating_sla_minutes:
        issue = "stale_validating"
        detail = (
            f"{age_minutes}m without reviewer activity "
            f"(SLA threshold: {config.validating_sla_minutes}m)"
        )

    return DriftReportEntry(
        task_id=task.id,
        title=task.title,
        status=task.status,
        assignee=task.assignee,
        reviewer=task.reviewer,
        age_minutes=age_minutes,
        pr_url=pr_url,
        pr_merged=pr_merged,
        issue=issue,
        detail=detail,
        remediation=None if issue == "clean" else generate_remediation(task.id, issue, pr_url),
        critical=critical,
    )


def _find_orphan_prs(tasks: Sequence[Task], *, now: datetime) -> tuple[DriftReportEntry, ...]:
    by_pr_url: dict[str, list[Task]] = {}
    for task in tasks:
        pr_url = extract_task_pr_url(task.metadata)
        if pr_url is not None:
            by_pr_url.setdefault(pr_url, []).append(task)

    orphans: list[DriftReportEntry] = []
    for pr_url, linked in by_pr_url.items():
        if any(task.status != "done" for task in linked):
            continue
        if any(task.metadata.pr_merged is True for task in linked):
            continue
        first = linked[0]
        orphans.append(
            DriftReportEntry(
                task_id=first.id,
                title=first.title,
                status=first.status,
                assignee=first.assignee,
                reviewer=first.reviewer,
                age_minutes=_minutes_between(_parse_instant(first.updated_at), now),
                pr_url=pr_url,
                pr_merged=False,
                issue="orphan_pr",
                detail=(
                    f"PR linked to {len(linked)} done task(s) but not marked as merged. "
                    "May still be open."
                ),
                remediation=generate_remediation(first.id, "orphan_pr", pr_url),
            )
        )
    return tuple(orphans)


def _parse_instant(value: object) -> datetime | None:
    """Accept ISO-8601 strings and epoch milliseconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _minutes_between(start: datetime | None, end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() // 60))
