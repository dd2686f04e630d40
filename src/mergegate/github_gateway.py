from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import cast

from mergegate.models import MergeMethod, PullRequestStatus, StatusCheck
from mergegate.observability import log_event
from mergegate.pr_url import PullRequestRef
from mergegate.shell import CommandError, run


LOGGER = logging.getLogger("mergegate.github_gateway")
_AVAILABILITY_TIMEOUT_SECONDS = 5
_MIN_SHA_LENGTH = 7


class GitHubGatewayError(RuntimeError):
    """A gh invocation failed; callers degrade to skip-and-log."""


@dataclass(frozen=True)
class GitHubGateway:
    command_timeout_seconds: float = 15
    merge_timeout_seconds: float = 30

    def is_available(self) -> bool:
        try:
            run(["gh", "--version"], timeout_seconds=_AVAILABILITY_TIMEOUT_SECONDS)
        except CommandError as exc:
            log_event(LOGGER, "github_cli_unavailable", error=_command_error_text(exc))
            return False
        return True

    def get_pull_request_status(self, ref: PullRequestRef) -> PullRequestStatus:
        payload = self._pr_view_json(ref, "state,reviewDecision,statusCheckRollup")
        checks: list[StatusCheck] = []
        rollup = payload.get("statusCheckRollup")
        if isinstance(rollup, list):
            for item in rollup:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                name = (
                    _as_string(item_obj.get("name"))
                    or _as_string(item_obj.get("context"))
                    or "unknown check"
                )
                conclusion = (
                    _as_string(item_obj.get("conclusion"))
                    or _as_string(item_obj.get("state"))
                    or _as_string(item_obj.get("status"))
                )
                checks.append(StatusCheck(name=name, conclusion=conclusion.strip().upper()))
        status = PullRequestStatus(
            state=(_as_string(payload.get("state")) or "UNKNOWN").strip().upper(),
            review_decision=(_as_string(payload.get("reviewDecision")) or "UNKNOWN")
            .strip()
            .upper(),
            checks=tuple(checks),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pr_status",
            repo=ref.repo,
            pr_number=ref.number,
            state=status.state,
            review_decision=status.review_decision,
            check_count=len(status.checks),
        )
        return status

    def get_head_sha(self, ref: PullRequestRef) -> str:
        payload = self._pr_view_json(ref, "headRefOid")
        head_sha = _as_string(payload.get("headRefOid")).strip()
        if not head_sha:
            raise GitHubGatewayError(f"No head commit reported for {ref.html_url}")
        log_event(LOGGER, "github_read", endpoint="pr_head", repo=ref.repo, pr_number=ref.number)
        return head_sha

    def list_changed_files(self, ref: PullRequestRef) -> tuple[str, ...]:
        payload = self._pr_view_json(ref, "files")
        files_payload = payload.get("files")
        if not isinstance(files_payload, list):
            raise GitHubGatewayError("Unexpected gh response: expected files list")
        files: list[str] = []
        for item in files_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            path = item_obj.get("path")
            if isinstance(path, str) and path:
                files.append(path)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pr_files",
            repo=ref.repo,
            pr_number=ref.number,
            count=len(files),
        )
        return tuple(files)

    def get_merge_commit_sha(self, ref: PullRequestRef) -> str | None:
        payload = self._pr_view_json(ref, "mergeCommit")
        merge_commit = _as_object_dict(payload.get("mergeCommit"))
        if merge_commit is None:
            return None
        oid = _as_string(merge_commit.get("oid")).strip()
        if len(oid) < _MIN_SHA_LENGTH:
            return None
        return oid

    def merge_pull_request(self, ref: PullRequestRef, *, method: MergeMethod) -> None:
        cmd = ["gh", "pr", "merge", str(ref.number), "--repo", ref.repo, f"--{method}"]
        try:
            run(cmd, timeout_seconds=self.merge_timeout_seconds)
        except CommandError as exc:
            error_text = _command_error_text(exc)
            if "already merged" in error_text.lower():
                log_event(
                    LOGGER,
                    "github_pr_already_merged",
                    repo=ref.repo,
                    pr_number=ref.number,
                )
                return
            log_event(
                LOGGER,
                "github_pr_merge_failed",
                repo=ref.repo,
                pr_number=ref.number,
                error=error_text,
            )
            raise GitHubGatewayError(error_text) from exc
        log_event(LOGGER, "github_pr_merged", repo=ref.repo, pr_number=ref.number, method=method)

    def _pr_view_json(self, ref: PullRequestRef, fields: str) -> dict[str, object]:
        cmd = ["gh", "pr", "view", str(ref.number), "--repo", ref.repo, "--json", fields]
        try:
            raw = run(cmd, timeout_seconds=self.command_timeout_seconds)
        except CommandError as exc:
            log_event(
                LOGGER,
                "github_read_failed",
                repo=ref.repo,
                pr_number=ref.number,
                fields=fields,
                error_type=type(exc).__name__,
                error=_command_error_text(exc),
            )
            raise GitHubGatewayError(_command_error_text(exc)) from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubGatewayError(
                f"Unexpected gh response for {ref.html_url}: {_preview_for_log(raw)}"
            ) from exc
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubGatewayError("Unexpected gh response: expected object for pull request")
        return payload_obj


def _command_error_text(exc: CommandError) -> str:
    stderr = exc.stderr.strip()
    if stderr:
        return stderr
    return str(exc).strip() or type(exc).__name__


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)
