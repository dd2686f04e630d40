from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging

from mergegate.github_gateway import GitHubGateway, GitHubGatewayError
from mergegate.models import IntegrityError, PrIntegrityResult
from mergegate.observability import log_event
from mergegate.pr_url import parse_pr_url


LOGGER = logging.getLogger("mergegate.integrity")


@dataclass(frozen=True)
class IntegrityValidator:
    """Checks a review packet against the live pull request.

    Only genuine divergence fails validation. When the live state cannot be
    read (gh missing, auth, network, rate limit) the result is a soft pass with
    ``skipped=True``, never a verified pass and never a mismatch.
    """

    github: GitHubGateway
    skip_live_checks: bool = False

    def validate(
        self,
        *,
        pr_url: str,
        packet_commit: str,
        packet_changed_files: Sequence[str],
    ) -> PrIntegrityResult:
        ref = parse_pr_url(pr_url)
        if ref is None:
            log_event(LOGGER, "integrity_check_failed", pr_url=pr_url, reason="invalid_pr_url")
            return PrIntegrityResult(
                valid=False,
                live_head_sha=None,
                live_changed_files=None,
                errors=(IntegrityError(field="pr_url", message=f"Invalid PR URL: {pr_url}"),),
                skipped=False,
            )

        if self.skip_live_checks:
            return _skipped("Live PR checks disabled (integrity.skip_live_checks)")

        if not self.github.is_available():
            return _skipped("gh CLI not available")

        try:
            live_head_sha = self.github.get_head_sha(ref)
            live_changed_files = self.github.list_changed_files(ref)
        except GitHubGatewayError as exc:
            log_event(
                LOGGER,
                "integrity_check_skipped",
                pr_url=pr_url,
                error=str(exc),
            )
            return _skipped(f"Failed to fetch PR #{ref.number} from {ref.repo}: {exc}")

        errors: list[IntegrityError] = []
        commit_error = compare_commit(packet_commit, live_head_sha)
        if commit_error is not None:
            errors.append(commit_error)
        files_error = compare_changed_files(packet_changed_files, live_changed_files)
        if files_error is not None:
            errors.append(files_error)

        if errors:
            log_event(
                LOGGER,
                "integrity_check_failed",
                pr_url=pr_url,
                fields=[error.field for error in errors],
            )
        else:
            log_event(LOGGER, "integrity_check_passed", pr_url=pr_url)
        return PrIntegrityResult(
            valid=not errors,
            live_head_sha=live_head_sha,
            live_changed_files=live_changed_files,
            errors=tuple(errors),
            skipped=False,
        )


def compare_commit(packet_commit: str, live_head_sha: str) -> IntegrityError | None:
    """Compare SHAs on their shared prefix so abbreviated hashes match."""
    packet = packet_commit.strip().lower()
    live = live_head_sha.strip().lower()
    shared = min(len(packet), len(live))
    if shared > 0 and packet[:shared] == live[:shared]:
        return None
    return IntegrityError(
        field="commit",
        message=(
            f"Review packet commit ({packet_commit}) does not match live PR head "
            f"({live_head_sha[:12]})"
        ),
        expected=live_head_sha,
        actual=packet_commit,
    )


def compare_changed_files(
    packet_changed_files: Sequence[str], live_changed_files: Sequence[str]
) -> IntegrityError | None:
    packet = _ordered_unique(packet_changed_files)
    live = _ordered_unique(live_changed_files)
    live_set = set(live)
    packet_set = set(packet)
    extra_files = tuple(path for path in packet if path not in live_set)
    missing_files = tuple(path for path in live if path not in packet_set)
    if not extra_files and not missing_files:
        return None
    return IntegrityError(
        field="changed_files",
        message=(
            "Review packet changed_files do not match live PR "
            f"({len(extra_files)} extra, {len(missing_files)} missing)"
        ),
        extra_files=extra_files,
        missing_files=missing_files,
    )


def _ordered_unique(paths: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(path.strip() for path in paths if path.strip()))


def _skipped(reason: str) -> PrIntegrityResult:
    return PrIntegrityResult(
        valid=True,
        live_head_sha=None,
        live_changed_files=None,
        errors=(),
        skipped=True,
        skip_reason=reason,
    )
