from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import threading
import time
from typing import cast

from mergegate.github_gateway import GitHubGateway, GitHubGatewayError
from mergegate.models import ChecksStatus, MergeabilityVerdict, PrState, PullRequestStatus
from mergegate.observability import log_event
from mergegate.pr_url import parse_pr_url


LOGGER = logging.getLogger("mergegate.mergeability")
_FAILING_CONCLUSIONS = frozenset(
    {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"}
)
_GREEN_CONCLUSIONS = frozenset({"SUCCESS", "NEUTRAL", "SKIPPED"})
_KNOWN_PR_STATES = frozenset({"OPEN", "MERGED", "CLOSED"})


@dataclass(frozen=True)
class _CacheEntry:
    verdict: MergeabilityVerdict
    cached_at: float


class MergeabilityChecker:
    """Derives a merge verdict from live PR state, caching per PR URL for a short TTL."""

    def __init__(
        self,
        github: GitHubGateway,
        *,
        cache_ttl_seconds: float = 180,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._github = github
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def check(self, pr_url: str) -> MergeabilityVerdict:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(pr_url)
        if cached is not None and now - cached.cached_at < self._cache_ttl_seconds:
            return cached.verdict

        ref = parse_pr_url(pr_url)
        if ref is None:
            return MergeabilityVerdict(
                mergeable=False,
                state="UNKNOWN",
                review_decision="UNKNOWN",
                checks_status="pending",
                failing_checks=(),
                reason="invalid PR URL format",
            )

        try:
            status = self._github.get_pull_request_status(ref)
        except GitHubGatewayError as exc:
            verdict = MergeabilityVerdict(
                mergeable=False,
                state="UNKNOWN",
                review_decision="UNKNOWN",
                checks_status="pending",
                failing_checks=(),
                reason=f"gh CLI error: {exc}",
            )
        else:
            verdict = derive_verdict(status)

        with self._lock:
            self._cache[pr_url] = _CacheEntry(verdict=verdict, cached_at=now)
        log_event(
            LOGGER,
            "mergeability_checked",
            pr_url=pr_url,
            mergeable=verdict.mergeable,
            state=verdict.state,
            checks_status=verdict.checks_status,
            reason=verdict.reason,
        )
        return verdict

    def invalidate(self, pr_url: str) -> None:
        with self._lock:
            self._cache.pop(pr_url, None)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


def derive_verdict(status: PullRequestStatus) -> MergeabilityVerdict:
    state = cast(PrState, status.state if status.state in _KNOWN_PR_STATES else "UNKNOWN")
    review_decision = status.review_decision or "UNKNOWN"

    failing_checks: list[str] = []
    has_pending = False
    for check in status.checks:
        if check.conclusion in _FAILING_CONCLUSIONS:
            failing_checks.append(check.name)
        elif check.conclusion not in _GREEN_CONCLUSIONS:
            has_pending = True

    checks_status: ChecksStatus
    if failing_checks:
        checks_status = "failing"
    elif has_pending:
        checks_status = "pending"
    else:
        checks_status = "passing"

    mergeable = False
    if state != "OPEN":
        reason = f"PR is {state} (not open)"
    elif review_decision != "APPROVED":
        reason = f"Review decision: {review_decision} (need APPROVED)"
    elif checks_status == "failing":
        reason = f"Failing checks: {', '.join(failing_checks)}"
    elif checks_status == "pending":
        reason = "Checks still pending"
    else:
        mergeable = True
        reason = "PR is green and approved"

    return MergeabilityVerdict(
        mergeable=mergeable,
        state=state,
        review_decision=review_decision,
        checks_status=checks_status,
        failing_checks=tuple(failing_checks),
        reason=reason,
    )
