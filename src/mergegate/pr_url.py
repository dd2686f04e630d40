from __future__ import annotations

from dataclasses import dataclass
import re

from mergegate.models import TaskMetadata


_PR_URL_RE = re.compile(
    r"^https?://(?:www\.)?github\.com/"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<name>[A-Za-z0-9_.-]+)"
    r"/pull/(?P<number>\d+)"
    r"(?:[/?#].*)?$"
)


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    name: str
    number: int

    @property
    def repo(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.repo}/pull/{self.number}"


def parse_pr_url(url: str) -> PullRequestRef | None:
    match = _PR_URL_RE.match(url.strip())
    if match is None:
        return None
    number = int(match.group("number"))
    if number <= 0:
        return None
    return PullRequestRef(
        owner=match.group("owner"),
        name=match.group("name"),
        number=number,
    )


def extract_task_pr_url(metadata: TaskMetadata) -> str | None:
    """Return the first usable PR URL recorded on a task, or None.

    Looks at ``pr_url``, then ``review_handoff.pr_url``, then any GitHub pull
    request link in ``artifacts``. Doc-only and config-only handoffs never
    carry a PR.
    """
    handoff = metadata.review_handoff
    if handoff is not None and (handoff.doc_only or handoff.config_only):
        return None

    candidates: list[str] = []
    if metadata.pr_url:
        candidates.append(metadata.pr_url)
    if handoff is not None and handoff.pr_url:
        candidates.append(handoff.pr_url)
    candidates.extend(
        artifact
        for artifact in metadata.artifacts or ()
        if "github.com" in artifact and "/pull/" in artifact
    )

    for candidate in candidates:
        if parse_pr_url(candidate) is not None:
            return candidate
    return None
