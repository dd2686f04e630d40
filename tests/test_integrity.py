from __future__ import annotations

from dataclasses import dataclass, field

from hypothesis import given, strategies as st

from mergegate.github_gateway import GitHubGatewayError
from mergegate.integrity import IntegrityValidator, compare_changed_files, compare_commit
from mergegate.models import IntegrityApproved, IntegrityRejected, IntegritySkipped
from mergegate.pr_url import PullRequestRef


PR_URL = "https://github.com/acme/app/pull/7"
LIVE_SHA = "abc1234def5678900000000000000000000000aa"


@dataclass
class FakeGitHub:
    available: bool = True
    head_sha: str = LIVE_SHA
    changed_files: tuple[str, ...] = ("a.ts", "b.ts")
    fail_with: str | None = None
    calls: list[str] = field(default_factory=list)

    def is_available(self) -> bool:
        self.calls.append("is_available")
        return self.available

    def get_head_sha(self, ref: PullRequestRef) -> str:
        self.calls.append(f"head:{ref.number}")
        if self.fail_with is not None:
            raise GitHubGatewayError(self.fail_with)
        return self.head_sha

    def list_changed_files(self, ref: PullRequestRef) -> tuple[str, ...]:
        self.calls.append(f"files:{ref.number}")
        return self.changed_files


def _validator(github: FakeGitHub, *, skip_live_checks: bool = False) -> IntegrityValidator:
    return IntegrityValidator(github=github, skip_live_checks=skip_live_checks)


def test_validate_passes_on_abbreviated_sha_and_reordered_files() -> None:
    github = FakeGitHub()

    result = _validator(github).validate(
        pr_url=PR_URL,
        packet_commit="abc1234",
        packet_changed_files=["b.ts", "a.ts", "a.ts"],
    )

    assert result.valid is True
    assert result.skipped is False
    assert result.live_head_sha == LIVE_SHA
    assert isinstance(result.outcome, IntegrityApproved)
    assert github.calls == ["is_available", "head:7", "files:7"]


def test_validate_reports_commit_and_file_mismatches() -> None:
    github = FakeGitHub(changed_files=("a.ts", "c.ts"))

    result = _validator(github).validate(
        pr_url=PR_URL,
        packet_commit="fff0000",
        packet_changed_files=["a.ts", "b.ts"],
    )

    assert result.valid is False
    assert [error.field for error in result.errors] == ["commit", "changed_files"]
    commit_error, files_error = result.errors
    assert commit_error.expected == LIVE_SHA
    assert commit_error.actual == "fff0000"
    assert "abc1234def56" in commit_error.message
    assert files_error.extra_files == ("b.ts",)
    assert files_error.missing_files == ("c.ts",)
    assert files_error.message == (
        "Review packet changed_files do not match live PR (1 extra, 1 missing)"
    )
    assert isinstance(result.outcome, IntegrityRejected)


def test_validate_rejects_malformed_pr_url_without_calling_github() -> None:
    github = FakeGitHub()

    result = _validator(github).validate(
        pr_url="https://github.com/acme/app/pull/0",
        packet_commit="abc1234",
        packet_changed_files=[],
    )

    assert result.valid is False
    assert result.errors[0].field == "pr_url"
    assert github.calls == []


def test_validate_skips_when_live_checks_disabled_or_gh_missing() -> None:
    disabled = FakeGitHub()
    result = _validator(disabled, skip_live_checks=True).validate(
        pr_url=PR_URL, packet_commit="fff", packet_changed_files=[]
    )
    assert result.valid is True
    assert result.skipped is True
    assert isinstance(result.outcome, IntegritySkipped)
    assert disabled.calls == []

    missing = FakeGitHub(available=False)
    result = _validator(missing).validate(
        pr_url=PR_URL, packet_commit="fff", packet_changed_files=[]
    )
    assert result.skipped is True
    assert result.skip_reason == "gh CLI not available"


def test_validate_soft_passes_when_live_fetch_fails() -> None:
    github = FakeGitHub(fail_with="API rate limit exceeded")

    result = _validator(github).validate(
        pr_url=PR_URL, packet_commit="fff0000", packet_changed_files=["z.ts"]
    )

    assert result.valid is True
    assert result.skipped is True
    assert result.errors == ()
    assert result.skip_reason == "Failed to fetch PR #7 from acme/app: API rate limit exceeded"


@given(
    sha=st.text(alphabet="0123456789abcdef", min_size=40, max_size=40),
    prefix_len=st.integers(min_value=1, max_value=40),
)
def test_compare_commit_accepts_any_prefix(sha: str, prefix_len: int) -> None:
    assert compare_commit(sha[:prefix_len], sha) is None
    assert compare_commit(sha[:prefix_len].upper(), sha) is None


def test_compare_commit_rejects_divergence_and_empty() -> None:
    assert compare_commit("abc1234", "abc1234def5678") is None
    assert compare_commit("abc1234", "zzzzzzz") is not None
    assert compare_commit("abc1235", LIVE_SHA) is not None
    assert compare_commit("", LIVE_SHA) is not None
    assert compare_commit("  ", LIVE_SHA) is not None


def test_compare_changed_files_ignores_blank_entries_and_order() -> None:
    assert compare_changed_files(["b.ts", " a.ts ", ""], ["a.ts", "b.ts"]) is None

    error = compare_changed_files(["a.ts", "b.ts"], ["a.ts", "b.ts", "c.ts"])
    assert error is not None
    assert error.extra_files == ()
    assert error.missing_files == ("c.ts",)
