from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
import subprocess

import pytest

from mergegate.observability import configure_logging
from mergegate.shell import CommandError, CommandTimeoutError, _preview, run


@pytest.fixture(autouse=True)
def quiet_logging_after_test() -> Iterator[None]:
    yield
    configure_logging(verbose=None)


def test_run_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["echo"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["echo", "hello"], cwd=tmp_path, input_text="hi", timeout_seconds=3)

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    assert kwargs["timeout"] == 3


def test_run_failure_raises_with_stderr_and_exit_code(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose="high")

    with pytest.raises(CommandError, match="Command failed") as exc_info:
        run(["bad"])
    assert exc_info.value.stderr == "err"
    assert exc_info.value.exit_code == 2
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr


def test_run_without_check_returns_stdout_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *args, **kwargs: subprocess.CompletedProcess(
            args=["bad"], returncode=1, stdout="partial", stderr="err"
        ),
    )

    assert run(["bad"], check=False) == "partial"


def test_run_timeout_raises_command_timeout_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args
        raise subprocess.TimeoutExpired(cmd=["gh"], timeout=kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandTimeoutError, match="timed out after 1.5s"):
        run(["gh", "pr", "view"], timeout_seconds=1.5)


def test_run_missing_binary_raises_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        raise FileNotFoundError("gh")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="Command not found: gh") as exc_info:
        run(["gh", "--version"])
    assert exc_info.value.exit_code == 127
    assert not isinstance(exc_info.value, CommandTimeoutError)


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _preview("a\nb") == "a\\nb"
