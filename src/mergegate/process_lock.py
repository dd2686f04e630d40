from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import logging
import os
from pathlib import Path
import secrets
from typing import Iterator

from mergegate.observability import log_event


LOGGER = logging.getLogger("mergegate.process_lock")
SWEEPER_LOCK_FILENAME = "sweeper.lock"


class ProcessLockError(RuntimeError):
    """Another live process holds the sweeper lock."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None = None
    command: str | None = None
    started_at: str | None = None
    token: str | None = None


@contextmanager
def sweeper_process_lock(*, base_dir: Path, command: str) -> Iterator[None]:
    """Hold the cross-process sweeper lock for the duration of the block."""
    lock = SweeperLock(base_dir / SWEEPER_LOCK_FILENAME, command=command)
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


class SweeperLock:
    def __init__(self, lock_path: Path, *, command: str) -> None:
        self._lock_path = lock_path
        self._command = command
        self._held: tuple[int, str] | None = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Second pass only happens after a dead owner's file was removed.
        for _ in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._remove_if_owner_dead():
                    continue
                raise ProcessLockError(self._held_elsewhere_message()) from None
            self._held = self._write_owner(fd)
            log_event(LOGGER, "sweeper_lock_acquired", lock_path=str(self._lock_path))
            return
        raise ProcessLockError(self._held_elsewhere_message())

    def release(self) -> None:
        held, self._held = self._held, None
        if held is None:
            return
        inode, token = held
        try:
            if self._lock_path.stat().st_ino != inode:
                return
        except FileNotFoundError:
            return
        if read_lock_owner(self._lock_path).token != token:
            return
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            pass
        log_event(LOGGER, "sweeper_lock_released", lock_path=str(self._lock_path))

    def _write_owner(self, fd: int) -> tuple[int, str]:
        token = secrets.token_hex(16)
        try:
            inode = os.fstat(fd).st_ino
            payload = {
                "pid": os.getpid(),
                "command": self._command,
                "started_at": _utc_now_iso8601(),
                "token": token,
            }
            os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
            os.fsync(fd)
        except Exception:
            os.close(fd)
            try:
                os.unlink(self._lock_path)
            except FileNotFoundError:
                pass
            raise
        os.close(fd)
        return inode, token

    def _remove_if_owner_dead(self) -> bool:
        owner = read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        log_event(
            LOGGER,
            "sweeper_lock_stale_removed",
            lock_path=str(self._lock_path),
            pid=owner.pid,
        )
        return True

    def _held_elsewhere_message(self) -> str:
        owner = read_lock_owner(self._lock_path)
        parts: list[str] = []
        if owner.pid is not None:
            parts.append(f"pid={owner.pid}")
        if owner.command:
            parts.append(f"command={owner.command}")
        detail = f" ({', '.join(parts)})" if parts else ""
        return (
            f"Another mergegate sweeper process appears active{detail}. "
            f"Lock file: {self._lock_path}. If it is stale, stop the sweeper and remove the file."
        )


def read_lock_owner(lock_path: Path) -> LockOwner:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return LockOwner()
    if not isinstance(payload, dict):
        return LockOwner()
    pid = payload.get("pid")
    command = payload.get("command")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        command=command if isinstance(command, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
