from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, cast


_ROOT_LOGGER: Final[str] = "mergegate"
_EVENT_ATTR: Final[str] = "mergegate_event"
_MAX_VALUE_LEN: Final[int] = 120
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"

# Events that still print in ``low`` mode: merges, closes, gate verdicts and sweep summaries.
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "sweep_completed",
        "sweep_task_failed",
        "merge_log_entry",
        "github_pr_merged",
        "github_pr_merge_failed",
        "task_auto_closed",
        "transition_rejected",
        "transition_applied",
        "integrity_check_failed",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(verbose: str | None, *, state_dir: Path | None = None) -> None:
    """Route ``mergegate.*`` loggers to stderr and, with ``state_dir``, a daily file.

    ``None`` silences everything. ``low`` keeps warnings and the key events
    above; ``high`` keeps every INFO event.
    """
    mode = _parse_verbose_mode(verbose)
    root = logging.getLogger(_ROOT_LOGGER)
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_UtcDailyFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        if mode == "low":
            handler.addFilter(_key_events_only)
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    _emit(logger, logging.INFO, event, fields)


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    _emit(logger, logging.WARNING, event, fields)


def _emit(logger: logging.Logger, level: int, event: str, fields: dict[str, object]) -> None:
    if not logger.isEnabledFor(level):
        return
    parts = [f"event={_format_value(event)}"]
    parts.extend(f"{key}={_format_value(fields[key])}" for key in sorted(fields))
    logger.log(level, " ".join(parts), extra={_EVENT_ATTR: event})


def _format_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _MAX_VALUE_LEN:
            text = f"{text[:_MAX_VALUE_LEN]}..."
        text = text or "<empty>"
    elif isinstance(value, tuple | list):
        text = ",".join(_format_value(item) for item in value) or "<empty>"
    else:
        text = f"<{type(value).__name__}>"

    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _parse_verbose_mode(verbose: str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


def _key_events_only(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return getattr(record, _EVENT_ATTR, None) in _LOW_VERBOSITY_EVENTS


class _UtcDailyFileHandler(logging.FileHandler):
    """Appends to ``<logs_dir>/<UTC date>.log`` and switches files at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        logs_dir.mkdir(parents=True, exist_ok=True)
        self._logs_dir = logs_dir
        self._date_key = _utc_date_key()
        super().__init__(self._path_for(self._date_key), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        date_key = _utc_date_key()
        if date_key != self._date_key:
            self.acquire()
            try:
                self.close()
                self._date_key = date_key
                self.baseFilename = str(self._path_for(date_key))
            finally:
                self.release()
        super().emit(record)

    def _path_for(self, date_key: str) -> Path:
        return self._logs_dir / f"{date_key}.log"


def _utc_date_key() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")
