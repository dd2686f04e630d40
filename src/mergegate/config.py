from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from mergegate.models import MergeMethod


_MERGE_METHODS: tuple[MergeMethod, ...] = ("squash", "merge", "rebase")


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    sweep_interval_seconds: int = 300

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class GitHubConfig:
    merge_method: MergeMethod = "squash"
    command_timeout_seconds: int = 15
    merge_timeout_seconds: int = 30
    mergeability_cache_ttl_seconds: int = 180


@dataclass(frozen=True)
class IntegrityConfig:
    # Set in sandbox/test deployments where live PR lookups must not run.
    skip_live_checks: bool = False


@dataclass(frozen=True)
class DriftConfig:
    validating_sla_minutes: int = 120
    validating_critical_minutes: int = 480


@dataclass(frozen=True)
class AuditConfig:
    merge_log_max_entries: int = 200


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    github: GitHubConfig = field(default_factory=GitHubConfig)
    integrity: IntegrityConfig = field(default_factory=IntegrityConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    github_data = _optional_table(data, "github") or {}
    integrity_data = _optional_table(data, "integrity") or {}
    drift_data = _optional_table(data, "drift") or {}
    audit_data = _optional_table(data, "audit") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        sweep_interval_seconds=_int_with_default(runtime_data, "sweep_interval_seconds", 300),
    )
    if runtime.sweep_interval_seconds < 5:
        raise ConfigError("runtime.sweep_interval_seconds must be >= 5")

    github = GitHubConfig(
        merge_method=_merge_method_with_default(github_data, "merge_method", "squash"),
        command_timeout_seconds=_int_with_default(github_data, "command_timeout_seconds", 15),
        merge_timeout_seconds=_int_with_default(github_data, "merge_timeout_seconds", 30),
        mergeability_cache_ttl_seconds=_int_with_default(
            github_data, "mergeability_cache_ttl_seconds", 180
        ),
    )
    if github.command_timeout_seconds < 1:
        raise ConfigError("github.command_timeout_seconds must be >= 1")
    if github.merge_timeout_seconds < 1:
        raise ConfigError("github.merge_timeout_seconds must be >= 1")
    if github.mergeability_cache_ttl_seconds < 0:
        raise ConfigError("github.mergeability_cache_ttl_seconds must be >= 0")

    integrity = IntegrityConfig(
        skip_live_checks=_bool_with_default(integrity_data, "skip_live_checks", False),
    )

    drift = DriftConfig(
        validating_sla_minutes=_int_with_default(drift_data, "validating_sla_minutes", 120),
        validating_critical_minutes=_int_with_default(
            drift_data, "validating_critical_minutes", 480
        ),
    )
    if drift.validating_sla_minutes < 1:
        raise ConfigError("drift.validating_sla_minutes must be >= 1")
    if drift.validating_critical_minutes < drift.validating_sla_minutes:
        raise ConfigError(
            "drift.validating_critical_minutes must be >= drift.validating_sla_minutes"
        )

    audit = AuditConfig(
        merge_log_max_entries=_int_with_default(audit_data, "merge_log_max_entries", 200),
    )
    if audit.merge_log_max_entries < 1:
        raise ConfigError("audit.merge_log_max_entries must be >= 1")

    return AppConfig(
        runtime=runtime,
        github=github,
        integrity=integrity,
        drift=drift,
        audit=audit,
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _merge_method_with_default(
    data: dict[str, object], key: str, default: MergeMethod
) -> MergeMethod:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_METHODS)}")
    normalized = value.strip().lower()
    if normalized not in _MERGE_METHODS:
        raise ConfigError(f"{key} must be one of: {', '.join(_MERGE_METHODS)}")
    return cast(MergeMethod, normalized)
