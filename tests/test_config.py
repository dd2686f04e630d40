from __future__ import annotations

from pathlib import Path

import pytest

from mergegate import config
from mergegate.config import AppConfig, ConfigError


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_full_file(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "mergegate.toml",
        """
[runtime]
base_dir = "~/tmp/mergegate"
sweep_interval_seconds = 60

[github]
merge_method = " Rebase "
command_timeout_seconds = 20
merge_timeout_seconds = 45
mergeability_cache_ttl_seconds = 0

[integrity]
skip_live_checks = true

[drift]
validating_sla_minutes = 30
validating_critical_minutes = 90

[audit]
merge_log_max_entries = 50
""".strip(),
    )

    loaded = config.load_config(cfg_path)

    assert isinstance(loaded, AppConfig)
    assert loaded.runtime.base_dir.as_posix().endswith("/tmp/mergegate")
    assert "~" not in loaded.runtime.base_dir.as_posix()
    assert loaded.runtime.sweep_interval_seconds == 60
    assert loaded.runtime.state_db_path == loaded.runtime.base_dir / "state.db"
    assert loaded.github.merge_method == "rebase"
    assert loaded.github.command_timeout_seconds == 20
    assert loaded.github.merge_timeout_seconds == 45
    assert loaded.github.mergeability_cache_ttl_seconds == 0
    assert loaded.integrity.skip_live_checks is True
    assert loaded.drift.validating_sla_minutes == 30
    assert loaded.drift.validating_critical_minutes == 90
    assert loaded.audit.merge_log_max_entries == 50


def test_load_config_applies_defaults_for_optional_tables(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "mergegate.toml", '[runtime]\nbase_dir = "/tmp/mg"\n')

    loaded = config.load_config(cfg_path)

    assert loaded.runtime.sweep_interval_seconds == 300
    assert loaded.github.merge_method == "squash"
    assert loaded.github.command_timeout_seconds == 15
    assert loaded.github.merge_timeout_seconds == 30
    assert loaded.github.mergeability_cache_ttl_seconds == 180
    assert loaded.integrity.skip_live_checks is False
    assert loaded.drift.validating_sla_minutes == 120
    assert loaded.drift.validating_critical_minutes == 480
    assert loaded.audit.merge_log_max_entries == 200


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("", r"\[runtime\] is required"),
        ('runtime = "x"', r"\[runtime\] is required"),
        ("[runtime]\nbase_dir = \"\"", "base_dir is required"),
        ('[runtime]\nbase_dir = "/x"\nsweep_interval_seconds = 1', "sweep_interval_seconds must be >= 5"),
        ('[runtime]\nbase_dir = "/x"\nsweep_interval_seconds = true', "sweep_interval_seconds must be an integer"),
        ('github = 3\n[runtime]\nbase_dir = "/x"', r"\[github\] must be a TOML table"),
        ('[runtime]\nbase_dir = "/x"\n[github]\nmerge_method = "ff"', "merge_method must be one of"),
        ('[runtime]\nbase_dir = "/x"\n[github]\nmerge_method = 3', "merge_method must be one of"),
        ('[runtime]\nbase_dir = "/x"\n[github]\ncommand_timeout_seconds = 0', "command_timeout_seconds must be >= 1"),
        ('[runtime]\nbase_dir = "/x"\n[github]\nmerge_timeout_seconds = 0', "merge_timeout_seconds must be >= 1"),
        ('[runtime]\nbase_dir = "/x"\n[github]\nmergeability_cache_ttl_seconds = -1', "cache_ttl_seconds must be >= 0"),
        ('[runtime]\nbase_dir = "/x"\n[integrity]\nskip_live_checks = "yes"', "skip_live_checks must be a boolean"),
        ('[runtime]\nbase_dir = "/x"\n[drift]\nvalidating_sla_minutes = 0', "validating_sla_minutes must be >= 1"),
        (
            '[runtime]\nbase_dir = "/x"\n[drift]\nvalidating_sla_minutes = 60\nvalidating_critical_minutes = 30',
            "validating_critical_minutes must be >=",
        ),
        ('[runtime]\nbase_dir = "/x"\n[audit]\nmerge_log_max_entries = 0', "merge_log_max_entries must be >= 1"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    cfg_path = _write(tmp_path / "mergegate.toml", body)

    with pytest.raises(ConfigError, match=message):
        config.load_config(cfg_path)
