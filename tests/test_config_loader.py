"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from dockhand.config import AppConfig, ConfigError, RetryConfig, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.manifest_file is None
    assert config.logs_dir == Path("/var/log/dockhand")
    assert config.use_sudo is True
    assert config.probe_retries == 2
    assert config.timeouts.install == 60.0
    assert config.timeouts.status == 10.0
    assert config.retry.attempts == 3
    assert config.retry.backoff == (1.0, 2.0, 4.0)
    assert config.binaries.docker == "docker"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "dockhand.yml"
    cfg.write_text(
        f"manifest_file: {tmp_path / 'manifest.yml'}\n"
        f"logs_dir: {tmp_path / 'logs'}\n"
        "use_sudo: false\n"
        "timeouts:\n"
        "  install: 300\n"
        "binaries:\n"
        "  docker: /usr/local/bin/docker\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.manifest_file == tmp_path / "manifest.yml"
    assert config.logs_dir == tmp_path / "logs"
    assert config.use_sudo is False
    assert config.timeouts.install == 300.0
    assert config.timeouts.status == 10.0
    assert config.binaries.docker == "/usr/local/bin/docker"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "dockhand.yml"
    cfg.write_text("timeouts:\n  status: 5\n")
    env = {
        "DOCKHAND_TIMEOUTS__STATUS": "20",
        "DOCKHAND_RETRY__ATTEMPTS": "5",
        "DOCKHAND_RETRY__BACKOFF": "[0.5, 1]",
        "DOCKHAND_USE_SUDO": "false",
        "DOCKHAND_LOGS_DIR": str(tmp_path / "logs"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.timeouts.status == 20.0
    assert config.retry.attempts == 5
    assert config.retry.backoff == (0.5, 1.0)
    assert config.use_sudo is False
    assert config.logs_dir == tmp_path / "logs"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("probe_retries: 0\n")

    config = load_config(env={"DOCKHAND_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.probe_retries == 0


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"DOCKHAND_PROBE_RETRIES": "4"},
        overrides={"probe_retries": 1},
    )

    assert config.probe_retries == 1


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_nested_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("retry:\n  attempts: 2\n  jitter: true\n")

    with pytest.raises(ConfigError, match="Unknown retry configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("timeouts:\n  install: 0\n", "greater than zero"),
        ("retry:\n  attempts: 0\n", "at least 1"),
        ("retry:\n  backoff: [1, -2]\n", "must not be negative"),
        ("use_sudo: maybe\n", "boolean"),
        ("probe_retries: -1\n", "non-negative"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Out-of-range values are rejected with a descriptive error."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_retry_delay_repeats_last_backoff_value() -> None:
    """Attempts beyond the backoff sequence reuse its last value."""
    retry = RetryConfig(attempts=5, backoff=(1.0, 2.0, 4.0))

    assert [retry.delay_for(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 4.0, 4.0]
    assert RetryConfig(backoff=()).delay_for(1) == 0.0


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` exposes plain values for ``config show``."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["config_file"] == str(tmp_path / "missing.yml")
    assert data["manifest_file"] is None
    assert data["retry"] == {"attempts": 3, "backoff": [1.0, 2.0, 4.0]}
