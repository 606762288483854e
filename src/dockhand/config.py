"""Configuration loader for dockhand.

Configuration values are merged from several sources, lowest precedence
first:

1. Built-in defaults.
2. ``/etc/dockhand/config.yml`` (or an override path).
3. Environment variables prefixed with ``DOCKHAND_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DOCKHAND_TIMEOUTS__INSTALL=120
    export DOCKHAND_RETRY__ATTEMPTS=5

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load dockhand configuration. Install with "
        "`pip install dockhand` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DOCKHAND_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration or manifest parsing fails."""


@dataclass(frozen=True)
class BinariesConfig:
    """External executables invoked by the providers."""

    apt_get: str = "apt-get"
    dpkg_query: str = "dpkg-query"
    docker: str = "docker"
    sudo: str = "sudo"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apt_get": self.apt_get,
            "dpkg_query": self.dpkg_query,
            "docker": self.docker,
            "sudo": self.sudo,
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Subprocess timeouts in seconds."""

    install: float = 60.0
    status: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"install": self.install, "status": self.status}


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for retryable action failures."""

    attempts: int = 3
    backoff: tuple[float, ...] = (1.0, 2.0, 4.0)

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait after failed *attempt* (1-based)."""
        if not self.backoff:
            return 0.0
        index = min(max(attempt, 1), len(self.backoff)) - 1
        return self.backoff[index]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "backoff": list(self.backoff)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for dockhand."""

    config_file: Path
    manifest_file: Path | None
    logs_dir: Path
    use_sudo: bool
    probe_retries: int
    binaries: BinariesConfig
    timeouts: TimeoutsConfig
    retry: RetryConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "manifest_file": str(self.manifest_file) if self.manifest_file else None,
            "logs_dir": str(self.logs_dir),
            "use_sudo": self.use_sudo,
            "probe_retries": self.probe_retries,
            "binaries": self.binaries.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "retry": self.retry.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/dockhand/config.yml",
    "manifest_file": None,  # packaged default manifest when absent
    "logs_dir": "/var/log/dockhand",
    "use_sudo": True,
    "probe_retries": 2,
    "binaries": {
        "apt_get": "apt-get",
        "dpkg_query": "dpkg-query",
        "docker": "docker",
        "sudo": "sudo",
    },
    "timeouts": {
        "install": 60.0,
        "status": 10.0,
    },
    "retry": {
        "attempts": 3,
        "backoff": [1.0, 2.0, 4.0],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "binaries": {"apt_get", "dpkg_query", "docker", "sudo"},
    "timeouts": {"install", "status"},
    "retry": {"attempts", "backoff"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))

    manifest_value = raw.get("manifest_file")
    manifest_file: Path | None = None
    if isinstance(manifest_value, (str, Path)):
        if str(manifest_value).strip():
            manifest_file = _to_path(manifest_value)
    elif manifest_value is not None:
        raise ConfigError("manifest_file must be a string, Path, or null.")

    use_sudo = raw.get("use_sudo", True)
    if not isinstance(use_sudo, bool):
        raise ConfigError(f"Expected use_sudo to be a boolean. Got {use_sudo!r}.")

    probe_retries = _expect_int(raw.get("probe_retries"), "probe_retries", default=2)
    if probe_retries < 0:
        raise ConfigError("probe_retries must be non-negative.")

    binaries_mapping = _as_dict(raw.get("binaries"), "binaries")
    binaries = BinariesConfig(
        apt_get=str(binaries_mapping.get("apt_get", "apt-get")),
        dpkg_query=str(binaries_mapping.get("dpkg_query", "dpkg-query")),
        docker=str(binaries_mapping.get("docker", "docker")),
        sudo=str(binaries_mapping.get("sudo", "sudo")),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        install=_expect_positive_float(
            timeouts_mapping.get("install"), "timeouts.install", default=60.0
        ),
        status=_expect_positive_float(
            timeouts_mapping.get("status"), "timeouts.status", default=10.0
        ),
    )

    retry_mapping = _as_dict(raw.get("retry"), "retry")
    attempts = _expect_int(retry_mapping.get("attempts"), "retry.attempts", default=3)
    if attempts < 1:
        raise ConfigError("retry.attempts must be at least 1.")
    backoff_raw = retry_mapping.get("backoff")
    backoff: tuple[float, ...]
    if backoff_raw is None:
        backoff = RetryConfig().backoff
    else:
        backoff = tuple(
            _expect_non_negative_float(item, f"retry.backoff[{index}]")
            for index, item in enumerate(_as_sequence(backoff_raw, "retry.backoff"))
        )
    retry = RetryConfig(attempts=attempts, backoff=backoff)

    return AppConfig(
        config_file=config_file,
        manifest_file=manifest_file,
        logs_dir=logs_dir,
        use_sudo=use_sudo,
        probe_retries=probe_retries,
        binaries=binaries,
        timeouts=timeouts,
        retry=retry,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object, label: str) -> float:
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BinariesConfig",
    "ConfigError",
    "RetryConfig",
    "TimeoutsConfig",
    "load_config",
]
