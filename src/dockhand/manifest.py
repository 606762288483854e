"""Manifest model: the declarative description of desired host state.

A manifest lists OS packages, one container runtime requirement and the
compose services to materialise under ``base_dir``. It is loaded once at
startup and never mutated afterwards.

Example::

    base_dir: ~/bivcom-docker
    container_prefix: bivcom
    network: bivcom-network
    packages: [curl, nano, git]
    runtime:
      name: docker
      min_version: "20.10"
    services:
      - name: restreamer
        image: datarhei/restreamer:latest
        ports: ["8080:8080"]
        volumes: ["./data:/restreamer/data"]
        env:
          RS_USERNAME: admin
          RS_PASSWORD: {secret: RESTREAMER_PASSWORD}

Secret values are read from the environment when the manifest is loaded. A
secret marked ``optional: true`` that is not supplied leaves the key
*unconfigured*: it is omitted from the rendered definition and reported, but
the service itself remains valid.
"""
from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from pathlib import Path
from types import MappingProxyType

import yaml
from packaging.version import InvalidVersion, Version

from .config import ConfigError

DEFAULT_MANIFEST_RESOURCE = "default-manifest.yml"
COMPOSE_FILENAME = "docker-compose.yml"

_SERVICE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CONTAINER_PORT_RE = re.compile(r"^\d+(-\d+)?(/(tcp|udp|sctp))?$")

_TOP_LEVEL_KEYS = {"base_dir", "container_prefix", "network", "packages", "runtime", "services"}
_RUNTIME_KEYS = {"name", "min_version", "install"}
_SERVICE_KEYS = {"name", "image", "ports", "volumes", "env", "restart", "cap_add", "enabled"}
_SECRET_KEYS = {"secret", "optional"}

# Mirrors the upstream Docker apt repository installation for Debian/Ubuntu.
# ``{user}`` is replaced with the invoking login at execution time.
DEFAULT_RUNTIME_INSTALL: tuple[tuple[str, ...], ...] = (
    ("apt-get", "update"),
    ("apt-get", "install", "-y", "ca-certificates", "curl", "gnupg", "lsb-release"),
    ("install", "-m", "0755", "-d", "/etc/apt/keyrings"),
    (
        "sh",
        "-c",
        "curl -fsSL https://download.docker.com/linux/ubuntu/gpg"
        " | gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg",
    ),
    (
        "sh",
        "-c",
        'echo "deb [arch=$(dpkg --print-architecture) '
        "signed-by=/etc/apt/keyrings/docker.gpg] "
        'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable"'
        " > /etc/apt/sources.list.d/docker.list",
    ),
    ("apt-get", "update"),
    (
        "apt-get",
        "install",
        "-y",
        "docker-ce",
        "docker-ce-cli",
        "containerd.io",
        "docker-compose-plugin",
    ),
    ("systemctl", "enable", "--now", "docker"),
    ("usermod", "-aG", "docker", "{user}"),
)


class RestartPolicy(str, Enum):
    """Container restart policy."""

    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"

    @property
    def compose_value(self) -> str:
        """Return the value understood by ``docker compose``."""
        if self is RestartPolicy.NEVER:
            return "no"
        return self.value


@dataclass(frozen=True, slots=True, order=True)
class PortMapping:
    """A ``host:container`` port publication."""

    host: str
    container: str

    def __str__(self) -> str:
        return f"{self.host}:{self.container}"


@dataclass(frozen=True, slots=True, order=True)
class VolumeMount:
    """A ``host-path:container-path`` bind mount."""

    host: str
    container: str
    mode: str | None = None

    @property
    def is_relative(self) -> bool:
        """Return ``True`` for bind mounts relative to the service directory.

        Absolute host paths (``/dev/net/tun``) belong to the host and bare
        names are compose named volumes; neither is created by dockhand.
        """
        return self.host in {".", ".."} or self.host.startswith(("./", "../"))

    def __str__(self) -> str:
        suffix = f":{self.mode}" if self.mode else ""
        return f"{self.host}:{self.container}{suffix}"


@dataclass(frozen=True, slots=True)
class RuntimeRequirement:
    """Container runtime that must be present at or above ``min_version``."""

    name: str
    min_version: Version
    install_commands: tuple[tuple[str, ...], ...] = DEFAULT_RUNTIME_INSTALL

    def is_satisfied_by(self, version: Version | None) -> bool:
        """Return ``True`` when *version* meets the minimum."""
        return version is not None and version >= self.min_version


@dataclass(frozen=True, slots=True)
class ServiceSpec:
    """Declarative definition of one containerised service."""

    name: str
    image: str
    ports: frozenset[PortMapping] = frozenset()
    volumes: frozenset[VolumeMount] = frozenset()
    environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    restart: RestartPolicy = RestartPolicy.ALWAYS
    cap_add: tuple[str, ...] = ()
    enabled: bool = True
    secret_keys: frozenset[str] = frozenset()
    unconfigured: tuple[str, ...] = ()

    @property
    def has_secrets(self) -> bool:
        """Return ``True`` when any environment value came from a secret."""
        return bool(self.secret_keys)

    def redacted_environment(self) -> dict[str, str]:
        """Return the environment with secret values masked."""
        return {
            key: ("***" if key in self.secret_keys else value)
            for key, value in sorted(self.environment.items())
        }


@dataclass(frozen=True, slots=True)
class Manifest:
    """Desired host state."""

    base_dir: Path
    packages: tuple[str, ...]
    runtime: RuntimeRequirement
    services: tuple[ServiceSpec, ...]
    container_prefix: str = ""
    network: str | None = None

    def service(self, name: str) -> ServiceSpec:
        """Return the service called *name*."""
        for spec in self.services:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def service_dir(self, spec: ServiceSpec) -> Path:
        """Return the directory holding *spec*'s compose definition."""
        return self.base_dir / spec.name

    def compose_path(self, spec: ServiceSpec) -> Path:
        """Return the compose file path for *spec*."""
        return self.service_dir(spec) / COMPOSE_FILENAME

    def container_name(self, spec: ServiceSpec) -> str:
        """Return the container (and compose project) name for *spec*."""
        if self.container_prefix:
            return f"{self.container_prefix}-{spec.name}"
        return spec.name

    def directories(self, spec: ServiceSpec) -> tuple[Path, ...]:
        """Return directories that must exist for *spec*, parents first."""
        root = self.service_dir(spec)
        extra = {
            Path(os.path.normpath(root / volume.host))
            for volume in spec.volumes
            if volume.is_relative
        }
        extra.discard(root)
        return (root, *sorted(extra))


def load_manifest(
    source: str | os.PathLike[str] | Mapping[str, object] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Manifest:
    """Load a :class:`Manifest` from *source*.

    *source* may be a path to a YAML file, an already-parsed mapping, or
    ``None`` for the packaged default manifest. Secret references are
    resolved against *env* (``os.environ`` by default).
    """
    resolved_env = dict(os.environ if env is None else env)
    raw = _read_source(source)
    return _build_manifest(raw, resolved_env)


def _read_source(source: str | os.PathLike[str] | Mapping[str, object] | None) -> dict[str, object]:
    if isinstance(source, Mapping):
        return _as_dict(source, "manifest")
    if source is None:
        text = (
            resources.files("dockhand")
            .joinpath("data", DEFAULT_MANIFEST_RESOURCE)
            .read_text(encoding="utf-8")
        )
        label = f"<packaged {DEFAULT_MANIFEST_RESOURCE}>"
    else:
        path = Path(source).expanduser()
        if not path.is_file():
            raise ConfigError(f"Manifest file {path} does not exist.")
        text = path.read_text(encoding="utf-8")
        label = str(path)
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse manifest {label}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Manifest {label} must contain a mapping at the top level.")
    return _as_dict(data, "manifest")


def _build_manifest(raw: Mapping[str, object], env: Mapping[str, str]) -> Manifest:
    _reject_unknown(raw, _TOP_LEVEL_KEYS, "manifest")

    if "runtime" not in raw:
        raise ConfigError("Manifest is missing required field 'runtime'.")
    if "services" not in raw:
        raise ConfigError("Manifest is missing required field 'services'.")

    base_dir = Path(str(raw.get("base_dir") or "~/dockhand")).expanduser()
    prefix = _optional_str(raw.get("container_prefix"), "container_prefix") or ""
    network = _optional_str(raw.get("network"), "network")

    packages = _build_packages(raw.get("packages"))
    runtime = _build_runtime(raw["runtime"])

    services: list[ServiceSpec] = []
    seen: set[str] = set()
    for index, entry in enumerate(_as_list(raw["services"], "services")):
        spec = _build_service(_as_dict(entry, f"services[{index}]"), index, env)
        if spec.name in seen:
            raise ConfigError(f"Duplicate service name '{spec.name}' in manifest.")
        seen.add(spec.name)
        services.append(spec)

    return Manifest(
        base_dir=base_dir,
        packages=packages,
        runtime=runtime,
        services=tuple(services),
        container_prefix=prefix,
        network=network,
    )


def _build_packages(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    packages: list[str] = []
    for index, item in enumerate(_as_list(value, "packages")):
        name = _required_str(item, f"packages[{index}]")
        if name not in packages:
            packages.append(name)
    return tuple(packages)


def _build_runtime(value: object) -> RuntimeRequirement:
    mapping = _as_dict(value, "runtime")
    _reject_unknown(mapping, _RUNTIME_KEYS, "runtime")
    if "min_version" not in mapping:
        raise ConfigError("runtime is missing required field 'min_version'.")
    name = _optional_str(mapping.get("name"), "runtime.name") or "docker"
    raw_version = str(mapping["min_version"]).strip()
    try:
        min_version = Version(raw_version)
    except InvalidVersion as exc:
        raise ConfigError(f"runtime.min_version {raw_version!r} is not a valid version.") from exc

    install_raw = mapping.get("install")
    if install_raw is None:
        install = DEFAULT_RUNTIME_INSTALL
    else:
        commands: list[tuple[str, ...]] = []
        for index, command in enumerate(_as_list(install_raw, "runtime.install")):
            label = f"runtime.install[{index}]"
            if isinstance(command, str):
                raise ConfigError(f"{label} must be a list of arguments, not a shell string.")
            args = tuple(_required_str(arg, label) for arg in _as_list(command, label))
            if not args:
                raise ConfigError(f"{label} must not be empty.")
            commands.append(args)
        install = tuple(commands)
    return RuntimeRequirement(name=name, min_version=min_version, install_commands=install)


def _build_service(raw: Mapping[str, object], index: int, env: Mapping[str, str]) -> ServiceSpec:
    label = f"services[{index}]"
    _reject_unknown(raw, _SERVICE_KEYS, label)
    for required in ("name", "image"):
        if required not in raw:
            raise ConfigError(f"{label} is missing required field '{required}'.")
    name = _required_str(raw["name"], f"{label}.name")
    if not _SERVICE_NAME_RE.match(name):
        raise ConfigError(
            f"Service name '{name}' must be lowercase letters, digits, '.', '_' or '-'."
        )
    label = f"service '{name}'"
    image = _required_str(raw["image"], f"{label} image")

    ports = frozenset(
        _parse_port(item, f"{label} ports") for item in _as_list(raw.get("ports") or [], "ports")
    )
    volumes = frozenset(
        _parse_volume(item, f"{label} volumes")
        for item in _as_list(raw.get("volumes") or [], "volumes")
    )

    restart_raw = raw.get("restart", RestartPolicy.ALWAYS.value)
    try:
        restart = RestartPolicy(str(restart_raw))
    except ValueError as exc:
        allowed = ", ".join(policy.value for policy in RestartPolicy)
        raise ConfigError(
            f"{label} has unknown restart policy {restart_raw!r}. Allowed: {allowed}."
        ) from exc

    cap_add = tuple(
        _required_str(item, f"{label} cap_add")
        for item in _as_list(raw.get("cap_add") or [], "cap_add")
    )
    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"{label} enabled must be a boolean.")

    environment, secret_keys, unconfigured = _build_environment(raw.get("env"), label, env)

    return ServiceSpec(
        name=name,
        image=image,
        ports=ports,
        volumes=volumes,
        environment=MappingProxyType(environment),
        restart=restart,
        cap_add=tuple(sorted(set(cap_add))),
        enabled=enabled,
        secret_keys=frozenset(secret_keys),
        unconfigured=tuple(sorted(unconfigured)),
    )


def _build_environment(
    value: object,
    label: str,
    env: Mapping[str, str],
) -> tuple[dict[str, str], set[str], set[str]]:
    entries: list[tuple[str, object]] = []
    if value is None:
        pass
    elif isinstance(value, Mapping):
        entries.extend((str(key), item) for key, item in value.items())
    elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        for item in value:
            text = _required_str(item, f"{label} env")
            key, sep, literal = text.partition("=")
            if not sep:
                raise ConfigError(f"{label} env entry {text!r} must be KEY=VALUE.")
            entries.append((key, literal))
    else:
        raise ConfigError(f"{label} env must be a mapping or a list of KEY=VALUE strings.")

    environment: dict[str, str] = {}
    secret_keys: set[str] = set()
    unconfigured: set[str] = set()
    seen: set[str] = set()
    for key, item in entries:
        if not _ENV_KEY_RE.match(key):
            raise ConfigError(f"{label} env key {key!r} is not a valid variable name.")
        if key in seen:
            raise ConfigError(f"{label} declares env key '{key}' more than once.")
        seen.add(key)
        if isinstance(item, Mapping):
            secret = _as_dict(item, f"{label} env {key}")
            _reject_unknown(secret, _SECRET_KEYS, f"{label} env {key}")
            source = _required_str(secret.get("secret"), f"{label} env {key} secret")
            optional = bool(secret.get("optional", False))
            resolved = env.get(source)
            if resolved:
                environment[key] = resolved
                secret_keys.add(key)
            elif optional:
                unconfigured.add(key)
            else:
                raise ConfigError(
                    f"{label} env {key} requires secret '{source}' but it is not set."
                )
            continue
        if item is None:
            raise ConfigError(
                f"{label} env {key} has no value; use {{secret: NAME, optional: true}} "
                "for values supplied later."
            )
        if isinstance(item, bool):
            environment[key] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            environment[key] = str(item)
        else:
            raise ConfigError(f"{label} env {key} must be a scalar or a secret reference.")
    return environment, secret_keys, unconfigured


def _parse_port(value: object, label: str) -> PortMapping:
    if isinstance(value, int) and not isinstance(value, bool):
        text = str(value)
        return PortMapping(host=text, container=text)
    text = _required_str(value, label)
    host, sep, container = text.rpartition(":")
    if not sep:
        host = container = text
    if not host or not _CONTAINER_PORT_RE.match(container):
        raise ConfigError(f"{label} entry {text!r} must be HOST:CONTAINER.")
    return PortMapping(host=host, container=container)


def _parse_volume(value: object, label: str) -> VolumeMount:
    text = _required_str(value, label)
    parts = text.split(":")
    if len(parts) == 2:
        host, container = parts
        mode = None
    elif len(parts) == 3:
        host, container, mode = parts
        if mode not in {"ro", "rw"}:
            raise ConfigError(f"{label} entry {text!r} has unsupported mode {mode!r}.")
    else:
        raise ConfigError(f"{label} entry {text!r} must be HOST:CONTAINER[:ro|rw].")
    if not host or not container.startswith("/"):
        raise ConfigError(f"{label} entry {text!r} must map to an absolute container path.")
    return VolumeMount(host=host, container=container, mode=mode)


def _reject_unknown(mapping: Mapping[str, object], allowed: Iterable[str], label: str) -> None:
    unknown = set(mapping.keys()) - set(allowed)
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys for {label}: {joined}.")


def _required_str(value: object, label: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigError(f"{label} must be a non-empty string.")


def _optional_str(value: object, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    raise ConfigError(f"{label} must be a string.")


def _as_list(value: object, label: str) -> list[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return list(value)


def _as_dict(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "COMPOSE_FILENAME",
    "DEFAULT_RUNTIME_INSTALL",
    "Manifest",
    "PortMapping",
    "RestartPolicy",
    "RuntimeRequirement",
    "ServiceSpec",
    "VolumeMount",
    "load_manifest",
]
