"""Configuration loader for tomcatctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing precedence:

1. Built-in defaults.
2. ``/etc/tomcatctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``TOMCATCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export TOMCATCTL_RESTART__TIMEOUT=90
    export TOMCATCTL_PACKAGES__RPM_BIN=/usr/bin/rpm

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
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
        "PyYAML is required to load tomcatctl configuration. Install with "
        "`pip install tomcatctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "TOMCATCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RestartConfig:
    """Bounds applied to the fleet restart pass."""

    timeout: float = 60.0
    grace_delay: float = 5.0
    max_workers: int = 4

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "grace_delay": self.grace_delay,
            "max_workers": self.max_workers,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager query settings."""

    rpm_bin: str = "rpm"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"rpm_bin": self.rpm_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for tomcatctl."""

    config_file: Path
    instances_root: Path
    opt_root: Path
    www_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    backup_suffix: str
    jdk_profile: str
    user_daemons_pid: Path
    keep_dirs: tuple[str, ...]
    restart: RestartConfig
    packages: PackagesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instances_root": str(self.instances_root),
            "opt_root": str(self.opt_root),
            "www_root": str(self.www_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "backup_suffix": self.backup_suffix,
            "jdk_profile": self.jdk_profile,
            "user_daemons_pid": str(self.user_daemons_pid),
            "keep_dirs": list(self.keep_dirs),
            "restart": self.restart.to_dict(),
            "packages": self.packages.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/tomcatctl/config.yml",
    "instances_root": "/var/opt/apache-tomcat",
    "opt_root": "/opt",
    "www_root": "/var/www",
    "state_dir": "/var/lib/tomcatctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/tomcatctl",
    "runtime_dir": "/run/tomcatctl",
    "templates_dir": "/etc/tomcatctl/templates",
    "lock_timeout": 30.0,
    "backup_suffix": "-%Y-%m-%d",
    "jdk_profile": "jdk-lts/profile.sh",
    "user_daemons_pid": "/var/run/aoserv-user-daemons.pid",
    "keep_dirs": ["lost+found", "aquota.group", "aquota.user"],
    "restart": {
        "timeout": 60.0,
        "grace_delay": 5.0,
        "max_workers": 4,
    },
    "packages": {
        "rpm_bin": "rpm",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    restart = raw.get("restart")
    if restart is not None:
        restart_map = _as_dict(restart, "restart")
        unknown = set(restart_map.keys()) - {"timeout", "grace_delay", "max_workers"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown restart configuration keys: {joined}.")

    packages = raw.get("packages")
    if packages is not None:
        packages_map = _as_dict(packages, "packages")
        unknown = set(packages_map.keys()) - {"rpm_bin"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown packages configuration keys: {joined}.")

    suffix = raw.get("backup_suffix")
    if suffix is not None and (not isinstance(suffix, str) or "/" in suffix):
        raise ConfigError("backup_suffix must be a string without path separators.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    instances_root = _to_path(raw.get("instances_root"))
    opt_root = _to_path(raw.get("opt_root"))
    www_root = _to_path(raw.get("www_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    user_daemons_pid = _to_path(raw.get("user_daemons_pid"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    keep_raw = raw.get("keep_dirs")
    keep_dirs = tuple(
        str(item) for item in (_as_sequence(keep_raw, "keep_dirs") if keep_raw else ())
    )

    jdk_profile = str(raw.get("jdk_profile", "jdk-lts/profile.sh")).strip().lstrip("/")
    if not jdk_profile:
        raise ConfigError("jdk_profile must be a non-empty relative path.")

    restart_mapping = _as_dict(raw.get("restart"), "restart")
    max_workers = _expect_int(restart_mapping.get("max_workers"), "restart.max_workers", default=4)
    if max_workers < 1:
        raise ConfigError("restart.max_workers must be at least 1.")
    restart = RestartConfig(
        timeout=_expect_positive_float(
            restart_mapping.get("timeout"), "restart.timeout", default=60.0
        ),
        grace_delay=_expect_non_negative_float(
            restart_mapping.get("grace_delay"), "restart.grace_delay", default=5.0
        ),
        max_workers=max_workers,
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(rpm_bin=str(packages_mapping.get("rpm_bin", "rpm")))

    return AppConfig(
        config_file=config_file,
        instances_root=instances_root,
        opt_root=opt_root,
        www_root=www_root,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        backup_suffix=str(raw.get("backup_suffix", "-%Y-%m-%d")),
        jdk_profile=jdk_profile,
        user_daemons_pid=user_daemons_pid,
        keep_dirs=keep_dirs,
        restart=restart,
        packages=packages,
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
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
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


def _expect_float(value: object, label: str) -> float:
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
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
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
    "ConfigError",
    "PackagesConfig",
    "RestartConfig",
    "load_config",
]
