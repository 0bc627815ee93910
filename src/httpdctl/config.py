"""Configuration loader for httpdctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/httpdctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``HTTPDCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HTTPDCTL_SYSTEMD__SYSTEMCTL_BIN=/usr/bin/systemctl
    export HTTPDCTL_UNINSTALL_ENABLED=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "HTTPDCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_OS_VERSIONS = {"auto", "centos5", "centos7", "rocky9"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup-then-delete archive location."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"
    wants_dir: Path = Path("/etc/systemd/system/multi-user.target.wants")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin, "wants_dir": str(self.wants_dir)}


@dataclass(frozen=True)
class InitdConfig:
    """Legacy SysV init integration values."""

    chkconfig_bin: str = "chkconfig"
    init_dir: Path = Path("/etc/rc.d/init.d")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"chkconfig_bin": self.chkconfig_bin, "init_dir": str(self.init_dir)}


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager binaries."""

    rpm_bin: str = "rpm"
    installer_bin: str = "yum"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"rpm_bin": self.rpm_bin, "installer_bin": self.installer_bin}


@dataclass(frozen=True)
class SelinuxConfig:
    """SELinux tool binaries."""

    semanage_bin: str = "semanage"
    getsebool_bin: str = "getsebool"
    setsebool_bin: str = "setsebool"
    restorecon_bin: str = "restorecon"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "semanage_bin": self.semanage_bin,
            "getsebool_bin": self.getsebool_bin,
            "setsebool_bin": self.setsebool_bin,
            "restorecon_bin": self.restorecon_bin,
        }


@dataclass(frozen=True)
class StatsConfig:
    """Per-site log statistics helpers."""

    enabled: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for httpdctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    desired_state_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    os_version: str
    filesystem_root: Path
    manage_ownership: bool
    uninstall_enabled: bool
    site_timeout: float
    restart_delay: float
    watch_interval: float
    backups: BackupConfig
    systemd: SystemdConfig
    initd: InitdConfig
    packages: PackagesConfig
    selinux: SelinuxConfig
    stats: StatsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "desired_state_file": str(self.desired_state_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "os_version": self.os_version,
            "filesystem_root": str(self.filesystem_root),
            "manage_ownership": self.manage_ownership,
            "uninstall_enabled": self.uninstall_enabled,
            "site_timeout": self.site_timeout,
            "restart_delay": self.restart_delay,
            "watch_interval": self.watch_interval,
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
            "initd": self.initd.to_dict(),
            "packages": self.packages.to_dict(),
            "selinux": self.selinux.to_dict(),
            "stats": self.stats.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/httpdctl/config.yml",
    "state_dir": "/var/lib/httpdctl",
    "registry_dir": None,  # derived from state_dir when absent
    "desired_state_file": None,  # derived from registry_dir when absent
    "logs_dir": "/var/log/httpdctl",
    "runtime_dir": "/run/httpdctl",
    "templates_dir": "/etc/httpdctl/templates",
    "lock_timeout": 30.0,
    "os_version": "auto",
    "filesystem_root": "/",
    "manage_ownership": True,
    "uninstall_enabled": False,
    "site_timeout": 60.0,
    "restart_delay": 5.0,
    "watch_interval": 5.0,
    "backups": {
        "root": "/var/backups/httpdctl",
        "index": None,
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "wants_dir": "/etc/systemd/system/multi-user.target.wants",
    },
    "initd": {
        "chkconfig_bin": "chkconfig",
        "init_dir": "/etc/rc.d/init.d",
    },
    "packages": {
        "rpm_bin": "rpm",
        "installer_bin": "yum",
    },
    "selinux": {
        "semanage_bin": "semanage",
        "getsebool_bin": "getsebool",
        "setsebool_bin": "setsebool",
        "restorecon_bin": "restorecon",
    },
    "stats": {
        "enabled": True,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "backups": {"root", "index"},
    "systemd": {"systemctl_bin", "wants_dir"},
    "initd": {"chkconfig_bin", "init_dir"},
    "packages": {"rpm_bin", "installer_bin"},
    "selinux": {"semanage_bin", "getsebool_bin", "setsebool_bin", "restorecon_bin"},
    "stats": {"enabled"},
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

    for label in ("lock_timeout", "site_timeout", "watch_interval"):
        value = raw.get(label)
        if value is not None:
            _expect_positive_float(value, label, default=1.0)

    restart_delay = raw.get("restart_delay")
    if restart_delay is not None:
        _expect_non_negative_float(restart_delay, "restart_delay", default=5.0)

    os_version = raw.get("os_version")
    if os_version is not None and str(os_version) not in ALLOWED_OS_VERSIONS:
        allowed = ", ".join(sorted(ALLOWED_OS_VERSIONS))
        raise ConfigError(f"Unsupported os_version '{os_version}'. Allowed: {allowed}.")

    for section, allowed_keys in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed_keys
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"
    desired_value = raw.get("desired_state_file")
    desired_state_file = (
        _to_path(desired_value) if desired_value else registry_dir / "desired.yml"
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/var/backups/httpdctl"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        wants_dir=_to_path(
            systemd_mapping.get("wants_dir", "/etc/systemd/system/multi-user.target.wants")
        ),
    )

    initd_mapping = _as_dict(raw.get("initd"), "initd")
    initd = InitdConfig(
        chkconfig_bin=str(initd_mapping.get("chkconfig_bin", "chkconfig")),
        init_dir=_to_path(initd_mapping.get("init_dir", "/etc/rc.d/init.d")),
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        rpm_bin=str(packages_mapping.get("rpm_bin", "rpm")),
        installer_bin=str(packages_mapping.get("installer_bin", "yum")),
    )

    selinux_mapping = _as_dict(raw.get("selinux"), "selinux")
    selinux = SelinuxConfig(
        semanage_bin=str(selinux_mapping.get("semanage_bin", "semanage")),
        getsebool_bin=str(selinux_mapping.get("getsebool_bin", "getsebool")),
        setsebool_bin=str(selinux_mapping.get("setsebool_bin", "setsebool")),
        restorecon_bin=str(selinux_mapping.get("restorecon_bin", "restorecon")),
    )

    stats_mapping = _as_dict(raw.get("stats"), "stats")
    stats = StatsConfig(enabled=_expect_bool(stats_mapping.get("enabled"), "stats.enabled", default=True))

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        desired_state_file=desired_state_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        os_version=str(raw.get("os_version", "auto")),
        filesystem_root=_to_path(raw.get("filesystem_root", "/")),
        manage_ownership=_expect_bool(
            raw.get("manage_ownership"), "manage_ownership", default=True
        ),
        uninstall_enabled=_expect_bool(
            raw.get("uninstall_enabled"), "uninstall_enabled", default=False
        ),
        site_timeout=_expect_positive_float(raw.get("site_timeout"), "site_timeout", default=60.0),
        restart_delay=_expect_non_negative_float(
            raw.get("restart_delay"), "restart_delay", default=5.0
        ),
        watch_interval=_expect_positive_float(
            raw.get("watch_interval"), "watch_interval", default=5.0
        ),
        backups=BackupConfig(root=backups_root, index=backups_index),
        systemd=systemd,
        initd=initd,
        packages=packages,
        selinux=selinux,
        stats=stats,
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
        else:
            result[key] = value
    return result


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


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
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
    "BackupConfig",
    "ConfigError",
    "InitdConfig",
    "PackagesConfig",
    "SelinuxConfig",
    "StatsConfig",
    "SystemdConfig",
    "load_config",
]
