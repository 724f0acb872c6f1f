"""Configuration loader for sitesync.

Configuration values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/sitesync/config.yml`` (or an override path).
3. Environment variables prefixed with ``SITESYNC_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITESYNC_VERSIONS_ROOT=/opt
    export SITESYNC_BACKUPS__DATE_SUFFIX=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load sitesync configuration. Install with "
        "`pip install sitesync` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SITESYNC_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Naming policy for backups of replaced entries."""

    separator: str = "."
    extension: str = ".bak"
    date_suffix: bool = True
    max_sequence: int = 10_000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "separator": self.separator,
            "extension": self.extension,
            "date_suffix": self.date_suffix,
            "max_sequence": self.max_sequence,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager used to answer "is installed" queries."""

    backend: str = "rpm"
    jdk_package: str = "jdk"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"backend": self.backend, "jdk_package": self.jdk_package}


@dataclass(frozen=True)
class SiteDefaults:
    """Modes applied to every installation root."""

    conf_mode: int = 0o775
    root_mode: int = 0o770

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"conf_mode": f"{self.conf_mode:04o}", "root_mode": f"{self.root_mode:04o}"}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitesync."""

    config_file: Path
    sites_root: Path
    versions_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    jobs: int
    jdk_profile: str
    backups: BackupConfig
    packages: PackagesConfig
    defaults: SiteDefaults

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "sites_root": str(self.sites_root),
            "versions_root": str(self.versions_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "jobs": self.jobs,
            "jdk_profile": self.jdk_profile,
            "backups": self.backups.to_dict(),
            "packages": self.packages.to_dict(),
            "defaults": self.defaults.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitesync/config.yml",
    "sites_root": "/var/opt/apache-tomcat",
    "versions_root": "/opt",
    "state_dir": "/var/lib/sitesync",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/sitesync",
    "runtime_dir": "/run/sitesync",
    "templates_dir": "/etc/sitesync/templates",
    "lock_timeout": 30.0,
    "jobs": 1,
    "jdk_profile": "/opt/jdk1.8/profile.sh",
    "backups": {
        "separator": ".",
        "extension": ".bak",
        "date_suffix": True,
        "max_sequence": 10_000,
    },
    "packages": {
        "backend": "rpm",
        "jdk_package": "jdk1.8",
    },
    "defaults": {
        "conf_mode": "0775",
        "root_mode": "0770",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PACKAGE_BACKENDS = {"rpm", "dpkg", "none"}


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

    _validate_section(raw, "backups", {"separator", "extension", "date_suffix", "max_sequence"})
    _validate_section(raw, "defaults", {"conf_mode", "root_mode"})
    packages = _validate_section(raw, "packages", {"backend", "jdk_package"})
    backend = packages.get("backend")
    if backend is not None and str(backend) not in ALLOWED_PACKAGE_BACKENDS:
        allowed = ", ".join(sorted(ALLOWED_PACKAGE_BACKENDS))
        raise ConfigError(f"Unsupported package backend '{backend}'. Allowed: {allowed}.")


def _validate_section(
    raw: Mapping[str, object],
    name: str,
    allowed: set[str],
) -> dict[str, object]:
    section = _as_dict(raw.get(name), name)
    unknown = set(section.keys()) - allowed
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown {name} configuration keys: {joined}.")
    return section


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    jobs = _expect_int(raw.get("jobs"), "jobs", default=1)
    if jobs < 1:
        raise ConfigError("jobs must be at least 1.")

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    extension = str(backups_mapping.get("extension", ".bak"))
    if not extension:
        raise ConfigError("backups.extension must be a non-empty string.")
    max_sequence = _expect_int(
        backups_mapping.get("max_sequence"), "backups.max_sequence", default=10_000
    )
    if max_sequence < 1:
        raise ConfigError("backups.max_sequence must be greater than zero.")
    backups = BackupConfig(
        separator=str(backups_mapping.get("separator", ".")),
        extension=extension,
        date_suffix=_expect_bool(backups_mapping.get("date_suffix"), "backups.date_suffix", default=True),
        max_sequence=max_sequence,
    )

    packages_mapping = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        backend=str(packages_mapping.get("backend", "rpm")),
        jdk_package=str(packages_mapping.get("jdk_package", "jdk1.8")),
    )

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    defaults = SiteDefaults(
        conf_mode=_parse_permission_mode(defaults_mapping.get("conf_mode", "0775"), "defaults.conf_mode"),
        root_mode=_parse_permission_mode(defaults_mapping.get("root_mode", "0770"), "defaults.root_mode"),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        sites_root=_to_path(raw.get("sites_root")),
        versions_root=_to_path(raw.get("versions_root")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        jobs=jobs,
        jdk_profile=str(raw.get("jdk_profile", "/opt/jdk1.8/profile.sh")),
        backups=backups,
        packages=packages,
        defaults=defaults,
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


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        # YAML reads an unquoted 0775 as decimal 775; treat its digits as octal.
        text = str(value)
    elif isinstance(value, str):
        text = value.strip().lower()
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if not text:
        raise ConfigError(f"{label} must be an octal integer string.")
    if text.startswith("0o"):
        text = text[2:]
    try:
        mode = int(text, 8)
    except ValueError as exc:
        raise ConfigError(f"{label} must be an octal integer string.") from exc
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


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


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
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
    "PackagesConfig",
    "SiteDefaults",
    "load_config",
]
