"""Configuration loader for inventoryctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/inventoryctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``INVENTORYCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export INVENTORYCTL_PORTS__BASE=9000
    export INVENTORYCTL_GIT__BRANCH=trunk

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

The ``instances`` key carries the declared instance set, either as a mapping of
name to entry or as a list of entries with a ``name`` field. Entries are kept
raw here; :mod:`inventoryctl.registry` resolves and validates them.
"""
from __future__ import annotations

import os
from collections.abc import Hashable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - PyYAML is a declared dependency
    raise RuntimeError(
        "PyYAML is required to load inventoryctl configuration. Install with "
        "`pip install inventoryctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ValidationError

ENV_PREFIX = "INVENTORYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
REDACTED = "********"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """API port allocation defaults."""

    base: int = 8765

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base}


@dataclass(frozen=True)
class AccountsConfig:
    """Naming and allocation rules for per-instance OS accounts."""

    prefix: str = "inventory-"
    gid_base: int = 3000
    shell: str = "/bin/bash"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"prefix": self.prefix, "gid_base": self.gid_base, "shell": self.shell}


@dataclass(frozen=True)
class ServiceConfig:
    """Service unit naming and systemctl location."""

    unit_template: str = "inventory-api@{name}.service"
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_template": self.unit_template, "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class GitConfig:
    """Git deployment channel defaults."""

    bin: str = "git"
    branch: str = "main"
    local_remote: str = "local"
    external_remote: str = "origin"
    author_name: str = "Inventory System"
    author_email: str = "inventory@localhost"
    run_as_user: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "branch": self.branch,
            "local_remote": self.local_remote,
            "external_remote": self.external_remote,
            "author_name": self.author_name,
            "author_email": self.author_email,
            "run_as_user": self.run_as_user,
        }


@dataclass(frozen=True)
class InstanceEntry:
    """Raw declaration of one instance as found in the configuration."""

    name: str
    values: Mapping[str, object]


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for inventoryctl."""

    config_file: Path
    config_dir: Path
    git_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    workers: int
    anthropic_api_key: str | None
    ports: PortsConfig
    accounts: AccountsConfig
    service: ServiceConfig
    git: GitConfig
    instances: tuple[InstanceEntry, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation with secrets redacted."""
        return {
            "config_file": str(self.config_file),
            "config_dir": str(self.config_dir),
            "git_root": str(self.git_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "workers": self.workers,
            "anthropic_api_key": REDACTED if self.anthropic_api_key else None,
            "ports": self.ports.to_dict(),
            "accounts": self.accounts.to_dict(),
            "service": self.service.to_dict(),
            "git": self.git.to_dict(),
            "instances": {entry.name: _redact_entry(entry.values) for entry in self.instances},
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/inventoryctl/config.yml",
    "config_dir": "/etc/inventory-system",
    "git_root": "/var/lib/inventory-system",
    "logs_dir": "/var/log/inventoryctl",
    "runtime_dir": "/run/inventoryctl",
    "templates_dir": "/etc/inventoryctl/templates",
    "lock_timeout": 30.0,
    "workers": 4,
    "anthropic_api_key": None,
    "ports": {
        "base": 8765,
    },
    "accounts": {
        "prefix": "inventory-",
        "gid_base": 3000,
        "shell": "/bin/bash",
    },
    "service": {
        "unit_template": "inventory-api@{name}.service",
        "systemctl_bin": "systemctl",
    },
    "git": {
        "bin": "git",
        "branch": "main",
        "local_remote": "local",
        "external_remote": "origin",
        "author_name": "Inventory System",
        "author_email": "inventory@localhost",
        "run_as_user": True,
    },
    "instances": None,
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"base"},
    "accounts": {"prefix", "gid_base", "shell"},
    "service": {"unit_template", "systemctl_bin"},
    "git": {
        "bin",
        "branch",
        "local_remote",
        "external_remote",
        "author_name",
        "author_email",
        "run_as_user",
    },
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


class _UniqueKeyLoader(yaml.SafeLoader):
    """Safe loader that refuses mappings with repeated keys.

    PyYAML silently keeps the last value of a repeated key, which would hide a
    duplicated instance name.
    """

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict:
        seen: set[object] = set()
        for key_node, _value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                # PyYAML raises its own ConstructorError for this below.
                continue
            if key in seen:
                line = key_node.start_mark.line + 1
                raise ValidationError(
                    f"Duplicate key {key!r} at line {line}.",
                    problems=[f"Duplicate key {key!r} at line {line}."],
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def parse_yaml(text: str) -> object:
    """Parse *text* with duplicate-key detection."""
    return yaml.load(text, Loader=_UniqueKeyLoader)  # noqa: S506 - SafeLoader subclass


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
        data = parse_yaml(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
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

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    instances = raw.get("instances")
    if instances is not None and not isinstance(instances, (Mapping, list)):
        raise ConfigError("instances must be a mapping of name to settings or a list.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    config_dir = _to_path(raw.get("config_dir"))
    git_root = _to_path(raw.get("git_root"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    workers = _expect_int(raw.get("workers"), "workers", default=4)
    if workers < 1:
        raise ConfigError("workers must be at least 1.")

    api_key_value = raw.get("anthropic_api_key")
    if api_key_value is not None and not isinstance(api_key_value, str):
        raise ConfigError("anthropic_api_key must be a string or null.")
    anthropic_api_key = api_key_value or None

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(base=_expect_int(ports_mapping.get("base"), "ports.base", default=8765))
    if not 1 <= ports.base <= 65535:
        raise ConfigError("ports.base must be a valid TCP port (1-65535).")

    accounts_mapping = _as_dict(raw.get("accounts"), "accounts")
    accounts = AccountsConfig(
        prefix=str(accounts_mapping.get("prefix", "inventory-")),
        gid_base=_expect_int(accounts_mapping.get("gid_base"), "accounts.gid_base", default=3000),
        shell=str(accounts_mapping.get("shell", "/bin/bash")),
    )
    if accounts.gid_base < 1:
        raise ConfigError("accounts.gid_base must be a positive integer.")

    service_mapping = _as_dict(raw.get("service"), "service")
    unit_template = str(service_mapping.get("unit_template", "inventory-api@{name}.service"))
    if "{name}" not in unit_template:
        raise ConfigError("service.unit_template must contain the '{name}' placeholder.")
    service = ServiceConfig(
        unit_template=unit_template,
        systemctl_bin=str(service_mapping.get("systemctl_bin", "systemctl")),
    )

    git_mapping = _as_dict(raw.get("git"), "git")
    git = GitConfig(
        bin=str(git_mapping.get("bin", "git")),
        branch=str(git_mapping.get("branch", "main")),
        local_remote=str(git_mapping.get("local_remote", "local")),
        external_remote=str(git_mapping.get("external_remote", "origin")),
        author_name=str(git_mapping.get("author_name", "Inventory System")),
        author_email=str(git_mapping.get("author_email", "inventory@localhost")),
        run_as_user=_expect_bool(git_mapping.get("run_as_user"), "git.run_as_user", default=True),
    )
    if git.local_remote == git.external_remote:
        raise ConfigError("git.local_remote and git.external_remote must differ.")

    return AppConfig(
        config_file=config_file,
        config_dir=config_dir,
        git_root=git_root,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        workers=workers,
        anthropic_api_key=anthropic_api_key,
        ports=ports,
        accounts=accounts,
        service=service,
        git=git,
        instances=_build_instance_entries(raw.get("instances")),
    )


def _build_instance_entries(value: object | None) -> tuple[InstanceEntry, ...]:
    if value is None:
        return ()
    entries: list[InstanceEntry] = []
    if isinstance(value, Mapping):
        for name, settings in value.items():
            label = f"instances.{name}"
            entries.append(InstanceEntry(name=str(name), values=_as_dict(settings, label)))
        return tuple(entries)
    for index, item in enumerate(_as_sequence(value, "instances")):
        label = f"instances[{index}]"
        settings = _as_dict(item, label)
        name = settings.pop("name", None)
        if not isinstance(name, str):
            raise ConfigError(f"{label}.name must be a string.")
        entries.append(InstanceEntry(name=name, values=settings))
    return tuple(entries)


def _redact_entry(values: Mapping[str, object]) -> dict[str, object]:
    redacted = dict(values)
    if redacted.get("anthropic_api_key"):
        redacted["anthropic_api_key"] = REDACTED
    return {key: (str(item) if isinstance(item, Path) else item) for key, item in redacted.items()}


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
    "AccountsConfig",
    "AppConfig",
    "ConfigError",
    "GitConfig",
    "InstanceEntry",
    "PortsConfig",
    "ServiceConfig",
    "load_config",
    "parse_yaml",
]
