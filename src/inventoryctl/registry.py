"""Instance registry: resolve declared instances into effective specs.

Raw entries from :class:`~inventoryctl.config.AppConfig` are parsed into
:class:`InstanceSpec` objects and then resolved, once, into immutable
:class:`EffectiveInstance` objects with every default filled in (account names,
API port, bare repository path, config path, service unit). Global invariants
are checked across the whole set before anything touches the host; every
problem found is reported in a single :class:`~inventoryctl.errors.ValidationError`.
"""
from __future__ import annotations

import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import AppConfig, InstanceEntry
from .errors import ValidationError

NAME_PATTERN = re.compile(r"[a-z0-9][a-z0-9-]*")
ACCOUNT_PATTERN = re.compile(r"[a-z_][a-z0-9_-]*\$?")
MAX_ACCOUNT_NAME = 32
DEFAULT_API_HOST = "127.0.0.1"

INSTANCE_KEYS = {
    "data_dir",
    "datadir",
    "api_port",
    "api_host",
    "user",
    "group",
    "additional_members",
    "anthropic_api_key",
    "manage_git",
    "git_bare_repo",
    "git_remote",
}


class _Unset(Enum):
    UNSET = "unset"


UNSET = _Unset.UNSET


@dataclass(frozen=True)
class InstanceSpec:
    """One instance exactly as declared; ``None`` means "use the default".

    ``anthropic_api_key`` is tri-state: :data:`UNSET` inherits the global key,
    an empty string or ``None`` disables the secret line, any other string is
    emitted verbatim.
    """

    name: str
    data_dir: Path
    api_port: int | None = None
    api_host: str | None = None
    user: str | None = None
    group: str | None = None
    additional_members: frozenset[str] = frozenset()
    anthropic_api_key: str | None | _Unset = UNSET
    manage_git: bool = True
    git_bare_repo: Path | None = None
    git_remote: str | None = None


@dataclass(frozen=True)
class EffectiveInstance:
    """Fully resolved instance passed read-only to every component."""

    name: str
    data_dir: Path
    api_port: int
    api_host: str
    user: str
    group: str
    additional_members: frozenset[str]
    anthropic_api_key: str | None
    manage_git: bool
    git_bare_repo: Path | None
    git_remote: str | None
    config_path: Path
    service_unit: str
    allocate_gid: bool

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation."""
        api_key: str | None = self.anthropic_api_key
        if api_key and redact:
            api_key = "********"
        return {
            "name": self.name,
            "data_dir": str(self.data_dir),
            "api_port": self.api_port,
            "api_host": self.api_host,
            "user": self.user,
            "group": self.group,
            "additional_members": sorted(self.additional_members),
            "anthropic_api_key": api_key,
            "manage_git": self.manage_git,
            "git_bare_repo": str(self.git_bare_repo) if self.git_bare_repo else None,
            "git_remote": self.git_remote,
            "config_path": str(self.config_path),
            "service_unit": self.service_unit,
        }


@dataclass(frozen=True)
class RegistryState:
    """Validated instance set plus the global configuration it came from."""

    config: AppConfig
    instances: tuple[EffectiveInstance, ...] = field(default_factory=tuple)

    @property
    def names(self) -> list[str]:
        """Return instance names in processing order."""
        return [instance.name for instance in self.instances]

    @property
    def git_enabled(self) -> bool:
        """Return ``True`` when at least one instance manages git."""
        return any(instance.manage_git for instance in self.instances)

    def get(self, name: str) -> EffectiveInstance | None:
        """Return the instance called *name*, if declared."""
        for instance in self.instances:
            if instance.name == name:
                return instance
        return None

    def select(self, names: Iterable[str]) -> RegistryState:
        """Return a registry restricted to *names*; unknown names are an error."""
        wanted = list(dict.fromkeys(names))
        missing = [name for name in wanted if self.get(name) is None]
        if missing:
            joined = ", ".join(missing)
            raise ValidationError(f"Unknown instance(s): {joined}.")
        chosen = tuple(instance for instance in self.instances if instance.name in wanted)
        return RegistryState(config=self.config, instances=chosen)


def build_registry(config: AppConfig) -> RegistryState:
    """Parse, resolve and validate every instance declared in *config*."""
    problems: list[str] = []
    specs: list[InstanceSpec] = []
    seen: set[str] = set()
    for entry in config.instances:
        name = entry.name.strip()
        if name in seen:
            problems.append(f"Duplicate instance name '{name}'.")
            continue
        seen.add(name)
        spec = parse_instance(entry, problems)
        if spec is not None:
            specs.append(spec)

    if problems:
        raise ValidationError(_summarise(problems), problems=problems)

    instances = resolve_instances(specs, config)
    problems.extend(validate_instances(instances, config))
    if problems:
        raise ValidationError(_summarise(problems), problems=problems)
    return RegistryState(config=config, instances=tuple(instances))


def parse_instance(entry: InstanceEntry, problems: list[str]) -> InstanceSpec | None:
    """Parse one raw entry, appending any problem found to *problems*."""
    name = entry.name.strip()
    values = entry.values
    label = f"Instance '{name}'"
    start = len(problems)

    if not NAME_PATTERN.fullmatch(name):
        problems.append(f"{label}: name must match [a-z0-9][a-z0-9-]*.")

    unknown = set(values) - INSTANCE_KEYS
    if unknown:
        problems.append(f"{label}: unknown keys {', '.join(sorted(unknown))}.")
    if "data_dir" in values and "datadir" in values:
        problems.append(f"{label}: use either data_dir or datadir, not both.")

    raw_data_dir = values.get("data_dir", values.get("datadir"))
    data_dir = _optional_path(raw_data_dir, label, "data_dir", problems)
    if data_dir is None:
        problems.append(f"{label}: data_dir is required.")

    api_port = _optional_port(values.get("api_port"), label, problems)
    api_host = _optional_text(values.get("api_host"), label, "api_host", problems)
    user = _optional_account(values.get("user"), label, "user", problems)
    group = _optional_account(values.get("group"), label, "group", problems)
    members = _members(values.get("additional_members"), label, problems)

    api_key: str | None | _Unset = UNSET
    if "anthropic_api_key" in values:
        raw_key = values["anthropic_api_key"]
        if raw_key is None or isinstance(raw_key, str):
            api_key = raw_key
            if raw_key and _has_line_break(raw_key):
                problems.append(f"{label}: anthropic_api_key must be a single line.")
        else:
            problems.append(f"{label}: anthropic_api_key must be a string.")

    manage_git = values.get("manage_git", True)
    if not isinstance(manage_git, bool):
        problems.append(f"{label}: manage_git must be a boolean.")
        manage_git = True

    git_bare_repo = _optional_path(values.get("git_bare_repo"), label, "git_bare_repo", problems)
    git_remote = _optional_text(values.get("git_remote"), label, "git_remote", problems)

    if len(problems) > start or data_dir is None:
        return None
    return InstanceSpec(
        name=name,
        data_dir=data_dir,
        api_port=api_port,
        api_host=api_host,
        user=user,
        group=group,
        additional_members=members,
        anthropic_api_key=api_key,
        manage_git=manage_git,
        git_bare_repo=git_bare_repo,
        git_remote=git_remote,
    )


def resolve_instances(
    specs: Sequence[InstanceSpec],
    config: AppConfig,
) -> list[EffectiveInstance]:
    """Fill in defaults for every spec; ports are assigned in name order."""
    ordered = sorted(specs, key=lambda spec: spec.name)
    used_ports = {spec.api_port for spec in ordered if spec.api_port is not None}
    next_port = config.ports.base
    resolved: list[EffectiveInstance] = []
    for spec in ordered:
        port = spec.api_port
        if port is None:
            while next_port in used_ports:
                next_port += 1
            port = next_port
            used_ports.add(port)

        derived_account = f"{config.accounts.prefix}{spec.name}"
        if spec.anthropic_api_key is UNSET:
            api_key = config.anthropic_api_key
        else:
            api_key = spec.anthropic_api_key or None

        bare_repo: Path | None = None
        if spec.manage_git:
            bare_repo = spec.git_bare_repo or (config.git_root / f"{spec.name}.git")

        group = spec.group or derived_account
        resolved.append(
            EffectiveInstance(
                name=spec.name,
                data_dir=_normalise(spec.data_dir),
                api_port=port,
                api_host=spec.api_host or DEFAULT_API_HOST,
                user=spec.user or derived_account,
                group=group,
                additional_members=spec.additional_members,
                anthropic_api_key=api_key or None,
                manage_git=spec.manage_git,
                git_bare_repo=_normalise(bare_repo) if bare_repo is not None else None,
                git_remote=spec.git_remote if spec.manage_git else None,
                config_path=config.config_dir / f"{spec.name}.conf",
                service_unit=config.service.unit_template.format(name=spec.name),
                allocate_gid=spec.group is None,
            )
        )
    return resolved


def validate_instances(
    instances: Sequence[EffectiveInstance],
    config: AppConfig,
) -> list[str]:
    """Return every cross-instance invariant violation."""
    problems: list[str] = []
    paths: dict[Path, str] = {}
    ports: dict[int, str] = {}
    users: dict[str, str] = {}

    for instance in instances:
        label = f"Instance '{instance.name}'"
        for account in (instance.user, instance.group):
            if len(account) > MAX_ACCOUNT_NAME:
                problems.append(
                    f"{label}: account name '{account}' exceeds {MAX_ACCOUNT_NAME} characters."
                )
        if not 1 <= instance.api_port <= 65535:
            problems.append(f"{label}: api_port {instance.api_port} is not a valid TCP port.")

        claimed = [(instance.data_dir, "data_dir")]
        if instance.git_bare_repo is not None:
            claimed.append((instance.git_bare_repo, "git_bare_repo"))
        for path, kind in claimed:
            if not path.is_absolute():
                problems.append(f"{label}: {kind} '{path}' must be an absolute path.")
                continue
            owner = paths.get(path)
            if owner is not None:
                problems.append(f"{label}: {kind} '{path}' collides with {owner}.")
                continue
            paths[path] = f"{kind} of instance '{instance.name}'"

        other = ports.get(instance.api_port)
        if other is not None:
            problems.append(f"{label}: api_port {instance.api_port} is already used by '{other}'.")
        else:
            ports[instance.api_port] = instance.name

        owner_name = users.get(instance.user)
        if owner_name is not None:
            problems.append(f"{label}: user '{instance.user}' is already declared by '{owner_name}'.")
        else:
            users[instance.user] = instance.name

    for path, owner in paths.items():
        if path in (config.config_dir, config.git_root):
            problems.append(f"Path '{path}' ({owner}) collides with a shared directory.")
    return problems


# ----------------------------------------------------------------------
def _summarise(problems: Sequence[str]) -> str:
    if len(problems) == 1:
        return problems[0]
    return f"{len(problems)} validation problems; first: {problems[0]}"


def _normalise(path: Path) -> Path:
    return Path(os.path.normpath(str(path)))


def _has_line_break(value: str) -> bool:
    return "\n" in value or "\r" in value


def _has_control_character(value: str) -> bool:
    return any(ord(char) < 0x20 or ord(char) == 0x7F for char in value)


def _optional_path(value: object, label: str, key: str, problems: list[str]) -> Path | None:
    if value is None:
        return None
    if isinstance(value, Path):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        problems.append(f"{label}: {key} must be a non-empty path string.")
        return None
    text = value.strip()
    # Paths are written verbatim into KEY=VALUE files and the hook script.
    if _has_control_character(text):
        problems.append(f"{label}: {key} must not contain line breaks or control characters.")
        return None
    return Path(text).expanduser()


def _optional_port(value: object, label: str, problems: list[str]) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        problems.append(f"{label}: api_port must be an integer.")
        return None
    if isinstance(value, str):
        try:
            value = int(value.strip(), 10)
        except ValueError:
            problems.append(f"{label}: api_port must be an integer.")
            return None
    if not isinstance(value, int):
        problems.append(f"{label}: api_port must be an integer.")
        return None
    if not 1 <= value <= 65535:
        problems.append(f"{label}: api_port {value} is not a valid TCP port.")
        return None
    return value


def _optional_text(value: object, label: str, key: str, problems: list[str]) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        problems.append(f"{label}: {key} must be a non-empty string.")
        return None
    text = value.strip()
    if _has_line_break(text) or any(char.isspace() for char in text):
        problems.append(f"{label}: {key} must not contain whitespace.")
        return None
    return text


def _optional_account(value: object, label: str, key: str, problems: list[str]) -> str | None:
    text = _optional_text(value, label, key, problems)
    if text is None:
        return None
    if not ACCOUNT_PATTERN.fullmatch(text):
        problems.append(f"{label}: {key} '{text}' is not a valid account name.")
        return None
    return text


def _members(value: object, label: str, problems: list[str]) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        problems.append(f"{label}: additional_members must be a list of user names.")
        return frozenset()
    members: set[str] = set()
    for item in value:
        if not isinstance(item, str) or not ACCOUNT_PATTERN.fullmatch(item.strip()):
            problems.append(f"{label}: additional member {item!r} is not a valid user name.")
            continue
        members.add(item.strip())
    return frozenset(members)


__all__ = [
    "EffectiveInstance",
    "InstanceSpec",
    "RegistryState",
    "UNSET",
    "build_registry",
    "parse_instance",
    "resolve_instances",
    "validate_instances",
]
