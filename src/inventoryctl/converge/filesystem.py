"""Directory planning helpers for instance data and shared directories."""
from __future__ import annotations

import stat
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..errors import FilesystemError
from ..host import Ownership, SystemHost
from ..registry import EffectiveInstance

DATA_DIR_MODE = 0o2775
SHARED_DIR_MODE = 0o755


@dataclass(slots=True)
class DirectorySpec:
    """Desired state of a managed directory."""

    path: Path
    mode: int = SHARED_DIR_MODE
    owner: str | None = None
    group: str | None = None


@dataclass(slots=True)
class DirectoryStatus:
    """Observed state of a managed directory."""

    exists: bool
    is_dir: bool = False
    mode: int | None = None
    ownership: Ownership | None = None


@dataclass(slots=True)
class DirectoryAction:
    """Single filesystem change."""

    kind: Literal["mkdir", "chown", "chmod"]
    path: Path
    description: str
    mode: int | None = None
    owner: str | None = None
    group: str | None = None


@dataclass(slots=True)
class DirectoryPlan:
    """Actions and blocking problems for a set of directories."""

    actions: list[DirectoryAction] = field(default_factory=list)
    problems: list[str] = field(default_factory=list)


def data_dir_spec(instance: EffectiveInstance) -> DirectorySpec:
    """Return the directory spec of an instance data directory."""
    return DirectorySpec(
        path=instance.data_dir,
        mode=DATA_DIR_MODE,
        owner=instance.user,
        group=instance.group,
    )


def shared_dir_spec(path: Path) -> DirectorySpec:
    """Return the spec of a host-wide directory owned by root."""
    return DirectorySpec(path=path, mode=SHARED_DIR_MODE, owner="root", group="root")


def inspect_directory(
    path: Path,
    host: SystemHost,
    *,
    instance: str | None = None,
) -> DirectoryStatus:
    """Return the observed state of *path*."""
    try:
        if not path.exists():
            return DirectoryStatus(exists=False)
        if not path.is_dir():
            return DirectoryStatus(exists=True, is_dir=False)
        mode = stat.S_IMODE(path.stat().st_mode)
        ownership = host.ownership(path)
    except OSError as exc:
        raise FilesystemError(
            f"Cannot inspect {path}: {exc}",
            instance=instance,
            step="inspect",
        ) from exc
    return DirectoryStatus(exists=True, is_dir=True, mode=mode, ownership=ownership)


def plan_directory(spec: DirectorySpec, status: DirectoryStatus) -> DirectoryPlan:
    """Return the actions required to satisfy *spec* given *status*."""
    plan = DirectoryPlan()
    path = spec.path
    if status.exists and not status.is_dir:
        plan.problems.append(f"{path} exists but is not a directory.")
        return plan

    if not status.exists:
        plan.actions.append(DirectoryAction(kind="mkdir", path=path, description=f"Create {path}."))

    current = status.ownership or Ownership(user=None, group=None)
    owner_differs = spec.owner is not None and current.user != spec.owner
    group_differs = spec.group is not None and current.group != spec.group
    if not status.exists or owner_differs or group_differs:
        if spec.owner is not None or spec.group is not None:
            plan.actions.append(
                DirectoryAction(
                    kind="chown",
                    path=path,
                    description=f"Set owner of {path} to {spec.owner}:{spec.group}.",
                    owner=spec.owner,
                    group=spec.group,
                )
            )

    if not status.exists or status.mode != spec.mode:
        plan.actions.append(
            DirectoryAction(
                kind="chmod",
                path=path,
                description=f"Set mode of {path} to {spec.mode:04o}.",
                mode=spec.mode,
            )
        )
    return plan


def plan_directories(
    specs: Iterable[DirectorySpec],
    host: SystemHost,
    *,
    instance: str | None = None,
) -> DirectoryPlan:
    """Inspect and plan every spec, concatenating the results."""
    combined = DirectoryPlan()
    for spec in specs:
        plan = plan_directory(spec, inspect_directory(spec.path, host, instance=instance))
        combined.actions.extend(plan.actions)
        combined.problems.extend(plan.problems)
    return combined


def apply_directory_plan(
    plan: DirectoryPlan,
    host: SystemHost,
    *,
    instance: str | None = None,
    dry_run: bool = False,
) -> list[str]:
    """Execute *plan* and return the descriptions of applied actions."""
    if plan.problems:
        raise FilesystemError("; ".join(plan.problems), instance=instance, step="inspect")
    if dry_run:
        return [action.description for action in plan.actions]

    applied: list[str] = []
    for action in plan.actions:
        try:
            if action.kind == "mkdir":
                action.path.mkdir(parents=True, exist_ok=True)
            elif action.kind == "chown":
                host.chown(action.path, action.owner, action.group)
            elif action.kind == "chmod" and action.mode is not None:
                action.path.chmod(action.mode)
        except (OSError, LookupError) as exc:
            raise FilesystemError(
                f"{action.description[:-1]} failed: {exc}",
                instance=instance,
                step=action.kind,
            ) from exc
        applied.append(action.description)
    return applied


__all__ = [
    "DATA_DIR_MODE",
    "SHARED_DIR_MODE",
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "DirectoryStatus",
    "apply_directory_plan",
    "data_dir_spec",
    "inspect_directory",
    "plan_directories",
    "plan_directory",
    "shared_dir_spec",
]
