"""Inspect and plan the dedicated OS group and user of an instance."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from ..errors import IdentityConflict, IdentityError
from ..host import CommandError, GroupEntry, SystemHost, UserEntry
from ..locking import LockManager
from ..registry import EffectiveInstance


@dataclass(slots=True)
class IdentityStatus:
    """Current state of the instance's accounts on the host."""

    user: UserEntry | None
    group: GroupEntry | None
    primary_group: str | None = None

    @property
    def members(self) -> frozenset[str]:
        """Return the current supplementary members of the group."""
        return self.group.members if self.group is not None else frozenset()


@dataclass(slots=True)
class IdentityAction:
    """Single account database change required to satisfy the instance."""

    kind: Literal["create-group", "create-user", "add-member"]
    description: str
    command: list[str]
    allocate_gid: bool = False
    member: str | None = None


@dataclass(slots=True)
class IdentityPlan:
    """Aggregated actions, warnings and conflicts for one instance."""

    instance: EffectiveInstance
    status: IdentityStatus
    actions: list[IdentityAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)


def inspect_identity(instance: EffectiveInstance, host: SystemHost) -> IdentityStatus:
    """Return the current account state for *instance*."""
    user = host.lookup_user(instance.user)
    group = host.lookup_group(instance.group)
    primary_group = host.group_name(user.gid) if user is not None else None
    return IdentityStatus(user=user, group=group, primary_group=primary_group)


def plan_identity(
    instance: EffectiveInstance,
    status: IdentityStatus,
    *,
    shell: str = "/bin/bash",
) -> IdentityPlan:
    """Return the actions needed to bring *status* in line with *instance*.

    Group membership uses union semantics: declared members missing from the
    group are added, members added by other means are left alone.
    """
    plan = IdentityPlan(instance=instance, status=status)

    if status.group is None:
        plan.actions.append(
            IdentityAction(
                kind="create-group",
                description=f"Create group '{instance.group}'.",
                command=["groupadd", instance.group],
                allocate_gid=instance.allocate_gid,
            )
        )

    if status.user is None:
        plan.actions.append(
            IdentityAction(
                kind="create-user",
                description=f"Create user '{instance.user}'.",
                command=[
                    "useradd",
                    "--gid",
                    instance.group,
                    "--home-dir",
                    str(instance.data_dir),
                    "--no-create-home",
                    "--shell",
                    shell,
                    instance.user,
                ],
            )
        )
    else:
        if status.user.home != instance.data_dir:
            plan.conflicts.append(
                f"User '{instance.user}' home '{status.user.home}' differs from "
                f"desired '{instance.data_dir}'."
            )
        if status.primary_group and status.primary_group != instance.group:
            plan.conflicts.append(
                f"User '{instance.user}' primary group is '{status.primary_group}', "
                f"expected '{instance.group}'."
            )
        if status.user.shell != shell:
            plan.warnings.append(
                f"User '{instance.user}' shell '{status.user.shell}' differs from desired '{shell}'."
            )

    for member in sorted(instance.additional_members - status.members):
        plan.actions.append(
            IdentityAction(
                kind="add-member",
                description=f"Add '{member}' to group '{instance.group}'.",
                command=["gpasswd", "--add", member, instance.group],
                member=member,
            )
        )

    return plan


def next_free_gid(used: set[int], base: int) -> int:
    """Return the lowest GID at or above *base* that is not in *used*."""
    candidate = base
    while candidate in used:
        candidate += 1
    return candidate


def apply_identity_plan(
    plan: IdentityPlan,
    host: SystemHost,
    locks: LockManager,
    *,
    gid_base: int = 3000,
    dry_run: bool = False,
) -> list[str]:
    """Execute *plan* under the accounts lock and return what was changed.

    Conflicts are raised before anything is written. Each action is checked
    again once the lock is held, since another instance pipeline may share the
    group and have created it in the meantime.
    """
    name = plan.instance.name
    if plan.conflicts:
        raise IdentityConflict("; ".join(plan.conflicts), instance=name, step="inspect")
    if not plan.actions:
        return []
    if dry_run:
        return [action.description for action in plan.actions]

    applied: list[str] = []
    with locks.accounts_lock():
        for action in plan.actions:
            command = list(action.command)
            if action.kind == "create-group":
                if host.lookup_group(plan.instance.group) is not None:
                    continue
                if action.allocate_gid:
                    gid = next_free_gid(host.used_gids(), gid_base)
                    command[1:1] = ["--gid", str(gid)]
            elif action.kind == "create-user":
                if host.lookup_user(plan.instance.user) is not None:
                    continue
            elif action.kind == "add-member":
                group = host.lookup_group(plan.instance.group)
                if group is not None and action.member in group.members:
                    continue
            try:
                host.run(command)
            except CommandError as exc:
                raise IdentityError(str(exc), instance=name, step=action.kind) from exc
            applied.append(action.description)
    return applied


__all__ = [
    "IdentityAction",
    "IdentityPlan",
    "IdentityStatus",
    "apply_identity_plan",
    "inspect_identity",
    "next_free_gid",
    "plan_identity",
]
