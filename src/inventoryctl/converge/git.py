"""Git deployment channel: bare repository, hook and working-copy wiring.

Steps run strictly in order and each one is guarded by state that can be
observed on the host, so re-running convergence never repeats a one-time
action:

``init-bare``
    skipped when ``<bare>/config`` exists;
``hook``
    ``<bare>/hooks/post-receive`` rewritten only when content, mode or owner
    differ;
``init-worktree``
    skipped when ``<data_dir>/.git`` exists;
``config-identity``
    skipped when ``user.email`` is already set in the working copy;
``add-local-remote``
    skipped when the local remote already exists;
``add-external-remote``
    only when ``git_remote`` is declared, skipped when the remote exists.

A failing step raises :class:`~inventoryctl.errors.GitStepError` and nothing
after it is attempted.
"""
from __future__ import annotations

import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..config import GitConfig
from ..errors import FilesystemError, GitStepError
from ..host import CommandError, SystemHost
from ..registry import EffectiveInstance
from ..templates import TemplateEngine, TemplateRenderError, write_if_changed
from .filesystem import DATA_DIR_MODE, DirectorySpec, apply_directory_plan, plan_directories

HOOK_TEMPLATE = "git/post-receive.j2"
HOOK_MODE = 0o755

GitStep = Literal[
    "init-bare",
    "hook",
    "init-worktree",
    "config-identity",
    "add-local-remote",
    "add-external-remote",
]

STEP_ORDER: tuple[GitStep, ...] = (
    "init-bare",
    "hook",
    "init-worktree",
    "config-identity",
    "add-local-remote",
    "add-external-remote",
)


@dataclass(slots=True)
class GitStatus:
    """Observed state of the git channel for one instance."""

    bare_initialized: bool = False
    hook_current: bool = False
    worktree_initialized: bool = False
    identity_configured: bool = False
    local_remote_present: bool = False
    external_remote_present: bool = False


@dataclass(slots=True)
class GitAction:
    """One guarded step and the commands that perform it."""

    step: GitStep
    description: str
    commands: list[list[str]] = field(default_factory=list)


@dataclass(slots=True)
class GitPlan:
    """Ordered git actions for an instance."""

    instance: EffectiveInstance
    hook_content: str
    actions: list[GitAction] = field(default_factory=list)

    @property
    def steps(self) -> list[GitStep]:
        """Return the steps that will run, in order."""
        return [action.step for action in self.actions]


def bare_repo_path(instance: EffectiveInstance) -> Path:
    """Return the bare repository path, failing for git-disabled instances."""
    if instance.git_bare_repo is None:
        raise GitStepError("Git management is disabled.", instance=instance.name, step="plan")
    return instance.git_bare_repo


def hook_path(instance: EffectiveInstance) -> Path:
    """Return the path of the ``post-receive`` hook."""
    return bare_repo_path(instance) / "hooks" / "post-receive"


def render_hook(
    instance: EffectiveInstance,
    templates: TemplateEngine,
    git: GitConfig,
) -> str:
    """Render the ``post-receive`` hook for *instance*."""
    context = {
        "data_dir": str(instance.data_dir),
        "bare_repo": str(bare_repo_path(instance)),
        "remote": git.local_remote,
        "branch": git.branch,
    }
    try:
        return templates.render_to_string(HOOK_TEMPLATE, context)
    except TemplateRenderError as exc:
        raise GitStepError(str(exc), instance=instance.name, step="hook") from exc


def inspect_git(
    instance: EffectiveInstance,
    host: SystemHost,
    git: GitConfig,
    hook_content: str,
) -> GitStatus:
    """Inspect bare repository, hook and working copy of *instance*."""
    status = GitStatus()
    bare = bare_repo_path(instance)
    status.bare_initialized = (bare / "config").is_file()
    if status.bare_initialized:
        status.hook_current = _hook_is_current(instance, host, hook_content)

    status.worktree_initialized = (instance.data_dir / ".git").exists()
    if not status.worktree_initialized:
        return status

    runner = _GitRunner(instance, host, git)
    status.identity_configured = runner.succeeds("config", "--get", "user.email")
    status.local_remote_present = runner.succeeds("remote", "get-url", git.local_remote)
    if instance.git_remote:
        status.external_remote_present = runner.succeeds(
            "remote", "get-url", git.external_remote
        )
    return status


def plan_git(
    instance: EffectiveInstance,
    status: GitStatus,
    git: GitConfig,
    hook_content: str,
) -> GitPlan:
    """Return the git actions still required, in execution order."""
    plan = GitPlan(instance=instance, hook_content=hook_content)
    bare = bare_repo_path(instance)
    worktree = str(instance.data_dir)

    if not status.bare_initialized:
        plan.actions.append(
            GitAction(
                step="init-bare",
                description=f"Initialise bare repository {bare}.",
                commands=[
                    [
                        git.bin,
                        "init",
                        "--bare",
                        "--shared=group",
                        f"--initial-branch={git.branch}",
                        str(bare),
                    ]
                ],
            )
        )
    if not status.hook_current:
        plan.actions.append(
            GitAction(step="hook", description=f"Install {hook_path(instance)}.")
        )
    if not status.worktree_initialized:
        plan.actions.append(
            GitAction(
                step="init-worktree",
                description=f"Initialise working copy in {worktree}.",
                commands=[[git.bin, "-C", worktree, "init", f"--initial-branch={git.branch}"]],
            )
        )
    if not status.identity_configured:
        plan.actions.append(
            GitAction(
                step="config-identity",
                description=f"Configure commit identity for {worktree}.",
                commands=[
                    [git.bin, "-C", worktree, "config", "user.name", git.author_name],
                    [git.bin, "-C", worktree, "config", "user.email", git.author_email],
                ],
            )
        )
    if not status.local_remote_present:
        plan.actions.append(
            GitAction(
                step="add-local-remote",
                description=f"Add remote '{git.local_remote}' -> {bare}.",
                commands=[[git.bin, "-C", worktree, "remote", "add", git.local_remote, str(bare)]],
            )
        )
    if instance.git_remote and not status.external_remote_present:
        plan.actions.append(
            GitAction(
                step="add-external-remote",
                description=f"Add remote '{git.external_remote}' -> {instance.git_remote}.",
                commands=[
                    [
                        git.bin,
                        "-C",
                        worktree,
                        "remote",
                        "add",
                        git.external_remote,
                        instance.git_remote,
                    ]
                ],
            )
        )
    return plan


def apply_git_plan(
    plan: GitPlan,
    host: SystemHost,
    git: GitConfig,
    *,
    dry_run: bool = False,
) -> list[str]:
    """Run the planned steps in order, stopping at the first failure."""
    if dry_run:
        return [action.description for action in plan.actions]

    instance = plan.instance
    runner = _GitRunner(instance, host, git)
    applied: list[str] = []
    for action in plan.actions:
        try:
            if action.step == "init-bare":
                _prepare_bare_directory(instance, host)
            if action.step == "hook":
                _install_hook(instance, host, plan.hook_content)
            for command in action.commands:
                runner.run(command)
        except (CommandError, FilesystemError, OSError, LookupError) as exc:
            raise GitStepError(str(exc), instance=instance.name, step=action.step) from exc
        applied.append(action.description)
    return applied


# ----------------------------------------------------------------------
class _GitRunner:
    def __init__(self, instance: EffectiveInstance, host: SystemHost, git: GitConfig) -> None:
        self._host = host
        self._git = git
        self._worktree = str(instance.data_dir)
        self._user = instance.user if git.run_as_user else None

    def run(self, command: list[str]) -> None:
        self._host.run(command, as_user=self._user)

    def succeeds(self, *args: str) -> bool:
        command = [self._git.bin, "-C", self._worktree, *args]
        result = self._host.run(command, as_user=self._user, check=False)
        return result.returncode == 0


def _prepare_bare_directory(instance: EffectiveInstance, host: SystemHost) -> None:
    spec = DirectorySpec(
        path=bare_repo_path(instance),
        mode=DATA_DIR_MODE,
        owner=instance.user,
        group=instance.group,
    )
    apply_directory_plan(plan_directories([spec], host), host, instance=instance.name)


def _install_hook(instance: EffectiveInstance, host: SystemHost, content: str) -> None:
    path = hook_path(instance)
    write_if_changed(path, content, mode=HOOK_MODE)
    host.chown(path, instance.user, instance.group)


def _hook_is_current(instance: EffectiveInstance, host: SystemHost, content: str) -> bool:
    path = hook_path(instance)
    if not path.is_file():
        return False
    if path.read_bytes() != content.encode("utf-8"):
        return False
    if stat.S_IMODE(path.stat().st_mode) != HOOK_MODE:
        return False
    ownership = host.ownership(path)
    return ownership.user == instance.user and ownership.group == instance.group


__all__ = [
    "GitAction",
    "GitPlan",
    "GitStatus",
    "GitStep",
    "STEP_ORDER",
    "apply_git_plan",
    "bare_repo_path",
    "hook_path",
    "inspect_git",
    "plan_git",
    "render_hook",
]
