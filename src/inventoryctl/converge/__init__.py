"""Per-instance convergence components.

Each module follows the same shape: ``inspect_*`` reads the current host
state, a pure ``plan_*`` function diffs it against the effective instance, and
``apply_*`` executes the resulting actions.
"""
from __future__ import annotations

from .filesystem import (
    DirectoryAction,
    DirectoryPlan,
    DirectorySpec,
    apply_directory_plan,
    plan_directories,
)
from .git import GitPlan, GitStep, apply_git_plan, inspect_git, plan_git
from .identity import (
    IdentityAction,
    IdentityPlan,
    IdentityStatus,
    apply_identity_plan,
    inspect_identity,
    plan_identity,
)
from .settings import ConfigFilePlan, apply_config_plan, plan_config_file, render_config

__all__ = [
    # identity helpers
    "IdentityAction",
    "IdentityPlan",
    "IdentityStatus",
    "inspect_identity",
    "plan_identity",
    "apply_identity_plan",
    # filesystem helpers
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "plan_directories",
    "apply_directory_plan",
    # config file helpers
    "ConfigFilePlan",
    "render_config",
    "plan_config_file",
    "apply_config_plan",
    # git helpers
    "GitPlan",
    "GitStep",
    "inspect_git",
    "plan_git",
    "apply_git_plan",
]
