"""Unit tests for account planning and application."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from conftest import FakeHost
from inventoryctl.config import AppConfig
from inventoryctl.converge.identity import (
    apply_identity_plan,
    inspect_identity,
    next_free_gid,
    plan_identity,
)
from inventoryctl.errors import IdentityConflict, IdentityError
from inventoryctl.locking import LockManager
from inventoryctl.registry import EffectiveInstance, build_registry


@pytest.fixture()
def locks(tmp_path: Path) -> LockManager:
    """Return a lock manager rooted in the temporary directory."""
    return LockManager(tmp_path / "run", default_timeout=1.0)


def _instance(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    **values: object,
) -> EffectiveInstance:
    entry = {"data_dir": str(tmp_path / "data" / "alpha"), **values}
    return build_registry(make_config({"alpha": entry})).instances[0]


def test_plan_for_fresh_host_creates_group_user_and_members(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """A fresh host needs the group, the user and every member added."""
    instance = _instance(tmp_path, make_config, additional_members=["bob", "alice"])

    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    assert [action.kind for action in plan.actions] == [
        "create-group",
        "create-user",
        "add-member",
        "add-member",
    ]
    assert plan.actions[1].command == [
        "useradd",
        "--gid",
        "inventory-alpha",
        "--home-dir",
        str(instance.data_dir),
        "--no-create-home",
        "--shell",
        "/bin/bash",
        "inventory-alpha",
    ]
    assert [action.member for action in plan.actions[2:]] == ["alice", "bob"]
    assert plan.conflicts == []


def test_apply_allocates_gid_and_sets_members(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
    locks: LockManager,
) -> None:
    """Derived groups get the next free GID and the declared member set."""
    fake_host.add_group("taken", gid=3000)
    instance = _instance(tmp_path, make_config, additional_members=["alice", "bob"])
    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    applied = apply_identity_plan(plan, fake_host, locks, gid_base=3000)

    assert len(applied) == 4
    assert fake_host.commands[0] == ["groupadd", "--gid", "3001", "inventory-alpha"]
    group = fake_host.lookup_group("inventory-alpha")
    assert group is not None
    assert set(group.members) == {"alice", "bob"}
    user = fake_host.lookup_user("inventory-alpha")
    assert user is not None and user.home == instance.data_dir

    again = plan_identity(instance, inspect_identity(instance, fake_host))
    assert again.actions == []


def test_explicit_group_is_not_given_a_gid(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
    locks: LockManager,
) -> None:
    """Explicitly named groups are created without forcing a GID."""
    instance = _instance(tmp_path, make_config, group="inventory")
    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    apply_identity_plan(plan, fake_host, locks)

    assert fake_host.commands[0] == ["groupadd", "inventory"]


def test_existing_members_outside_declaration_are_kept(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """Membership is additive: undeclared members are not removed."""
    instance = _instance(tmp_path, make_config, additional_members=["alice"])
    fake_host.add_group("inventory-alpha", members=["carol"])
    fake_host.add_user("inventory-alpha", home=instance.data_dir, group="inventory-alpha")

    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    assert [action.command for action in plan.actions] == [
        ["gpasswd", "--add", "alice", "inventory-alpha"]
    ]


def test_home_mismatch_is_a_conflict(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
    locks: LockManager,
) -> None:
    """An existing user with another home directory is never modified."""
    instance = _instance(tmp_path, make_config)
    fake_host.add_user("inventory-alpha", home=Path("/home/elsewhere"), group="inventory-alpha")
    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    with pytest.raises(IdentityConflict) as excinfo:
        apply_identity_plan(plan, fake_host, locks)

    assert excinfo.value.step == "inspect"
    assert "home" in excinfo.value.message
    assert fake_host.commands == []


def test_primary_group_mismatch_is_a_conflict(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """An existing user in another primary group conflicts."""
    instance = _instance(tmp_path, make_config)
    fake_host.add_group("inventory-alpha")
    fake_host.add_user("inventory-alpha", home=instance.data_dir, group="users")

    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    assert any("primary group" in conflict for conflict in plan.conflicts)


def test_shell_mismatch_is_only_a_warning(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """A different login shell is reported but not changed."""
    instance = _instance(tmp_path, make_config)
    fake_host.add_user(
        "inventory-alpha",
        home=instance.data_dir,
        group="inventory-alpha",
        shell="/usr/sbin/nologin",
    )

    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    assert plan.actions == []
    assert plan.conflicts == []
    assert len(plan.warnings) == 1


def test_command_failure_is_attributed_to_step(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
    locks: LockManager,
) -> None:
    """A failing useradd raises IdentityError naming the step."""
    instance = _instance(tmp_path, make_config)
    fake_host.fail_when("useradd")
    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    with pytest.raises(IdentityError) as excinfo:
        apply_identity_plan(plan, fake_host, locks)

    assert excinfo.value.step == "create-user"
    assert excinfo.value.instance == "alpha"


def test_dry_run_reports_without_commands(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
    locks: LockManager,
) -> None:
    """Dry runs return descriptions only."""
    instance = _instance(tmp_path, make_config)
    plan = plan_identity(instance, inspect_identity(instance, fake_host))

    applied = apply_identity_plan(plan, fake_host, locks, dry_run=True)

    assert applied == ["Create group 'inventory-alpha'.", "Create user 'inventory-alpha'."]
    assert fake_host.commands == []


def test_next_free_gid_skips_used_values() -> None:
    """GID allocation returns the lowest unused value at or above the base."""
    assert next_free_gid({3000, 3001, 3003}, 3000) == 3002
    assert next_free_gid(set(), 3000) == 3000
