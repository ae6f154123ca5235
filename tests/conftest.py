"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest
import yaml

from inventoryctl.config import AppConfig, load_config
from inventoryctl.host import CommandError, GroupEntry, Ownership, SystemHost, UserEntry


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeHost(SystemHost):
    """In-memory account database, ownership table and command simulator.

    Directories and files are still created on the real filesystem (under
    ``tmp_path``); only account lookups, ``chown`` and external commands are
    simulated. Every command is recorded in :attr:`commands`.
    """

    def __init__(self) -> None:
        self.users: dict[str, UserEntry] = {}
        self.groups: dict[str, GroupEntry] = {}
        self.owners: dict[str, Ownership] = {}
        self.enabled_units: set[str] = set()
        self.active_units: set[str] = set()
        self.git_config: dict[str, dict[str, str]] = {}
        self.git_remotes: dict[str, dict[str, str]] = {}
        self.commands: list[list[str]] = []
        self.run_as: list[str | None] = []
        self.failures: list[tuple[Callable[[list[str]], bool], int]] = []
        self._lock = threading.Lock()
        self._next_uid = 2000

    # -- account database ------------------------------------------------
    def add_user(
        self,
        name: str,
        *,
        home: Path,
        group: str,
        shell: str = "/bin/bash",
    ) -> None:
        """Seed an existing user (its primary group is created if missing)."""
        if group not in self.groups:
            self.add_group(group)
        self._next_uid += 1
        self.users[name] = UserEntry(
            name=name,
            uid=self._next_uid,
            gid=self.groups[group].gid,
            home=home,
            shell=shell,
        )

    def add_group(self, name: str, *, gid: int | None = None, members: Sequence[str] = ()) -> None:
        """Seed an existing group."""
        if gid is None:
            gid = max([entry.gid for entry in self.groups.values()] + [999]) + 1
        self.groups[name] = GroupEntry(name=name, gid=gid, members=frozenset(members))

    def lookup_user(self, name: str) -> UserEntry | None:
        return self.users.get(name)

    def lookup_group(self, name: str) -> GroupEntry | None:
        return self.groups.get(name)

    def group_name(self, gid: int) -> str | None:
        for entry in self.groups.values():
            if entry.gid == gid:
                return entry.name
        return None

    def used_gids(self) -> set[int]:
        return {entry.gid for entry in self.groups.values()}

    # -- ownership -------------------------------------------------------
    def ownership(self, path: Path) -> Ownership:
        path.stat()
        return self.owners.get(str(path), Ownership(user="root", group="root"))

    def chown(self, path: Path, user: str | None, group: str | None) -> None:
        if not path.exists():
            raise FileNotFoundError(str(path))
        if user is not None and user != "root" and user not in self.users:
            raise LookupError(f"no such user: {user!r}")
        if group is not None and group != "root" and group not in self.groups:
            raise LookupError(f"no such group: {group!r}")
        current = self.owners.get(str(path), Ownership(user="root", group="root"))
        self.owners[str(path)] = Ownership(
            user=user if user is not None else current.user,
            group=group if group is not None else current.group,
        )

    # -- commands --------------------------------------------------------
    def fail_when(self, *prefix: str, returncode: int = 1) -> None:
        """Make every command starting with *prefix* exit with *returncode*."""
        wanted = list(prefix)
        self.failures.append((lambda command: command[: len(wanted)] == wanted, returncode))

    def commands_starting(self, *prefix: str) -> list[list[str]]:
        """Return recorded commands that start with *prefix*."""
        wanted = list(prefix)
        return [command for command in self.commands if command[: len(wanted)] == wanted]

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        as_user: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = list(command)
        with self._lock:
            self.commands.append(args)
            self.run_as.append(as_user)
            returncode = self._simulate(args)
        if check and returncode != 0:
            raise CommandError(args, returncode, "simulated failure")
        return subprocess.CompletedProcess(args, returncode, stdout="", stderr="")

    def _simulate(self, args: list[str]) -> int:
        for matches, returncode in self.failures:
            if matches(args):
                return returncode
        program = args[0]
        if program == "groupadd":
            return self._groupadd(args[1:])
        if program == "useradd":
            return self._useradd(args[1:])
        if program == "gpasswd":
            _flag, member, group = args[1:4]
            entry = self.groups.get(group)
            if entry is None:
                return 3
            self.groups[group] = GroupEntry(
                name=entry.name,
                gid=entry.gid,
                members=entry.members | {member},
            )
            return 0
        if program == "systemctl":
            return self._systemctl(args[1:])
        if program == "git":
            return self._git(args[1:])
        return 0

    def _groupadd(self, args: list[str]) -> int:
        gid: int | None = None
        if args[0] == "--gid":
            gid = int(args[1])
            args = args[2:]
        name = args[0]
        if name in self.groups:
            return 9
        self.add_group(name, gid=gid)
        return 0

    def _useradd(self, args: list[str]) -> int:
        options: dict[str, str] = {}
        index = 0
        while index < len(args) - 1:
            flag = args[index]
            if flag == "--no-create-home":
                index += 1
                continue
            options[flag] = args[index + 1]
            index += 2
        name = args[-1]
        if name in self.users:
            return 9
        if options["--gid"] not in self.groups:
            return 6
        self.add_user(
            name,
            home=Path(options["--home-dir"]),
            group=options["--gid"],
            shell=options["--shell"],
        )
        return 0

    def _systemctl(self, args: list[str]) -> int:
        action, unit = args[0], args[-1]
        if action == "is-enabled":
            return 0 if unit in self.enabled_units else 1
        if action == "is-active":
            return 0 if unit in self.active_units else 3
        if action == "enable":
            self.enabled_units.add(unit)
        elif action in ("start", "restart"):
            self.active_units.add(unit)
        return 0

    def _git(self, args: list[str]) -> int:
        if args[:2] == ["init", "--bare"]:
            bare = Path(args[-1])
            (bare / "hooks").mkdir(parents=True, exist_ok=True)
            (bare / "config").write_text("[core]\n\tbare = true\n", encoding="utf-8")
            return 0
        if args[0] != "-C":
            return 0
        worktree, rest = args[1], args[2:]
        if rest[0] == "init":
            (Path(worktree) / ".git").mkdir(parents=True, exist_ok=True)
            return 0
        settings = self.git_config.setdefault(worktree, {})
        remotes = self.git_remotes.setdefault(worktree, {})
        if rest[:2] == ["config", "--get"]:
            return 0 if rest[2] in settings else 1
        if rest[0] == "config":
            settings[rest[1]] = rest[2]
            return 0
        if rest[:2] == ["remote", "get-url"]:
            return 0 if rest[2] in remotes else 2
        if rest[:2] == ["remote", "add"]:
            if rest[2] in remotes:
                return 3
            remotes[rest[2]] = rest[3]
            return 0
        return 0


@pytest.fixture()
def fake_host() -> FakeHost:
    """Return an empty in-memory host."""
    return FakeHost()


@pytest.fixture()
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Return a helper writing a YAML config rooted under ``tmp_path``."""

    def _write(instances: object, **extra: object) -> Path:
        data: dict[str, object] = {
            "config_dir": str(tmp_path / "etc" / "inventory-system"),
            "git_root": str(tmp_path / "git"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 2,
            "workers": 1,
            "instances": instances,
        }
        data.update(extra)
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def make_config(write_config: Callable[..., Path]) -> Callable[..., AppConfig]:
    """Return a helper that writes and loads a config in one step."""

    def _make(instances: Mapping[str, object] | list[object], **extra: object) -> AppConfig:
        return load_config(config_file=write_config(instances, **extra), env={})

    return _make
