"""Access to the managed host: account database, ownership and commands.

Converge modules never call :mod:`pwd`, :mod:`grp`, :func:`shutil.chown` or
:mod:`subprocess` directly; they go through a :class:`SystemHost`. Tests swap in
a subclass that keeps the account database in memory.
"""
from __future__ import annotations

import grp
import os
import pwd
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class CommandError(RuntimeError):
    """Raised when a host command exits non-zero or cannot be executed."""

    def __init__(self, command: Sequence[str], returncode: int, output: str) -> None:
        """Keep the failing command, its exit status and trimmed output."""
        joined = " ".join(command)
        super().__init__(f"{joined} failed (exit {returncode}): {output or 'no output'}")
        self.command = list(command)
        self.returncode = returncode
        self.output = output


@dataclass(frozen=True, slots=True)
class UserEntry:
    """Subset of a passwd entry inspected during convergence."""

    name: str
    uid: int
    gid: int
    home: Path
    shell: str


@dataclass(frozen=True, slots=True)
class GroupEntry:
    """Subset of a group entry inspected during convergence."""

    name: str
    gid: int
    members: frozenset[str]


@dataclass(frozen=True, slots=True)
class Ownership:
    """Owner and group names of a path (``None`` when the id has no name)."""

    user: str | None
    group: str | None


class SystemHost:
    """Default host implementation backed by the local system."""

    def lookup_user(self, name: str) -> UserEntry | None:
        """Return the passwd entry for *name*, or ``None`` when absent."""
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return UserEntry(
            name=entry.pw_name,
            uid=entry.pw_uid,
            gid=entry.pw_gid,
            home=Path(entry.pw_dir),
            shell=entry.pw_shell,
        )

    def lookup_group(self, name: str) -> GroupEntry | None:
        """Return the group entry for *name*, or ``None`` when absent."""
        try:
            entry = grp.getgrnam(name)
        except KeyError:
            return None
        return GroupEntry(name=entry.gr_name, gid=entry.gr_gid, members=frozenset(entry.gr_mem))

    def group_name(self, gid: int) -> str | None:
        """Return the name of group *gid*, if it has one."""
        try:
            return grp.getgrgid(gid).gr_name
        except KeyError:
            return None

    def used_gids(self) -> set[int]:
        """Return every GID currently allocated in the group database."""
        return {entry.gr_gid for entry in grp.getgrall()}

    def ownership(self, path: Path) -> Ownership:
        """Return the owner and group names of *path*."""
        info = path.stat()
        try:
            user: str | None = pwd.getpwuid(info.st_uid).pw_name
        except KeyError:
            user = None
        return Ownership(user=user, group=self.group_name(info.st_gid))

    def chown(self, path: Path, user: str | None, group: str | None) -> None:
        """Change the owner and/or group of *path*."""
        shutil.chown(path, user=user, group=group)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        as_user: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command*, optionally as *as_user*, raising on failure when *check*."""
        args = list(command)
        if as_user is not None and os.geteuid() == 0:
            args = ["runuser", "-u", as_user, "--", *args]
        try:
            result = subprocess.run(  # noqa: S603
                args,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(args, 127, str(exc)) from exc
        if check and result.returncode != 0:
            output = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise CommandError(args, result.returncode, output)
        return result


__all__ = ["CommandError", "GroupEntry", "Ownership", "SystemHost", "UserEntry"]
