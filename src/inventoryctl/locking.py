"""File based locks serialising concurrent inventoryctl work.

Three kinds of lock live under the runtime directory:

* ``inventoryctl.lock`` is held for the duration of a mutating run so two
  convergence runs never interleave;
* ``<instance>.lock`` guards the pipeline of a single instance;
* ``accounts.lock`` serialises writes to the user/group database so GID
  allocation cannot race between parallel instance pipelines.

Locks use ``fcntl.flock`` on a dedicated file descriptor per acquisition, which
makes them exclusive between threads of the same process as well as between
processes. Lock files are left behind after release for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "inventoryctl.lock"
ACCOUNTS_LOCK_NAME = "accounts.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    fd: int = -1


class LockManager:
    """Acquire the global, per-instance and account database locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and the default timeout in seconds."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def global_lock(self, *, timeout: float | None = None) -> _LockContext:
        """Return a context manager holding the run-wide lock."""
        return self._lock(self.runtime_dir / GLOBAL_LOCK_NAME, timeout)

    def instance_lock(self, name: str, *, timeout: float | None = None) -> _LockContext:
        """Return a context manager holding the lock for instance *name*."""
        safe = name.replace("/", "-")
        return self._lock(self.runtime_dir / f"{safe}.lock", timeout)

    def accounts_lock(self, *, timeout: float | None = None) -> _LockContext:
        """Return a context manager serialising account database writes."""
        return self._lock(self.runtime_dir / ACCOUNTS_LOCK_NAME, timeout)

    # ------------------------------------------------------------------
    def _lock(self, path: Path, timeout: float | None) -> _LockContext:
        effective = self.default_timeout if timeout is None else timeout
        return _LockContext(path, effective)


class _LockContext:
    def __init__(self, path: Path, timeout: float) -> None:
        self._path = path
        self._timeout = timeout
        self._handle: LockHandle | None = None

    def __enter__(self) -> LockHandle:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        start = time.monotonic()
        deadline = start + self._timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {self._timeout:.1f}s waiting for lock {self._path}."
                    ) from None
                time.sleep(POLL_INTERVAL)
        wait_ms = int((time.monotonic() - start) * 1000)
        self._write_metadata(fd)
        self._handle = LockHandle(path=self._path, wait_ms=wait_ms, fd=fd)
        return self._handle

    def __exit__(self, *exc_info: object) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fd, fcntl.LOCK_UN)
        finally:
            os.close(handle.fd)

    def _write_metadata(self, fd: int) -> None:
        payload = {
            "pid": os.getpid(),
            "thread": threading.get_ident(),
            "path": str(self._path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, data, 0)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
