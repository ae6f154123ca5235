"""Structured operation logging for inventoryctl.

Every CLI command runs inside an :class:`OperationScope`. When the scope closes
one JSON record is appended to ``<logs_dir>/operations.jsonl`` and a short
human readable line is written to ``<logs_dir>/inventoryctl.log`` through the
standard :mod:`logging` machinery.

Logging must never be the reason a convergence run fails: if the log directory
cannot be created, or a write fails, the logger disables itself and the command
carries on.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import threading
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "inventoryctl.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 5
REDACTED = "********"
SECRET_MARKERS = ("api_key", "secret", "token", "password")

_HANDLER_LOCK = threading.Lock()


def _is_secret_key(key: object) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SECRET_MARKERS)


def sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value* with secret-looking keys redacted."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        result: dict[str, object] = {}
        for key, item in value.items():
            if _is_secret_key(key) and item:
                result[str(key)] = REDACTED
            else:
                result[str(key)] = sanitize(item)
        return result
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result of one logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = datetime.now(tz=UTC)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._lock = threading.Lock()
        self._start = time.perf_counter()

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: object | None = None,
    ) -> None:
        """Record an intermediate step; safe to call from worker threads."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = sanitize(detail)
        with self._lock:
            self.steps.append(entry)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Remember how long lock acquisition took."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "rc": rc,
            "context": sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        duration_ms = int((time.perf_counter() - self._start) * 1000)
        return {
            "op_id": self.op_id,
            "ts": self.started_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "pid": os.getpid(),
            "command": self.command,
            "args": sanitize(self.args),
            "target": sanitize(self.target),
            "steps": list(self.steps),
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "result": self.result,
        }


class StructuredLogger:
    """Write operation records as JSON lines and mirror them to a text log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*, disabling the logger when it is unusable."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG
        self._human_log_path = logs_dir / HUMAN_LOG
        self._write_lock = threading.Lock()
        self._enabled = True
        self._logger = logging.getLogger("inventoryctl.operations")
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_handler()

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and persist it when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._emit(scope)

    # ------------------------------------------------------------------
    def _attach_handler(self) -> None:
        target = str(self._human_log_path)
        with _HANDLER_LOCK:
            for handler in self._logger.handlers:
                if getattr(handler, "baseFilename", None) == target:
                    return
            try:
                handler = logging.handlers.RotatingFileHandler(
                    target,
                    maxBytes=MAX_LOG_BYTES,
                    backupCount=BACKUP_COUNT,
                    encoding="utf-8",
                )
            except OSError:
                return
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(message)s")
            )
            self._logger.addHandler(handler)
            self._logger.setLevel(logging.INFO)
            self._logger.propagate = False

    def _emit(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        line = json.dumps(record, sort_keys=False)
        with self._write_lock:
            try:
                self._rotate_if_needed()
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                self._enabled = False
                return
        result = scope.result or {}
        status = str(result.get("status", "unknown"))
        level = {"success": logging.INFO, "warning": logging.WARNING}.get(status, logging.ERROR)
        self._logger.log(
            level,
            "%s [%s] %s (op=%s)",
            scope.command,
            status,
            result.get("message", ""),
            scope.op_id,
        )

    def _rotate_if_needed(self) -> None:
        path = self._operations_log_path
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return
        if size < MAX_LOG_BYTES:
            return
        for index in range(BACKUP_COUNT - 1, 0, -1):
            source = path.with_name(f"{path.name}.{index}")
            if source.exists():
                source.replace(path.with_name(f"{path.name}.{index + 1}"))
        path.replace(path.with_name(f"{path.name}.1"))


__all__ = ["OperationScope", "StructuredLogger", "sanitize"]
