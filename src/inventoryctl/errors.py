"""Error taxonomy shared by the convergence engine.

Every error carries the instance, component and step it is attributed to so
the CLI can report failures precisely. Only :class:`ValidationError` is fatal
for a whole run; the remaining errors are scoped to a single instance (or to
its git subgraph for :class:`GitStepError`).
"""
from __future__ import annotations

from collections.abc import Sequence


class ConvergenceError(RuntimeError):
    """Base class for failures raised while converging instances."""

    component = "engine"

    def __init__(
        self,
        message: str,
        *,
        instance: str | None = None,
        step: str | None = None,
    ) -> None:
        """Record the message together with its attribution."""
        super().__init__(message)
        self.message = message
        self.instance = instance
        self.step = step

    def describe(self) -> str:
        """Return ``instance/component/step: message`` for reporting."""
        parts = [part for part in (self.instance, self.component, self.step) if part]
        prefix = "/".join(parts)
        return f"{prefix}: {self.message}" if prefix else self.message

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "component": self.component,
            "step": self.step,
            "message": self.message,
        }


class ValidationError(ConvergenceError):
    """Raised when the declared instance set violates a global invariant."""

    component = "registry"

    def __init__(self, message: str, *, problems: Sequence[str] | None = None) -> None:
        """Store every detected problem, not only the first one."""
        super().__init__(message, step="validate")
        self.problems = list(problems or [message])

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = super().to_dict()
        payload["problems"] = list(self.problems)
        return payload


class IdentityError(ConvergenceError):
    """Raised when the account database cannot be brought in line."""

    component = "identity"


class IdentityConflict(IdentityError):
    """Raised when an existing account differs from the declared identity."""


class FilesystemError(ConvergenceError):
    """Raised when a managed path cannot be created or adjusted."""

    component = "filesystem"


class ConfigRenderError(ConvergenceError):
    """Raised when the per-instance configuration file cannot be written."""

    component = "config"


class ServiceError(ConvergenceError):
    """Raised when the service unit cannot be enabled, started or restarted."""

    component = "service"


class GitStepError(ConvergenceError):
    """Raised when a git deployment step fails for an instance."""

    component = "git"


__all__ = [
    "ConfigRenderError",
    "ConvergenceError",
    "FilesystemError",
    "GitStepError",
    "IdentityConflict",
    "IdentityError",
    "ServiceError",
    "ValidationError",
]
