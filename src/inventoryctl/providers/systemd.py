"""Systemd provider declaring the run-state of instance service units."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Literal

from ..errors import ServiceError
from ..host import CommandError, SystemHost
from ..registry import EffectiveInstance

ServiceAction = Literal["enable", "start", "restart"]


@dataclass(slots=True)
class ServicePlan:
    """Observed unit state and the actions needed to reach running+enabled."""

    instance: EffectiveInstance
    enabled: bool
    active: bool
    actions: list[ServiceAction] = field(default_factory=list)


@dataclass(slots=True)
class SystemdProvider:
    """Enable, start and restart ``inventory-api@<name>`` units.

    The unit template itself is deployed outside inventoryctl; this provider
    only declares the desired run-state and never polls for health.
    """

    host: SystemHost
    systemctl_bin: str = "systemctl"

    def is_enabled(self, instance: EffectiveInstance) -> bool:
        """Return ``True`` when the unit is enabled at boot."""
        result = self._systemctl("is-enabled", instance, check=False)
        return result.returncode == 0

    def is_active(self, instance: EffectiveInstance) -> bool:
        """Return ``True`` when the unit is currently running."""
        result = self._systemctl("is-active", instance, check=False)
        return result.returncode == 0

    def plan(self, instance: EffectiveInstance, *, config_changed: bool) -> ServicePlan:
        """Return the actions needed for *instance*.

        A config content change restarts a unit that is already running; a
        unit that is not running is simply started and reads the new file.
        """
        plan = ServicePlan(
            instance=instance,
            enabled=self.is_enabled(instance),
            active=self.is_active(instance),
        )
        if not plan.enabled:
            plan.actions.append("enable")
        if not plan.active:
            plan.actions.append("start")
        elif config_changed:
            plan.actions.append("restart")
        return plan

    def apply(self, plan: ServicePlan, *, dry_run: bool = False) -> list[str]:
        """Execute the planned actions and describe what was done."""
        unit = plan.instance.service_unit
        descriptions = [f"{action.capitalize()} {unit}." for action in plan.actions]
        if dry_run:
            return descriptions
        for action in plan.actions:
            self._systemctl(action, plan.instance)
        return descriptions

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        instance: EffectiveInstance,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin, command]
        if command in ("is-enabled", "is-active"):
            args.append("--quiet")
        args.append(instance.service_unit)
        try:
            return self.host.run(args, check=check)
        except CommandError as exc:
            raise ServiceError(str(exc), instance=instance.name, step=command) from exc


__all__ = ["ServiceAction", "ServicePlan", "SystemdProvider"]
