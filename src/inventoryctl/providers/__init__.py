"""Provider interfaces for inventoryctl."""
from __future__ import annotations

from .systemd import ServiceAction, ServicePlan, SystemdProvider

__all__ = [
    "ServiceAction",
    "ServicePlan",
    "SystemdProvider",
]
