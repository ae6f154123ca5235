"""Render the per-instance ``KEY=VALUE`` configuration file.

The file lives at ``<config_dir>/<name>.conf``, is owned by ``root:<group>``
and is mode ``0640`` because it may carry the Anthropic API key. Rendering is
deterministic, so an unchanged instance produces byte-identical content and
the write is skipped entirely.
"""
from __future__ import annotations

import stat
from dataclasses import dataclass, field

from ..errors import ConfigRenderError
from ..host import SystemHost
from ..registry import EffectiveInstance
from ..templates import TemplateEngine, TemplateRenderError, write_if_changed

CONFIG_TEMPLATE = "config/instance.conf.j2"
CONFIG_FILE_MODE = 0o640
CONFIG_FILE_OWNER = "root"


@dataclass(slots=True)
class ConfigFilePlan:
    """Diff between the rendered config and the file on disk."""

    instance: EffectiveInstance
    content: str
    write_content: bool = False
    fix_mode: bool = False
    fix_owner: bool = False
    descriptions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return ``True`` when anything needs to be applied."""
        return self.write_content or self.fix_mode or self.fix_owner


@dataclass(slots=True)
class ConfigFileResult:
    """Outcome of applying a :class:`ConfigFilePlan`."""

    content_changed: bool
    applied: list[str] = field(default_factory=list)


def render_config(instance: EffectiveInstance, templates: TemplateEngine) -> str:
    """Return the configuration file content for *instance*."""
    context = {
        "inventory_path": str(instance.data_dir),
        "api_port": instance.api_port,
        "api_host": instance.api_host,
        "anthropic_api_key": instance.anthropic_api_key or "",
    }
    try:
        return templates.render_to_string(CONFIG_TEMPLATE, context)
    except TemplateRenderError as exc:
        raise ConfigRenderError(str(exc), instance=instance.name, step="render") from exc


def plan_config_file(
    instance: EffectiveInstance,
    templates: TemplateEngine,
    host: SystemHost,
) -> ConfigFilePlan:
    """Render the config and compare it with the current file."""
    content = render_config(instance, templates)
    plan = ConfigFilePlan(instance=instance, content=content)
    path = instance.config_path

    if not path.exists():
        plan.write_content = plan.fix_owner = True
        plan.descriptions.append(f"Write {path}.")
        return plan

    if path.read_bytes() != content.encode("utf-8"):
        plan.write_content = True
        plan.descriptions.append(f"Update content of {path}.")
    if stat.S_IMODE(path.stat().st_mode) != CONFIG_FILE_MODE:
        plan.fix_mode = True
        plan.descriptions.append(f"Set mode of {path} to {CONFIG_FILE_MODE:04o}.")
    ownership = host.ownership(path)
    if ownership.user != CONFIG_FILE_OWNER or ownership.group != instance.group:
        plan.fix_owner = True
        plan.descriptions.append(
            f"Set owner of {path} to {CONFIG_FILE_OWNER}:{instance.group}."
        )
    return plan


def apply_config_plan(
    plan: ConfigFilePlan,
    host: SystemHost,
    *,
    dry_run: bool = False,
) -> ConfigFileResult:
    """Write the config file when needed and fix its ownership and mode."""
    if not plan.changed:
        return ConfigFileResult(content_changed=False)
    if dry_run:
        return ConfigFileResult(content_changed=plan.write_content, applied=list(plan.descriptions))

    instance = plan.instance
    path = instance.config_path
    try:
        content_changed = write_if_changed(path, plan.content, mode=CONFIG_FILE_MODE)
        if plan.fix_owner or content_changed:
            host.chown(path, CONFIG_FILE_OWNER, instance.group)
    except (OSError, LookupError) as exc:
        raise ConfigRenderError(
            f"Writing {path} failed: {exc}",
            instance=instance.name,
            step="write",
        ) from exc
    return ConfigFileResult(content_changed=content_changed, applied=list(plan.descriptions))


__all__ = [
    "CONFIG_FILE_MODE",
    "ConfigFilePlan",
    "ConfigFileResult",
    "apply_config_plan",
    "plan_config_file",
    "render_config",
]
