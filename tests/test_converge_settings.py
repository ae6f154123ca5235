"""Unit tests for per-instance configuration file rendering."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from conftest import FakeHost
from inventoryctl.config import AppConfig
from inventoryctl.converge.settings import (
    CONFIG_FILE_MODE,
    apply_config_plan,
    plan_config_file,
    render_config,
)
from inventoryctl.registry import EffectiveInstance, build_registry
from inventoryctl.templates import TemplateEngine

EXPECTED_BASE = (
    "INVENTORY_PATH=/var/www/inventory/testinv\n"
    "API_PORT=8765\n"
    "API_HOST=127.0.0.1\n"
)


def _testinv(make_config: Callable[..., AppConfig], **values: object) -> EffectiveInstance:
    entry = {"data_dir": "/var/www/inventory/testinv", "api_port": 8765, **values}
    return build_registry(make_config({"testinv": entry})).instances[0]


def test_render_without_secret_has_no_key_line(make_config: Callable[..., AppConfig]) -> None:
    """Without a key the file holds exactly the three required lines."""
    content = render_config(_testinv(make_config), TemplateEngine.with_overrides(None))

    assert content == EXPECTED_BASE
    assert "ANTHROPIC_API_KEY" not in content


def test_render_with_secret_appends_key_line(make_config: Callable[..., AppConfig]) -> None:
    """A non-empty key is emitted verbatim as the last line."""
    instance = _testinv(make_config, anthropic_api_key="sk-ant-secret")

    content = render_config(instance, TemplateEngine.with_overrides(None))

    assert content == EXPECTED_BASE + "ANTHROPIC_API_KEY=sk-ant-secret\n"


@pytest.mark.parametrize("key", ["", None])
def test_render_with_empty_secret_omits_line(
    make_config: Callable[..., AppConfig],
    key: str | None,
) -> None:
    """An empty or null key suppresses the line, even if a global key exists."""
    config = make_config(
        {"testinv": {"data_dir": "/var/www/inventory/testinv", "anthropic_api_key": key}},
        anthropic_api_key="sk-ant-global",
    )
    instance = build_registry(config).instances[0]

    content = render_config(instance, TemplateEngine.with_overrides(None))

    assert content == EXPECTED_BASE


def test_render_is_deterministic(make_config: Callable[..., AppConfig]) -> None:
    """Rendering twice yields byte-identical output."""
    instance = _testinv(make_config, anthropic_api_key="sk-ant-secret")
    templates = TemplateEngine.with_overrides(None)

    assert render_config(instance, templates) == render_config(instance, templates)


def test_plan_and_apply_write_then_noop(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """First apply writes root:group 0640; the next plan is empty."""
    config = make_config({"alpha": {"data_dir": str(tmp_path / "data" / "alpha")}})
    instance = build_registry(config).instances[0]
    fake_host.add_group(instance.group)
    templates = TemplateEngine.with_overrides(None)

    plan = plan_config_file(instance, templates, fake_host)
    result = apply_config_plan(plan, fake_host)

    assert result.content_changed is True
    assert instance.config_path.read_text(encoding="utf-8").startswith("INVENTORY_PATH=")
    assert instance.config_path.stat().st_mode & 0o777 == CONFIG_FILE_MODE
    ownership = fake_host.ownership(instance.config_path)
    assert (ownership.user, ownership.group) == ("root", instance.group)

    second = plan_config_file(instance, templates, fake_host)
    assert second.changed is False
    assert apply_config_plan(second, fake_host).applied == []


def test_mode_drift_is_fixed_without_content_change(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """Permission drift is repaired but does not count as a content change."""
    config = make_config({"alpha": {"data_dir": str(tmp_path / "data" / "alpha")}})
    instance = build_registry(config).instances[0]
    fake_host.add_group(instance.group)
    templates = TemplateEngine.with_overrides(None)
    apply_config_plan(plan_config_file(instance, templates, fake_host), fake_host)
    instance.config_path.chmod(0o644)

    plan = plan_config_file(instance, templates, fake_host)
    result = apply_config_plan(plan, fake_host)

    assert plan.fix_mode is True
    assert plan.write_content is False
    assert result.content_changed is False
    assert instance.config_path.stat().st_mode & 0o777 == CONFIG_FILE_MODE


def test_dry_run_does_not_write(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    fake_host: FakeHost,
) -> None:
    """Dry runs describe the write without touching the filesystem."""
    config = make_config({"alpha": {"data_dir": str(tmp_path / "data" / "alpha")}})
    instance = build_registry(config).instances[0]

    plan = plan_config_file(instance, TemplateEngine.with_overrides(None), fake_host)
    result = apply_config_plan(plan, fake_host, dry_run=True)

    assert result.applied == [f"Write {instance.config_path}."]
    assert not instance.config_path.exists()
