"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from inventoryctl.templates import TemplateEngine, TemplateRenderError, write_if_changed

HOOK_CONTEXT = {
    "data_dir": "/srv/inventory/alpha",
    "bare_repo": "/var/lib/inventory-system/alpha.git",
    "remote": "local",
    "branch": "main",
}


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("git/post-receive.j2", HOOK_CONTEXT)

    assert output.startswith("#!/bin/sh\n")
    assert "DATA_DIR=/srv/inventory/alpha\n" in output
    assert 'git merge --ff-only "$REMOTE/$BRANCH"' in output


def test_missing_variables_raise_render_error() -> None:
    """StrictUndefined turns missing context into a TemplateRenderError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateRenderError):
        engine.render_to_string("config/instance.conf.j2", {"inventory_path": "/srv/a"})


def test_hook_values_are_shell_quoted() -> None:
    """Paths with shell metacharacters stay a single literal word in the hook."""
    engine = TemplateEngine.with_overrides(None)
    context = dict(HOOK_CONTEXT, data_dir='/srv/in"ventory/$HOME')

    output = engine.render_to_string("git/post-receive.j2", context)

    assert "DATA_DIR='/srv/in\"ventory/$HOME'\n" in output


def test_write_if_changed_fixes_mode_without_reporting_change(tmp_path: Path) -> None:
    """Mode drift is repaired but only content changes are reported."""
    destination = tmp_path / "alpha.conf"
    destination.write_text("API_PORT=8765\n", encoding="utf-8")
    destination.chmod(0o644)

    changed = write_if_changed(destination, "API_PORT=8765\n", mode=0o640)

    assert changed is False
    assert destination.stat().st_mode & 0o777 == 0o640
    assert sorted(path.name for path in tmp_path.iterdir()) == ["alpha.conf"]


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "config" / "instance.conf.j2"
    override_template.parent.mkdir(parents=True, exist_ok=True)
    override_template.write_text("override {{ inventory_path }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    rendered = engine.render_to_string(
        "config/instance.conf.j2",
        {"inventory_path": "/srv/gamma", "api_port": 1, "api_host": "h", "anthropic_api_key": ""},
    )

    assert rendered == "override /srv/gamma"
