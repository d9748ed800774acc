"""Tests for the template rendering engine."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from nbdeploy.templates import TemplateEngine, TemplateError

CONTEXT = {
    "domain": "vpn.example.com",
    "auth_secret": "c2VjcmV0LWF1dGg=",
    "datastore_key": "ZGF0YXN0b3JlLWtleQ==",
    "cert_name": "Sentry Vault",
    "mode": "prod",
}


def test_management_config_renders_valid_json() -> None:
    """The management template produces JSON carrying both secrets."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("netbird/management.json.j2", CONTEXT)

    data = json.loads(output)
    serialised = json.dumps(data)
    assert "c2VjcmV0LWF1dGg=" in serialised
    assert "ZGF0YXN0b3JlLWtleQ==" in serialised
    assert "vpn.example.com" in serialised


@pytest.mark.parametrize("mode", ["dev", "prod"])
def test_compose_variants_render(mode: str) -> None:
    """Both compose variants render with the domain and step-ca service."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(f"netbird/docker-compose-{mode}.yml.j2", CONTEXT)

    assert "step-ca" in output
    assert "vpn.example.com" in output


def test_missing_variable_raises_template_error() -> None:
    """StrictUndefined turns missing context values into TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("netbird/relay.env.j2", {"domain": "vpn.example.com"})


def test_missing_template_raises_template_error() -> None:
    """Unknown template names raise TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="not found"):
        engine.render_to_string("netbird/absent.j2", CONTEXT)


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "relay.env"

    changed = engine.render_to_path("netbird/relay.env.j2", destination, CONTEXT, mode=0o600)

    assert changed is True
    assert "c2VjcmV0LWF1dGg=" in destination.read_text(encoding="utf-8")
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path("netbird/relay.env.j2", destination, CONTEXT, mode=0o600)
    assert changed_again is False


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "netbird" / "dashboard.env.j2"
    override_template.parent.mkdir(parents=True, exist_ok=True)
    override_template.write_text("override {{ domain }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("netbird/dashboard.env.j2", CONTEXT) == "override vpn.example.com"
    # Templates without an override still come from the package.
    assert "vpn.example.com" in engine.render_to_string("netbird/relay.env.j2", CONTEXT)
