"""
CLI commands for the installed-state manifest.

Thin wrappers over ``labrat.core.persistence.manifest``.

Usage::

    labrat manifest show
    labrat manifest verify
    labrat manifest export > manifest.json
    labrat manifest sync --check
"""

from __future__ import annotations

import json
import sys

import click

from labrat.core.errors import E_GENERAL, LabratError


def _open_manifest():
    from labrat.core.config.loader import load_settings
    from labrat.core.persistence.manifest import Manifest

    return Manifest.from_settings(load_settings())


def _fail(error: LabratError, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps({"error": error.message, "error_kind": error.kind}, indent=2))
    else:
        click.secho(f"❌ {error.message}", fg="red")
    sys.exit(error.code)


@click.group()
def manifest() -> None:
    """Manifest — the record of installed modules."""


@manifest.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def show(as_json: bool) -> None:
    """Summarise the manifest."""
    try:
        summary = _open_manifest().show()
    except LabratError as e:
        _fail(e, as_json)
        return

    if as_json:
        click.echo(json.dumps(summary, indent=2))
        return

    if not summary["exists"]:
        click.secho("⚠️  No manifest yet (nothing installed)", fg="yellow")
        click.echo(f"   Expected at: {summary['path']}")
        return

    click.secho(f"\n📋 Manifest: {summary['path']}", fg="cyan", bold=True)
    click.echo(f"   Schema:   {summary['version']}")
    click.echo(f"   Created:  {summary['created_at']}")
    click.echo(f"   Updated:  {summary['updated_at']}")
    click.echo()
    click.secho(f"   Modules: {summary['module_count']}", fg="white", bold=True)
    for m in summary["modules"]:
        shell = " 🐚" if m["shell_integration"] else ""
        click.echo(f"     • {m['name']:<14} {m['version']}{shell}")

    hooks = summary["shell_integration"]["hooks_installed"]
    click.echo()
    click.echo(f"   Shell hooks: {', '.join(hooks) if hooks else 'none'}")
    click.echo()


@manifest.command("verify")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def verify(as_json: bool) -> None:
    """Check that the manifest parses and matches its schema."""
    try:
        m = _open_manifest()
    except LabratError as e:
        _fail(e, as_json)
        return
    valid = m.verify()

    if as_json:
        click.echo(json.dumps({"path": str(m.path), "exists": m.exists(), "valid": valid}, indent=2))
    elif valid:
        click.secho("✅ Manifest is valid", fg="green", bold=True)
    else:
        click.secho(f"❌ Manifest is missing or invalid: {m.path}", fg="red")

    if not valid:
        sys.exit(E_GENERAL)


@manifest.command("export")
def export() -> None:
    """Print the raw manifest JSON."""
    try:
        data = _open_manifest().export()
    except LabratError as e:
        _fail(e, as_json=True)
        return
    click.echo(json.dumps(data, indent=2))


@manifest.command("sync")
@click.option("--check", is_flag=True, help="Only report drift, do not rewrite markers.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def sync(check: bool, as_json: bool) -> None:
    """Bring the legacy marker files in line with the manifest."""
    try:
        m = _open_manifest()
        drift = m.check_markers() if check else m.sync_markers()
    except LabratError as e:
        _fail(e, as_json)
        return

    in_sync = not any(drift.values())
    if as_json:
        click.echo(json.dumps({"in_sync": in_sync, "checked_only": check, **drift}, indent=2))
    elif in_sync:
        click.secho("✅ Markers match the manifest", fg="green")
    else:
        verb = "Found" if check else "Fixed"
        click.secho(f"⚠️  {verb} marker drift:", fg="yellow")
        for kind in ("missing", "orphaned", "mismatched"):
            if drift[kind]:
                click.echo(f"   {kind}: {', '.join(drift[kind])}")

    if check and not in_sync:
        sys.exit(E_GENERAL)
