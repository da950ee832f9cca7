"""
CLI commands for shell integration — hooks, snippets and rc backups.

Usage::

    labrat shell status
    labrat shell setup --shell zsh
    labrat shell teardown
    labrat shell restore --yes
"""

from __future__ import annotations

import json
import sys

import click

from labrat.core.errors import LabratError
from labrat.core.models.manifest import SHELL_KINDS


def _registry():
    from labrat.core.config.loader import load_settings
    from labrat.core.persistence.file_ops import AtomicFileStore
    from labrat.core.persistence.locks import LockManager
    from labrat.core.persistence.manifest import Manifest
    from labrat.core.services.shell_integration import ShellIntegrationRegistry

    settings = load_settings()
    store = AtomicFileStore(settings.backups_dir)
    locks = LockManager(settings.lock_timeout)
    manifest = Manifest.from_settings(settings, store, locks)
    return ShellIntegrationRegistry(settings, store, locks, manifest)


def _run(action, as_json: bool) -> dict:
    try:
        return action(_registry())
    except LabratError as e:
        if as_json:
            click.echo(json.dumps({"error": e.message, "error_kind": e.kind}, indent=2))
        else:
            click.secho(f"❌ {e.message}", fg="red")
        sys.exit(e.code)


@click.group()
def shell() -> None:
    """Shell — hooks into bash, zsh and fish."""


@shell.command("status")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def status(as_json: bool) -> None:
    """Show hooks, aggregators and registered snippets."""
    data = _run(lambda r: r.status(), as_json)

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.secho(f"\n🐚 Shell config: {data['config_dir']}", fg="cyan", bold=True)
    if not data["config_dir_exists"]:
        click.secho("   not set up — run 'labrat shell setup'", fg="yellow")

    click.echo()
    click.secho("   Hooks:", fg="white", bold=True)
    for kind, state in data["hooks"].items():
        color = {"installed": "green", "absent": "yellow"}.get(state, "white")
        click.echo(f"     {kind:<5} ", nl=False)
        click.secho(state, fg=color)

    modules = data["modules"]
    click.echo()
    click.secho(f"   Modules with snippets: {len(modules)}", fg="white", bold=True)
    for module, shells in modules.items():
        click.echo(f"     • {module} ({', '.join(shells)})")

    backups = data["backups"]
    click.echo()
    click.echo(f"   Original backups: {'yes' if backups['original'] else 'no'}")
    click.echo()


@shell.command("setup")
@click.option(
    "--shell", "shells", multiple=True, type=click.Choice(SHELL_KINDS),
    help="Shell to hook (repeatable; default: detected shells).",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def setup(shells: tuple[str, ...], as_json: bool) -> None:
    """Create the config dir, back up rc files and install hooks."""
    data = _run(lambda r: r.setup(list(shells) if shells else None), as_json)

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.secho("✅ Shell integration configured", fg="green", bold=True)
    click.echo(f"   Config dir: {data['config_dir']}")
    if data["hooks_added"]:
        click.echo(f"   Hooks added: {', '.join(data['hooks_added'])}")
    if data["hooks_present"]:
        click.echo(f"   Hooked shells: {', '.join(data['hooks_present'])}")
    else:
        click.secho("⚠️  No shell was hooked (no rc file found)", fg="yellow")
    if data["original_backups"]:
        click.echo(f"   Backed up: {', '.join(data['original_backups'])}")
    click.echo("   Restart your shell to load the new configuration.")


@shell.command("teardown")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def teardown(as_json: bool) -> None:
    """Remove hooks, snippets and aggregators (rc files otherwise untouched)."""
    data = _run(lambda r: r.teardown(), as_json)

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.secho("✅ Shell integration removed", fg="green", bold=True)
    if data["hooks_removed"]:
        click.echo(f"   Hooks removed: {', '.join(data['hooks_removed'])}")


@shell.command("restore")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def restore(yes: bool, as_json: bool) -> None:
    """Tear down and put the original rc files back."""
    if not yes and not as_json:
        click.confirm("Replace your rc files with the pre-LabRat originals?", abort=True)

    data = _run(lambda r: r.restore_to_original(), as_json)

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    if data["restored"]:
        click.secho("✅ Restored original shell configs", fg="green", bold=True)
        for name in data["restored"]:
            click.echo(f"   • {name}")
    else:
        click.secho("⚠️  No original backups found; integration removed only", fg="yellow")
