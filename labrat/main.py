"""
LabRat — CLI entrypoint.

Usage:
    labrat --help
    labrat install tmux neovim
    labrat uninstall neovim --json
    labrat manifest show
"""

from __future__ import annotations

import json
import sys
from typing import Any

import click

from labrat import __version__
from labrat.core.observability.logging_config import configure_logging

_STATUS_ICONS = {"ok": "✅", "skipped": "⏭️ ", "failed": "❌"}
_STATUS_COLORS = {"ok": "green", "partial": "yellow", "failed": "red"}


@click.group()
@click.version_option(version=__version__, prog_name="labrat")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option("--mock", is_flag=True, help="Use the mock installer (no scripts are run).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool, mock: bool) -> None:
    """LabRat — install and manage your command-line environment."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["mock"] = mock

    configure_logging(debug=debug, verbose=verbose, quiet=quiet)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _print_run(result: Any, quiet: bool) -> None:
    """Human rendering of an InstallResult."""
    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        return

    report = result.report
    if report.dry_run and not quiet:
        click.secho("📋 Dry run — nothing was changed", fg="cyan")

    for outcome in report.outcomes:
        receipt = outcome.receipt
        icon = _STATUS_ICONS.get(outcome.status, "•")
        line = f"   {icon} {outcome.module}"
        if receipt.ok and report.operation != "uninstall":
            line += f" ({receipt.version})"
        elif receipt.error:
            line += f" — {receipt.error}"
        if outcome.auto_added:
            line += " [dependency]"
        if outcome.status == "skipped" and quiet:
            continue
        click.echo(line)
        for warning in outcome.warnings:
            click.secho(f"      ⚠️  {warning}", fg="yellow")
        if outcome.rolled_back and not quiet:
            click.echo("      ↩ changes rolled back")

    if report.suggestions and not quiet:
        click.echo()
        click.secho("💡 Optional companions:", fg="cyan")
        for module, deps in report.suggestions.items():
            click.echo(f"   {module} works better with: {', '.join(deps)}")

    click.echo()
    click.secho(
        f"{report.operation.capitalize()} {report.status}: "
        f"{report.succeeded} succeeded, {report.failed} failed, {report.skipped} skipped",
        fg=_STATUS_COLORS.get(report.status, "white"),
        bold=True,
    )


def _finish(result: Any, as_json: bool, quiet: bool) -> None:
    if as_json:
        _echo_json(result.to_dict())
    else:
        _print_run(result, quiet)
    if result.exit_code:
        sys.exit(result.exit_code)


# ── Install / uninstall / update ────────────────────────────────


@cli.command()
@click.argument("modules", nargs=-1, required=True)
@click.option("--no-deps", is_flag=True, help="Do not install required dependencies.")
@click.option("--force", "-f", is_flag=True, help="Reinstall modules that are already installed.")
@click.option("--dry-run", is_flag=True, help="Show what would happen without changing anything.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    modules: tuple[str, ...],
    no_deps: bool,
    force: bool,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Install one or more modules (dependencies first)."""
    from labrat.core.use_cases.install import run_install

    result = run_install(
        modules,
        with_deps=not no_deps,
        force=force,
        dry_run=dry_run,
        mock=ctx.obj.get("mock", False),
    )
    _finish(result, as_json, ctx.obj.get("quiet", False))


@cli.command()
@click.argument("modules", nargs=-1, required=True)
@click.option("--dry-run", is_flag=True, help="Show what would happen without changing anything.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def uninstall(ctx: click.Context, modules: tuple[str, ...], dry_run: bool, as_json: bool) -> None:
    """Uninstall modules (dependents first)."""
    from labrat.core.use_cases.install import run_uninstall

    result = run_uninstall(modules, dry_run=dry_run, mock=ctx.obj.get("mock", False))
    _finish(result, as_json, ctx.obj.get("quiet", False))


@cli.command()
@click.argument("modules", nargs=-1)
@click.option("--dry-run", is_flag=True, help="Show what would happen without changing anything.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def update(ctx: click.Context, modules: tuple[str, ...], dry_run: bool, as_json: bool) -> None:
    """Reinstall installed modules (all of them by default)."""
    from labrat.core.use_cases.install import run_update

    result = run_update(modules or None, dry_run=dry_run, mock=ctx.obj.get("mock", False))
    _finish(result, as_json, ctx.obj.get("quiet", False))


# ── Catalog views ───────────────────────────────────────────────


@cli.command("list")
@click.option("--category", "-c", default=None, help="Only show one category.")
@click.option("--installed", "installed_only", is_flag=True, help="Only show installed modules.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, category: str | None, installed_only: bool, as_json: bool) -> None:
    """List available modules."""
    from labrat.core.use_cases.status import list_modules

    result = list_modules(category=category, installed_only=installed_only)

    if as_json:
        _echo_json(result.to_dict())
        if result.exit_code:
            sys.exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    if not result.modules:
        click.echo("No modules found.")
        return

    for cat, modules in result.by_category().items():
        click.secho(f"\n   [{cat}]", fg="white", bold=True)
        for m in modules:
            marker = click.style("✓", fg="green") if m["installed"] else " "
            version = f" ({m['version']})" if m["version"] else ""
            click.echo(f"   {marker} {m['name']:<14} {m['description']}{version}")

    if not ctx.obj.get("quiet", False):
        click.echo()
        click.echo(f"   {result.installed_count}/{len(result.modules)} installed")
    click.echo()


@cli.command()
@click.argument("module")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def info(module: str, as_json: bool) -> None:
    """Show details for one module."""
    from labrat.core.use_cases.status import get_module_info

    result = get_module_info(module)

    if as_json:
        _echo_json(result.to_dict())
        if result.exit_code:
            sys.exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    data = result.info
    click.secho(f"\n📋 {data['name']}", fg="cyan", bold=True)
    click.echo(f"   {data['description']}")
    click.echo(f"   Category:   {data['category']}")
    click.echo(f"   Command:    {data['command']}")
    if data["installed"]:
        click.secho(f"   Installed:  yes ({data['version']})", fg="green")
    else:
        click.echo("   Installed:  no")
    for label, key in (("Requires", "requires"), ("Recommends", "recommends"),
                       ("Conflicts", "conflicts"), ("Needed by", "dependents")):
        if data.get(key):
            click.echo(f"   {label + ':':<11} {', '.join(data[key])}")
    click.echo()


def _print_tree(node: dict[str, Any], prefix: str = "", last: bool = True, root: bool = True) -> None:
    mark = " ✓" if node["installed"] else ""
    cycle = " (cycle)" if node.get("cycle") else ""
    if root:
        click.echo(f"{node['name']}{mark}")
        child_prefix = ""
    else:
        click.echo(f"{prefix}{'└── ' if last else '├── '}{node['name']}{mark}{cycle}")
        child_prefix = prefix + ("    " if last else "│   ")
    children = node["requires"]
    for i, child in enumerate(children):
        _print_tree(child, child_prefix, i == len(children) - 1, root=False)


@cli.command()
@click.argument("module")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def tree(module: str, as_json: bool) -> None:
    """Show the required-dependency tree of a module."""
    from labrat.core.use_cases.status import get_dependency_tree

    result = get_dependency_tree(module)

    if as_json:
        _echo_json(result.to_dict())
        if result.exit_code:
            sys.exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    assert result.tree is not None
    _print_tree(result.tree)
    click.echo(f"\nInstall order: {' '.join(result.info['install_order'])}")


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show installed modules, shell integration and the last run."""
    from labrat.core.use_cases.status import get_status

    result = get_status()

    if as_json:
        _echo_json(result.to_dict())
        if result.exit_code:
            sys.exit(result.exit_code)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    manifest = result.manifest
    click.secho(
        f"\n📋 {len(manifest.get('modules', []))}/{result.catalog_size} modules installed",
        fg="cyan", bold=True,
    )
    for m in manifest.get("modules", []):
        shell = " 🐚" if m["shell_integration"] else ""
        click.echo(f"     • {m['name']} ({m['version']}){shell}")

    hooks = result.shell.get("hooks", {})
    click.echo()
    click.secho("   Shell hooks:", fg="white", bold=True)
    for shell_kind, state in hooks.items():
        color = "green" if state == "installed" else "white"
        click.echo(f"     {shell_kind:<5} ", nl=False)
        click.secho(state, fg=color)

    op = result.last_operation
    if op and not ctx.obj.get("quiet", False):
        click.echo()
        click.secho("   Last operation:", fg="white", bold=True)
        click.echo(f"     {op['operation_type']} — ", nl=False)
        click.secho(op["status"], fg=_STATUS_COLORS.get(op["status"], "white"))
        click.echo(f"     at {op['timestamp']}")
    click.echo()


# ── Register sub-command groups from labrat/ui/cli/ ─────────────

from labrat.ui.cli.manifest import manifest
from labrat.ui.cli.shell import shell

cli.add_command(manifest)
cli.add_command(shell)


if __name__ == "__main__":
    cli()
