"""Typer-powered command line interface for ``sitesync``.

Every command loads the layered configuration once, records a structured
operation in ``operations.jsonl`` and renders its report with Rich.
"""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import SiteSyncError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import SharedRuntime, SiteDescriptor
from .packages import PackageProvider
from .reconcile import Reconciler, SiteOutcome
from .restart import RestartAggregator
from .state import SiteRegistry, SiteRegistryError
from .templates import TemplateEngine
from .versions import VersionRegistry, default_registry

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitesync's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the report as JSON instead of a table.",
)

UPGRADE_OPTION = typer.Option(
    False,
    "--upgrade",
    help="Force a full rebuild of the installation layout.",
)

JOBS_OPTION = typer.Option(
    None,
    "--jobs",
    "-j",
    min=1,
    help="Number of sites to reconcile in parallel (defaults to config 'jobs').",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Reconcile Tomcat site installation roots with their declared versions.

        Each site listed in sites.yml is converged to the layout of its
        version: links into the shared version directory, generated scripts
        and configuration, and an enable link. Replaced entries are kept as
        backups next to the originals.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Shared objects constructed once per CLI invocation."""

    config: AppConfig
    registry: SiteRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    packages: PackageProvider
    versions: VersionRegistry
    reconciler: Reconciler


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    registry = SiteRegistry(config.registry_dir, sites_root=config.sites_root)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    packages = PackageProvider(config.packages.backend)
    versions = default_registry()
    reconciler = Reconciler(
        config=config,
        templates=templates,
        packages=packages,
        locks=locks,
        aggregator=RestartAggregator(),
        versions=versions,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        packages=packages,
        versions=versions,
        reconciler=reconciler,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sitesync version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"sitesync {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _load_sites(runtime: RuntimeContext, op: OperationScope) -> list[SiteDescriptor]:
    try:
        return runtime.registry.read_sites()
    except SiteRegistryError as exc:
        _command_error(op, f"Invalid site registry: {exc}")


def _select_sites(
    runtime: RuntimeContext,
    op: OperationScope,
    names: Sequence[str] | None,
    available: list[SiteDescriptor] | None = None,
) -> list[SiteDescriptor]:
    sites = _load_sites(runtime, op) if available is None else available
    if not names:
        return sites
    by_name = {site.name: site for site in sites}
    unknown = [name for name in names if name not in by_name]
    if unknown:
        _command_error(op, f"Unknown site(s): {', '.join(unknown)}.")
    return [by_name[name] for name in dict.fromkeys(names)]


def _select_runtimes(
    runtime: RuntimeContext,
    op: OperationScope,
    selected: Sequence[SiteDescriptor],
    everything: bool,
) -> list[SharedRuntime]:
    """Return the declared shared runtimes serving *selected* (all when *everything*)."""
    try:
        runtimes = runtime.registry.read_shared_runtimes()
    except SiteRegistryError as exc:
        _command_error(op, f"Invalid site registry: {exc}")
    if everything:
        return runtimes
    wanted = {site.runtime_instance for site in selected if site.runtime_instance}
    return [item for item in runtimes if item.name in wanted]


def _record_outcome(runtime: RuntimeContext, outcome: SiteOutcome) -> str | None:
    """Persist *outcome* in status.yml; return a warning when that fails."""
    now = datetime.now(UTC).isoformat()
    if outcome.result is not None:
        payload: dict[str, object] = {"status": "ok", "at": now, **outcome.result.to_dict()}
    else:
        payload = {"status": "error", "at": now, "error": str(outcome.error)}
    try:
        runtime.registry.record_result(outcome.site, payload)
    except (OSError, SiteRegistryError) as exc:
        warning = f"Could not record status for {outcome.site}: {exc}"
        console.print(f"[yellow]{warning}[/yellow]")
        return warning
    return None


@app.command()
def reconcile(
    ctx: typer.Context,
    sites: list[str] | None = typer.Argument(
        None,
        help="Sites to reconcile (defaults to every site in sites.yml).",
    ),
    upgrade: bool = UPGRADE_OPTION,
    jobs: int | None = JOBS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge installation roots and report which runtimes need a restart."""
    runtime = _get_runtime(ctx)
    workers = jobs or runtime.config.jobs

    with runtime.logger.operation(
        "reconcile",
        args={"sites": list(sites or []), "upgrade": upgrade, "jobs": workers},
        target={"kind": "site", "scope": "registry" if not sites else "selection"},
    ) as op:
        available = _load_sites(runtime, op)
        selected = _select_sites(runtime, op, sites, available)
        runtimes = _select_runtimes(runtime, op, selected, everything=not sites)
        outcomes = runtime.reconciler.reconcile_many(selected, is_upgrade=upgrade, jobs=workers)
        outcomes += runtime.reconciler.reconcile_runtimes(
            runtimes, available, is_upgrade=upgrade, jobs=workers
        )
        restarts = sorted(runtime.reconciler.aggregator.drain())

        changed = 0
        backups: list[str] = []
        errors: list[str] = []
        warnings: list[str] = []
        lock_wait_ms = 0
        for outcome in outcomes:
            warning = _record_outcome(runtime, outcome)
            if warning is not None:
                warnings.append(warning)
            if outcome.result is not None:
                changed += len(outcome.result.changed)
                backups.extend(outcome.result.backups)
                lock_wait_ms += outcome.result.lock_wait_ms
                op.add_step(
                    f"site.{outcome.site}",
                    status="success",
                    detail={
                        "changed": len(outcome.result.changed),
                        "restart": outcome.result.restart_required,
                    },
                )
            else:
                errors.append(str(outcome.error))
                op.add_step(f"site.{outcome.site}", status="error", detail=str(outcome.error))

        if json_output:
            console.print_json(
                data={
                    "results": [
                        outcome.result.to_dict()
                        if outcome.result is not None
                        else {"site": outcome.site, "error": str(outcome.error)}
                        for outcome in outcomes
                    ],
                    "restart": restarts,
                }
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Site", style="bold")
            table.add_column("Result")
            table.add_column("Changed")
            table.add_column("Restart")

            if not outcomes:
                table.add_row("(none)", "", "", "")
            for outcome in outcomes:
                result = outcome.result
                if result is None:
                    table.add_row(outcome.site, f"[red]{outcome.error}[/red]", "", "")
                    continue
                if result.installed:
                    label = "[green]installed[/green]"
                elif result.upgraded:
                    label = "[green]upgraded[/green]"
                else:
                    label = "ok"
                table.add_row(
                    outcome.site,
                    label,
                    str(len(result.changed)),
                    result.restart_target if result.restart_required else "",
                )
            console.print(table)
            if restarts:
                console.print(f"Restart required: {', '.join(restarts)}")

        op.set_lock_wait_ms(lock_wait_ms)
        context = {"restart": restarts}
        if errors:
            op.error(
                f"{len(errors)} of {len(outcomes)} site(s) failed.",
                errors=errors,
                rc=int(ExitCode.RECONCILE),
                context=context,
            )
            raise typer.Exit(code=int(ExitCode.RECONCILE))
        if warnings:
            op.warning(
                "Reconciliation complete; status not recorded for every site.",
                warnings=warnings,
                changed=changed,
                backups=backups,
                context=context,
            )
            return
        op.success("Reconciliation complete.", changed=changed, backups=backups, context=context)


@app.command()
def plan(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Site whose install layout to show."),
    upgrade: bool = UPGRADE_OPTION,
) -> None:
    """Show the install actions for SITE without applying them."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "plan",
        args={"site": site, "upgrade": upgrade},
        target={"kind": "site", "name": site},
    ) as op:
        (descriptor,) = _select_sites(runtime, op, [site])
        try:
            actions = runtime.reconciler.plan_for(descriptor, is_upgrade=upgrade)
        except SiteSyncError as exc:
            _command_error(op, str(exc))

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Action", style="bold")
        table.add_column("Path")
        for index, action in enumerate(actions, start=1):
            table.add_row(str(index), action.kind, action.describe())
        console.print(table)
        op.success("Reported install plan.", changed=0, context={"actions": len(actions)})


sites_app = typer.Typer(help="Inspect declared sites.")
versions_app = typer.Typer(help="Inspect supported versions.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(sites_app, name="sites")
app.add_typer(versions_app, name="versions")
app.add_typer(config_app, name="config")


@sites_app.command("list")
def sites_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List declared sites with the status of their latest pass."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "sites list",
        args={"json": json_output},
        target={"kind": "site", "scope": "registry"},
    ) as op:
        sites = _load_sites(runtime, op)
        shared = _select_runtimes(runtime, op, sites, everything=True)
        status = runtime.registry.read_status()

        if json_output:
            entries = []
            for site in sites:
                entry = site.to_dict()
                entry["status"] = status.get(site.name)
                entries.append(entry)
            runtime_entries = []
            for item in shared:
                runtime_entry = item.to_dict()
                runtime_entry["status"] = status.get(item.restart_target)
                runtime_entries.append(runtime_entry)
            console.print_json(data={"sites": entries, "shared_runtimes": runtime_entries})
            op.success("Reported sites as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Version")
        table.add_column("Root")
        table.add_column("Mode")
        table.add_column("Last pass")

        if not sites and not shared:
            table.add_row("(none)", "", "", "", "")
        rows: list[tuple[str, SiteDescriptor | SharedRuntime]] = [
            *((site.name, site) for site in sites),
            *((item.restart_target, item) for item in shared),
        ]
        for label, entry in rows:
            flags = ["manual" if entry.manual else "managed"]
            if entry.disabled:
                flags.append("disabled")
            last = status.get(label, {})
            table.add_row(
                label,
                entry.version,
                str(entry.root),
                ", ".join(flags),
                f"{last.get('status', '')} {last.get('at', '')}".strip(),
            )
        console.print(table)
        op.success("Reported sites.", changed=0)


@versions_app.command("list")
def versions_list(ctx: typer.Context) -> None:
    """List supported version identifiers."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "versions list",
        args={},
        target={"kind": "version"},
    ) as op:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Directory")
        table.add_column("In-place upgrade")
        for identifier in runtime.versions.supported_identifiers():
            strategy = runtime.versions.select_strategy(identifier)
            table.add_row(
                identifier,
                str(runtime.config.versions_root / strategy.version_dir),
                "yes" if strategy.supports_upgrade else "no",
            )
        console.print(table)
        op.success("Reported supported versions.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = ", ".join(f"{item}={value[item]}" for item in sorted(value))
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    app()


__all__ = ["app", "main"]
