"""Typer-powered command line interface for ``nbdeploy``.

Commands load configuration once in the root callback, then wrap their work in
a structured operation scope so every invocation leaves a JSON record behind.
Failures are mapped onto the well-known exit codes in :mod:`nbdeploy.exit_codes`.
"""
from __future__ import annotations

import re
import textwrap
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .archive import ArchiveInspector
from .backup_writer import BackupWriter
from .backups import BackupArchive, BackupCatalog, BackupError, BackupRegistryError, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers.compose import ComposeError, ComposeProvider
from .reconcile import DeploymentReconciler, Outcome, ReconcileReport, exit_code_for
from .selection import DeploymentMode, DeploymentSelection
from .templates import TemplateEngine
from .updates import ComposeFileMissingError, UpdateRunner

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nbdeploy's YAML config file.",
)

SETUP_DIR_OPTION = typer.Option(
    None,
    "--setup-dir",
    dir_okay=True,
    file_okay=False,
    help="Deployment directory (defaults to the configured setup_dir).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit details as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Self-hosted NetBird control plane deployer.

        Provisions the management, signal, relay and dashboard services behind
        Traefik with a step-ca certificate authority, restoring secrets and CA
        state from backups when one is selected.
        """
    ).strip(),
)
backups_app = typer.Typer(help="Create and inspect deployment backups.")
app.add_typer(backups_app, name="backup")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    backups: BackupsRegistry
    catalog: BackupCatalog
    inspector: ArchiveInspector
    compose_factory: Callable[[Path], ComposeProvider]
    sleep: Callable[[float], None] = field(default=time.sleep)


def build_runtime(
    config: AppConfig,
    *,
    compose_factory: Callable[[Path], ComposeProvider] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RuntimeContext:
    """Assemble the collaborators for *config*."""
    docker_bin = config.docker_bin

    def default_factory(setup_dir: Path) -> ComposeProvider:
        return ComposeProvider(project_dir=setup_dir, docker_bin=docker_bin)

    return RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        backups=BackupsRegistry(config.backups.root, config.backups.index),
        catalog=BackupCatalog(config.backups.root, recent_limit=config.backups.recent_limit),
        inspector=ArchiveInspector(),
        compose_factory=compose_factory or default_factory,
        sleep=sleep,
    )


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
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = build_runtime(config)
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
        help="Show the nbdeploy version and exit.",
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
            console.print(f"nbdeploy {__version__}")
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
    rc: int = 2,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _validate_domain(value: str) -> str:
    """Validate and normalise a domain/FQDN."""
    normalised = value.strip().lower()
    if not normalised:
        raise ValueError("Domain must be a non-empty string.")
    if len(normalised) > 255:
        raise ValueError("Domain must be 255 characters or fewer.")
    if normalised.startswith(("-", ".")) or normalised.endswith(("-", ".")):
        raise ValueError("Domain cannot start or end with a hyphen or dot.")
    if not re.fullmatch(r"[a-z0-9.-]+", normalised):
        raise ValueError("Domain may contain letters, numbers, dots, and hyphens.")
    return normalised


def _resolve_setup_dir(runtime: RuntimeContext, setup_dir: Path | None) -> Path:
    return (setup_dir or runtime.config.setup_dir).expanduser()


def _backup_table(archives: Sequence[BackupArchive], *, numbered: bool) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    if numbered:
        table.add_column("#", style="bold")
    table.add_column("Archive")
    table.add_column("Created At")
    for position, archive in enumerate(archives, start=1):
        row = [archive.name, archive.created_at.isoformat(sep=" ")]
        if numbered:
            row.insert(0, str(position))
        table.add_row(*row)
    return table


def _prompt_backup_choice(candidates: Sequence[BackupArchive]) -> str:
    console.print("[bold]Available backups[/bold] (0 = deploy fresh):")
    console.print(_backup_table(candidates, numbered=True))
    return typer.prompt(f"Select backup [0-{len(candidates)}]", default="0")


def _confirm_prompt(prompt: str, default: bool) -> bool:
    return typer.confirm(prompt, default=default)


def _render_report(report: ReconcileReport) -> None:
    selection = report.selection
    if report.secrets is not None:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Secret")
        table.add_column("Source")
        for category, source in report.secrets.sources.items():
            table.add_row(category.relative_path, source.value)
        console.print(table)
    if report.ca is not None:
        console.print(f"CA state: [bold]{report.ca.state.value}[/bold]")
        if report.ca.fingerprint:
            console.print(f"Root CA fingerprint: {report.ca.fingerprint}")
    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    console.print(f"[green]NetBird deployed for {selection.domain} ({selection.mode.value}).[/green]")
    console.print(f"Dashboard: https://{selection.domain}")
    if selection.mode is DeploymentMode.DEV:
        console.print(f"Traefik dashboard: https://traefik.{selection.domain}")
    console.print(f"Trust the root CA '{selection.cert_name}' on clients to avoid certificate warnings.")


@app.command()
def deploy(
    ctx: typer.Context,
    mode: DeploymentMode = typer.Option(
        DeploymentMode.DEV,
        "--mode",
        case_sensitive=False,
        help="Compose variant to render (dev exposes the Traefik dashboard).",
    ),
    domain: str | None = typer.Option(None, "--domain", help="Public domain for the control plane."),
    setup_dir: Path | None = SETUP_DIR_OPTION,
    backup: int | None = typer.Option(
        None,
        "--backup",
        min=0,
        help="Restore from the Nth most recent backup (0 deploys fresh) without prompting.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Accept defaults for every prompt.",
    ),
) -> None:
    """Deploy or redeploy the NetBird control plane."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    if domain is None:
        domain = config.default_domain if yes else typer.prompt("Domain", default=config.default_domain)
    if setup_dir is None and not yes:
        setup_dir = Path(typer.prompt("Setup directory", default=str(config.setup_dir)))
    target_dir = _resolve_setup_dir(runtime, setup_dir)

    with runtime.logger.operation(
        "deploy",
        args={
            "mode": mode.value,
            "domain": domain,
            "setup_dir": str(target_dir),
            "backup": backup,
            "yes": yes,
        },
        target={"kind": "deployment", "setup_dir": str(target_dir)},
    ) as op:
        try:
            domain_value = _validate_domain(domain)
        except ValueError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        selection = DeploymentSelection(
            domain=domain_value,
            setup_dir=target_dir,
            mode=mode,
            cert_name=config.cert_name,
        )
        reconciler = DeploymentReconciler(
            config,
            templates=runtime.templates,
            locks=runtime.locks,
            inspector=runtime.inspector,
            catalog=runtime.catalog,
            compose_factory=runtime.compose_factory,
            confirm=(lambda _prompt, _default: True) if yes else _confirm_prompt,
            chooser=(lambda _candidates: 0) if yes else _prompt_backup_choice,
            sleep=runtime.sleep,
        )
        report = reconciler.run(selection, backup_choice=backup)

        if report.lock_wait_ms is not None:
            op.set_lock_wait_ms(report.lock_wait_ms)
        for result in report.phases:
            op.add_step(f"deploy.{result.phase.value}", status=result.status.value, detail=result.message)

        if report.outcome is Outcome.DECLINED:
            console.print("[yellow]Existing deployment kept; nothing was changed.[/yellow]")
            op.success("Operator declined cleanup.", changed=0, context=report.to_dict())
            return

        if report.outcome is Outcome.FAILED:
            phase = report.failed_phase
            for result in report.phases:
                if result.detail:
                    console.print(result.detail)
            where = f" during {phase.value}" if phase is not None else ""
            _command_error(
                op,
                f"Deployment failed{where}: {report.error}",
                rc=int(report.exit_code),
                context=report.to_dict(),
            )

        _render_report(report)
        if report.warnings:
            op.warning("Deployment completed with warnings.", warnings=report.warnings,
                       changed=len(report.phases), context=report.to_dict())
        else:
            op.success("Deployment completed.", changed=len(report.phases), context=report.to_dict())


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    setup_dir: Path | None = SETUP_DIR_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Create a backup archive of the deployment state."""
    runtime = _get_runtime(ctx)
    target_dir = _resolve_setup_dir(runtime, setup_dir)
    with runtime.logger.operation(
        "backup create",
        args={"setup_dir": str(target_dir), "json": json_output},
        target={"kind": "backup", "setup_dir": str(target_dir)},
    ) as op:
        writer = BackupWriter(runtime.backups, compression_level=runtime.config.backups.compression_level)
        try:
            with runtime.locks.deployment_lock(target_dir) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = writer.create_backup(target_dir, actor=dict(op.actor))
        except (BackupError, LockTimeoutError) as exc:
            rc = exit_code_for(exc) or ExitCode.PROVIDER
            _command_error(op, f"Failed to create backup: {exc}", rc=int(rc), errors=[str(exc)])

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]Created backup {result.archive.name}.[/green]")
            console.print(f"Archive: {result.archive}")
            console.print(f"Checksum (sha256): {result.checksum}")
            console.print(f"Size: {result.size_bytes} bytes")
            for warning in result.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")

        if result.warnings:
            op.warning("Backup created with missing sources.", warnings=result.warnings, changed=1,
                       backups=[result.archive.name], context=payload)
        else:
            op.success("Backup created.", changed=1, backups=[result.archive.name], context=payload)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the most recent backups offered for restore."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "catalog"},
    ) as op:
        archives = runtime.catalog.list_recent()
        try:
            indexed = {str(entry.get("name")): entry for entry in runtime.backups.list_entries()}
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}", rc=int(ExitCode.VALIDATION))

        if json_output:
            entries: list[dict[str, object]] = []
            for archive in archives:
                entry: dict[str, object] = {
                    "name": archive.name,
                    "path": str(archive.path),
                    "created_at": archive.created_at.isoformat(),
                }
                recorded = indexed.get(archive.name)
                if recorded is not None:
                    entry["index"] = recorded
                entries.append(entry)
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        if not archives:
            console.print(f"No backups found under {runtime.catalog.root}.")
        else:
            console.print(_backup_table(archives, numbered=True))
        op.success("Reported backup list.", changed=0)


@app.command()
def update(
    ctx: typer.Context,
    setup_dir: Path | None = SETUP_DIR_OPTION,
) -> None:
    """Pull fresh images and restart the deployed services."""
    runtime = _get_runtime(ctx)
    target_dir = _resolve_setup_dir(runtime, setup_dir)
    config = runtime.config
    with runtime.logger.operation(
        "update",
        args={"setup_dir": str(target_dir)},
        target={"kind": "deployment", "setup_dir": str(target_dir)},
    ) as op:
        runner = UpdateRunner(
            runtime.compose_factory(target_dir),
            config.update.images,
            settle_seconds=config.update.settle_seconds,
            sleep=runtime.sleep,
        )
        try:
            with runtime.locks.deployment_lock(target_dir) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = runner.run(target_dir)
        except (ComposeFileMissingError, ComposeError, LockTimeoutError) as exc:
            rc = exit_code_for(exc) or ExitCode.PROVIDER
            _command_error(op, f"Update failed: {exc}", rc=int(rc), errors=[str(exc)])

        for image in result.pulled:
            op.add_step("update.pull", status="success", detail=image)
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        console.print(
            f"[green]Services restarted with {len(result.pulled)} refreshed image(s).[/green]"
        )
        if result.warnings:
            op.warning("Update completed with warnings.", warnings=result.warnings,
                       changed=len(result.pulled), context=result.to_dict())
        else:
            op.success("Update completed.", changed=len(result.pulled), context=result.to_dict())


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
