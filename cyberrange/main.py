# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from cyberrange.access.client import AccessClient
from cyberrange.access.reconciler import AccessReconciler
from cyberrange.cli import prompts
from cyberrange.config import load_settings
from cyberrange.core.exceptions import CyberRangeError
from cyberrange.core.types import CreateReport, DeleteReport, InstanceFailure, Settings
from cyberrange.fleet.client import FleetClient
from cyberrange.logging import configure_logging, log_banner
from cyberrange.orchestrator.service import ProvisioningOrchestrator
from cyberrange.orchestrator.tenants import validate_tenant
from cyberrange.remote.channel import RemoteCommandChannel


T = TypeVar("T")

console = Console()

app = typer.Typer(help="Cyber Range Manager: provision tenant sandboxes and their remote access.")


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to the settings YAML file"),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option("--log-level", "-l", help="Minimum log level"),
    ] = "INFO",
) -> None:
    """
    Cyber Range Manager: provision tenant sandboxes and their remote access.
    """
    configure_logging(log_level)
    ctx.obj = {"config": config}


def _safe_load_settings(ctx: typer.Context) -> Settings:
    """Load settings from the configuration file with error handling.

    Raises:
        typer.Exit: If settings file is not found or fails to load.
    """
    config_path = (ctx.obj or {}).get("config")
    try:
        return load_settings(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from None
    except (CyberRangeError, ValidationError) as e:
        console.print(f"[red]Error loading settings:[/red] {e}")
        raise typer.Exit(code=1) from None


@asynccontextmanager
async def _orchestrator(settings: Settings) -> AsyncIterator[ProvisioningOrchestrator]:
    """Open the API clients of one run and close them afterwards."""
    async with (
        FleetClient(settings.fleet) as fleet,
        AccessClient(settings.access) as access,
    ):
        yield ProvisioningOrchestrator(
            settings,
            fleet,
            AccessReconciler(access, settings.access.password_suffix),
            RemoteCommandChannel(settings.ssh),
        )


def _run(settings: Settings, action: Callable[[ProvisioningOrchestrator], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh orchestrator, mapping errors to exit code 1."""

    async def _main() -> T:
        async with _orchestrator(settings) as orchestrator:
            return await action(orchestrator)

    try:
        return asyncio.run(_main())
    except (CyberRangeError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from None


def _print_create_report(report: CreateReport) -> None:
    table = Table(title=f"Accounts for {report.tenant} on {report.host}")
    table.add_column("User", style="bold")
    table.add_column("Password")
    table.add_column("Connection")
    table.add_column("IP")
    for account in report.accounts:
        table.add_row(account.username, account.password, account.connection_name, account.ip)
    console.print(table)
    _print_failures(report.failures)
    if report.manifest_path:
        console.print(f"[green]✓[/green] Manifest written to {report.manifest_path}")


def _print_delete_report(report: DeleteReport) -> None:
    console.print(f"[green]✓[/green] Deleted {len(report.deleted)} instance(s) for {report.tenant}")
    if report.access_revoked:
        console.print("[green]✓[/green] Access resources revoked")
    _print_failures(report.failures)


def _print_failures(failures: list[InstanceFailure]) -> None:
    for failure in failures:
        console.print(f"[yellow]![/yellow] {failure.entity} ({failure.stage}): {failure.detail}")


def _create(settings: Settings, tenant: str, count: int) -> None:
    report = _run(settings, lambda o: o.create_for_tenant(tenant, count))
    _print_create_report(report)


def _delete(settings: Settings, tenant: str | None, yes: bool) -> None:
    if tenant is None:
        tenants = _run(settings, lambda o: o.list_tenants())
        if not tenants:
            console.print("No company found in the fleet.")
            return
        tenant = prompts.choose_tenant(tenants)
    if not yes and not typer.confirm(f"Delete every instance and account of '{tenant}'?"):
        console.print("Aborted.")
        return
    target: str = tenant
    report = _run(settings, lambda o: o.delete_for_tenant(target))
    _print_delete_report(report)


@app.command()
def create(
    ctx: typer.Context,
    tenant: Annotated[str, typer.Argument(help="Company name used as hostname prefix")],
    count: Annotated[int, typer.Option("--count", "-n", min=1, help="Number of accounts to create")] = 1,
) -> None:
    """Provision sandboxes and access accounts for a company."""
    try:
        validate_tenant(tenant)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from None
    settings = _safe_load_settings(ctx)
    if count > settings.max_accounts:
        console.print(f"[red]Error:[/red] Number of accounts cannot exceed {settings.max_accounts}.")
        raise typer.Exit(code=1)
    _create(settings, tenant, count)


@app.command()
def delete(
    ctx: typer.Context,
    tenant: Annotated[
        str | None,
        typer.Option("--tenant", "-t", help="Company to delete; prompted when omitted"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt")] = False,
) -> None:
    """Delete the sandboxes and access accounts of a company."""
    settings = _safe_load_settings(ctx)
    _delete(settings, tenant, yes)


@app.command()
def tenants(ctx: typer.Context) -> None:
    """List companies that currently own sandboxes."""
    settings = _safe_load_settings(ctx)
    names = _run(settings, lambda o: o.list_tenants())
    if not names:
        console.print("No company found in the fleet.")
        return
    table = Table(title="Companies")
    table.add_column("Name", style="bold")
    for name in names:
        table.add_row(name)
    console.print(table)


@app.command()
def menu(ctx: typer.Context) -> None:
    """Interactive menu: create or delete accounts."""
    log_banner()
    settings = _safe_load_settings(ctx)
    action = prompts.choose_action()
    if action == prompts.CREATE_ACTION:
        tenant = prompts.ask_tenant()
        count = prompts.ask_count(settings.max_accounts)
        _create(settings, tenant, count)
    else:
        _delete(settings, None, yes=False)
