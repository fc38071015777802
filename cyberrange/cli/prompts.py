"""Interactive operator prompts for the menu and delete flows."""

import typer
from rich.console import Console
from rich.table import Table

from cyberrange.orchestrator.tenants import validate_tenant


console = Console()

CREATE_ACTION = "Create accounts"
DELETE_ACTION = "Delete accounts"
ACTIONS = (CREATE_ACTION, DELETE_ACTION)


def choose(title: str, choices: list[str]) -> str:
    """Show a numbered list and return the option the operator picks.

    Args:
        title: Prompt shown above the list.
        choices: Options, displayed in order.

    Returns:
        The selected option.
    """
    table = Table(title=title, show_header=False)
    table.add_column("#", style="bold blue")
    table.add_column("Option")
    for index, choice in enumerate(choices, start=1):
        table.add_row(str(index), choice)
    console.print(table)

    while True:
        selected = typer.prompt("Select a number", type=int)
        if 1 <= selected <= len(choices):
            return choices[selected - 1]
        console.print(f"[red]Error:[/red] choose a number between 1 and {len(choices)}")


def choose_action() -> str:
    return choose("Choose an action", list(ACTIONS))


def ask_tenant() -> str:
    """Ask for a tenant name until a valid one is given."""
    while True:
        tenant = typer.prompt("Enter the company name").strip()
        try:
            return validate_tenant(tenant)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")


def ask_count(maximum: int) -> int:
    """Ask for the number of accounts, between 1 and ``maximum``."""
    while True:
        count = typer.prompt("Enter the number of accounts to create", type=int)
        if count < 1:
            console.print("[red]Error:[/red] Number of accounts must be at least 1.")
        elif count > maximum:
            console.print(f"[red]Error:[/red] Number of accounts cannot exceed {maximum}.")
        else:
            return count


def choose_tenant(tenants: list[str]) -> str:
    return choose("Select the company to delete", tenants)
