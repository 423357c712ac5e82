"""Interactive main menu shown when ``wlzctl`` runs without a subcommand.

Each entry maps to a regular CLI invocation. Failures are reported and the
menu is shown again; only choosing "Exit" leaves the loop.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

MENU_ITEMS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("1", "Install Worklenz", ("install",)),
    ("2", "Start services", ("start",)),
    ("3", "Stop services", ("stop",)),
    ("4", "Restart services", ("restart",)),
    ("5", "Service status", ("status",)),
    ("6", "View logs", ("logs", "--tail", "100")),
    ("7", "Create backup", ("backup", "create")),
    ("8", "Restore from backup", ("restore",)),
    ("9", "Upgrade Worklenz", ("upgrade",)),
    ("10", "Configure environment", ("configure",)),
    ("11", "Auto-configure environment", ("auto-configure",)),
    ("12", "SSL certificates", ("ssl",)),
    ("13", "Build images", ("build",)),
    ("14", "Push images", ("push",)),
    ("15", "Build and push images", ("build-push",)),
)
EXIT_CHOICES = {"0", "q", "quit", "exit"}

Invoker = Callable[[Sequence[str]], int | None]


def render_menu(console: Console) -> None:
    """Print the menu table."""
    table = Table(title="Worklenz management", show_header=False, box=None)
    table.add_column("Key", style="bold cyan", justify="right")
    table.add_column("Action")
    for key, label, _ in MENU_ITEMS:
        table.add_row(key, label)
    table.add_row("0", "Exit")
    console.print(table)


def run_menu(invoke: Invoker, console: Console) -> None:
    """Loop until the operator exits; command failures return to the menu."""
    commands = {key: args for key, _, args in MENU_ITEMS}
    while True:
        console.print()
        render_menu(console)
        try:
            choice = Prompt.ask("Select an option", console=console, default="0").strip().lower()
        except (EOFError, KeyboardInterrupt):
            console.print()
            return
        if choice in EXIT_CHOICES:
            console.print("[cyan]ℹ[/cyan] Goodbye.")
            return
        args = commands.get(choice)
        if args is None:
            console.print(f"[red]✗[/red] Invalid option '{choice}'.")
            continue
        try:
            code = invoke(list(args))
        except (typer.Abort, KeyboardInterrupt):
            console.print("[yellow]⚠[/yellow] Cancelled.")
        except Exception as exc:  # noqa: BLE001 - the menu outlives any command failure
            console.print(f"[red]✗[/red] {exc}")
        else:
            if code:
                console.print(f"[red]✗[/red] Command finished with exit code {code}.")
        try:
            console.input("[dim]Press Enter to return to the menu...[/dim]")
        except (EOFError, KeyboardInterrupt):
            console.print()
            return


__all__ = ["MENU_ITEMS", "render_menu", "run_menu"]
