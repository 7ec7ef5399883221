"""
Keel CLI - Declarative resource graphs in Python.
"""

import logging
import signal
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from .core import KeelCore
from .errors import ApplyCancelledError, PartialApplyError
from .formatters import PlanFormatter
from .settings import get_settings

# Setup
app = typer.Typer(
    name="keel",
    help="Declarative desired-state resource graphs in Python",
    add_completion=False,
)
console = Console()
formatter = PlanFormatter(console)


def configure_logging():
    """Configure logging based on settings."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Helper functions to reduce duplication across commands
def _get_main_file() -> Path:
    """Check for main.py in current directory and return Path.

    Returns:
        Path to main.py

    Raises:
        SystemExit: If main.py is not found
    """
    main_file = Path.cwd() / "main.py"
    if not main_file.exists():
        console.print(
            "[bold red]✗ Error:[/bold red] No main.py found in current directory"
        )
        console.print(
            "[dim]Hint: cd into your project directory that contains main.py[/dim]"
        )
        raise typer.Exit(code=1)
    return main_file


def _create_command_panel(title: str, color: str) -> Panel:
    """Create a Rich Panel for command display.

    Args:
        title: Command title (e.g., "Keel Apply")
        color: Border color (e.g., "blue", "cyan", "red")

    Returns:
        Formatted Rich Panel
    """
    settings = get_settings()
    return Panel.fit(
        f"[bold {color}]{title}[/bold {color}]\n"
        f"Directory: {Path.cwd().name}\n"
        f"Stack: {settings.stack_name}",
        border_style=color,
    )


def _handle_command_error(e: Exception, command_type: str) -> None:
    """Handle command errors with appropriate formatting.

    Args:
        e: Exception that occurred
        command_type: Type of command (for error message context)

    Raises:
        SystemExit: Always exits with code 1
    """
    if isinstance(e, (PartialApplyError, ApplyCancelledError)):
        console.print()
        console.print(formatter.format_interrupted(e))
    else:
        console.print(
            f"\n[bold red]✗ {command_type.capitalize()} failed:[/bold red] {e}"
        )

    raise typer.Exit(code=1)


@contextmanager
def _cancel_on_interrupt(core: KeelCore):
    """Turn Ctrl-C into a graceful cancel: in-flight steps finish and are recorded."""
    def _handler(signum, frame):
        console.print("\n[yellow]⚠ Interrupt received, finishing in-flight steps...[/yellow]")
        core.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _confirm(action: str, yes: bool, stack=None):
    """Build a confirm callback that prints the plan and asks before changing anything."""
    def _ask(plan) -> bool:
        console.print(formatter.format_plan(plan, stack))
        if not plan.has_changes:
            return True
        if yes:
            return True
        return typer.confirm(f"Do you want to {action}?", default=False)
    return _ask


@app.command()
def plan(
    out: Path = typer.Option(
        None, "--out", "-o", help="Save the plan to this file for a later apply"
    ),
):
    """Show what apply would change, without changing anything."""
    main_file = _get_main_file()
    console.print(_create_command_panel("Keel Plan", "cyan"))

    try:
        core = KeelCore()
        stack = core.load_stack(main_file)
        result = core.plan(stack=stack, out=out)
    except Exception as e:
        _handle_command_error(e, "plan")

    console.print()
    console.print(formatter.format_plan(result, stack))
    if out is not None:
        console.print(f"\n[dim]Plan saved to {out}. Run 'keel apply --plan {out}' to apply it.[/dim]")
    elif result.has_changes:
        console.print("\n[dim]Run 'keel apply' to apply these changes.[/dim]")


@app.command()
def apply(
    plan_file: Path = typer.Option(
        None, "--plan", "-p", help="Apply a plan saved with 'keel plan --out'"
    ),
    yes: bool = typer.Option(
        False, "--yes", "-y", help="Apply without asking for confirmation"
    ),
):
    """Apply the configuration: create, update, replace and delete resources."""
    main_file = _get_main_file()
    console.print(_create_command_panel("Keel Apply", "blue"))

    try:
        core = KeelCore()
        stack = core.load_stack(main_file)
        with _cancel_on_interrupt(core):
            result = core.apply(
                stack=stack,
                plan_file=plan_file,
                confirm=_confirm("apply these changes", yes, stack),
            )
    except Exception as e:
        _handle_command_error(e, "apply")

    if result is None:
        console.print("\n[yellow]Apply cancelled, nothing was changed.[/yellow]")
        raise typer.Exit(code=1)

    console.print()
    console.print(formatter.format_apply(result))
    if result.outputs:
        console.print()
        console.print(formatter.format_outputs(result.outputs))


@app.command()
def destroy(
    yes: bool = typer.Option(
        False, "--yes", "-y", help="Destroy without asking for confirmation"
    ),
):
    """Destroy every resource recorded in the state."""
    console.print(_create_command_panel("Keel Destroy", "red"))

    try:
        core = KeelCore()
        with _cancel_on_interrupt(core):
            result = core.destroy(confirm=_confirm("destroy all resources", yes))
    except Exception as e:
        _handle_command_error(e, "destroy")

    if result is None:
        console.print("\n[yellow]Destroy cancelled, nothing was changed.[/yellow]")
        raise typer.Exit(code=1)

    console.print()
    console.print(formatter.format_apply(result))


@app.command()
def outputs():
    """Show the outputs of the last successful apply."""
    try:
        core = KeelCore()
        values = core.outputs()
    except Exception as e:
        _handle_command_error(e, "outputs")

    console.print(formatter.format_outputs(values))


@app.command()
def version():
    """Show Keel version."""
    from . import __version__

    console.print(f"Keel version: [bold]{__version__}[/bold]")


@app.callback()
def main():
    """Declarative desired-state resource graphs in Python."""
    configure_logging()


if __name__ == "__main__":
    app()
