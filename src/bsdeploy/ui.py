"""Console output for the CLI.

Core components never print. They report progress through a callback;
spinner() yields one that updates a rich spinner line.
"""

from collections.abc import Callable, Generator
from contextlib import contextmanager

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

console = Console()
err_console = Console(stderr=True)


def print_step(message: str) -> None:
    console.print(f"[bold blue]==>[/bold blue] {escape(message)}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]![/yellow] {escape(message)}")


def print_error(message: str) -> None:
    err_console.print(f"[red]✗ {escape(message)}[/red]")


@contextmanager
def spinner(message: str) -> Generator[Callable[[str], None], None, None]:
    """Show a spinner; yields a callback that replaces its text.

    Example:
        >>> with spinner("Deploying to bsd1") as progress:
        ...     orchestrator = DeploymentOrchestrator(config, progress_callback=progress)
    """
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(escape(message), total=None)

        def update(text: str) -> None:
            progress.update(task, description=escape(text))

        yield update


__all__ = [
    "console",
    "err_console",
    "print_error",
    "print_step",
    "print_success",
    "print_warning",
    "spinner",
]
