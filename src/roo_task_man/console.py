"""Rich console output helpers for roo-task-man."""

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from .backups import BackupInfo
from .state_db import VerificationResult
from .tasks import Task

# Shared console instance for all output
console = Console()

MAX_TITLE_DISPLAY = 60


def truncate(text: str, max_len: int, suffix: str = '...') -> str:
    """Truncate text to max_len, adding suffix if truncated.

    Args:
        text: Text to truncate
        max_len: Maximum length including suffix
        suffix: Suffix to add when truncating (default: '...')

    Returns:
        Original text if within max_len, otherwise truncated text with suffix
    """
    if len(text) <= max_len:
        return text
    return text[:max_len - len(suffix)] + suffix


def format_size(size: int) -> str:
    """Format a byte count as B, KB or MB."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def success_message(title: str) -> None:
    """Print a success header."""
    console.print(f"[bold green]=== {title} ===[/bold green]")


def error_message(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]{message}[/bold red]")


def warning_message(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]{message}[/yellow]")


def info_line(label: str, value: str) -> None:
    """Print an info line with label and value."""
    console.print(f"{label}: {value}")


def task_table(tasks: list[Task]) -> None:
    """Print tasks as ID, creation date and single-line title."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Created", no_wrap=True)
    table.add_column("Title")
    for task in tasks:
        created = task.created_at.strftime("%Y-%m-%d %H:%M") if task.created_at else ""
        title = " ".join(task.title.split())
        table.add_row(task.id, created, truncate(title, MAX_TITLE_DISPLAY))
    console.print(table)


def backup_table(backups: list[BackupInfo]) -> None:
    """Print backups, newest first, numbered for selection."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Modified", no_wrap=True)
    table.add_column("Suffix", style="cyan", no_wrap=True)
    table.add_column("Size", justify="right")
    for i, backup in enumerate(backups, 1):
        table.add_row(
            str(i),
            backup.mod_time.strftime("%Y-%m-%d %H:%M:%S"),
            backup.suffix,
            format_size(backup.size),
        )
    console.print(table)


def integrity_summary(verification: VerificationResult) -> None:
    """Print how many registered IDs were read back from each state file."""
    total = len(verification.primary)
    primary_ok = total - len(verification.missing("primary"))
    line = f"Integrity: primary [bold]{primary_ok}/{total}[/bold] ok"
    if verification.mirror_present:
        mirror_ok = total - len(verification.missing("mirror"))
        line += f" | mirror [bold]{mirror_ok}/{total}[/bold] ok"
    else:
        line += " | mirror [dim]not present[/dim]"
    console.print(line)


def file_progress() -> Progress:
    """Progress bar counting files."""
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    )


def task_detail(detail: dict) -> None:
    """Print a hook-rendered detail view: a title followed by headed sections."""
    console.print(f"\n[bold]{escape(detail['title'])}[/bold]")
    for section in detail["sections"]:
        if section["heading"]:
            console.print(f"[cyan]{escape(section['heading'])}[/cyan]")
        console.print(section["body"], markup=False)
