"""Command-line interface for roo-task-man."""

import argparse
import logging
import sys
import tempfile
from pathlib import Path

from rich.prompt import Confirm, IntPrompt

from . import __version__, archive
from .backups import list_backups, restore_from_backup
from .config import Config, ConfigError, default_config_path
from .console import (
    backup_table,
    console,
    error_message,
    file_progress,
    info_line,
    integrity_summary,
    success_message,
    task_detail,
    task_table,
    warning_message,
)
from .dump import dump_markdown
from .errors import TaskManError
from .hooks import load_hooks
from .tasks import TaskRepository, default_export_name, parse_date_range, split_csv
from .workflow import export_one, export_selection, import_and_register


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def load_config(args: argparse.Namespace) -> Config:
    """Load config and apply command-line overrides."""
    config = Config.load(args.config)
    overrides = {
        "plugin_id": args.plugin_id,
        "code_channel": args.code_channel,
        "data_dir": args.data_dir,
        "state_dir": args.state_dir,
        "hooks_dir": args.hooks_dir,
        "export_dir": args.export_dir,
    }
    for key, value in overrides.items():
        if value:
            setattr(config, key, value)
    if args.debug:
        config.debug = True
    return config


def get_repo(config: Config) -> TaskRepository:
    """Task repository with hooks from the configured hooks directory."""
    return TaskRepository(config, hooks=load_hooks(config.hooks_path))


def cmd_list(args: argparse.Namespace) -> int:
    """List tasks in the extension's storage."""
    config = load_config(args)
    repo = get_repo(config)
    tasks = repo.load()
    if not tasks:
        print("No tasks found")
        return 0
    console.print(f"{len(tasks)} tasks in [dim]{config.storage_root}[/dim]")
    task_table(tasks)

    if args.detail:
        if not repo.hooks.active:
            console.print("[dim]No hook modules loaded; --detail needs a render_task_detail hook[/dim]")
            return 0
        for task in tasks:
            detail = repo.hooks.render_detail(task)
            if detail is not None:
                task_detail(detail)
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export one task, or a selection of tasks, to a zip archive."""
    config = load_config(args)
    repo = get_repo(config)
    out = Path(args.output) if args.output else None

    if not args.ids and not args.date_range:
        if not args.task_id:
            error_message("Error: give a task ID, or --ids / --date-range")
            return 1
        if out is None:
            out = config.export_path / default_export_name(config.editor_name, config.plugin_id, [args.task_id])
        export_one(repo, args.task_id, out)
        success_message(f"Exported {args.task_id}")
        info_line("Archive", str(out))
        return 0

    ids = split_csv(args.ids) if args.ids else []
    if args.task_id:
        ids.insert(0, args.task_id)
    date_from = date_to = None
    if args.date_range:
        try:
            date_from, date_to = parse_date_range(args.date_range)
        except ValueError as e:
            error_message(f"Error: invalid --date-range: {e}")
            return 1
    if out is None and not ids:
        error_message("Error: --output is required when using --date-range only")
        return 1

    with file_progress() as progress:
        bar = progress.add_task("Exporting", total=None)

        def on_progress(current: int, total: int) -> None:
            progress.update(bar, completed=current, total=total)

        out, selected = export_selection(repo, out, ids=ids, date_from=date_from, date_to=date_to, on_progress=on_progress)

    success_message(f"Exported {len(selected)} tasks")
    info_line("Archive", str(out))
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import an archive and register its tasks in the editor's state."""
    config = load_config(args)
    zip_path = Path(args.archive)
    report = import_and_register(
        config,
        zip_path,
        workspace=args.workspace,
        repo=get_repo(config),
        register=not args.no_register,
        debug=config.debug,
    )

    success_message(f"Imported {zip_path.name}")
    info_line("Destination", str(report.dest_root))
    for task_id, dest in report.imported.destinations.items():
        if dest.name != task_id:
            warning_message(f"{task_id} already existed; imported as {dest.name}")

    if report.registration is not None:
        info_line("Registered", f"{len(report.registration.entries)} tasks for workspace {report.workspace}")
        info_line("Restore point", report.registration.suffix)
        for warning in report.registration.warnings:
            warning_message(f"Warning: {warning}")
        if report.registration.mirror is None:
            console.print("[dim]No state.vscdb.backup mirror found; only the primary was updated[/dim]")
    if report.verification is not None:
        integrity_summary(report.verification)
    for problem in report.problems:
        warning_message(f"Warning: {problem}")
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """List the tasks inside an archive without touching real storage."""
    config = load_config(args)
    with tempfile.TemporaryDirectory(prefix="roo-task-inspect-") as tmp:
        archive.import_any(Path(args.archive), Path(tmp))
        tasks = TaskRepository(config, root=Path(tmp)).load()
        console.print(f"{len(tasks)} tasks in [dim]{args.archive}[/dim]")
        task_table(tasks)
    return 0


def cmd_backups(args: argparse.Namespace) -> int:
    """List state.vscdb backups."""
    config = load_config(args)
    backups = list_backups(config)
    if not backups:
        print("No backups found")
        return 0
    info_line("Directory", str(config.state_path))
    backup_table(backups)
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore state.vscdb (and its mirror) from a backup."""
    config = load_config(args)
    suffix = args.suffix
    warning_message(f"Fully close {config.editor_name} before restoring.")

    if not suffix:
        backups = list_backups(config)
        if not backups:
            print("No backups found")
            return 0
        info_line("Directory", str(config.state_path))
        backup_table(backups)
        choice = IntPrompt.ask("Restore which backup (0 to cancel)", default=1, console=console)
        if choice <= 0 or choice > len(backups):
            print("Restore canceled")
            return 0
        suffix = backups[choice - 1].suffix

    if not args.yes and not Confirm.ask(f"Overwrite state.vscdb with backup {suffix}?", console=console):
        print("Restore canceled")
        return 0

    result = restore_from_backup(config, suffix, debug=config.debug)
    success_message(f"Restored state from {suffix}")
    if not result.mirror_restored:
        warning_message("No paired mirror backup found; state.vscdb.backup was not restored")
    return 0


def cmd_dump(args: argparse.Namespace) -> int:
    """Write all tasks and their prompts to a markdown file."""
    config = load_config(args)
    tasks = get_repo(config).load()
    out = Path(args.output)
    with file_progress() as progress:
        bar = progress.add_task("Writing", total=len(tasks))
        dump_markdown(tasks, out, on_progress=lambda current, total: progress.update(bar, completed=current))
    success_message(f"Wrote {len(tasks)} tasks")
    info_line("File", str(out))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate the configuration file."""
    is_valid, errors, warnings = Config.validate(args.config)

    for warning in warnings:
        print(f"⚠ Warning: {warning}")

    if is_valid:
        print("✓ Configuration is valid")
        return 0
    else:
        print("✗ Configuration validation failed:")
        for error in errors:
            print(f"  - {error}")
        return 1


def add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config and location overrides to a subparser."""
    parser.add_argument(
        "--config",
        type=Path,
        default=default_config_path(),
        help="Config file path (default: ~/.config/roo-task-man.yaml)",
    )
    parser.add_argument("--plugin-id", help="Extension ID (overrides config)")
    parser.add_argument(
        "--code-channel", "--editor",
        dest="code_channel",
        help="Editor: Code | Insiders | VSCodium | Cursor | Windsurf | Trae | Custom | <AppDir>",
    )
    parser.add_argument("--data-dir", help="Override the extension's globalStorage directory")
    parser.add_argument("--state-dir", help="Override the directory containing state.vscdb")
    parser.add_argument("--hooks-dir", help="Directory containing Python hook modules")
    parser.add_argument("--export-dir", help="Default directory for exported archives")
    parser.add_argument("--debug", action="store_true", help="Print debug information")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="roo-task-man - export, import and register Roo Code tasks")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List tasks")
    list_parser.add_argument(
        "--detail",
        action="store_true",
        help="Also print each task's detail view from render_task_detail hooks",
    )
    add_common_args(list_parser)

    export_parser = subparsers.add_parser("export", help="Export tasks to a zip archive")
    export_parser.add_argument("task_id", nargs="?", help="Task ID to export")
    export_parser.add_argument("--output", "-o", help="Archive path (default: derived from the IDs)")
    export_parser.add_argument("--ids", help="Comma-separated task IDs to export into one archive")
    export_parser.add_argument(
        "--date-range",
        help="Export tasks created in from..to (YYYY-MM-DD or YYYYMMDD, inclusive); unions with --ids",
    )
    add_common_args(export_parser)

    import_parser = subparsers.add_parser("import", help="Import a zip archive and register its tasks")
    import_parser.add_argument("archive", help="Zip archive to import")
    import_parser.add_argument("--workspace", help="Workspace path to associate (default: current directory)")
    import_parser.add_argument(
        "--no-register",
        action="store_true",
        help="Only extract files; do not touch state.vscdb",
    )
    add_common_args(import_parser)

    inspect_parser = subparsers.add_parser("inspect", help="List the tasks inside an archive")
    inspect_parser.add_argument("archive", help="Zip archive to inspect")
    add_common_args(inspect_parser)

    backups_parser = subparsers.add_parser("backups", help="List state.vscdb backups")
    add_common_args(backups_parser)

    restore_parser = subparsers.add_parser("restore", help="Restore state.vscdb from a backup")
    restore_parser.add_argument("suffix", nargs="?", help="Backup suffix (YYYYMMDD-HHMMSS); prompts when omitted")
    restore_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    add_common_args(restore_parser)

    dump_parser = subparsers.add_parser("dump", help="Write all tasks and prompts to markdown")
    dump_parser.add_argument("output", help="Markdown file to write")
    add_common_args(dump_parser)

    validate_parser = subparsers.add_parser("validate", help="Validate the configuration file")
    add_common_args(validate_parser)

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        if args.command == "list":
            return cmd_list(args)
        elif args.command == "export":
            return cmd_export(args)
        elif args.command == "import":
            return cmd_import(args)
        elif args.command == "inspect":
            return cmd_inspect(args)
        elif args.command == "backups":
            return cmd_backups(args)
        elif args.command == "restore":
            return cmd_restore(args)
        elif args.command == "dump":
            return cmd_dump(args)
        elif args.command == "validate":
            return cmd_validate(args)
    except ConfigError as e:
        error_message(f"Config error: {e}")
        return 1
    except TaskManError as e:
        error_message(f"Error: {e}")
        return 1
    except ValueError as e:
        error_message(f"Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
