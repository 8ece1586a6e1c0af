"""End-to-end export and import flows built on the archive and state modules."""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from . import archive
from .archive import ImportResult, ProgressCallback
from .config import Config
from .errors import PartialRegistration, TaskManError, TaskNotFound, VerificationMismatch
from .state_db import RegistrationResult, VerificationResult, register_imported_tasks, verify_registration
from .tasks import Task, TaskRepository, default_export_name, select_tasks

logger = logging.getLogger(__name__)


def export_one(repo: TaskRepository, task_id: str, dest_path: Path) -> Path:
    """Export a single task by ID. Raises TaskNotFound if it is not loaded."""
    task = repo.get(task_id)
    return archive.export_task(task, dest_path, plugin_id=repo.config.plugin_id)


def export_selection(
    repo: TaskRepository,
    dest_path: Path | None,
    ids: list[str] | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    on_progress: ProgressCallback | None = None,
) -> tuple[Path, list[Task]]:
    """Export every task matching the ID list or the date range into one archive.

    When dest_path is None a default name derived from the IDs is used in
    the configured export directory.

    Raises:
        TaskNotFound: nothing matched the filters.
    """
    config = repo.config
    if dest_path is None:
        if not ids:
            raise ValueError("a destination path is required when selecting by date range only")
        dest_path = config.export_path / default_export_name(config.editor_name, config.plugin_id, ids)

    selected = select_tasks(repo.load(), ids=ids, date_from=date_from, date_to=date_to)
    if not selected:
        raise TaskNotFound(",".join(ids) if ids else "<date range>")
    archive.export_tasks(selected, dest_path, on_progress=on_progress, plugin_id=config.plugin_id)
    return Path(dest_path), selected


@dataclass
class ImportReport:
    """Everything an import-and-register run did, for the caller to summarize."""
    zip_path: Path
    dest_root: Path
    imported: ImportResult
    workspace: str | None = None
    registered: list[Task] = field(default_factory=list)
    registration: RegistrationResult | None = None
    verification: VerificationResult | None = None
    problems: list[TaskManError] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return self.imported.ids


def _match_imported(repo: TaskRepository, imported: ImportResult) -> tuple[list[Task], list[str]]:
    """Find the loaded task for each imported ID, preferring where it landed on disk."""
    loaded = repo.load()
    by_path = {Path(t.path).resolve(): t for t in loaded}
    by_id = {t.id: t for t in loaded}

    matched: list[Task] = []
    missing: list[str] = []
    seen: set[str] = set()
    for task_id in imported.ids:
        if task_id in seen:
            continue
        seen.add(task_id)
        dest = imported.destinations.get(task_id)
        task = by_path.get(dest.resolve()) if dest is not None else None
        if task is None:
            task = by_id.get(task_id)
        if task is None:
            missing.append(task_id)
        else:
            matched.append(task)
    return matched, missing


def import_and_register(
    config: Config,
    zip_path: Path,
    workspace: str | None = None,
    repo: TaskRepository | None = None,
    register: bool = True,
    debug: bool = False,
) -> ImportReport:
    """Import an archive into storage, register its tasks and verify the result.

    Without a workspace the current directory is used. Missing tasks and
    verification shortfalls are collected in report.problems; archive and
    transaction errors propagate.
    """
    repo = repo or TaskRepository(config)
    dest_root = repo.root
    ids = archive.inspect_ids(zip_path)
    if debug:
        logger.debug("manifest IDs: %s", ids)
        logger.debug("destination root: %s", dest_root)

    imported = archive.import_any(zip_path, dest_root)
    report = ImportReport(zip_path=Path(zip_path), dest_root=dest_root, imported=imported)
    if not register:
        return report

    report.workspace = workspace or os.getcwd()
    matched, missing = _match_imported(repo, imported)
    report.registered = matched
    if missing:
        report.problems.append(PartialRegistration(missing))
        logger.warning("no imported task found for registration: %s", ", ".join(missing))

    report.registration = register_imported_tasks(config, report.workspace, matched, debug=debug)

    registered_ids = report.registration.ids
    try:
        report.verification = verify_registration(config, registered_ids)
    except TaskManError as e:
        logger.warning("integrity check failed: %s", e)
        report.problems.append(e)
        return report

    missing_primary = report.verification.missing("primary")
    if missing_primary:
        report.problems.append(VerificationMismatch("primary", missing_primary))
    missing_mirror = report.verification.missing("mirror")
    if report.verification.mirror_present and missing_mirror:
        report.problems.append(VerificationMismatch("mirror", missing_mirror))
    return report
