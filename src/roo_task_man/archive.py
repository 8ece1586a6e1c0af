"""Zip archive codec for task folders.

An archive holds one manifest entry, ``roo-task-manifest.json``, plus the
files of each task. Two manifest generations exist:

- v1 (single task): ``{"id", "title", "createdAt", "pluginId"}``. Files live
  under the task directory name.
- v2 (multi task): ``{"version": 2, "tasks": [<v1 entries>]}``. Files live
  under ``<task id>/``.

Readers accept both, and tolerate single-task archives whose entries are
not prefixed with the task ID.
"""

import json
import logging
import shutil
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any

from .errors import ArchiveIOError, ManifestInvalid, ManifestMissing
from .tasks import Task

logger = logging.getLogger(__name__)

MANIFEST_NAME = "roo-task-manifest.json"
MANIFEST_VERSION = 2
COPY_SUFFIX_FORMAT = "%Y%m%d-%H%M%S"

ProgressCallback = Callable[[int, int], None]


@dataclass
class ManifestEntry:
    """Manifest record for one task (the v1 shape)."""
    id: str
    title: str = ""
    created_at: str = ""
    plugin_id: str = ""

    @classmethod
    def from_task(cls, task: Task, plugin_id: str = "") -> "ManifestEntry":
        return cls(
            id=task.id,
            title=task.title,
            created_at=task.created_at.isoformat() if task.created_at else "",
            plugin_id=plugin_id,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        def text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        return cls(id=text("id"), title=text("title"), created_at=text("createdAt"), plugin_id=text("pluginId"))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "createdAt": self.created_at, "pluginId": self.plugin_id}


@dataclass
class Manifest:
    """Parsed manifest; version 1 means a single-task archive."""
    version: int
    tasks: list[ManifestEntry]

    @property
    def is_multi(self) -> bool:
        return self.version >= MANIFEST_VERSION

    @property
    def ids(self) -> list[str]:
        return [entry.id for entry in self.tasks]


@dataclass
class ImportResult:
    """Outcome of an import: manifest IDs in order and where each landed."""
    ids: list[str]
    destinations: dict[str, Path] = field(default_factory=dict)
    files_extracted: int = 0


def parse_manifest(raw: bytes, zip_path: Path) -> Manifest:
    """Parse manifest bytes.

    A v2 manifest is recognized only when ``version >= 2`` and ``tasks`` holds at
    least one object. Anything else is read again as a v1 single-task manifest.
    """
    try:
        data = json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ManifestInvalid(zip_path, str(e)) from e
    if not isinstance(data, dict):
        raise ManifestInvalid(zip_path, "manifest is not a JSON object")

    version = data.get("version")
    entries = data.get("tasks")
    objects = [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else []
    if (
        isinstance(version, int) and not isinstance(version, bool)
        and version >= MANIFEST_VERSION
        and objects
    ):
        return Manifest(version=version, tasks=[ManifestEntry.from_dict(e) for e in objects])
    return Manifest(version=1, tasks=[ManifestEntry.from_dict(data)])


def _is_manifest(name: str) -> bool:
    return PurePosixPath(name.replace("\\", "/")).name.lower() == MANIFEST_NAME


def _entry_parts(name: str) -> list[str]:
    """Split a zip entry name into safe path segments.

    Returns an empty list for names that would escape the destination.
    """
    parts = [p for p in name.replace("\\", "/").lstrip("/").split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts) or (parts and ":" in parts[0]):
        return []
    return parts


def _check_task_id(task_id: str, zip_path: Path) -> None:
    """Raise ManifestInvalid unless task_id is a single plain directory name."""
    if not task_id:
        raise ManifestInvalid(zip_path, "id is empty")
    if task_id in (".", "..") or any(c in task_id for c in "/\\:"):
        raise ManifestInvalid(zip_path, f"id {task_id!r} is not a plain directory name")


def _read_manifest(zf: zipfile.ZipFile, zip_path: Path) -> Manifest:
    for info in zf.infolist():
        if _is_manifest(info.filename):
            return parse_manifest(zf.read(info), zip_path)
    raise ManifestMissing(zip_path)


def _open_zip(zip_path: Path) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(zip_path)
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveIOError(f"cannot open archive {zip_path}: {e}") from e


def _iter_files(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*") if p.is_file())


def _write_archive(dest_path: Path, write: Callable[[zipfile.ZipFile], None]) -> None:
    """Write to a temporary sibling and move it over dest_path when complete."""
    tmp_path = dest_path.with_name(dest_path.name + ".part")
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            write(zf)
        tmp_path.replace(dest_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise ArchiveIOError(f"cannot write archive {dest_path}: {e}") from e
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_manifest(zf: zipfile.ZipFile, data: dict[str, Any]) -> None:
    zf.writestr(MANIFEST_NAME, json.dumps(data, indent=2, ensure_ascii=False))


def export_task(task: Task, dest_path: Path, plugin_id: str = "") -> Path:
    """Export one task with a v1 manifest.

    Entries are rooted at the task directory's own name, i.e. relative to
    the parent of task.path.
    """
    dest_path = Path(dest_path)
    task_dir = Path(task.path)
    if not task_dir.is_dir():
        raise ArchiveIOError(f"task directory not found: {task_dir}")
    base = task_dir.parent

    def write(zf: zipfile.ZipFile) -> None:
        _write_manifest(zf, ManifestEntry.from_task(task, plugin_id).to_dict())
        for path in _iter_files(task_dir):
            zf.write(path, path.relative_to(base).as_posix())

    _write_archive(dest_path, write)
    logger.debug("exported %s -> %s", task.id, dest_path)
    return dest_path


def count_files(tasks: list[Task]) -> int:
    """Total number of files across all task directories."""
    total = 0
    for task in tasks:
        task_dir = Path(task.path)
        if task_dir.is_dir():
            total += len(_iter_files(task_dir))
    return total


def export_tasks(
    tasks: list[Task],
    dest_path: Path,
    on_progress: ProgressCallback | None = None,
    plugin_id: str = "",
) -> Path:
    """Export tasks into one archive with a v2 manifest.

    Tasks keep the given order. on_progress receives (current, total) after
    each file, with total taken from a counting pass made before writing.
    """
    dest_path = Path(dest_path)
    for task in tasks:
        if not Path(task.path).is_dir():
            raise ArchiveIOError(f"task directory not found for {task.id}: {task.path}")

    manifest = {
        "version": MANIFEST_VERSION,
        "tasks": [ManifestEntry.from_task(task, plugin_id).to_dict() for task in tasks],
    }
    total = count_files(tasks)

    def write(zf: zipfile.ZipFile) -> None:
        _write_manifest(zf, manifest)
        current = 0
        for task in tasks:
            task_dir = Path(task.path)
            for path in _iter_files(task_dir):
                arcname = f"{task.id}/{path.relative_to(task_dir).as_posix()}"
                zf.write(path, arcname)
                current += 1
                if on_progress is not None:
                    on_progress(current, total)
        if on_progress is not None:
            on_progress(total, total)

    _write_archive(dest_path, write)
    logger.debug("exported %d tasks (%d files) -> %s", len(tasks), total, dest_path)
    return dest_path


def inspect_ids(zip_path: Path) -> list[str]:
    """Task IDs listed in an archive's manifest, without extracting anything."""
    zip_path = Path(zip_path)
    with _open_zip(zip_path) as zf:
        manifest = _read_manifest(zf, zip_path)
    for task_id in manifest.ids:
        _check_task_id(task_id, zip_path)
    return manifest.ids


def tasks_base(dest_root: Path) -> Path:
    """Parent directory for imported task folders.

    <dest_root>/tasks when it already exists, else dest_root itself.
    """
    tasks_dir = dest_root / "tasks"
    return tasks_dir if tasks_dir.is_dir() else dest_root


def collision_free(path: Path, now: datetime | None = None) -> Path:
    """Return path, or a -copy-<timestamp> sibling if path already exists."""
    if not path.exists():
        return path
    stamp = (now or datetime.now()).strftime(COPY_SUFFIX_FORMAT)
    candidate = path.with_name(f"{path.name}-copy-{stamp}")
    n = 2
    while candidate.exists():
        candidate = path.with_name(f"{path.name}-copy-{stamp}-{n}")
        n += 1
    return candidate


def _extract(zf: zipfile.ZipFile, info: zipfile.ZipInfo, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with zf.open(info) as src, open(out_path, "wb") as dst:
        shutil.copyfileobj(src, dst)


def import_any(zip_path: Path, dest_root: Path) -> ImportResult:
    """Import a single- or multi-task archive into dest_root."""
    zip_path = Path(zip_path)
    dest_root = Path(dest_root)
    with _open_zip(zip_path) as zf:
        manifest = _read_manifest(zf, zip_path)
        if not manifest.is_multi:
            return _import_single(zf, manifest, zip_path, dest_root)
        return _import_multi(zf, manifest, zip_path, dest_root)


def import_task(zip_path: Path, dest_root: Path) -> ImportResult:
    """Import a single-task archive, never overwriting an existing task folder."""
    zip_path = Path(zip_path)
    with _open_zip(zip_path) as zf:
        manifest = _read_manifest(zf, zip_path)
        entry = manifest.tasks[0] if manifest.tasks else None
        single = Manifest(version=1, tasks=[entry] if entry else [])
        return _import_single(zf, single, zip_path, Path(dest_root))


def _import_single(zf: zipfile.ZipFile, manifest: Manifest, zip_path: Path, dest_root: Path) -> ImportResult:
    if not manifest.tasks:
        raise ManifestInvalid(zip_path, "id is empty")
    task_id = manifest.tasks[0].id
    _check_task_id(task_id, zip_path)

    dest = collision_free(tasks_base(dest_root) / task_id)
    if dest.name != task_id:
        logger.info("task %s already exists; importing into %s", task_id, dest)

    result = ImportResult(ids=[task_id], destinations={task_id: dest})
    try:
        dest.mkdir(parents=True, exist_ok=True)
        for info in zf.infolist():
            if info.is_dir() or _is_manifest(info.filename):
                continue
            parts = _entry_parts(info.filename)
            if parts and parts[0] == task_id:
                parts = parts[1:]
            if not parts:
                logger.warning("skipping unsafe archive entry %r in %s", info.filename, zip_path)
                continue
            _extract(zf, info, dest.joinpath(*parts))
            result.files_extracted += 1
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveIOError(f"import of {task_id} from {zip_path} failed: {e}") from e
    return result


def _import_multi(zf: zipfile.ZipFile, manifest: Manifest, zip_path: Path, dest_root: Path) -> ImportResult:
    ids = manifest.ids
    for task_id in ids:
        _check_task_id(task_id, zip_path)
    wanted = set(ids)
    # Probed once, at call time
    base = tasks_base(dest_root)

    result = ImportResult(ids=ids)
    try:
        for info in zf.infolist():
            if info.is_dir() or _is_manifest(info.filename):
                continue
            parts = _entry_parts(info.filename)
            if len(parts) < 2:
                if not parts:
                    logger.warning("skipping unsafe archive entry %r in %s", info.filename, zip_path)
                continue
            task_id = parts[0]
            if task_id not in wanted:
                continue
            dest = result.destinations.get(task_id)
            if dest is None:
                dest = collision_free(base / task_id)
                if dest.name != task_id:
                    logger.info("task %s already exists; importing into %s", task_id, dest)
                result.destinations[task_id] = dest
            _extract(zf, info, dest.joinpath(*parts[1:]))
            result.files_extracted += 1
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveIOError(f"import from {zip_path} failed: {e}") from e
    return result
