"""Registration of imported tasks in the editor's state.vscdb.

The editor keeps extension state in a SQLite file with a single
``ItemTable(key, value)`` table. The extension's row holds a JSON document
whose ``taskHistory`` array is the task index the extension shows. The
editor also keeps a mirror, ``state.vscdb.backup``, and may swap it in for
the primary on its own schedule, so both files get the same update.

Every mutation is preceded by a copy of the file to
``<name>.bak-<YYYYMMDD-HHMMSS>``, one suffix per operation. The two files
are committed independently: a failure after the primary committed leaves
the pair diverged, which is reported rather than hidden.
"""

import json
import logging
import os
import re
import shutil
import sqlite3
from collections.abc import Iterable
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import Config
from .errors import LockTimeout, PathNotFound, StateCorrupt, WriteFailure
from .stats import stats_from_task
from .tasks import Task

logger = logging.getLogger(__name__)

STATE_DB_NAME = "state.vscdb"
MIRROR_EXTENSION = ".backup"
BACKUP_MARKER = ".bak-"
SUFFIX_FORMAT = "%Y%m%d-%H%M%S"
HISTORY_KEY = "taskHistory"
DEFAULT_MODE = "code"

ITEM_TABLE_SQL = "CREATE TABLE IF NOT EXISTS ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
SELECT_VALUE_SQL = "SELECT value FROM ItemTable WHERE key = ?"
UPSERT_VALUE_SQL = (
    "INSERT INTO ItemTable (key, value) VALUES (?, ?) "
    "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
)

_WS_RE = re.compile(r"\s*")


# === Paths and backups ===

def new_suffix(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime(SUFFIX_FORMAT)


def mirror_path(primary: Path) -> Path:
    return primary.with_name(primary.name + MIRROR_EXTENSION)


def backup_path(path: Path, suffix: str) -> Path:
    return path.with_name(f"{path.name}{BACKUP_MARKER}{suffix}")


def state_dir(config: Config) -> Path:
    """The editor's state directory. Raises PathNotFound if absent."""
    directory = config.state_path
    if not directory.is_dir():
        raise PathNotFound(directory, "state db directory")
    return directory


def primary_state_path(config: Config) -> Path:
    """Path of state.vscdb. Raises PathNotFound if absent."""
    path = config.state_path / STATE_DB_NAME
    if not path.is_file():
        raise PathNotFound(path, "state db")
    return path


def unused_suffix(primary: Path, suffix: str) -> str:
    """Return suffix, or suffix-N, so that no backup of primary or its mirror uses it yet."""
    candidate = suffix
    n = 2
    while backup_path(primary, candidate).exists() or backup_path(mirror_path(primary), candidate).exists():
        candidate = f"{suffix}-{n}"
        n += 1
    return candidate


def backup_file(path: Path, suffix: str) -> Path:
    """Copy path to <path>.bak-<suffix> and return the backup path."""
    dest = backup_path(path, suffix)
    shutil.copyfile(path, dest)
    os.chmod(dest, 0o600)
    return dest


# === State document ===

def _skip_ws(text: str, idx: int) -> int:
    return _WS_RE.match(text, idx).end()


def _top_level_spans(text: str) -> tuple[dict[str, tuple[int, int]], int, bool]:
    """Locate the raw value of each top-level member of a JSON object.

    Returns (spans, closing_brace_index, has_members); spans map key to the
    (start, end) slice of its value. Raises ValueError if text is not an object.
    """
    decoder = json.JSONDecoder()
    idx = _skip_ws(text, 0)
    if text[idx:idx + 1] != "{":
        raise ValueError("not a JSON object")
    idx = _skip_ws(text, idx + 1)
    spans: dict[str, tuple[int, int]] = {}
    has_members = False
    if text[idx:idx + 1] != "}":
        while True:
            key, idx = decoder.raw_decode(text, idx)
            if not isinstance(key, str):
                raise ValueError("object key is not a string")
            idx = _skip_ws(text, idx)
            if text[idx:idx + 1] != ":":
                raise ValueError(f"expected ':' at offset {idx}")
            start = _skip_ws(text, idx + 1)
            _, idx = decoder.raw_decode(text, start)
            spans.setdefault(key, (start, idx))
            has_members = True
            idx = _skip_ws(text, idx)
            ch = text[idx:idx + 1]
            if ch == ",":
                idx = _skip_ws(text, idx + 1)
                continue
            if ch == "}":
                break
            raise ValueError(f"expected ',' or '}}' at offset {idx}")
    if text[idx + 1:].strip():
        raise ValueError("trailing data after JSON object")
    return spans, idx, has_members


def append_history(raw: str | bytes | None, entries: list[dict[str, Any]]) -> str:
    """Append entries to the taskHistory array of a stored document.

    Only the taskHistory value is rewritten; every other byte of the
    document, including existing history entries, is kept as stored.
    A missing row starts from {"taskHistory": []}.
    """
    try:
        if raw is None:
            text = '{"taskHistory":[]}'
        elif isinstance(raw, bytes):
            text = raw.decode("utf-8")
        else:
            text = raw
        spans, close_idx, has_members = _top_level_spans(text)
    except ValueError as e:
        raise StateCorrupt(f"state document is not a JSON object: {e}") from e

    added = ",".join(json.dumps(e, ensure_ascii=False, separators=(",", ":")) for e in entries)
    span = spans.get(HISTORY_KEY)
    if span is None:
        member = f'"{HISTORY_KEY}":[{added}]'
        if has_members:
            member = "," + member
        return text[:close_idx] + member + text[close_idx:]

    start, end = span
    current = text[start:end]
    existing = json.loads(current)
    if not isinstance(existing, list):
        logger.warning("taskHistory is %s, not an array; replacing it", type(existing).__name__)
        updated = f"[{added}]"
    elif not existing:
        updated = f"[{added}]"
    elif not added:
        updated = current
    else:
        updated = current[:-1] + "," + added + "]"
    return text[:start] + updated + text[end:]


def parse_document(raw: str | bytes) -> dict[str, Any]:
    """Parse a stored state document. Raises StateCorrupt if it is not an object."""
    try:
        doc = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise StateCorrupt(f"state document is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise StateCorrupt("state document is not a JSON object")
    return doc


def history_entry(task: Task, workspace: str) -> dict[str, Any]:
    """Build a taskHistory entry for a task.

    Size, tokens, cache and cost all come from the task's own files.
    """
    stats = stats_from_task(task)
    created = task.created_at or datetime.now().astimezone()
    return {
        "id": task.id,
        "number": 1,
        "ts": int(created.timestamp() * 1000),
        "task": task.summary,
        "tokensIn": stats.tokens_in,
        "tokensOut": stats.tokens_out,
        "totalCost": stats.total_cost,
        "cacheWrites": stats.cache_writes,
        "cacheReads": stats.cache_reads,
        "size": stats.size_bytes,
        "workspace": workspace,
        "mode": DEFAULT_MODE,
    }


# === SQLite access ===

def connect(db_path: Path, timeout: float) -> sqlite3.Connection:
    """Open a state file tolerant of the editor holding it open.

    Lock waits are bounded by timeout, and WAL mode lets readers proceed
    while a write is in progress.
    """
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None)
    conn.execute(f"PRAGMA busy_timeout={int(timeout * 1000)}")
    try:
        conn.execute("PRAGMA journal_mode=WAL")
    except sqlite3.OperationalError as e:
        logger.debug("could not switch %s to WAL: %s", db_path, e)
    return conn


def _is_lock_error(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _write_error(db_path: Path, step: str, error: Exception) -> WriteFailure:
    if isinstance(error, sqlite3.Error) and _is_lock_error(error):
        return LockTimeout(f"{db_path} is locked ({step}); close the editor and retry: {error}")
    return WriteFailure(f"{step} failed for {db_path}: {error}")


def append_entries(db_path: Path, plugin_id: str, entries: list[dict[str, Any]],
                   timeout: float, debug: bool = False) -> None:
    """Append entries to the plugin's taskHistory inside one exclusive transaction."""
    try:
        conn = connect(db_path, timeout)
    except sqlite3.Error as e:
        raise _write_error(db_path, "open", e) from e

    with closing(conn):
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise _write_error(db_path, "begin transaction", e) from e
        try:
            conn.execute(ITEM_TABLE_SQL)
            row = conn.execute(SELECT_VALUE_SQL, (plugin_id,)).fetchone()
            raw = row[0] if row else None
            updated = append_history(raw, entries)
            # Keep the storage class the editor used for this row
            value: str | bytes = updated.encode("utf-8") if isinstance(raw, bytes) else updated
            conn.execute(UPSERT_VALUE_SQL, (plugin_id, value))
            conn.commit()
        except Exception as e:
            conn.rollback()
            if isinstance(e, (sqlite3.Error, StateCorrupt)):
                raise _write_error(db_path, "update taskHistory", e) from e
            raise

        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            logger.warning("WAL checkpoint of %s failed; change is committed to the WAL only: %s", db_path, e)

        if debug:
            for entry in entries:
                logger.debug(
                    "inserted taskHistory entry: db=%s plugin=%s id=%s ts=%s size=%s workspace=%s "
                    "tokensIn=%s tokensOut=%s cacheReads=%s cacheWrites=%s totalCost=%.6f",
                    db_path, plugin_id, entry["id"], entry["ts"], entry["size"], entry["workspace"],
                    entry["tokensIn"], entry["tokensOut"], entry["cacheReads"], entry["cacheWrites"],
                    entry["totalCost"],
                )
            history = read_task_history(db_path, plugin_id, timeout)
            logger.debug("write committed: db=%s plugin=%s taskHistoryCount=%d", db_path, plugin_id, len(history))


def read_task_history(db_path: Path, plugin_id: str, timeout: float = 5.0) -> list[Any]:
    """Read the plugin's taskHistory array; an absent row or table reads as empty."""
    with closing(sqlite3.connect(db_path, timeout=timeout, isolation_level=None)) as conn:
        try:
            row = conn.execute(SELECT_VALUE_SQL, (plugin_id,)).fetchone()
        except sqlite3.OperationalError as e:
            if "no such table" in str(e):
                return []
            raise
    if row is None or row[0] is None:
        return []
    history = parse_document(row[0]).get(HISTORY_KEY)
    return history if isinstance(history, list) else []


# === Registration ===

@dataclass
class RegistrationResult:
    """What a registration call changed."""
    suffix: str
    primary: Path
    mirror: Path | None = None  # None when the editor keeps no mirror
    entries: list[dict[str, Any]] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [entry["id"] for entry in self.entries]


def _backup_before_write(path: Path, suffix: str, result: RegistrationResult, debug: bool) -> None:
    try:
        result.backups.append(backup_file(path, suffix))
    except OSError as e:
        message = f"backup of {path} failed, continuing without it: {e}"
        result.warnings.append(message)
        logger.warning(message)
        if debug:
            logger.debug("no restore point with suffix %s exists for %s", suffix, path)


def register_imported_tasks(
    config: Config,
    workspace: str,
    tasks: Iterable[Task],
    suffix: str | None = None,
    debug: bool = False,
) -> RegistrationResult:
    """Append history entries for tasks to the primary state file and its mirror.

    Both files are backed up first under the same suffix. A suffix already
    taken by an earlier backup of either file gets a -N ending instead. Backup
    failures are recorded as warnings and do not stop the write.

    Raises:
        PathNotFound: state.vscdb does not exist.
        WriteFailure: a transaction failed (LockTimeout when the file stayed locked).
    """
    if not workspace:
        raise ValueError("workspace is required")
    primary = primary_state_path(config)
    suffix = unused_suffix(primary, suffix or new_suffix())
    entries = [history_entry(task, workspace) for task in tasks]
    result = RegistrationResult(suffix=suffix, primary=primary, entries=entries)

    _backup_before_write(primary, suffix, result, debug)
    append_entries(primary, config.plugin_id, entries, config.lock_timeout_seconds, debug)

    mirror = mirror_path(primary)
    if not mirror.is_file():
        logger.info("state db mirror not found at %s; skipping", mirror)
        return result

    result.mirror = mirror
    _backup_before_write(mirror, suffix, result, debug)
    try:
        append_entries(mirror, config.plugin_id, entries, config.lock_timeout_seconds, debug)
    except WriteFailure as e:
        raise type(e)(
            f"{e} (primary {primary} was already updated; restore suffix {suffix} to undo)"
        ) from e
    return result


@dataclass
class VerificationResult:
    """Presence of each requested ID in the primary and mirror taskHistory."""
    primary: dict[str, bool]
    mirror: dict[str, bool]
    mirror_present: bool = False

    def missing(self, which: str = "primary") -> list[str]:
        presence = self.primary if which == "primary" else self.mirror
        return [task_id for task_id, found in presence.items() if not found]


def _presence(db_path: Path, plugin_id: str, ids: list[str], timeout: float) -> dict[str, bool]:
    try:
        history = read_task_history(db_path, plugin_id, timeout)
    except sqlite3.Error as e:
        raise StateCorrupt(f"cannot read taskHistory from {db_path}: {e}") from e
    found = {item.get("id") for item in history if isinstance(item, dict)}
    return {task_id: task_id in found for task_id in ids}


def verify_registration(config: Config, ids: Iterable[str]) -> VerificationResult:
    """Read back taskHistory from both files and report which IDs are present.

    A missing mirror yields False for every ID rather than an error.
    """
    ids = list(ids)
    primary = primary_state_path(config)
    timeout = config.lock_timeout_seconds
    primary_map = _presence(primary, config.plugin_id, ids, timeout)

    mirror = mirror_path(primary)
    if not mirror.is_file():
        return VerificationResult(primary=primary_map, mirror={task_id: False for task_id in ids})
    return VerificationResult(
        primary=primary_map,
        mirror=_presence(mirror, config.plugin_id, ids, timeout),
        mirror_present=True,
    )
