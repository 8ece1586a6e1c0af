"""Task model, discovery and selection."""

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import Config
from .errors import TaskNotFound

if TYPE_CHECKING:
    from .hooks import HookEnv

logger = logging.getLogger(__name__)

UI_MESSAGES_FILE = "ui_messages.json"


@dataclass
class Task:
    """A task folder owned by the extension."""
    id: str  # Stable ID, also the directory name
    title: str
    summary: str = ""
    created_at: datetime | None = None
    path: Path = field(default_factory=Path)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping passed to hooks."""
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "createdAt": self.created_at.isoformat() if self.created_at else "",
            "path": str(self.path),
            "meta": self.meta,
        }

    def merged_with(self, data: dict[str, Any]) -> "Task":
        """Return a copy with non-empty fields from data applied."""
        merged = Task(
            id=self.id,
            title=self.title,
            summary=self.summary,
            created_at=self.created_at,
            path=self.path,
            meta=self.meta,
        )
        for key, attr in (("id", "id"), ("title", "title"), ("summary", "summary")):
            value = data.get(key)
            if isinstance(value, str) and value:
                setattr(merged, attr, value)
        if isinstance(data.get("path"), str) and data["path"]:
            merged.path = Path(data["path"])
        if isinstance(data.get("meta"), dict):
            merged.meta = data["meta"]
        created = data.get("createdAt")
        if isinstance(created, str) and created:
            try:
                merged.created_at = datetime.fromisoformat(created)
            except ValueError:
                pass
        return merged


@dataclass
class HistoryItem:
    """One message of a task's conversation log."""
    role: str  # user, ai or other
    kind: str
    text: str
    at: datetime | None = None


def read_ui_messages(task_dir: Path) -> list[dict[str, Any]] | None:
    """Parse ui_messages.json in a task directory.

    Returns None when the file is missing or is not a JSON array.
    """
    try:
        data = json.loads((task_dir / UI_MESSAGES_FILE).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, list):
        return None
    return [item for item in data if isinstance(item, dict)]


def parse_ai_payload(text: Any) -> dict[str, Any] | None:
    """Decode the JSON request record the extension embeds in a message text."""
    if not isinstance(text, str) or not text.lstrip().startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def read_summary(task_dir: Path) -> str:
    messages = read_ui_messages(task_dir)
    if not messages:
        return ""
    text = messages[0].get("text")
    return text if isinstance(text, str) else ""


def load_history(task: Task) -> list[HistoryItem]:
    """Parse the conversation log of a task into history items."""
    messages = read_ui_messages(task.path)
    if messages is None:
        return []

    items = []
    for message in messages:
        ts = message.get("ts")
        at = datetime.fromtimestamp(ts / 1000).astimezone() if isinstance(ts, (int, float)) and ts > 0 else None
        text = message.get("text") if isinstance(message.get("text"), str) else ""

        # User messages always carry an images key, even when empty
        if "images" in message and message["images"] is not None:
            items.append(HistoryItem(role="user", kind="User", text=text, at=at))
            continue

        payload = parse_ai_payload(text)
        if payload and payload.get("request"):
            body = (
                f"{payload['request']}\n\n"
                "**Stats**\n"
                f"- Protocol: {payload.get('apiProtocol', '')}\n"
                f"- Cost: ${float(payload.get('cost', payload.get('costs', 0)) or 0):.4f}\n"
                f"- Tokens: in {payload.get('tokensIn', payload.get('tokenIn', 0))} / "
                f"out {payload.get('tokensOut', payload.get('tokenOut', 0))}\n"
                f"- Mode: {payload.get('mode', '')}\n"
                f"- Cache: reads {payload.get('cacheReads', 0)} / writes {payload.get('cacheWrites', 0)}\n"
            )
            items.append(HistoryItem(role="ai", kind="AI Request", text=body, at=at))
        else:
            kind = message.get("say") or message.get("type") or ""
            items.append(HistoryItem(role="other", kind=str(kind), text=text, at=at))
    return items


def _has_files(path: Path) -> bool:
    for entry in path.rglob("*"):
        if entry.is_file():
            return True
    return False


def discover_task_dirs(root: Path) -> list[Path]:
    """Find task directories under root.

    Looks in <root>/tasks first and falls back to root itself. A task
    directory is any sub-directory holding at least one file.
    """
    for candidate in (root / "tasks", root):
        if not candidate.is_dir():
            continue
        task_dirs = sorted(
            p for p in candidate.iterdir()
            if p.is_dir() and _has_files(p)
        )
        if task_dirs:
            return task_dirs
    return []


def dir_created_at(path: Path) -> datetime | None:
    """Earliest file mtime inside path, falling back to the directory mtime."""
    earliest = None
    for entry in path.rglob("*"):
        try:
            if not entry.is_file():
                continue
            mtime = entry.stat().st_mtime
        except OSError:
            continue
        if earliest is None or mtime < earliest:
            earliest = mtime
    if earliest is None:
        try:
            earliest = path.stat().st_mtime
        except OSError:
            return None
    return datetime.fromtimestamp(earliest).astimezone()


def build_tasks_from_dirs(task_dirs: Iterable[Path]) -> list[Task]:
    """Build Task records from directories, newest first."""
    tasks = []
    for d in task_dirs:
        d = Path(d)
        summary = read_summary(d)
        tasks.append(Task(
            id=d.name,
            title=summary or d.name,
            summary=summary,
            created_at=dir_created_at(d),
            path=d,
            meta={},
        ))
    tasks.sort(key=_sort_key, reverse=True)
    return tasks


def _sort_key(task: Task) -> float:
    return task.created_at.timestamp() if task.created_at else 0.0


class TaskRepository:
    """Loads Task records from the extension's storage root."""

    def __init__(self, config: Config, hooks: "HookEnv | None" = None, root: Path | None = None):
        self.config = config
        self.hooks = hooks
        self._root = root

    @property
    def root(self) -> Path:
        return self._root if self._root is not None else self.config.storage_root

    def load(self) -> list[Task]:
        """Discover and build all tasks, applying hooks when present."""
        root = self.root
        dirs: list[Path] = []
        if self.hooks is not None:
            candidates = self.hooks.discover_candidates(root)
            if candidates:
                logger.debug("discover_candidates hook returned %d dirs", len(candidates))
                dirs = candidates
        if not dirs:
            dirs = discover_task_dirs(root)

        tasks = build_tasks_from_dirs(dirs)
        if self.hooks is not None:
            tasks = [self.hooks.decorate(task) for task in tasks]
        return tasks

    def get(self, task_id: str) -> Task:
        """Get a task by ID. Raises TaskNotFound if absent."""
        for task in self.load():
            if task.id == task_id:
                return task
        raise TaskNotFound(task_id)


def parse_date_range(value: str) -> tuple[datetime, datetime]:
    """Parse 'from..to' with dates in YYYY-MM-DD or YYYYMMDD.

    Returns inclusive local-time bounds: start of the first day and end of the last.
    """
    left, sep, right = value.partition("..")
    left, right = left.strip(), right.strip()
    if not sep:
        raise ValueError("expected from..to")
    if not left or not right:
        raise ValueError("both from and to are required")

    def parse(text: str) -> datetime:
        for fmt in ("%Y-%m-%d", "%Y%m%d"):
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
        raise ValueError(f"invalid date: {text!r}")

    start = parse(left).astimezone()
    end = (parse(right) + timedelta(days=1, microseconds=-1)).astimezone()
    return start, end


def select_tasks(
    tasks: Iterable[Task],
    ids: Iterable[str] | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[Task]:
    """Select tasks matching any active filter.

    The ID filter and the date range combine by union: a task is included
    if its ID is listed or its creation time lies inside the range.
    """
    id_set = set(ids or [])
    has_range = date_from is not None or date_to is not None

    selected = []
    for task in tasks:
        matches_id = task.id in id_set
        matches_date = False
        if has_range and task.created_at is not None:
            matches_date = True
            if date_from is not None and task.created_at < date_from:
                matches_date = False
            if date_to is not None and task.created_at > date_to:
                matches_date = False
        if matches_id or matches_date:
            selected.append(task)
    return selected


def split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def default_export_name(editor_name: str, plugin_id: str, ids: list[str]) -> str:
    """Default archive name: <editor>-<plugin-id>-<ids>.zip.

    With more than one ID only the first '-' segment of each is used.
    """
    use_first_segment = len(ids) > 1
    parts = []
    for task_id in ids:
        segment = task_id
        if use_first_segment and "-" in task_id[1:]:
            segment = task_id[:task_id.index("-", 1)]
        parts.append(segment)
    editor = editor_name.replace(" ", "").lower()
    return f"{editor}-{plugin_id}-{'_'.join(parts)}.zip"
