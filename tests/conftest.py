"""Shared test fixtures."""

import json
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

import pytest

from roo_task_man.config import Config
from roo_task_man.tasks import Task

PLUGIN_ID = "RooVeterinaryInc.roo-cline"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep RTM_* variables from the developer's shell out of tests."""
    for key in ("PLUGIN_ID", "CODE_CHANNEL", "DATA_DIR", "STATE_DIR", "HOOKS_DIR",
                "EXPORT_DIR", "DEBUG", "LOCK_TIMEOUT_SECONDS"):
        monkeypatch.delenv(f"RTM_{key}", raising=False)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config pointing at temporary storage and state directories."""
    storage = tmp_path / "storage"
    state = tmp_path / "state"
    (storage / "tasks").mkdir(parents=True)
    state.mkdir()
    return Config(
        plugin_id=PLUGIN_ID,
        data_dir=str(storage),
        state_dir=str(state),
        hooks_dir="",
        export_dir=str(tmp_path / "exports"),
        lock_timeout_seconds=0.5,
    )


def make_task_dir(root: Path, task_id: str, files: dict[str, bytes | str] | None = None,
                  summary: str | None = None) -> Path:
    """Create a task folder with the given relative files."""
    task_dir = root / task_id
    task_dir.mkdir(parents=True, exist_ok=True)
    if summary is not None:
        (task_dir / "ui_messages.json").write_text(json.dumps([{"ts": 1, "type": "say", "text": summary}]))
    for rel, content in (files or {}).items():
        path = task_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.write_bytes(content)
    return task_dir


def make_task(root: Path, task_id: str, files: dict[str, bytes | str] | None = None,
              created_at: datetime | None = None, summary: str = "") -> Task:
    task_dir = make_task_dir(root, task_id, files or {"api_conversation_history.json": "[]"})
    return Task(
        id=task_id,
        title=summary or task_id,
        summary=summary,
        created_at=created_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        path=task_dir,
    )


def create_state_db(path: Path, document: str | bytes | None = None, plugin_id: str = PLUGIN_ID) -> Path:
    """Create a state.vscdb with the editor's ItemTable and an optional plugin row."""
    with closing(sqlite3.connect(path)) as conn:
        conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
        conn.execute("INSERT INTO ItemTable (key, value) VALUES (?, ?)", ("other.extension", '{"keep":true}'))
        if document is not None:
            conn.execute("INSERT INTO ItemTable (key, value) VALUES (?, ?)", (plugin_id, document))
        conn.commit()
    return path


def read_value(path: Path, key: str = PLUGIN_ID):
    with closing(sqlite3.connect(path)) as conn:
        row = conn.execute("SELECT value FROM ItemTable WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None
