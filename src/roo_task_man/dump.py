"""Markdown dump of tasks and their user prompts."""

import html
import json
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TextIO

from .tasks import Task, load_history

MAX_TITLE_LENGTH = 120
MAX_PROMPT_LENGTH = 120
FENCE = "```"


def clean_one_line(text: str, max_len: int = 0) -> tuple[str, bool, bool]:
    """Reduce text to a single display line.

    Fenced code blocks are removed (an unclosed fence drops the rest), text
    that is a whole JSON object is dropped, whitespace is collapsed and the
    result is cut to max_len characters with a trailing ellipsis.

    Returns:
        Tuple of (cleaned text, changed, truncated)
    """
    original = text
    s = text
    while True:
        start = s.find(FENCE)
        if start < 0:
            break
        end = s.find(FENCE, start + len(FENCE))
        if end < 0:
            s = s[:start]
            break
        s = s[:start] + s[end + len(FENCE):]

    stripped = s.strip()
    if len(stripped) >= 2 and stripped[0] == "{" and stripped[-1] == "}":
        try:
            json.loads(stripped)
            s = ""
        except ValueError:
            pass

    s = " ".join(s.split())

    truncated = False
    if max_len > 0 and len(s) > max_len:
        s = s[:max_len] + "…"
        truncated = True

    return s, s != original, truncated


def _details(summary: str, full: str) -> str:
    return f"\n<details><summary>{html.escape(summary)}</summary>\n\n\n```\n{full}\n```\n\n</details>\n\n\n"


def write_markdown(
    tasks: list[Task],
    out: TextIO,
    on_progress: Callable[[int, int], None] | None = None,
) -> None:
    """Write one section per task with its cleaned title and user prompts."""
    total = len(tasks)
    for i, task in enumerate(tasks):
        full_title = task.title.strip()
        title, changed, truncated = clean_one_line(full_title, MAX_TITLE_LENGTH)
        out.write(f"# {title or task.id}\n\n")
        out.write(f"- ID: {task.id}\n")
        created = task.created_at or datetime.now().astimezone()
        out.write(f"- Created: {created.astimezone().isoformat(timespec='seconds')}\n")
        if str(task.path):
            out.write(f"- Path: {task.path}\n\n")
        else:
            out.write("\n")
        if changed or truncated:
            out.write(_details(title, full_title))

        prompts = [h for h in load_history(task) if h.role == "user" and clean_one_line(h.text)[0]]
        if prompts:
            out.write("## Prompts\n")
            for item in prompts:
                full = item.text.strip()
                prompt, p_changed, p_truncated = clean_one_line(full, MAX_PROMPT_LENGTH)
                out.write(f"- {prompt}\n")
                if p_changed or p_truncated:
                    out.write(_details(prompt, full))

        out.write("---\n\n" if i != total - 1 else "\n")
        if on_progress is not None:
            on_progress(i + 1, total)


def dump_markdown(
    tasks: list[Task],
    filename: Path,
    on_progress: Callable[[int, int], None] | None = None,
) -> Path:
    filename.parent.mkdir(parents=True, exist_ok=True)
    with open(filename, "w", encoding="utf-8") as f:
        write_markdown(tasks, f, on_progress)
    return filename
