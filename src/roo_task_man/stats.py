"""Usage statistics derived from a task directory."""

from dataclasses import dataclass
from pathlib import Path

from .tasks import Task, parse_ai_payload, read_ui_messages


@dataclass
class TaskStats:
    """Aggregate metrics parsed from a task directory."""
    tokens_in: int = 0
    tokens_out: int = 0
    cache_reads: int = 0
    cache_writes: int = 0
    total_cost: float = 0.0
    size_bytes: int = 0


def dir_size(root: Path) -> int:
    """Sum of file sizes below root; unreadable entries are skipped."""
    total = 0
    for entry in root.rglob("*"):
        try:
            if entry.is_file():
                total += entry.stat().st_size
        except OSError:
            continue
    return total


def _int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _float(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def stats_from_task(task: Task) -> TaskStats:
    """Compute size and read usage from the last AI request record.

    Falls back to zeros for anything the conversation log does not provide.
    """
    stats = TaskStats(size_bytes=dir_size(task.path))
    messages = read_ui_messages(task.path)
    if not messages:
        return stats

    # Newest AI request wins; user messages carry an images key
    for message in reversed(messages):
        if message.get("images") is not None:
            continue
        payload = parse_ai_payload(message.get("text"))
        if payload is None:
            continue
        tokens_in = _int(payload.get("tokensIn", payload.get("tokenIn")))
        tokens_out = _int(payload.get("tokensOut", payload.get("tokenOut")))
        cost = _float(payload.get("cost", payload.get("costs")))
        if tokens_in > 0 or tokens_out > 0 or cost > 0:
            stats.tokens_in = tokens_in
            stats.tokens_out = tokens_out
            stats.cache_reads = _int(payload.get("cacheReads"))
            stats.cache_writes = _int(payload.get("cacheWrites"))
            stats.total_cost = cost
            break
    return stats
