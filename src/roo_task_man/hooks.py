"""Optional task hooks.

Hook modules are plain Python files in the hooks directory. Each may define
any of these functions; a function no module defines means "no override":

- ``discover_candidates(root: str) -> list[str]``: task directories to use
  instead of built-in discovery.
- ``extend_task(task: dict) -> dict``: fields to merge into the task.
- ``decorate_task_row(task: dict) -> str``: replacement display title.
- ``render_task_detail(task: dict) -> dict``: ``{"title", "sections": [{"heading", "body"}]}``.
"""

import importlib.util
import logging
from pathlib import Path
from types import ModuleType
from typing import Any

from .tasks import Task

logger = logging.getLogger(__name__)

HOOK_NAMES = ("discover_candidates", "extend_task", "decorate_task_row", "render_task_detail")


class HookEnv:
    """Dispatches hook calls to loaded modules; an empty env overrides nothing."""

    def __init__(self, modules: list[Any] | None = None):
        self.modules = list(modules or [])

    @property
    def active(self) -> bool:
        return bool(self.modules)

    def call(self, name: str, arg: Any) -> tuple[Any, bool]:
        """Call the first module defining name.

        Returns (result, True) on success and (None, False) when no module
        defines the hook or the hook raised.
        """
        for module in self.modules:
            fn = getattr(module, name, None)
            if not callable(fn):
                continue
            try:
                return fn(arg), True
            except Exception:
                logger.warning("hook %s in %s raised; ignoring", name, getattr(module, "__name__", module), exc_info=True)
                return None, False
        return None, False

    def discover_candidates(self, root: Path) -> list[Path]:
        result, ok = self.call("discover_candidates", str(root))
        if not ok or not isinstance(result, (list, tuple)):
            return []
        return [Path(p) for p in result if isinstance(p, (str, Path)) and str(p)]

    def decorate(self, task: Task) -> Task:
        """Apply extend_task then decorate_task_row to a task."""
        data = task.to_dict()
        extended, ok = self.call("extend_task", data)
        if ok and isinstance(extended, dict):
            logger.debug("extend_task applied for %s", task.id)
            task = task.merged_with(extended)
        title, ok = self.call("decorate_task_row", data)
        if ok and isinstance(title, str) and title:
            logger.debug("decorate_task_row override for %s", task.id)
            task = task.merged_with({"title": title})
        return task

    def render_detail(self, task: Task) -> dict[str, Any] | None:
        result, ok = self.call("render_task_detail", task.to_dict())
        if not ok or not isinstance(result, dict):
            return None
        sections = [
            {"heading": str(s.get("heading", "")), "body": str(s.get("body", ""))}
            for s in result.get("sections") or []
            if isinstance(s, dict)
        ]
        return {"title": str(result.get("title") or task.title), "sections": sections}


def _load_module(path: Path) -> ModuleType | None:
    spec = importlib.util.spec_from_file_location(f"roo_task_man_hooks.{path.stem}", path)
    if spec and spec.loader:
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return None


def load_hooks(hooks_dir: Path | None) -> HookEnv:
    """Load every *.py hook module in hooks_dir.

    A missing directory gives an empty env. A module that fails to import
    is logged and skipped.
    """
    if hooks_dir is None or not hooks_dir.is_dir():
        return HookEnv()
    modules = []
    for path in sorted(hooks_dir.glob("*.py")):
        try:
            module = _load_module(path)
        except Exception:
            logger.warning("failed to load hook module %s", path, exc_info=True)
            continue
        if module is not None and any(callable(getattr(module, n, None)) for n in HOOK_NAMES):
            logger.debug("loaded hook module %s", path)
            modules.append(module)
    return HookEnv(modules)
