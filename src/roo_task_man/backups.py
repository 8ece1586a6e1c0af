"""Listing and restoring state.vscdb backups.

Backups are the ``<name>.bak-<suffix>`` files written before each
registration. The directory listing is the only index: a primary backup
and its mirror backup belong together when they share a suffix.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .config import Config
from .errors import BackupNotFound, WriteFailure
from .state_db import (
    BACKUP_MARKER,
    MIRROR_EXTENSION,
    STATE_DB_NAME,
    new_suffix,
    state_dir,
)

logger = logging.getLogger(__name__)

PRIMARY_BACKUP_PREFIX = STATE_DB_NAME + BACKUP_MARKER
MIRROR_NAME = STATE_DB_NAME + MIRROR_EXTENSION


@dataclass
class BackupInfo:
    """A primary backup file found in the state directory."""
    path: Path
    suffix: str
    mod_time: datetime
    size: int


@dataclass
class RestoreResult:
    suffix: str
    primary: Path
    mirror: Path | None = None  # None when no paired mirror backup existed

    @property
    def mirror_restored(self) -> bool:
        return self.mirror is not None


def list_backups(config: Config) -> list[BackupInfo]:
    """Primary backups in the state directory, most recent first.

    Raises PathNotFound if the state directory does not exist.
    """
    directory = state_dir(config)
    backups = []
    for entry in os.scandir(directory):
        if not entry.name.startswith(PRIMARY_BACKUP_PREFIX) or not entry.is_file(follow_symlinks=False):
            continue
        suffix = entry.name[len(PRIMARY_BACKUP_PREFIX):]
        if not suffix:
            continue
        try:
            stat = entry.stat()
        except OSError as e:
            logger.warning("cannot stat backup %s: %s", entry.path, e)
            continue
        backups.append(BackupInfo(
            path=Path(entry.path),
            suffix=suffix,
            mod_time=datetime.fromtimestamp(stat.st_mtime).astimezone(),
            size=stat.st_size,
        ))
    backups.sort(key=lambda b: b.mod_time, reverse=True)
    return backups


def replace_file(src: Path, dst: Path) -> None:
    """Copy src over dst through a temporary sibling and an atomic rename."""
    tmp = dst.with_name(f"{dst.name}.tmp-{new_suffix()}")
    try:
        shutil.copyfile(src, tmp)
        os.chmod(tmp, 0o600)
        os.replace(tmp, dst)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def restore_from_backup(config: Config, suffix: str, debug: bool = False) -> RestoreResult:
    """Restore state.vscdb, and its mirror when paired, from backups with suffix.

    Raises:
        PathNotFound: the state directory does not exist.
        BackupNotFound: state.vscdb.bak-<suffix> does not exist.
        WriteFailure: copying a backup into place failed.
    """
    directory = state_dir(config)
    src_primary = directory / f"{PRIMARY_BACKUP_PREFIX}{suffix}"
    dst_primary = directory / STATE_DB_NAME
    src_mirror = directory / f"{MIRROR_NAME}{BACKUP_MARKER}{suffix}"
    dst_mirror = directory / MIRROR_NAME

    if not suffix or not src_primary.is_file():
        raise BackupNotFound(src_primary)

    try:
        replace_file(src_primary, dst_primary)
    except OSError as e:
        raise WriteFailure(f"restore primary {dst_primary}: {e}") from e
    result = RestoreResult(suffix=suffix, primary=dst_primary)

    if src_mirror.is_file():
        try:
            replace_file(src_mirror, dst_mirror)
        except OSError as e:
            raise WriteFailure(f"restore mirror {dst_mirror} (primary already restored): {e}") from e
        result.mirror = dst_mirror
    else:
        logger.info("paired backup not found: %s (restored primary only)", src_mirror)

    if debug:
        logger.debug("restored from suffix %s", suffix)
    return result
