"""Error types raised by roo-task-man operations."""


class TaskManError(Exception):
    """Base class for all roo-task-man errors."""
    pass


class PathNotFound(TaskManError):
    """A state file or directory does not exist."""

    def __init__(self, path, what: str = "path"):
        self.path = path
        super().__init__(f"{what} not found: {path}")


class ManifestMissing(TaskManError):
    """The archive has no manifest entry."""

    def __init__(self, zip_path):
        self.zip_path = zip_path
        super().__init__(f"manifest missing in {zip_path}")


class ManifestInvalid(TaskManError):
    """The manifest is unparseable or lacks required fields."""

    def __init__(self, zip_path, reason: str = ""):
        self.zip_path = zip_path
        message = f"manifest missing or invalid in {zip_path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ArchiveIOError(TaskManError):
    """Filesystem or zip failure while reading, writing or extracting an archive."""
    pass


class TaskNotFound(TaskManError):
    """No loaded task matches the requested ID."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"task not found: {task_id}")


class BackupNotFound(TaskManError):
    """No primary backup exists for the requested suffix."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"primary backup not found: {path}")


class WriteFailure(TaskManError):
    """A state-file transaction could not complete."""
    pass


class LockTimeout(WriteFailure):
    """The state file stayed locked for longer than the configured wait."""
    pass


class StateCorrupt(TaskManError):
    """The state file or its stored document cannot be read as a JSON object."""
    pass


class PartialRegistration(TaskManError):
    """Some imported IDs had no matching task on disk after import."""

    def __init__(self, missing_ids: list[str]):
        self.missing_ids = list(missing_ids)
        super().__init__(f"no imported task found for: {', '.join(self.missing_ids)}")


class VerificationMismatch(TaskManError):
    """IDs expected in taskHistory were not found on read-back."""

    def __init__(self, label: str, missing_ids: list[str]):
        self.label = label
        self.missing_ids = list(missing_ids)
        super().__init__(f"{label} missing: {', '.join(self.missing_ids)}")
