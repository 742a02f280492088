"""
Exception hierarchy for backup attempts.

Every error raised by the backup core derives from BackupError and carries
the (possibly partial) Result of the attempt that produced it, so callers
always get an outcome record alongside the failure.
"""

from typing import List, Optional


class BackupError(Exception):
    """Base class for backup failures."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class ConfigError(BackupError):
    """Raised when a plan is invalid or uses an unsupported mode combination."""
    pass


class DumpFailed(BackupError):
    """Raised when mongodump fails or times out."""

    def __init__(self, message: str, output: str = '', timed_out: bool = False,
                 returncode: Optional[int] = None, result=None):
        super().__init__(message, result=result)
        self.output = output
        self.timed_out = timed_out
        self.returncode = returncode


class StageFailed(BackupError):
    """Raised when creating the plan directory, moving or stat-ing a file fails."""

    def __init__(self, operation: str, message: str, result=None):
        super().__init__(message, result=result)
        self.operation = operation


class RetentionFailed(BackupError):
    """Raised when old artifacts cannot be deleted."""

    def __init__(self, message: str, failed_paths: Optional[List[str]] = None, result=None):
        super().__init__(message, result=result)
        self.failed_paths = failed_paths or []


class EncryptionFailed(BackupError):
    """Raised when the archive cannot be encrypted."""
    pass


class UploadFailed(BackupError):
    """Raised when a destination upload fails."""

    def __init__(self, kind: str, message: str, result=None):
        super().__init__(message, result=result)
        self.kind = kind


class EnumerationFailed(BackupError):
    """Raised when the database list cannot be obtained."""
    pass


class PartialBackupFailure(BackupError):
    """Raised when some databases of a per-database plan failed."""

    def __init__(self, failed: List[str], attempts: int, result=None):
        message = (
            f"{len(failed)} of {attempts} database backups failed: "
            f"{', '.join(failed)}"
        )
        super().__init__(message, result=result)
        self.failed = list(failed)
        self.attempts = attempts


class UnexpectedFailure(BackupError):
    """Raised when a stage fails with an error outside this hierarchy."""
    pass
