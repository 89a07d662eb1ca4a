"""Error types for buildsys.

Every error carries a stable ``code`` for programmatic handling, in
addition to its human-readable message.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

PRECONDITION_ERROR = "precondition_error"
TARGET_METADATA_ERROR = "target_metadata"
EXECUTION_ERROR = "execution_error"
BUILD_ERROR = "build_failed"
FILESYSTEM_ERROR = "filesystem_error"


class BuildsysError(Exception):
    """Base error for buildsys operations."""

    def __init__(self, message: str, code: str = "buildsys_error") -> None:
        super().__init__(message)
        self.code = code


class PreconditionError(BuildsysError):
    """Raised when the environment cannot support a build.

    Examples are an unsupported engine version, a missing required
    environment variable, or a secret file that does not exist.
    """

    def __init__(self, message: str, code: str = PRECONDITION_ERROR) -> None:
        super().__init__(message, code=code)


class TargetMetadataError(BuildsysError):
    """Raised when target metadata is missing or cannot be parsed."""

    def __init__(self, message: str, code: str = TARGET_METADATA_ERROR) -> None:
        super().__init__(message, code=code)


class InvocationStartError(BuildsysError):
    """Raised when an external process could not be spawned."""

    def __init__(
        self,
        message: str,
        args: Sequence[str] = (),
        code: str = EXECUTION_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.args_vector = list(args)


class BuildFailure(BuildsysError):
    """Raised when an external invocation fails for good.

    Attributes:
        args_vector: The exact argument vector that was executed.
        output: Combined stdout/stderr of the final attempt.
        exit_code: Exit status of the final attempt.
        attempts: Number of attempts made.
    """

    def __init__(
        self,
        message: str,
        args: Sequence[str],
        output: str,
        exit_code: int,
        attempts: int = 1,
        code: str = BUILD_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.args_vector = list(args)
        self.output = output
        self.exit_code = exit_code
        self.attempts = attempts


class FilesystemError(BuildsysError):
    """Raised when a filesystem operation on an artifact or marker fails."""

    def __init__(
        self,
        message: str,
        path: Path | str,
        code: str = FILESYSTEM_ERROR,
    ) -> None:
        super().__init__(message, code=code)
        self.path = Path(path)


__all__ = [
    "BUILD_ERROR",
    "EXECUTION_ERROR",
    "FILESYSTEM_ERROR",
    "PRECONDITION_ERROR",
    "TARGET_METADATA_ERROR",
    "BuildFailure",
    "BuildsysError",
    "FilesystemError",
    "InvocationStartError",
    "PreconditionError",
    "TargetMetadataError",
]
