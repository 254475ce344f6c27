"""Error taxonomy for the optimisation engine.

Recoverable conditions (``AlreadyOptimised``, ``ResultNotSmaller`` and
``Cancelled``) are surfaced on an asset as a *notice*; everything else becomes
the asset's ``error`` with a short summary, while the full tool output only
goes to the log.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class SquishError(Exception):
    """Base class for all engine errors."""

    #: Short text shown on the asset
    summary: str = "Optimisation failed"


class SourceNotFound(SquishError):
    summary = "File not found"

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(f"File not found: {path}")


class UnsupportedType(SquishError):
    summary = "Unsupported file type"

    def __init__(self, what: object, operation: str = "optimise") -> None:
        self.what = what
        self.operation = operation
        super().__init__(f"Cannot {operation} {what}")


class AlreadyOptimised(SquishError):
    summary = "Already optimised"

    def __init__(self, path: Path | str, size_bytes: int = -1) -> None:
        self.path = Path(path)
        self.size_bytes = size_bytes
        super().__init__(f"File is already optimised: {path}")


class ResultNotSmaller(SquishError):
    summary = "Already at optimal size"

    def __init__(self, path: Path | str, old_bytes: int, new_bytes: int) -> None:
        self.path = Path(path)
        self.old_bytes = old_bytes
        self.new_bytes = new_bytes
        super().__init__(
            f"Optimised file is not smaller ({new_bytes} >= {old_bytes} bytes): {path}"
        )


class ToolError(SquishError):
    """An external compressor could not do its job."""


class ToolLaunchFailed(ToolError):
    summary = "Can't start compressor"

    def __init__(self, command: str, reason: str = "") -> None:
        self.command = command
        self.reason = reason
        message = f"Can't start process: {command}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ToolExitedNonZero(ToolError):
    def __init__(
        self,
        command: str,
        args: Sequence[str],
        stdout: str = "",
        stderr: str = "",
        returncode: int | None = None,
        message: str | None = None,
    ) -> None:
        self.command = command
        self.args_list = list(args)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(
            message
            or f"{Path(command).name} command failed (exit {returncode}).\n\n"
            f"STDERR:\n{stderr.strip()}"
        )

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args_list])


class ToolTimedOut(ToolExitedNonZero):
    summary = "Compressor timed out"

    def __init__(self, command: str, args: Sequence[str], timeout: float, stdout: str = "", stderr: str = "") -> None:
        self.timeout = timeout
        super().__init__(
            command,
            args,
            stdout=stdout,
            stderr=stderr,
            returncode=None,
            message=f"{Path(command).name} timed out after {timeout:.0f}s",
        )


class Cancelled(SquishError):
    summary = "Stopped"

    def __init__(self, command: str = "", pid: int | None = None) -> None:
        self.command = command
        self.pid = pid
        super().__init__(f"Process terminated by us: {command}".rstrip(": "))


class BackupOrRestoreFailed(SquishError):
    summary = "Restore failed"

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Backup/restore failed for {path}: {reason}")


class DownloadFailed(SquishError):
    summary = "Download failed"


class InvalidRequest(SquishError):
    summary = "Invalid request"


NOTICE_ERRORS: tuple[type[SquishError], ...] = (
    AlreadyOptimised,
    ResultNotSmaller,
    Cancelled,
)


def is_notice(error: BaseException) -> bool:
    """Return ``True`` for conditions that are reported as a notice, not a failure."""
    return isinstance(error, NOTICE_ERRORS)


def human_summary(error: BaseException) -> str:
    """Short user-facing description of *error*."""
    if isinstance(error, SquishError):
        return error.summary
    if isinstance(error, FileNotFoundError):
        return SourceNotFound.summary
    return SquishError.summary
