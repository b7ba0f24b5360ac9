"""
Exceptions for sync operations.
"""

from typing import Optional, Sequence, Union


class SyncError(Exception):
    """Base exception for sync operations."""

    pass


class PlanningError(SyncError):
    """Local snapshot history for a dataset could not be read."""

    pass


class BrokenChainWarning(UserWarning):
    """No valid incremental basis remains; falling back to a full export."""

    pass


class CommandError(SyncError):
    """A zfs helper command exited non-zero."""

    def __init__(self, cmd: Union[str, Sequence[str]], returncode: int, stderr: bytes = b''):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(self._format())

    def _format(self) -> str:
        short_cmd = self.cmd if isinstance(self.cmd, str) else ' '.join(self.cmd)
        message = f"Command {short_cmd!r} returned non-zero exit status {self.returncode}"
        text = self.stderr.decode('utf-8', 'replace').strip()
        if text:
            message += '\n> ' + '\n> '.join(text.splitlines())
        return message


class ExportProcessError(CommandError):
    """The snapshot export process exited with a failure status."""

    pass


class IntegrityMismatchError(SyncError):
    """Store-returned integrity token disagrees with the local digest."""

    def __init__(self, message: str, part_number: Optional[int] = None,
                 expected: Optional[str] = None, received: Optional[str] = None):
        super().__init__(message)
        self.part_number = part_number
        self.expected = expected
        self.received = received


class NetworkError(SyncError):
    """Transient storage failure that outlived its retries."""

    pass


class SessionStateError(SyncError):
    """Upload session used in a state that does not allow the operation."""

    pass
