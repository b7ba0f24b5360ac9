"""Run a snapshot export as a child process and expose its stdout as a stream."""

import logging
import subprocess
import tempfile
from typing import BinaryIO, List, Optional, Sequence

from .exceptions import ExportProcessError

logger = logging.getLogger(__name__)


class ExportRunner:
    """Start an export command and report its exit status after the stream ends.

    A non-zero exit can happen after most of the output was already
    produced, so ``check()`` must be called once stdout is drained and
    before the upload is finalized.

    stderr goes to an anonymous temporary file rather than a pipe so a
    chatty process cannot deadlock while nobody reads it.

    Args:
        command: Full argv of the export process
    """

    def __init__(self, command: Sequence[str]):
        self.command: List[str] = list(command)
        self.process: Optional[subprocess.Popen] = None
        self._stderr = None

    def start(self) -> 'ExportRunner':
        logger.info(f"Starting export: {' '.join(self.command)}")
        self._stderr = tempfile.TemporaryFile()
        try:
            self.process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
            )
        except OSError as e:
            self._stderr.close()
            self._stderr = None
            raise ExportProcessError(self.command, -1, str(e).encode('utf-8')) from e
        return self

    @property
    def stdout(self) -> BinaryIO:
        if self.process is None:
            raise RuntimeError("Export process has not been started")
        return self.process.stdout

    def stderr_output(self) -> bytes:
        if self._stderr is None:
            return b''
        self._stderr.seek(0)
        return self._stderr.read()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.process.wait(timeout=timeout)

    def check(self, timeout: Optional[float] = None):
        """Wait for the process and raise if it did not exit cleanly.

        Raises:
            ExportProcessError: With the captured stderr attached
        """
        returncode = self.wait(timeout)
        if returncode != 0:
            raise ExportProcessError(self.command, returncode, self.stderr_output())
        logger.debug(f"Export exited cleanly: {' '.join(self.command)}")

    def terminate(self, timeout: float = 10.0):
        """Stop the process if it is still running, escalating to kill."""
        if self.process is None or self.process.poll() is not None:
            return
        logger.warning(f"Terminating export process {self.process.pid}")
        self.process.terminate()
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Export process {self.process.pid} ignored SIGTERM, killing it")
            self.process.kill()
            self.process.wait()

    def close(self):
        self.terminate()
        if self.process is not None and self.process.stdout is not None:
            self.process.stdout.close()
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.close()
