"""Tests for the export child process wrapper and the bounded chunk pipe."""

import io
import sys
import time

import pytest

from glacier_sync.exceptions import ExportProcessError
from glacier_sync.export_runner import ExportRunner
from glacier_sync.pipe import ChunkPipe


def python_command(script):
    return [sys.executable, '-c', script]


def test_stream_and_clean_exit():
    with ExportRunner(python_command("import sys; sys.stdout.buffer.write(b'x' * 5000)")) as runner:
        data = runner.stdout.read()
        runner.check()

    assert data == b'x' * 5000


def test_late_failure_is_reported_after_output():
    script = (
        "import sys\n"
        "sys.stdout.buffer.write(b'y' * 4096)\n"
        "sys.stdout.flush()\n"
        "sys.stderr.write('checksum error on device\\n')\n"
        "sys.exit(3)\n"
    )
    with ExportRunner(python_command(script)) as runner:
        data = runner.stdout.read()
        with pytest.raises(ExportProcessError) as excinfo:
            runner.check()

    assert len(data) == 4096
    assert excinfo.value.returncode == 3
    assert b'checksum error' in excinfo.value.stderr
    assert '> checksum error on device' in str(excinfo.value)


def test_missing_binary_raises_export_error():
    with pytest.raises(ExportProcessError):
        ExportRunner(['/nonexistent/zfs', 'send', 'tank/data@s1']).start()


def test_leaving_context_terminates_running_process():
    runner = ExportRunner(python_command("import time; time.sleep(60)"))
    with runner:
        pass

    assert runner.process.poll() is not None


def test_noisy_stderr_does_not_block():
    script = "import sys; sys.stderr.write('w' * 1000000); sys.stdout.buffer.write(b'ok')"
    with ExportRunner(python_command(script)) as runner:
        assert runner.stdout.read() == b'ok'
        runner.check(timeout=30)


def test_pipe_delivers_chunks_in_order():
    data = bytes(range(256)) * 100
    with ChunkPipe(io.BytesIO(data), 1000, depth=2, poll_interval=0.05) as pipe:
        chunks = list(pipe)

    assert [c.part_number for c in chunks] == list(range(1, 27))
    assert b''.join(c.data for c in chunks) == data
    assert pipe.join()
    assert pipe.bytes_read == len(data)


def test_pipe_bounds_read_ahead():
    data = b'z' * 10000
    stream = io.BytesIO(data)
    with ChunkPipe(stream, 1000, depth=2, poll_interval=0.05) as pipe:
        time.sleep(0.3)
        # two queued chunks plus one waiting to be queued
        assert stream.tell() <= 3000
        first = next(iter(pipe))

    assert first.part_number == 1
    assert pipe.join()


def test_pipe_forwards_reader_errors():
    class FailingStream(io.RawIOBase):
        def readable(self):
            return True

        def read(self, size=-1):
            raise OSError("stream broke")

    with ChunkPipe(FailingStream(), 1000, poll_interval=0.05) as pipe:
        with pytest.raises(OSError, match='stream broke'):
            list(pipe)
