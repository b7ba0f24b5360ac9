"""Bounded hand-off of checksummed chunks from a reader thread to the uploader."""

import logging
import queue
import threading
from typing import BinaryIO, Iterator

from .checksum import ChecksumStreamer, Chunk

logger = logging.getLogger(__name__)

_END = object()


class _ReaderFailure:
    def __init__(self, error: BaseException):
        self.error = error


class ChunkPipe:
    """Read an export stream on a background thread into a fixed-size queue.

    At most ``depth`` finished chunks wait in the queue, plus the one the
    reader is assembling. When the consumer falls behind the reader blocks,
    which in turn stops draining the export process stdout so the export
    stalls instead of memory growing.
    """

    def __init__(self, stream: BinaryIO, chunk_size: int, depth: int = 2,
                 poll_interval: float = 0.5):
        self.streamer = ChecksumStreamer(stream, chunk_size)
        self.queue: queue.Queue = queue.Queue(maxsize=max(1, depth))
        self.poll_interval = poll_interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name='chunk-reader', daemon=True)

    @property
    def bytes_read(self) -> int:
        return self.streamer.bytes_read

    def start(self) -> 'ChunkPipe':
        self._thread.start()
        return self

    def _put(self, item) -> bool:
        while not self._stopped.is_set():
            try:
                self.queue.put(item, timeout=self.poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def _run(self):
        try:
            for chunk in self.streamer:
                if not self._put(chunk):
                    logger.debug("Chunk reader stopped before end of stream")
                    return
        except Exception as e:
            self._put(_ReaderFailure(e))
            return
        self._put(_END)

    def __iter__(self) -> Iterator[Chunk]:
        while True:
            try:
                item = self.queue.get(timeout=self.poll_interval)
            except queue.Empty:
                if not self._thread.is_alive() and self.queue.empty():
                    raise RuntimeError("Chunk reader exited without signalling end of stream")
                continue
            if item is _END:
                return
            if isinstance(item, _ReaderFailure):
                raise item.error
            yield item

    def stop(self):
        """Tell the reader to give up and release any chunks it queued."""
        self._stopped.set()
        while True:
            try:
                self.queue.get_nowait()
            except queue.Empty:
                break

    def join(self, timeout: float = 5.0) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()
