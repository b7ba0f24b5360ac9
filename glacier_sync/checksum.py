"""Chunked pass-through reader that digests each upload part as it is read."""

import base64
import hashlib
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PART_COUNT = 10000


@dataclass(frozen=True)
class Chunk:
    """One upload part worth of stream data with its MD5 digest."""
    part_number: int
    data: bytes
    md5: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def md5_hex(self) -> str:
        return self.md5.hex()

    @property
    def content_md5(self) -> str:
        """Base64 digest as expected by the Content-MD5 header."""
        return base64.b64encode(self.md5).decode('ascii')


class ChecksumStreamer:
    """Split a byte stream into fixed-size digested chunks.

    Only the chunk currently being assembled is held in memory; the
    underlying stream is never read past the current chunk boundary.
    An empty stream produces a single empty chunk so that an upload
    always has a part 1.
    """

    def __init__(self, stream: BinaryIO, chunk_size: int):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.stream = stream
        self.chunk_size = chunk_size
        self.bytes_read = 0
        self.chunks_read = 0

    def _read_chunk(self) -> bytes:
        # Pipes may return short reads; keep going until full or EOF.
        pieces = []
        remaining = self.chunk_size
        while remaining > 0:
            piece = self.stream.read(remaining)
            if not piece:
                break
            pieces.append(piece)
            remaining -= len(piece)
        return b''.join(pieces)

    def __iter__(self) -> Iterator[Chunk]:
        while True:
            data = self._read_chunk()
            if not data and self.chunks_read > 0:
                return
            self.chunks_read += 1
            self.bytes_read += len(data)
            yield Chunk(self.chunks_read, data, hashlib.md5(data).digest())
            if len(data) < self.chunk_size:
                return


def multipart_etag(part_etags: Iterable[str]) -> str:
    """Composite ETag S3 assigns to a completed multipart object."""
    digests = bytearray()
    count = 0
    for etag in part_etags:
        digests.extend(bytes.fromhex(etag.strip('"')))
        count += 1
    return f"{hashlib.md5(bytes(digests)).hexdigest()}-{count}"


def choose_part_size(estimated_size, base_size: int = 8 * 1024 * 1024,
                     max_parts: int = MAX_PART_COUNT) -> int:
    """Pick a part size that keeps the upload under the part count limit.

    Exports can compress considerably differently than estimated, so
    the estimate is doubled before comparing against the limit.
    """
    part_size = max(base_size, MIN_PART_SIZE)
    if not estimated_size:
        return part_size
    safe_estimate = estimated_size * 2
    while safe_estimate // part_size >= max_parts:
        part_size *= 2
    return part_size
