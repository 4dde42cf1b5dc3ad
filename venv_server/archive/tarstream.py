"""Sequential tar streaming primitives.

Archives are never held in memory: readers consume one entry at a time from a
file object, and writers emit the output as a sequence of byte chunks (a header,
then the entry content in bounded pieces, then padding).
"""

from __future__ import annotations

import copy
import io
import posixpath
import tarfile
from collections.abc import Callable, Iterable, Iterator
from typing import BinaryIO, Protocol

import anyio

from venv_server.errors import ArchiveStreamError

COPY_CHUNK_SIZE = 64 * 1024

# PAX keys that tarfile regenerates from TarInfo attributes. A stale copy would
# take priority over a rewritten attribute, so they are dropped before writing.
# atime and ctime have no TarInfo attribute and pass through unchanged.
DERIVED_PAX_KEYS = frozenset(
    {"path", "linkpath", "size", "uid", "gid", "uname", "gname", "mtime"}
)

HeaderTransform = Callable[[tarfile.TarInfo], tarfile.TarInfo]


class Closer(Protocol):
    def close(self) -> None: ...


class ChunkReader(io.RawIOBase):
    """Readable binary file object over an iterator of byte chunks.

    Closing the reader closes the iterator and then *owned*, the stream the
    chunks are derived from, if one was given.
    """

    def __init__(self, chunks: Iterable[bytes], *, owned: Closer | None = None) -> None:
        super().__init__()
        self._source = chunks
        self._chunks = iter(chunks)
        self._owned = owned
        self._pending = memoryview(b"")

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed ChunkReader")
        view = memoryview(buffer).cast("B")
        filled = 0
        while filled < len(view):
            if not self._pending:
                try:
                    self._pending = memoryview(next(self._chunks))
                except StopIteration:
                    break
                continue
            size = min(len(view) - filled, len(self._pending))
            view[filled : filled + size] = self._pending[:size]
            self._pending = self._pending[size:]
            filled += size
        return filled

    def close(self) -> None:
        if self.closed:
            return
        try:
            close = getattr(self._source, "close", None)
            if close is not None:
                close()
            if self._owned is not None:
                close_or_raise(self._owned, "wrapped archive stream")
        finally:
            super().close()


def normalize_member_name(name: str) -> str:
    """Return *name* without leading ``/`` or ``./`` and without redundant parts."""
    name = name.lstrip("/")
    while name.startswith("./"):
        name = name[2:].lstrip("/")
    if not name:
        return ""
    return posixpath.normpath(name)


def iter_tar_entries(source: BinaryIO) -> Iterator[tuple[tarfile.TarInfo, BinaryIO | None]]:
    """Yield ``(header, content)`` pairs from an uncompressed or compressed tar stream.

    *content* is only valid until the next pair is requested. It is ``None`` for
    entries that carry no data.
    """
    with tarfile.open(fileobj=source, mode="r|*") as tar:
        member = tar.next()
        while member is not None:
            yield member, (tar.extractfile(member) if member.isreg() else None)
            # TarFile keeps every header it reads; only the current one is needed.
            tar.members.clear()
            member = tar.next()


class TarStreamWriter:
    """Emit a PAX tar archive as byte chunks, one entry at a time."""

    def __init__(self, chunk_size: int = COPY_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size
        self._offset = 0

    def add(self, header: tarfile.TarInfo, content: BinaryIO | None) -> Iterator[bytes]:
        header = copy.copy(header)
        header.pax_headers = {
            key: value for key, value in header.pax_headers.items() if key not in DERIVED_PAX_KEYS
        }
        if not header.isreg():
            header.size = 0

        yield self._emit(header.tobuf(tarfile.PAX_FORMAT, "utf-8", "surrogateescape"))

        remaining = header.size
        if remaining and content is None:
            raise tarfile.ReadError(f"no content for {header.name} ({remaining} bytes declared)")
        while remaining:
            chunk = content.read(min(self.chunk_size, remaining))
            if not chunk:
                raise tarfile.ReadError(
                    f"unexpected end of data in {header.name}: {remaining} bytes missing"
                )
            remaining -= len(chunk)
            yield self._emit(chunk)

        _, rest = divmod(header.size, tarfile.BLOCKSIZE)
        if rest:
            yield self._emit(tarfile.NUL * (tarfile.BLOCKSIZE - rest))

    def finish(self) -> bytes:
        trailer = tarfile.NUL * (tarfile.BLOCKSIZE * 2)
        _, rest = divmod(self._offset + len(trailer), tarfile.RECORDSIZE)
        if rest:
            trailer += tarfile.NUL * (tarfile.RECORDSIZE - rest)
        return self._emit(trailer)

    def _emit(self, data: bytes) -> bytes:
        self._offset += len(data)
        return data


def iter_rewritten(source: BinaryIO, fn: HeaderTransform) -> Iterator[bytes]:
    """Yield the bytes of *source* with every header passed through *fn*."""
    writer = TarStreamWriter()
    for header, content in iter_tar_entries(source):
        yield from writer.add(fn(header), content)
    yield writer.finish()


def close_or_raise(closer: Closer, what: str) -> None:
    """Close *closer*, tolerating a peer that already closed its end."""
    try:
        closer.close()
    except (anyio.ClosedResourceError, anyio.BrokenResourceError, BrokenPipeError):
        return
    except Exception as exc:
        raise ArchiveStreamError(f"failed to close {what}: {exc}") from exc
