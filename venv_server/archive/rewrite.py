"""Streaming tar header rewriter.

The blocking tar pipeline runs in a worker thread and pushes output chunks into a
bounded memory object stream. The worker blocks while the buffer is full, so at
most ``max_buffered_chunks`` chunks are in flight whatever the archive size.
Failures travel through the stream and reach the consumer on its next read.
"""

from __future__ import annotations

import posixpath
import tarfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import BinaryIO

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from venv_server.archive.tarstream import HeaderTransform, close_or_raise, iter_rewritten
from venv_server.errors import ArchiveStreamError
from venv_server.logging import get_logger

logger = get_logger()

DEFAULT_BUFFERED_CHUNKS = 16


class ArchiveReader:
    """Async iterator over the chunks of a rewritten archive."""

    def __init__(self, receive: MemoryObjectReceiveStream[bytes | Exception]) -> None:
        self._receive = receive

    def __aiter__(self) -> ArchiveReader:
        return self

    async def __anext__(self) -> bytes:
        try:
            item = await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise StopAsyncIteration from None
        if isinstance(item, ArchiveStreamError):
            raise item
        if isinstance(item, Exception):
            raise ArchiveStreamError(f"archive rewrite failed: {item}") from item
        return item

    async def read_all(self) -> bytes:
        return b"".join([chunk async for chunk in self])


def reroot(parent: str) -> HeaderTransform:
    """Return a transform that places every entry under *parent*.

    The leading ``/`` is dropped so that the archive stays relative. Hard-link
    targets name other members and move with them; symlink targets do not.
    """

    def _join(name: str) -> str:
        return posixpath.normpath(posixpath.join(parent, name)).lstrip("/")

    def transform(header: tarfile.TarInfo) -> tarfile.TarInfo:
        changes = {"name": _join(header.name)}
        if header.islnk():
            changes["linkname"] = _join(header.linkname)
        return header.replace(**changes)

    return transform


def _pump(
    source: BinaryIO,
    fn: HeaderTransform,
    send: MemoryObjectSendStream[bytes | Exception],
) -> None:
    try:
        for chunk in iter_rewritten(source, fn):
            anyio.from_thread.run(send.send, chunk)
    finally:
        close_or_raise(source, "archive source")


async def _produce(
    source: BinaryIO,
    fn: HeaderTransform,
    send: MemoryObjectSendStream[bytes | Exception],
) -> None:
    async with send:
        try:
            await anyio.to_thread.run_sync(_pump, source, fn, send)
        except anyio.BrokenResourceError:
            logger.debug("archive consumer went away; producer stopped")
        except anyio.get_cancelled_exc_class():
            try:
                close_or_raise(source, "archive source")
            except ArchiveStreamError as exc:
                logger.warning("%s", exc)
            raise
        except Exception as exc:
            try:
                await send.send(exc)
            except anyio.BrokenResourceError:
                logger.warning("archive rewrite failed after consumer left: %s", exc)


@asynccontextmanager
async def rewrite_tar_headers(
    source: BinaryIO,
    fn: HeaderTransform,
    *,
    max_buffered_chunks: int = DEFAULT_BUFFERED_CHUNKS,
) -> AsyncIterator[ArchiveReader]:
    """Rewrite each header of the tar stream *source* with *fn*, lazily.

    Content bytes and entry order are unchanged. *source* is owned by the
    rewriter and closed on every exit path.
    """
    send, receive = anyio.create_memory_object_stream[bytes | Exception](max_buffered_chunks)
    # Errors from the consumer are re-raised outside the task group so they
    # reach the caller as themselves rather than inside an exception group.
    error: Exception | None = None
    async with anyio.create_task_group() as tg:
        tg.start_soon(_produce, source, fn, send)
        async with receive:
            try:
                yield ArchiveReader(receive)
            except Exception as exc:
                error = exc
    if error is not None:
        raise error
