"""Replace one file of a tar stream with caller-supplied bytes."""

from __future__ import annotations

import io
import tarfile
import time
from collections.abc import Iterator
from typing import BinaryIO

from venv_server.archive.tarstream import (
    ChunkReader,
    TarStreamWriter,
    iter_tar_entries,
    normalize_member_name,
)


def synthetic_header(name: str, data: bytes) -> tarfile.TarInfo:
    header = tarfile.TarInfo(name)
    header.type = tarfile.REGTYPE
    header.size = len(data)
    header.mode = 0o600
    header.uid = 0
    header.gid = 0
    header.uname = ""
    header.gname = ""
    header.mtime = int(time.time())
    return header


def _iter_replaced(source: BinaryIO, name: str, data: bytes) -> Iterator[bytes]:
    writer = TarStreamWriter()
    found = False
    for header, content in iter_tar_entries(source):
        if normalize_member_name(header.name) == name:
            found = True
            yield from writer.add(synthetic_header(name, data), io.BytesIO(data))
        else:
            yield from writer.add(header, content)
    if not found:
        yield from writer.add(synthetic_header(name, data), io.BytesIO(data))
    yield writer.finish()


def replace_file_in_tar(source: BinaryIO, path: str, data: bytes) -> ChunkReader:
    """Return *source* with the entry at *path* replaced by *data*.

    Every entry matching *path* (leading ``/`` and ``./`` ignored) gets a fresh
    root-owned ``0600`` header and *data* as content; all other entries pass
    through untouched and in order. When no entry matches, one is appended at the
    end of the archive. Nothing is read until the result is read, and closing
    the result closes *source*.
    """
    name = normalize_member_name(path)
    if not name:
        raise ValueError(f"cannot inject content at {path!r}")
    return ChunkReader(_iter_replaced(source, name, data), owned=source)
