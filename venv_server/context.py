"""Build context assembly: a template directory as a lazily generated tar stream."""

from __future__ import annotations

import os
import stat
import tarfile
from collections.abc import Iterator
from pathlib import Path

from docker.utils.build import exclude_paths

from venv_server.archive.tarstream import ChunkReader, TarStreamWriter
from venv_server.errors import ContextReadError
from venv_server.logging import get_logger

logger = get_logger()

DOCKERFILE = "Dockerfile"
DOCKERIGNORE = ".dockerignore"


def read_dockerignore(root: Path) -> list[str]:
    """Return the exclusion patterns of *root*/.dockerignore (``[]`` when absent)."""
    path = root / DOCKERIGNORE
    if not path.exists():
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ContextReadError(f"failed to read {path}: {exc}") from exc
    patterns = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


def trim_build_files(excludes: list[str]) -> list[str]:
    """Re-include ``.dockerignore``; ``exclude_paths`` re-includes the Dockerfile itself."""
    return [*excludes, "!" + DOCKERIGNORE]


def _tarinfo(full: Path, arcname: str) -> tarfile.TarInfo | None:
    st = os.lstat(full)
    info = tarfile.TarInfo(arcname)
    info.mode = stat.S_IMODE(st.st_mode)
    info.mtime = int(st.st_mtime)
    # Ownership is normalized so builds do not depend on who checked out the template.
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(full)
    elif stat.S_ISREG(st.st_mode):
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    else:
        return None
    return info


def _iter_context(root: Path, paths: list[str]) -> Iterator[bytes]:
    writer = TarStreamWriter()
    for rel in paths:
        full = root / rel
        arcname = Path(rel).as_posix()
        try:
            info = _tarinfo(full, arcname)
            if info is None:
                logger.debug("skipping special file %s", full)
                continue
            if info.isreg():
                with open(full, "rb") as content:
                    yield from writer.add(info, content)
            else:
                yield from writer.add(info, None)
        except OSError as exc:
            raise ContextReadError(f"failed to read {full}: {exc}") from exc
    yield writer.finish()


def get_context(root: Path, dockerfile: str = DOCKERFILE) -> ChunkReader:
    """Return the build context of the template directory *root*.

    Paths are selected with dockerignore semantics (later ``!pattern`` lines
    re-include earlier exclusions) and archived in sorted order. Selection
    happens immediately, so a broken ignore file or an unwalkable directory fails
    here; file contents are only read as the stream is consumed.
    """
    if not root.is_dir():
        raise ContextReadError(f"{root} is not a directory")
    excludes = trim_build_files(read_dockerignore(root))
    try:
        paths = sorted(exclude_paths(str(root), excludes, dockerfile=dockerfile))
    except (OSError, ValueError) as exc:
        raise ContextReadError(f"failed to walk {root}: {exc}") from exc
    logger.debug("context for %s has %d entries", root, len(paths))
    return ChunkReader(_iter_context(root, paths))
