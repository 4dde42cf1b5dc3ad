"""Safe extraction of fetched environment archives.

Guards against common archive attacks:
- Absolute member names
- ``..`` traversal
- Links pointing outside the destination
- Device files and FIFOs
- Oversized members (basic cap)
"""

from __future__ import annotations

import tarfile
from pathlib import Path

MAX_MEMBER_BYTES = 1024 * 1024 * 1024  # 1 GiB per member


def _is_within(base: Path, target: Path) -> bool:
    try:
        target.relative_to(base)
        return True
    except ValueError:
        return False


def _check_member(base: Path, m: tarfile.TarInfo) -> None:
    fn = Path(m.name)
    if fn.is_absolute() or ".." in fn.parts:
        raise RuntimeError(f"Unsafe member path: {m.name}")
    target = (base / fn).resolve()
    if not _is_within(base, target):
        raise RuntimeError(f"Member escapes destination: {m.name}")
    if m.isdev() or m.isfifo():
        raise RuntimeError(f"Refusing special file: {m.name}")
    if m.issym():
        link = (target.parent / m.linkname).resolve()
        if not _is_within(base, link):
            raise RuntimeError(f"Symlink escapes destination: {m.name} -> {m.linkname}")
    if m.islnk():
        link = (base / m.linkname).resolve()
        if Path(m.linkname).is_absolute() or not _is_within(base, link):
            raise RuntimeError(f"Hard link escapes destination: {m.name} -> {m.linkname}")
    if m.size > MAX_MEMBER_BYTES:
        raise RuntimeError(f"Member too large: {m.name} ({m.size} bytes)")


def safe_extract_tar(tar_path: Path, dest: Path) -> list[str]:
    """Extract *tar_path* into *dest* after checking every member; return member names."""
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    with tarfile.open(tar_path) as tar:
        members = tar.getmembers()
        for m in members:
            _check_member(base, m)
        # The "tar" filter also clears setuid/setgid/sticky bits.
        tar.extractall(base, members=members, filter="tar")
    return [m.name for m in members]
