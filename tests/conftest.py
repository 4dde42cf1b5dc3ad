"""Shared fixtures: tar helpers, a recording fake engine, and a template tree."""

from __future__ import annotations

import io
import tarfile
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from docker.errors import NotFound

from venv_server.archive.tarstream import ChunkReader
from venv_server.config import ServerSettings

IMAGE_ID = "sha256:0123abcd"
CONTAINER_ID = "c0ffee"


def _make_tar(entries: list[tuple[str, bytes | None]]) -> bytes:
    """Build a tar: ``None`` content makes a directory, bytes make a regular file."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, data in entries:
            info = tarfile.TarInfo(name)
            info.mtime = 1_600_000_000
            if data is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.mode = 0o644
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _read_tar(data: bytes) -> list[tuple[tarfile.TarInfo, bytes | None]]:
    out = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
        for member in tar.getmembers():
            f = tar.extractfile(member) if member.isreg() else None
            out.append((member, f.read() if f is not None else None))
    return out


def _chunks(data: bytes, size: int = 1000) -> Iterator[bytes]:
    for i in range(0, len(data), size):
        yield data[i : i + size]


class _Export:
    """Stands in for the engine connection an export is read from."""

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeEngine:
    """Engine double recording every call, in order."""

    def __init__(
        self,
        artifact: bytes,
        *,
        events: list[dict] | None = None,
        build_delay: float = 0.0,
        create_error: Exception | None = None,
        copy_error: Exception | None = None,
        remove_error: Exception | None = None,
    ) -> None:
        self.artifact = artifact
        self.events = (
            events
            if events is not None
            else [
                {"stream": "Step 1/3 : FROM python:3.9-slim\n"},
                {"aux": {"ID": IMAGE_ID}},
                {"stream": "Successfully built 0123abcd\n"},
            ]
        )
        self.build_delay = build_delay
        self.create_error = create_error
        self.copy_error = copy_error
        self.remove_error = remove_error
        self.calls: list[tuple] = []
        self.contexts: list[bytes] = []
        self.closed = False
        self.exports: list[_Export] = []
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def build(self, context, buildargs):
        self._record("build", dict(buildargs))
        self.contexts.append(context.read())

        def events():
            if self.build_delay:
                time.sleep(self.build_delay)
            yield from self.events

        return events()

    def create_container(self, image_id: str) -> str:
        self._record("create", image_id)
        if self.create_error is not None:
            raise self.create_error
        return CONTAINER_ID

    def copy_from_container(self, container_id: str, path: str):
        self._record("copy", container_id, path)
        if self.copy_error is not None:
            raise self.copy_error
        export = _Export()
        self.exports.append(export)
        stream = ChunkReader(_chunks(self.artifact), owned=export)
        return stream, {"name": path.rsplit("/", 1)[-1], "size": len(self.artifact)}

    def remove_container(self, container_id: str) -> None:
        self._record("remove", container_id)
        if self.remove_error is not None:
            raise self.remove_error

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_tar() -> Callable[[list[tuple[str, bytes | None]]], bytes]:
    return _make_tar


@pytest.fixture
def read_tar() -> Callable[[bytes], list[tuple[tarfile.TarInfo, bytes | None]]]:
    return _read_tar


@pytest.fixture
def venv_artifact() -> bytes:
    """What the engine exports for ``/opt/venv``: entries rooted at ``venv``."""
    return _make_tar(
        [
            ("venv", None),
            ("venv/bin", None),
            ("venv/bin/python", b"#!/bin/sh\nexec python3 \"$@\"\n"),
            ("venv/pyvenv.cfg", b"home = /usr/local/bin\n"),
            ("venv/lib/python3.9/site-packages/flask/__init__.py", b"__version__ = '2.0'\n"),
        ]
    )


@pytest.fixture
def templates(tmp_path: Path) -> Path:
    """A template root holding ``py39`` with a dockerignore excluding ``*.pyc``."""
    root = tmp_path / "templates"
    py39 = root / "py39"
    py39.mkdir(parents=True)
    (py39 / "Dockerfile").write_text("FROM python:3.9-slim\nARG VENV\n", encoding="utf-8")
    (py39 / ".dockerignore").write_text("# build noise\n*.pyc\n", encoding="utf-8")
    (py39 / "requirements.txt").write_text("placeholder==0.0\n", encoding="utf-8")
    (py39 / "setup.sh").write_text("#!/bin/sh\n", encoding="utf-8")
    (py39 / "cache.pyc").write_bytes(b"\x00\x01")
    return root


@pytest.fixture
def settings(templates: Path) -> ServerSettings:
    return ServerSettings(templates_root=templates)


@pytest.fixture
def make_engine(venv_artifact: bytes) -> Callable[..., FakeEngine]:
    def factory(**kwargs) -> FakeEngine:
        return FakeEngine(kwargs.pop("artifact", venv_artifact), **kwargs)

    return factory


@pytest.fixture
def not_found() -> NotFound:
    return NotFound("Could not find the file /opt/venv in container c0ffee")
