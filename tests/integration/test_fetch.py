from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path

import httpx
import pytest

from venv_server.client import FetchError, fetch_venv, venv_url
from venv_server.security.archive import safe_extract_tar


class _BrokenStream(httpx.SyncByteStream):
    def __iter__(self):
        yield b"partial archive bytes"
        raise httpx.ReadError("connection reset by peer")


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_venv_url_quotes_components() -> None:
    assert venv_url("http://h:8080/", "py39", "/opt/my env") == "http://h:8080/py39/opt/my%20env"


@pytest.mark.timeout(20)
def test_fetch_streams_archive_to_disk(tmp_path: Path, venv_artifact: bytes) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, content=venv_artifact)

    out = tmp_path / "venv.tar"
    res = fetch_venv(
        "http://venv.local", "py39", "/opt/venv", b"flask==2.0\n", out, client=_client(handler)
    )

    assert seen == {"method": "POST", "path": "/py39/opt/venv", "body": b"flask==2.0\n"}
    assert out.read_bytes() == venv_artifact
    assert res.size == len(venv_artifact)
    assert res.sha256 == hashlib.sha256(venv_artifact).hexdigest()
    assert [p.name for p in tmp_path.iterdir()] == ["venv.tar"]


def test_error_status_raises_with_server_message(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="template not found")

    out = tmp_path / "venv.tar"
    with pytest.raises(FetchError) as excinfo:
        fetch_venv("http://venv.local", "py27", "/opt/venv", b"", out, client=_client(handler))

    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "template not found"
    assert list(tmp_path.iterdir()) == []


def test_truncated_stream_leaves_no_partial_archive(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_BrokenStream())

    out = tmp_path / "venv.tar"
    with pytest.raises(httpx.ReadError):
        fetch_venv("http://venv.local", "py39", "/opt/venv", b"", out, client=_client(handler))

    assert list(tmp_path.iterdir()) == []


# ---------------------------------------------------------------------------
# safe_extract_tar
# ---------------------------------------------------------------------------


def _tar_file(path: Path, members: list[tarfile.TarInfo]) -> Path:
    with tarfile.open(path, "w") as tar:
        for m in members:
            tar.addfile(m, io.BytesIO(b"x" * m.size) if m.isreg() else None)
    return path


def _member(name: str, kind=tarfile.REGTYPE, linkname: str = "", size: int = 1) -> tarfile.TarInfo:
    m = tarfile.TarInfo(name)
    m.type = kind
    m.linkname = linkname
    m.size = size if kind == tarfile.REGTYPE else 0
    return m


def test_safe_extract_tar_extracts_relative_members(tmp_path: Path) -> None:
    archive = _tar_file(
        tmp_path / "ok.tar",
        [
            _member("opt/venv", tarfile.DIRTYPE),
            _member("opt/venv/bin/python"),
            _member("opt/venv/bin/python3", tarfile.SYMTYPE, "python"),
        ],
    )

    names = safe_extract_tar(archive, tmp_path / "dest")

    assert names == ["opt/venv", "opt/venv/bin/python", "opt/venv/bin/python3"]
    assert (tmp_path / "dest" / "opt" / "venv" / "bin" / "python").read_bytes() == b"x"


@pytest.mark.parametrize(
    "member",
    [
        _member("../evil"),
        _member("/etc/evil"),
        _member("venv/escape", tarfile.SYMTYPE, "../../../etc/passwd"),
        _member("venv/hard", tarfile.LNKTYPE, "../outside"),
        _member("venv/dev", tarfile.CHRTYPE),
        _member("venv/fifo", tarfile.FIFOTYPE),
    ],
    ids=["dotdot", "absolute", "symlink", "hardlink", "device", "fifo"],
)
def test_safe_extract_tar_refuses_unsafe_members(tmp_path: Path, member: tarfile.TarInfo) -> None:
    archive = _tar_file(tmp_path / "bad.tar", [member])
    dest = tmp_path / "dest"

    with pytest.raises(RuntimeError):
        safe_extract_tar(archive, dest)

    assert list(dest.iterdir()) == []
