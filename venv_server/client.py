"""Client for a running venv server: POST a requirements file, save the archive."""

from __future__ import annotations

import hashlib
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

import httpx

from venv_server.logging import get_logger

logger = get_logger()


class FetchError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"server answered {status_code}: {message}")
        self.status_code = status_code
        self.message = message


@dataclass
class FetchResult:
    path: Path
    size: int
    sha256: str


def venv_url(base_url: str, template: str, target: str) -> str:
    return "{}/{}/{}".format(
        base_url.rstrip("/"), quote(template, safe=""), quote(target.lstrip("/"))
    )


def fetch_venv(
    base_url: str,
    template: str,
    target: str,
    requirements: bytes,
    out: Path,
    *,
    timeout: float = 600,
    client: httpx.Client | None = None,
) -> FetchResult:
    """Ask the server at *base_url* to build *target* from *template*; stream it to *out*.

    The archive is written to a temporary sibling of *out* and renamed into place
    only once the response completed, so a truncated stream never leaves a
    partial archive at *out*.
    """
    url = venv_url(base_url, template, target)
    out.parent.mkdir(parents=True, exist_ok=True)
    own_client = client is None
    client = client or httpx.Client(timeout=timeout)
    digest = hashlib.sha256()
    size = 0
    tmp = Path(tempfile.mkstemp(prefix=".venv-fetch-", suffix=".tar", dir=out.parent)[1])
    try:
        with client.stream("POST", url, content=requirements) as r:
            if r.status_code != 200:
                raise FetchError(r.status_code, r.read().decode("utf-8", "replace").strip())
            with open(tmp, "wb") as f:
                for chunk in r.iter_bytes():
                    digest.update(chunk)
                    size += len(chunk)
                    f.write(chunk)
        tmp.replace(out)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    finally:
        if own_client:
            client.close()
    logger.info("fetched %s (%d bytes) into %s", url, size, out)
    return FetchResult(path=out, size=size, sha256=digest.hexdigest())
