"""venv-server CLI.

Commands:
- serve: run the HTTP service (uvicorn)
- build: run the build/extract pipeline locally and write the archive to a file
- fetch: ask a running server for an environment and save (optionally extract) it
"""

from __future__ import annotations

import hashlib
import tarfile
from pathlib import Path

import anyio
import httpx
import typer
import uvicorn
from docker.errors import DockerException
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from venv_server.client import FetchError, fetch_venv
from venv_server.config import ENV_PREFIX, ServerSettings
from venv_server.engine import DockerEngine, Engine
from venv_server.errors import VenvServerError
from venv_server.logging import configure_logging
from venv_server.orchestrator import BuildExtractOrchestrator, archive_filename
from venv_server.security.archive import safe_extract_tar
from venv_server.server import create_app

app = typer.Typer(add_completion=False, help="Build Python virtualenvs in containers")
console = Console()

TemplatesOption = typer.Option(
    Path("docker"), "--templates", envvar=ENV_PREFIX + "TEMPLATES_ROOT", help="Template root"
)
ApiVersionOption = typer.Option(
    "auto", "--api-version", envvar=ENV_PREFIX + "DOCKER_API_VERSION", help="Docker API version"
)
BuildTimeoutOption = typer.Option(
    None, "--build-timeout", envvar=ENV_PREFIX + "BUILD_TIMEOUT", help="Build limit in seconds"
)
LogLevelOption = typer.Option("INFO", "--log-level", envvar=ENV_PREFIX + "LOG_LEVEL")


def _summary(title: str, rows: dict[str, str]) -> None:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in rows.items():
        table.add_row(key, value)
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", envvar=ENV_PREFIX + "HOST"),
    port: int = typer.Option(8080, "--port", envvar=ENV_PREFIX + "PORT"),
    templates: Path = TemplatesOption,
    api_version: str = ApiVersionOption,
    docker_timeout: int = typer.Option(
        600, "--docker-timeout", envvar=ENV_PREFIX + "DOCKER_TIMEOUT", help="Engine I/O timeout"
    ),
    build_timeout: float | None = BuildTimeoutOption,
    log_level: str = LogLevelOption,
) -> None:
    settings = ServerSettings(
        templates_root=templates,
        host=host,
        port=port,
        docker_api_version=api_version,
        docker_timeout=docker_timeout,
        build_timeout=build_timeout,
        log_level=log_level,
    )
    logger = configure_logging(settings.log_level)
    logger.info("listening on %s:%d", settings.host, settings.port)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


def _engine(settings: ServerSettings) -> Engine:
    return DockerEngine.from_settings(settings)


async def _build_to_file(
    orchestrator: BuildExtractOrchestrator,
    template: str,
    target: str,
    requirements: bytes,
    out: Path,
) -> tuple[int, str]:
    digest = hashlib.sha256()
    size = 0
    async with orchestrator.extract(template, target, requirements) as archive:
        with open(out, "wb") as f:
            async for chunk in archive:
                digest.update(chunk)
                size += len(chunk)
                f.write(chunk)
    return size, digest.hexdigest()


@app.command()
def build(
    template: str = typer.Argument(..., help="Template directory name under --templates"),
    target: str = typer.Argument(..., help="Environment path inside the container"),
    requirements: Path = typer.Argument(..., exists=True, dir_okay=False, help="Manifest file"),
    out: Path | None = typer.Option(None, "--out", help="Archive path (default: <target>.tar)"),
    templates: Path = TemplatesOption,
    api_version: str = ApiVersionOption,
    build_timeout: float | None = BuildTimeoutOption,
    log_level: str = LogLevelOption,
) -> None:
    settings = ServerSettings(
        templates_root=templates,
        docker_api_version=api_version,
        build_timeout=build_timeout,
        log_level=log_level,
    )
    configure_logging(settings.log_level)
    try:
        engine = _engine(settings)
    except DockerException as exc:
        rprint(f"[red]Cannot reach the container engine:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    try:
        out = out or Path(archive_filename(target))
        orchestrator = BuildExtractOrchestrator(engine, settings)
        size, sha = anyio.run(
            _build_to_file, orchestrator, template, target, requirements.read_bytes(), out
        )
    except VenvServerError as exc:
        rprint(f"[red]{exc.public_message}:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        engine.close()

    _summary("Build Summary", {"archive": str(out), "bytes": str(size), "sha256": sha})


@app.command()
def fetch(
    url: str = typer.Argument(..., help="Server base URL, e.g. http://localhost:8080"),
    template: str = typer.Argument(..., help="Template name"),
    target: str = typer.Argument(..., help="Environment path inside the container"),
    requirements: Path = typer.Argument(..., exists=True, dir_okay=False, help="Manifest file"),
    out: Path | None = typer.Option(None, "--out", help="Archive path (default: <target>.tar)"),
    extract: Path | None = typer.Option(None, "--extract", help="Also extract into this dir"),
    timeout: float = typer.Option(600, "--timeout", help="HTTP timeout in seconds"),
) -> None:
    try:
        out = out or Path(archive_filename(target))
        res = fetch_venv(url, template, target, requirements.read_bytes(), out, timeout=timeout)
        rows = {"archive": str(res.path), "bytes": str(res.size), "sha256": res.sha256}
        if extract is not None:
            # Unsafe members are refused with RuntimeError before anything is written.
            names = safe_extract_tar(res.path, extract)
            rows["extracted"] = f"{len(names)} entries into {extract}"
    except (FetchError, VenvServerError, httpx.HTTPError, tarfile.TarError, RuntimeError) as exc:
        rprint(f"[red]Fetch failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    _summary("Fetch Summary", rows)


if __name__ == "__main__":
    app()
