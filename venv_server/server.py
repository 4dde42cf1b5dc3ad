"""HTTP surface: ``POST /{template}/{target}`` with the requirements as body.

Errors raised before the response starts become short plain-text responses.
After that, a failure can only truncate the archive; it is logged server-side.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager

import anyio
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from venv_server.archive.rewrite import ArchiveReader
from venv_server.config import ServerSettings
from venv_server.engine import DockerEngine, Engine
from venv_server.errors import ArchiveStreamError, VenvServerError
from venv_server.logging import get_logger
from venv_server.orchestrator import BuildExtractOrchestrator, archive_filename

logger = get_logger()


class ArchiveResponse(Response):
    """Stream the archive of an extraction, cleaning up however the stream ends."""

    media_type = "application/x-tar"

    def __init__(
        self, extraction: AbstractAsyncContextManager[ArchiveReader], filename: str
    ) -> None:
        self.status_code = 200
        self.background = None
        self.extraction = extraction
        self.init_headers({"Content-Disposition": f'attachment; filename="{filename}"'})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        started = False
        try:
            async with self.extraction as archive:
                started = True
                await send(
                    {
                        "type": "http.response.start",
                        "status": self.status_code,
                        "headers": self.raw_headers,
                    }
                )
                error = await self._send_body(archive, receive, send)
                # Raised inside the extraction so that it ends as failed, not done.
                if error is not None:
                    raise error
        except ArchiveStreamError:
            if not started:
                raise
            logger.exception("archive stream failed; truncating response")
        except OSError as exc:
            if not started:
                raise
            logger.warning("client went away mid-stream: %s", exc)

    async def _send_body(
        self, archive: ArchiveReader, receive: Receive, send: Send
    ) -> Exception | None:
        """Send the archive chunks; return the error that cut the body short, if any."""
        error = None
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._listen_for_disconnect, receive, tg.cancel_scope)
            try:
                async for chunk in archive:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except (ArchiveStreamError, OSError) as exc:
                error = exc
            tg.cancel_scope.cancel()
        return error

    @staticmethod
    async def _listen_for_disconnect(receive: Receive, scope: anyio.CancelScope) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
        logger.info("client disconnected; cancelling extraction")
        scope.cancel()


class RequestLogMiddleware:
    """Log one line per request with its status and duration."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            logger.info(
                "%s %s %s",
                scope["method"],
                scope["path"],
                status,
                extra={
                    "method": scope["method"],
                    "path": scope["path"],
                    "status": status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )


async def _error_response(request: Request, exc: VenvServerError) -> Response:
    if exc.status_code >= 500:
        logger.error("%s", exc, exc_info=exc)
    else:
        logger.warning("%s", exc)
    return PlainTextResponse(exc.public_message, status_code=exc.status_code)


def create_app(settings: ServerSettings | None = None, engine: Engine | None = None) -> Starlette:
    """Create the service app. Without *engine*, a Docker client is made from the environment."""
    settings = settings or ServerSettings()
    engine = engine or DockerEngine.from_settings(settings)
    orchestrator = BuildExtractOrchestrator(engine, settings)

    async def build_venv(request: Request) -> Response:
        template = request.path_params["template"]
        target = request.path_params["target"]
        filename = archive_filename(target)
        requirements = await request.body()
        return ArchiveResponse(orchestrator.extract(template, target, requirements), filename)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("templates at %s", settings.templates_root)
        try:
            yield
        finally:
            engine.close()

    return Starlette(
        routes=[Route("/{template}/{target:path}", build_venv, methods=["POST"])],
        middleware=[Middleware(RequestLogMiddleware)],
        exception_handlers={VenvServerError: _error_response},
        lifespan=lifespan,
    )
