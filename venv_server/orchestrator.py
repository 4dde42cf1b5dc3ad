"""Build → run → copy → cleanup orchestration.

A request moves through the stages of ``Stage`` in order. Steps before container
creation never leave anything to clean up on the engine side except, on a failed
or abandoned build, dangling image layers. Once a container exists it is removed
exactly once, on every exit path, with cancellation shielded so that a caller
who disconnects does not leak it.
"""

from __future__ import annotations

import posixpath
import tarfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, closing
from enum import Enum
from pathlib import Path
from typing import BinaryIO

import anyio
from docker.errors import DockerException
from pydantic import ValidationError

from venv_server.archive.inject import replace_file_in_tar
from venv_server.archive.rewrite import ArchiveReader, reroot, rewrite_tar_headers
from venv_server.config import ServerSettings
from venv_server.context import get_context
from venv_server.engine import BuildEvent, Engine
from venv_server.errors import (
    ArtifactCopyError,
    BuildError,
    CleanupError,
    ContainerCreateError,
    ContextReadError,
    InvalidTargetError,
    TemplateNotFoundError,
)
from venv_server.logging import get_logger

logger = get_logger()

# requests' exceptions derive from OSError; the SDK raises DockerException subclasses.
ENGINE_ERRORS = (DockerException, OSError)


class Stage(str, Enum):
    START = "start"
    CONTEXT_ASSEMBLED = "context_assembled"
    MANIFEST_INJECTED = "manifest_injected"
    IMAGE_BUILDING = "image_building"
    IMAGE_BUILT = "image_built"
    CONTAINER_CREATED = "container_created"
    ARTIFACT_COPIED = "artifact_copied"
    DONE = "done"
    FAILED = "failed"
    CLEANUP = "cleanup"


def normalize_target(target: str) -> str:
    """Anchor *target* at ``/`` and resolve ``.`` and ``..``; the root itself is refused."""
    venv = posixpath.normpath("/" + target.lstrip("/"))
    if venv == "/":
        raise InvalidTargetError(f"target path {target!r} resolves to the root directory")
    return venv


def archive_filename(target: str) -> str:
    return posixpath.basename(normalize_target(target)) + ".tar"


class BuildExtractOrchestrator:
    """Turn a template and a requirements manifest into an extracted environment.

    The engine client is shared between concurrent requests; nothing else is.
    """

    def __init__(self, engine: Engine, settings: ServerSettings) -> None:
        self.engine = engine
        self.settings = settings

    def resolve_template(self, name: str) -> Path:
        if not name or name in {".", ".."} or "/" in name or "\\" in name:
            raise TemplateNotFoundError(f"invalid template name {name!r}")
        root = self.settings.templates_root / name
        if not root.is_dir():
            raise TemplateNotFoundError(f"{root} not found")
        return root

    @asynccontextmanager
    async def extract(
        self, template: str, target: str, requirements: bytes
    ) -> AsyncIterator[ArchiveReader]:
        """Build *template* with *requirements* and stream back *target* from it.

        Yields the rewritten archive, whose top-level entry is the target
        directory itself, placed under the target's parent path. Caller errors
        are raised before any engine call.
        """
        venv = normalize_target(target)
        root = self.resolve_template(template)
        log = {"template": template, "target": venv}
        logger.info("building venv at %s", venv, extra={**log, "stage": Stage.START.value})

        image_id = await self._build(root, venv, requirements, log)

        with anyio.CancelScope(shield=True):
            container_id = await anyio.to_thread.run_sync(self._create_container, image_id, log)
        log["container"] = container_id
        try:
            source = await anyio.to_thread.run_sync(self._copy_artifact, container_id, venv, log)
            async with rewrite_tar_headers(
                source,
                reroot(posixpath.dirname(venv)),
                max_buffered_chunks=self.settings.stream_buffer_chunks,
            ) as archive:
                yield archive
            logger.info("venv streamed", extra={**log, "stage": Stage.DONE.value})
        except BaseException:
            logger.info("extraction failed", extra={**log, "stage": Stage.FAILED.value})
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(self._remove_container, container_id, log)

    # ------------------------------------------------------------------
    # Steps (run in worker threads)
    # ------------------------------------------------------------------

    async def _build(self, root: Path, venv: str, requirements: bytes, log: dict) -> str:
        try:
            with anyio.fail_after(self.settings.build_timeout):
                return await anyio.to_thread.run_sync(
                    self._build_image, root, venv, requirements, log, abandon_on_cancel=True
                )
        except TimeoutError as exc:
            logger.error("build timed out", extra={**log, "stage": Stage.FAILED.value})
            raise BuildError(
                f"build of {root.name} exceeded {self.settings.build_timeout}s"
            ) from exc

    def _build_image(self, root: Path, venv: str, requirements: bytes, log: dict) -> str:
        context = get_context(root)
        logger.debug("context assembled", extra={**log, "stage": Stage.CONTEXT_ASSEMBLED.value})
        context = replace_file_in_tar(context, self.settings.manifest_name, requirements)
        logger.debug("manifest injected", extra={**log, "stage": Stage.MANIFEST_INJECTED.value})

        image_id = None
        with closing(context):
            logger.info("building image", extra={**log, "stage": Stage.IMAGE_BUILDING.value})
            try:
                # The event stream must be drained to observe the result.
                for raw in self.engine.build(context, {self.settings.build_arg: venv}):
                    event = BuildEvent.model_validate(raw)
                    message = event.error_message
                    if message:
                        raise BuildError(f"build of {root.name} failed: {message.strip()}")
                    if event.stream:
                        logger.debug("%s", event.stream.rstrip(), extra=log)
                    if event.image_id:
                        image_id = event.image_id
            except ValidationError as exc:
                raise BuildError(f"unexpected build event for {root.name}: {exc}") from exc
            except tarfile.TarError as exc:
                raise ContextReadError(
                    f"context of {root.name} is not a valid archive: {exc}"
                ) from exc
            except ENGINE_ERRORS as exc:
                raise BuildError(f"could not build image for {root.name}: {exc}") from exc

        if not image_id:
            raise BuildError(f"build of {root.name} finished without an image ID")
        logger.info(
            "image built", extra={**log, "image": image_id, "stage": Stage.IMAGE_BUILT.value}
        )
        return image_id

    def _create_container(self, image_id: str, log: dict) -> str:
        try:
            container_id = self.engine.create_container(image_id)
        except ENGINE_ERRORS as exc:
            raise ContainerCreateError(
                f"could not create container from image {image_id}: {exc}"
            ) from exc
        logger.info(
            "container created",
            extra={
                **log,
                "image": image_id,
                "container": container_id,
                "stage": Stage.CONTAINER_CREATED.value,
            },
        )
        return container_id

    def _copy_artifact(self, container_id: str, venv: str, log: dict) -> BinaryIO:
        try:
            data, stat = self.engine.copy_from_container(container_id, venv)
        except ENGINE_ERRORS as exc:
            raise ArtifactCopyError(
                f"could not copy {venv} from container {container_id}: {exc}"
            ) from exc
        logger.info(
            "copying %s (%s bytes)",
            venv,
            stat.get("size", "?"),
            extra={**log, "stage": Stage.ARTIFACT_COPIED.value},
        )
        return data

    def _remove_container(self, container_id: str, log: dict) -> None:
        try:
            self.engine.remove_container(container_id)
        except ENGINE_ERRORS as exc:
            error = CleanupError(f"could not remove container {container_id}: {exc}")
            logger.error(str(error), extra={**log, "stage": Stage.CLEANUP.value})
            return
        logger.debug("container removed", extra={**log, "stage": Stage.CLEANUP.value})
