"""Container engine client.

The pipeline only needs four engine calls: build an image from a context stream,
create a container from it, export a path out of the container as a tar stream,
and remove the container. ``DockerEngine`` provides them on the Docker SDK's
low-level ``APIClient``, which is shared by all requests.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, BinaryIO, Protocol

import docker
from docker.errors import DockerException
from docker.utils import decode_json_header, kwargs_from_env
from pydantic import BaseModel, ConfigDict, Field

from venv_server.archive.tarstream import COPY_CHUNK_SIZE, ChunkReader
from venv_server.config import ServerSettings


class BuildAux(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ID: str | None = None


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int | None = None
    message: str | None = None


class BuildEvent(BaseModel):
    """One decoded event of the engine's build progress stream."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    stream: str | None = None
    status: str | None = None
    error: str | None = None
    error_detail: ErrorDetail | None = Field(default=None, alias="errorDetail")
    aux: BuildAux | str | None = None

    @property
    def image_id(self) -> str | None:
        if isinstance(self.aux, BuildAux):
            return self.aux.ID
        return None

    @property
    def error_message(self) -> str | None:
        if self.error:
            return self.error
        if self.error_detail is not None and self.error_detail.message:
            return self.error_detail.message
        return None


class Engine(Protocol):
    def build(self, context: BinaryIO, buildargs: dict[str, str]) -> Iterable[dict[str, Any]]: ...

    def create_container(self, image_id: str) -> str: ...

    def copy_from_container(
        self, container_id: str, path: str
    ) -> tuple[BinaryIO, dict[str, Any]]: ...

    def remove_container(self, container_id: str) -> None: ...

    def close(self) -> None: ...


class DockerEngine:
    def __init__(self, api: docker.APIClient) -> None:
        self.api = api

    @classmethod
    def from_settings(cls, settings: ServerSettings) -> DockerEngine:
        """Connect using the ``DOCKER_*`` environment, like the docker CLI does."""
        api = docker.APIClient(
            version=settings.docker_api_version,
            timeout=settings.docker_timeout,
            **kwargs_from_env(),
        )
        return cls(api)

    def build(self, context: BinaryIO, buildargs: dict[str, str]) -> Iterable[dict[str, Any]]:
        return self.api.build(
            fileobj=context,
            custom_context=True,
            rm=True,
            buildargs=buildargs,
            decode=True,
        )

    def create_container(self, image_id: str) -> str:
        host_config = self.api.create_host_config(
            auto_remove=False,
            init=True,
            network_mode="none",
        )
        created = self.api.create_container(
            image=image_id,
            tty=False,
            stdin_open=False,
            host_config=host_config,
        )
        return created["Id"]

    def copy_from_container(
        self, container_id: str, path: str
    ) -> tuple[BinaryIO, dict[str, Any]]:
        """Export *path* as a tar stream; closing the stream closes its connection.

        Same request as ``APIClient.get_archive``, which does not hand out the
        response it streams from.
        """
        res = self.api._get(
            self.api._url("/containers/{0}/archive", container_id),
            params={"path": path},
            stream=True,
            headers={"Accept-Encoding": "identity"},
        )
        try:
            self.api._raise_for_status(res)
        except DockerException:
            res.close()
            raise
        encoded_stat = res.headers.get("x-docker-container-path-stat")
        stat = decode_json_header(encoded_stat) if encoded_stat else {}
        return ChunkReader(res.iter_content(COPY_CHUNK_SIZE), owned=res), stat

    def remove_container(self, container_id: str) -> None:
        self.api.remove_container(container_id)

    def close(self) -> None:
        self.api.close()
