"""Service configuration.

Settings are a plain pydantic model. The CLI fills it from options (each with a
``VENV_SERVER_*`` environment fallback); ``ServerSettings.from_env`` does the same
for programmatic use.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "VENV_SERVER_"


class ServerSettings(BaseModel):
    templates_root: Path = Path("docker")
    manifest_name: str = "requirements.txt"
    build_arg: str = "VENV"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=0, le=65535)
    docker_api_version: str = "auto"
    docker_timeout: int = Field(default=600, gt=0)
    build_timeout: float | None = Field(default=None, gt=0)
    stream_buffer_chunks: int = Field(default=16, ge=1)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ServerSettings:
        """Build settings from ``VENV_SERVER_<FIELD>`` variables, ignoring unset ones."""
        env = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)
