"""Error taxonomy for the build/extract pipeline.

Caller errors map to 4xx, engine and internal errors to 5xx. ``CleanupError`` is
never returned to a caller, and ``ArchiveStreamError`` can only truncate a
response that has already started.
"""

from __future__ import annotations


class VenvServerError(Exception):
    status_code = 500
    public_message = "internal error"

    def __init__(self, message: str, *, public_message: str | None = None) -> None:
        super().__init__(message)
        if public_message is not None:
            self.public_message = public_message


class TemplateNotFoundError(VenvServerError):
    status_code = 404
    public_message = "template not found"


class InvalidTargetError(VenvServerError):
    status_code = 400
    public_message = "invalid target path"


class ContextReadError(VenvServerError):
    public_message = "could not get context"


class BuildError(VenvServerError):
    public_message = "could not build image"


class ContainerCreateError(VenvServerError):
    public_message = "could not create container"


class ArtifactCopyError(VenvServerError):
    public_message = "could not copy from container"


class CleanupError(VenvServerError):
    public_message = "could not remove container"


class ArchiveStreamError(VenvServerError):
    public_message = "archive stream failed"
