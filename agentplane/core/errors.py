from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ControlPlaneError(Exception):
    """Base error envelope. Prefer returning these inside results rather than raising."""

    code: str
    message: str
    path: Optional[str] = None

    def __str__(self) -> str:
        loc = self.path or "<request>"
        return f"{loc}: {self.code}: {self.message}"


class DiffParseError(ControlPlaneError):
    """Diff text contained no recoverable hunks."""


class PatchApplyError(ControlPlaneError):
    """A specific file or hunk could not be applied."""


class PathForbiddenError(ControlPlaneError):
    """A patch touches a path that may never be written."""


class PermissionDeniedError(ControlPlaneError):
    pass


class RateLimitedError(ControlPlaneError):
    pass


class ModelOutputError(ControlPlaneError):
    """The model returned content that could not be decoded into an action."""


class SessionStateError(ControlPlaneError):
    pass


class SessionNotFoundError(ControlPlaneError):
    pass


class PolicyConfigError(ControlPlaneError):
    pass
