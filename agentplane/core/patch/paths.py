from __future__ import annotations

from typing import Optional

from agentplane.core.patch.diff_parser import DEV_NULL

# Top-level directories of the host that a project patch has no business touching.
SYSTEM_PREFIXES = (
    "/etc/",
    "/usr/",
    "/bin/",
    "/sbin/",
    "/lib/",
    "/var/",
    "/proc/",
    "/sys/",
    "/dev/",
    "/boot/",
    "/root/",
)

DEPENDENCY_DIRS = (
    "node_modules",
    ".venv",
    "venv",
    "site-packages",
    "__pycache__",
    "vendor",
)


def normalize_path(path: str) -> str:
    """Project paths are absolute within the virtual file set: always a leading '/'."""
    p = path.strip()
    return p if p.startswith("/") else f"/{p}"


def forbidden_reason(path: str) -> Optional[str]:
    """Return why `path` may not be written, or None if it is allowed."""

    if path == DEV_NULL:
        return None

    raw = path.strip()
    if not raw:
        return "empty path"

    segments = [s for s in raw.replace("\\", "/").split("/") if s]
    if ".." in segments:
        return "parent-directory traversal ('..') is not allowed"

    name = segments[-1] if segments else ""
    if name == ".env" or name.startswith(".env."):
        return "environment files may contain secrets"

    if ".git" in segments:
        return "the .git directory is managed by version control"

    for seg in segments[:-1]:
        if seg in DEPENDENCY_DIRS:
            return f"dependency directory '{seg}' is generated, not edited"

    if raw.startswith("/"):
        for prefix in SYSTEM_PREFIXES:
            if raw.startswith(prefix) or raw == prefix.rstrip("/"):
                return f"system directory '{prefix.rstrip('/')}' is outside the project"

    return None
