from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Process-level knobs. Everything here has a safe default."""

    rate_limit_per_window: int = 120
    rate_window_s: int = 60
    audit_capacity: int = 500
    max_iterations: int = 12
    workspace_root: str = "/workspace"
    home_path: str = "/home/runner"
    session_ttl_s: int = 1800

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            rate_limit_per_window=_env_int("AGENTPLANE_RATE_LIMIT_PER_MIN", 120),
            rate_window_s=_env_int("AGENTPLANE_RATE_WINDOW_S", 60),
            audit_capacity=_env_int("AGENTPLANE_AUDIT_CAPACITY", 500),
            max_iterations=_env_int("AGENTPLANE_MAX_ITERATIONS", 12),
            workspace_root=(os.getenv("AGENTPLANE_WORKSPACE_ROOT") or "/workspace").rstrip("/")
            or "/workspace",
            home_path=os.getenv("AGENTPLANE_HOME_PATH") or "/home/runner",
            session_ttl_s=_env_int("AGENTPLANE_SESSION_TTL_S", 1800),
        )
