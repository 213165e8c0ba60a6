from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from agentplane.core.runner.session import ExecRequest, Session

logger = logging.getLogger("agentplane.runner")

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class BackendOutcome:
    stdout: str
    stderr: str
    exit_code: int


class ExecBackend(Protocol):
    async def run(self, session: "Session", request: "ExecRequest") -> BackendOutcome: ...

    def sync(self, session: "Session", files: list[tuple[str, str]]) -> None: ...

    def kill(self, session: "Session") -> None: ...


class NullExecBackend:
    """Bookkeeping-only backend: records what would have run and reports success."""

    def __init__(self) -> None:
        self.commands: list[tuple[str, str, str]] = []
        self.synced: dict[str, dict[str, str]] = {}
        self.killed: list[str] = []

    async def run(self, session: "Session", request: "ExecRequest") -> BackendOutcome:
        self.commands.append((session.id, session.cwd, request.command))
        return BackendOutcome(stdout="", stderr="", exit_code=0)

    def sync(self, session: "Session", files: list[tuple[str, str]]) -> None:
        self.synced.setdefault(session.id, {}).update(dict(files))

    def kill(self, session: "Session") -> None:
        self.killed.append(session.id)


def _build_env(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Environment for commands: the caller's env with the interpreter's bin dir first on PATH."""

    env = dict(os.environ)
    bin_dir = str(Path(sys.executable).parent)
    env["PATH"] = bin_dir + os.pathsep + env.get("PATH", "")
    if extra:
        env.update(extra)
    return env


class SubprocessExecBackend:
    """Runs commands on this machine under `host_root`, which stands in for the logical workspace.

    Not a sandbox. The logical path `<workspace_path>/a/b` maps to `<host_root>/a/b`.
    """

    def __init__(self, host_root: Path, timeout_s: float = 600.0) -> None:
        self.host_root = Path(host_root).resolve()
        self.timeout_s = timeout_s
        self._procs: dict[str, subprocess.Popen[str]] = {}

    def host_path(self, session: "Session", logical: str) -> Optional[Path]:
        if not session.in_workspace(logical):
            return None
        rel = logical[len(session.workspace_path) :].lstrip("/")
        p = (self.host_root / rel).resolve()
        if p != self.host_root and self.host_root not in p.parents:
            return None
        return p

    def _communicate(self, session_id: str, proc: subprocess.Popen[str], timeout_s: float) -> BackendOutcome:
        try:
            stdout, stderr = proc.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            return BackendOutcome(
                stdout=stdout or "",
                stderr=(stderr or "") + f"\ncommand timed out after {timeout_s:g}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )
        finally:
            self._procs.pop(session_id, None)
        return BackendOutcome(stdout=stdout or "", stderr=stderr or "", exit_code=proc.returncode)

    async def run(self, session: "Session", request: "ExecRequest") -> BackendOutcome:
        cwd = self.host_path(session, session.cwd)
        if cwd is None:
            return BackendOutcome(stdout="", stderr=f"cwd {session.cwd} is outside the workspace", exit_code=1)
        cwd.mkdir(parents=True, exist_ok=True)

        proc = subprocess.Popen(
            request.command,
            cwd=str(cwd),
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=_build_env(request.env),
        )
        self._procs[session.id] = proc
        timeout_s = request.timeout_s or self.timeout_s
        return await asyncio.to_thread(self._communicate, session.id, proc, timeout_s)

    def sync(self, session: "Session", files: list[tuple[str, str]]) -> None:
        for path, content in files:
            target = self.host_path(session, session.workspace_path.rstrip("/") + path)
            if target is None:
                logger.warning("sync skipped %s: outside workspace", path)
                continue
            if target.is_file() and target.read_text(encoding="utf-8", errors="replace") == content:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    def kill(self, session: "Session") -> None:
        proc = self._procs.get(session.id)
        if proc is not None and proc.poll() is None:
            proc.terminate()
