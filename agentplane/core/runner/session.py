from __future__ import annotations

import hashlib
import logging
import posixpath
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Optional, Union

from agentplane.core.errors import ControlPlaneError, PermissionDeniedError, SessionNotFoundError, SessionStateError
from agentplane.core.patch.paths import normalize_path
from agentplane.core.policy.permissions import blocked_command
from agentplane.core.runner.backends import ExecBackend, NullExecBackend
from agentplane.core.settings import Settings

logger = logging.getLogger("agentplane.runner")

RuntimeType = Literal["node", "python", "shell"]
SessionStatus = Literal["creating", "ready", "busy", "killed", "expired"]

CLOSED_STATUSES: frozenset[str] = frozenset({"killed", "expired"})

_CD_RE = re.compile(r"^cd\s+(.+)$")
_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class Session:
    id: str
    project_id: str
    runtime_type: RuntimeType
    workspace_path: str
    cwd: str
    status: SessionStatus = "creating"
    created_at: float = 0.0
    last_activity_at: float = 0.0
    # normalized path -> sha256 of the last synced content
    file_hashes: dict[str, str] = field(default_factory=dict)

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def in_workspace(self, path: str) -> bool:
        return path == self.workspace_path or path.startswith(self.workspace_path.rstrip("/") + "/")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "runtimeType": self.runtime_type,
            "workspacePath": self.workspace_path,
            "cwd": self.cwd,
            "status": self.status,
        }


@dataclass(frozen=True)
class ExecRequest:
    command: str
    reset_cwd: bool = False
    timeout_s: Optional[float] = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecResult:
    ok: bool
    stdout: str
    stderr: str
    exit_code: int
    cwd: str
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "cwd": self.cwd,
            "durationMs": self.duration_ms,
        }


def _sanitize_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT_RE.sub("-", value.strip()).strip("-.")
    return cleaned or "project"


def _unquote(target: str) -> str:
    t = target.strip()
    if len(t) >= 2 and t[0] == t[-1] and t[0] in ("'", '"'):
        return t[1:-1]
    return t


def resolve_cd(cwd: str, target: str, *, workspace_path: str, home_path: str) -> str:
    """Resolve a `cd` target against `cwd` purely by string manipulation.

    Absolute targets replace cwd, `~` is the fixed home path, `..` pops one segment,
    relative targets are appended and normalized. While cwd is inside the workspace,
    `..` and relative targets never climb above the workspace root.
    """

    target = _unquote(target)
    if not target:
        return cwd

    if target == "~":
        return home_path
    if target.startswith("~/"):
        return posixpath.normpath(posixpath.join(home_path, target[2:]))
    if target.startswith("/"):
        return posixpath.normpath(target)

    root = workspace_path.rstrip("/") or "/"
    inside = cwd == root or cwd.startswith(root + "/")

    if target == "..":
        nxt = posixpath.dirname(cwd.rstrip("/")) or "/"
    else:
        nxt = posixpath.normpath(posixpath.join(cwd, target))
    # collapse any "//" a join may leave behind
    nxt = re.sub(r"/{2,}", "/", nxt)

    if inside and not (nxt == root or nxt.startswith(root + "/")):
        return root
    return nxt


def parse_cd(command: str) -> Optional[str]:
    m = _CD_RE.match(command.strip())
    return m.group(1).strip() if m else None


class SessionManager:
    """Registry of logical execution sessions.

    Owns lifecycle and cwd bookkeeping only; running the command is the backend's job.
    """

    def __init__(
        self,
        backend: Optional[ExecBackend] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        self.backend: ExecBackend = backend or NullExecBackend()
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(self, project_id: str, runtime_type: RuntimeType = "shell") -> Session:
        now = self._clock()
        workspace = posixpath.join(self.settings.workspace_root.rstrip("/") or "/", _sanitize_segment(project_id))
        session = Session(
            id=f"session-{uuid.uuid4().hex[:12]}",
            project_id=project_id,
            runtime_type=runtime_type,
            workspace_path=workspace,
            cwd=workspace,
            status="creating",
            created_at=now,
            last_activity_at=now,
        )
        self._sessions[session.id] = session
        session.status = "ready"
        logger.info("session %s created for %s (%s) at %s", session.id, project_id, runtime_type, workspace)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(code="E_SESSION_NOT_FOUND", message="Session not found", path=session_id)
        return session

    def _expire(self, session: Session) -> None:
        session.status = "expired"
        self._sessions.pop(session.id, None)
        logger.info("session %s expired after %.0fs idle", session.id, self._clock() - session.last_activity_at)

    def _require_open(self, session_id: str) -> Session:
        session = self._require(session_id)
        if not session.is_closed and self._clock() - session.last_activity_at > self.settings.session_ttl_s:
            self._expire(session)
        if session.is_closed:
            raise SessionStateError(
                code="E_SESSION_CLOSED",
                message=f"session is {session.status}; start a new session",
                path=session_id,
            )
        return session

    def _touch(self, session: Session) -> None:
        session.last_activity_at = self._clock()

    async def exec(self, session_id: str, request: Union[ExecRequest, str]) -> ExecResult:
        if isinstance(request, str):
            request = ExecRequest(command=request)

        session = self._require_open(session_id)
        if session.status == "busy":
            raise SessionStateError(
                code="E_SESSION_BUSY", message="a command is already running in this session", path=session_id
            )

        command = (request.command or "").strip()
        if not command:
            raise ControlPlaneError(code="E_EXEC_MISSING_COMMAND", message="Missing command", path=session_id)

        blocked = blocked_command(command)
        if blocked is not None:
            logger.warning("session %s refused blocked command: %s", session.id, command)
            raise PermissionDeniedError(
                code="E_EXEC_BLOCKED", message=f"command is blocked by pattern '{blocked}'", path=session_id
            )

        if request.reset_cwd:
            session.cwd = session.workspace_path

        cd_target = parse_cd(command)
        if cd_target is not None:
            session.cwd = resolve_cd(
                session.cwd,
                cd_target,
                workspace_path=session.workspace_path,
                home_path=self.settings.home_path,
            )
            self._touch(session)
            logger.debug("session %s cwd -> %s", session.id, session.cwd)
            return ExecResult(ok=True, stdout="", stderr="", exit_code=0, cwd=session.cwd, duration_ms=0)

        started = time.perf_counter()
        session.status = "busy"
        logger.info("session %s exec: %s (cwd=%s)", session.id, command, session.cwd)
        try:
            outcome = await self.backend.run(session, request)
        finally:
            # killed/expired while running stays terminal
            if session.status == "busy":
                session.status = "ready"
            self._touch(session)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info("session %s exit=%d in %dms", session.id, outcome.exit_code, duration_ms)
        return ExecResult(
            ok=outcome.exit_code == 0,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            exit_code=outcome.exit_code,
            cwd=session.cwd,
            duration_ms=duration_ms,
        )

    def kill_process(self, session_id: str) -> bool:
        """Stop the running command, if any. Returns True if something was stopped."""
        session = self._require_open(session_id)
        if session.status != "busy":
            return False
        self.backend.kill(session)
        session.status = "ready"
        self._touch(session)
        logger.info("session %s process killed", session.id)
        return True

    def sync_workspace(self, session_id: str, files: Iterable[Any]) -> dict[str, int]:
        """Push file contents into the session. Unchanged files (same hash) are skipped."""

        session = self._require_open(session_id)
        changed: list[tuple[str, str]] = []
        skipped = 0
        for f in files:
            path = f["path"] if isinstance(f, dict) else f.path
            content = (f.get("content") if isinstance(f, dict) else f.content) or ""
            norm = normalize_path(path)
            digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
            if session.file_hashes.get(norm) == digest:
                skipped += 1
                continue
            changed.append((norm, content))
            session.file_hashes[norm] = digest

        if changed:
            self.backend.sync(session, changed)
        self._touch(session)
        logger.debug("session %s sync: %d synced, %d skipped", session.id, len(changed), skipped)
        return {"synced": len(changed), "skipped": skipped}

    def destroy_session(self, session_id: str) -> None:
        session = self._require(session_id)
        if session.status == "busy":
            self.backend.kill(session)
        session.status = "killed"
        del self._sessions[session_id]
        logger.info("session %s destroyed", session_id)

    def expire_idle(self, now: Optional[float] = None) -> list[str]:
        """Expire and drop every session idle for longer than the TTL."""
        cutoff = (self._clock() if now is None else now) - self.settings.session_ttl_s
        expired: list[str] = []
        for session in list(self._sessions.values()):
            if session.last_activity_at < cutoff:
                self._expire(session)
                expired.append(session.id)
        return expired
