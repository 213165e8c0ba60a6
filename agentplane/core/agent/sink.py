from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from agentplane.core.errors import ControlPlaneError
from agentplane.core.gateway.gateway import ToolGateway
from agentplane.core.patch.apply_patch import FileEntry, apply_diff
from agentplane.core.patch.diff_parser import unwrap_diff
from agentplane.core.policy.tools import ToolName
from agentplane.core.runner.session import ExecRequest, SessionManager

logger = logging.getLogger("agentplane.agent")

OUTPUT_CLIP = 4000


@dataclass(frozen=True)
class SinkOutcome:
    """What happened downstream; `message` becomes the next user turn."""

    ok: bool
    message: str
    data: Optional[dict[str, Any]] = None


class ActionSink(Protocol):
    async def apply_patch(self, diff: str, summary: str) -> SinkOutcome: ...

    async def run_command(self, command: str) -> SinkOutcome: ...

    async def call_tool(self, tool: str, tool_input: dict[str, Any]) -> SinkOutcome: ...


def _clip(text: str, limit: int = OUTPUT_CLIP) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[...{len(text) - limit} more characters]"


def register_runner_tools(gateway: ToolGateway, sessions: SessionManager) -> None:
    """Route `run_command` calls through the gateway into `sessions`.

    The call input carries `session_id` and `command` (and optionally `reset_cwd`, `timeout_s`).
    """

    async def run_command(inp: dict[str, Any]) -> dict[str, Any]:
        session_id = inp.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise ControlPlaneError(code="E_EXEC_NO_SESSION", message="run_command requires session_id")
        result = await sessions.exec(
            session_id,
            ExecRequest(
                command=str(inp.get("command", "")),
                reset_cwd=bool(inp.get("reset_cwd", False)),
                timeout_s=inp.get("timeout_s"),
            ),
        )
        return result.to_dict()

    gateway.register(ToolName.RUN_COMMAND.value, run_command)


class LocalActionSink:
    """Applies patches to an in-memory file set and runs commands through the gateway.

    `files` is replaced (never mutated) on every successful patch. Commands that policy
    marks as `ask` run only when `auto_approve` is set.
    """

    def __init__(
        self,
        files: list[FileEntry],
        gateway: ToolGateway,
        sessions: SessionManager,
        session_id: str,
        actor_key: Optional[str] = None,
        auto_approve: bool = False,
    ) -> None:
        self.files = list(files)
        self.gateway = gateway
        self.sessions = sessions
        self.session_id = session_id
        self.actor_key = actor_key
        self.auto_approve = auto_approve

    async def apply_patch(self, diff: str, summary: str) -> SinkOutcome:
        outcome = apply_diff(unwrap_diff(diff), self.files)
        if not outcome.success:
            failed = [r for r in outcome.results if r.status == "failed"]
            detail = "; ".join(f"{r.path}: {r.error}" for r in failed) or (outcome.error or "unknown error")
            logger.info("patch rejected: %s", detail)
            return SinkOutcome(
                ok=False,
                message=f"Patch was NOT applied (all changes rolled back): {detail}. "
                "Re-read the files and emit a corrected patch.",
                data=outcome.to_dict(),
            )

        self.files = list(outcome.updated_files or [])
        self.sessions.sync_workspace(self.session_id, self.files)
        s = outcome.summary
        return SinkOutcome(
            ok=True,
            message=f"Patch applied: {s.files_changed} file(s) changed (+{s.lines_added} -{s.lines_removed}). "
            "Suggest a verification command (tests/build) as the next step.",
            data=outcome.to_dict(),
        )

    async def run_command(self, command: str) -> SinkOutcome:
        resp = await self.gateway.invoke(
            ToolName.RUN_COMMAND.value,
            {"command": command, "session_id": self.session_id},
            self.actor_key,
            approved=self.auto_approve,
        )
        if not resp.ok:
            reason = resp.error.message if resp.error else "unknown error"
            return SinkOutcome(
                ok=False,
                message=f"Command `{command}` was not executed: {reason}. Choose a different approach.",
                data=resp.to_dict(),
            )

        r = resp.result or {}
        parts = [f"Command `{command}` exited with code {r.get('exitCode')} (cwd {r.get('cwd')})."]
        if r.get("stdout"):
            parts.append("STDOUT:\n" + _clip(r["stdout"]))
        if r.get("stderr"):
            parts.append("STDERR:\n" + _clip(r["stderr"]))
        return SinkOutcome(ok=bool(r.get("ok")), message="\n".join(parts), data=resp.to_dict())

    async def call_tool(self, tool: str, tool_input: dict[str, Any]) -> SinkOutcome:
        resp = await self.gateway.invoke(tool, tool_input, self.actor_key, approved=self.auto_approve)
        if not resp.ok:
            reason = resp.error.message if resp.error else "unknown error"
            return SinkOutcome(ok=False, message=f"Tool `{tool}` failed: {reason}", data=resp.to_dict())
        rendered = json.dumps(resp.result, default=str)
        return SinkOutcome(ok=True, message=f"Tool `{tool}` succeeded. Result: {_clip(rendered, 2000)}", data=resp.to_dict())
