from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal, Optional

from agentplane.core.errors import ModelOutputError


class ActionKind(str, Enum):
    PATCH = "patch"
    RUN_COMMAND = "run_command"
    TOOL_CALL = "tool_call"
    DONE = "done"
    ERROR = "error"


RunStatus = Literal["queued", "running", "paused", "completed", "failed", "cancelled"]
StepType = Literal["think", "tool_call", "patch", "run", "evaluate", "done", "error"]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]
EventType = Literal["step", "patch", "run_command", "tool_call", "agent_done", "agent_error"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running"}),
    "running": frozenset({"paused", "completed", "failed", "cancelled"}),
    "paused": frozenset({"running", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

_GREEDY_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class AgentAction:
    action: str
    thinking: str = ""
    summary: str = ""
    patch: Optional[str] = None
    command: Optional[str] = None
    done_reason: Optional[str] = None
    tool: Optional[str] = None
    tool_input: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[ActionKind]:
        """The recognized action, or None. A patch/command action without its payload is unrecognized."""
        try:
            kind = ActionKind(self.action)
        except ValueError:
            return None
        if kind is ActionKind.PATCH and not self.patch:
            return None
        if kind is ActionKind.RUN_COMMAND and not self.command:
            return None
        if kind is ActionKind.TOOL_CALL and not self.tool:
            return None
        return kind


def _opt_str(obj: dict[str, Any], key: str) -> Optional[str]:
    v = obj.get(key)
    if v is None:
        return None
    return v if isinstance(v, str) else str(v)


def parse_agent_action(obj: dict[str, Any]) -> AgentAction:
    if not isinstance(obj, dict):
        raise ValueError("agent action must be an object")

    action = obj.get("action", "")
    if not isinstance(action, str):
        raise ValueError("action must be a string")

    tool_input = obj.get("tool_input") or {}
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except json.JSONDecodeError:
            tool_input = {"raw": tool_input}
    if not isinstance(tool_input, dict):
        raise ValueError("tool_input must be an object")

    return AgentAction(
        action=action.strip(),
        thinking=_opt_str(obj, "thinking") or "",
        summary=_opt_str(obj, "summary") or "",
        patch=_opt_str(obj, "patch"),
        command=_opt_str(obj, "command"),
        done_reason=_opt_str(obj, "done_reason"),
        tool=_opt_str(obj, "tool"),
        tool_input=tool_input,
    )


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced `{...}` span in `text`, honouring JSON string escapes."""

    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def _loads_action(candidate: str) -> Optional[AgentAction]:
    try:
        obj = json.loads(candidate)
        return parse_agent_action(obj)
    except (json.JSONDecodeError, ValueError):
        return None


def decode_agent_action(raw: str) -> tuple[AgentAction, Optional[ModelOutputError]]:
    """Decode model output into an action, never raising.

    Strict JSON first, then the first balanced JSON object found in the text (then the
    widest brace span). When nothing decodes, an `error` action carrying the raw text is
    returned together with the ModelOutputError that explains it.
    """

    text = raw or ""
    action = _loads_action(text.strip())
    if action is not None:
        return action, None

    candidates: list[str] = []
    balanced = extract_json_object(text)
    if balanced:
        candidates.append(balanced)
    m = _GREEDY_OBJECT_RE.search(text)
    if m and m.group(0) not in candidates:
        candidates.append(m.group(0))

    for c in candidates:
        action = _loads_action(c)
        if action is not None:
            return action, None

    if candidates:
        err = ModelOutputError(code="E_MODEL_OUTPUT", message="Failed to parse AI response")
    else:
        err = ModelOutputError(code="E_MODEL_OUTPUT", message="AI response was not valid JSON")
    return AgentAction(action=ActionKind.ERROR.value, thinking=text, summary=err.message), err


@dataclass(frozen=True)
class AgentStep:
    id: str
    type: StepType
    label: str
    status: StepStatus = "pending"
    iteration: int = 0
    detail: Optional[str] = None

    def with_status(self, status: StepStatus, detail: Optional[str] = None) -> "AgentStep":
        return replace(self, status=status, detail=detail if detail is not None else self.detail)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "type": self.type, "label": self.label, "status": self.status}
        if self.detail is not None:
            d["detail"] = self.detail
        return d


@dataclass(frozen=True)
class AgentEvent:
    seq: int
    run_id: str
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    iteration: int = 0
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, "run_id": self.run_id, "type": self.type, "iteration": self.iteration, **self.data}


class RunStateError(RuntimeError):
    pass


@dataclass
class AgentRun:
    id: str
    goal: str
    max_iterations: int
    status: RunStatus = "queued"
    iteration: int = 0
    steps: list[AgentStep] = field(default_factory=list)
    events: list[AgentEvent] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def transition(self, status: RunStatus, reason: Optional[str] = None) -> None:
        if status not in RUN_TRANSITIONS[self.status]:
            raise RunStateError(f"run {self.id}: {self.status} -> {status} is not allowed")
        self.status = status
        if status in TERMINAL_RUN_STATUSES:
            self.reason = reason

    def advance(self, iteration: int) -> None:
        if iteration <= self.iteration:
            raise RunStateError(f"run {self.id}: iteration must increase ({self.iteration} -> {iteration})")
        if iteration > self.max_iterations:
            raise RunStateError(f"run {self.id}: iteration {iteration} exceeds max {self.max_iterations}")
        self.iteration = iteration

    def upsert_step(self, step: AgentStep) -> None:
        for idx, s in enumerate(self.steps):
            if s.id == step.id:
                self.steps[idx] = step
                return
        self.steps.append(step)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "status": self.status,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "reason": self.reason,
            "steps": [s.to_dict() for s in self.steps],
        }
