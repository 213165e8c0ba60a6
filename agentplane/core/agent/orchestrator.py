from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Optional, Sequence

from agentplane.core.agent.contracts import (
    ActionKind,
    AgentAction,
    AgentEvent,
    AgentRun,
    AgentStep,
    EventType,
    StepStatus,
    StepType,
    decode_agent_action,
)
from agentplane.core.agent.history import ConversationLog, Message, build_messages, goal_message, render_file_context
from agentplane.core.agent.llm import AgentModel
from agentplane.core.agent.prompts import (
    AGENT_SYSTEM_PROMPT,
    CONTINUE_TURN,
    PATCH_EMITTED_TURN,
    command_emitted_turn,
    tool_call_emitted_turn,
)
from agentplane.core.agent.sink import ActionSink, SinkOutcome
from agentplane.core.errors import ControlPlaneError
from agentplane.core.patch.apply_patch import FileEntry
from agentplane.core.settings import Settings

logger = logging.getLogger("agentplane.agent")

DETAIL_CLIP = 300


@dataclass(frozen=True)
class RunRequest:
    goal: str
    files: Sequence[FileEntry] = ()
    history: Sequence[Message] = ()
    max_iterations: Optional[int] = None
    run_id: Optional[str] = None


@dataclass
class _RunControl:
    resume: asyncio.Event = field(default_factory=asyncio.Event)
    pause_requested: bool = False
    cancel_requested: bool = False

    def __post_init__(self) -> None:
        self.resume.set()


def effective_max_iterations(requested: Optional[int], cap: int) -> int:
    """Requested iterations clamped to [1, cap]. None means the cap."""
    if requested is None:
        return max(1, cap)
    return max(1, min(int(requested), cap))


class AgentOrchestrator:
    """Bounded think -> act -> verify loop.

    `run()` is an async generator of AgentEvents; every run ends with exactly one
    `agent_done` or `agent_error`. Iterations are strictly sequential. Pause and
    cancel requests are observed at the top of an iteration, before the model call.
    """

    def __init__(
        self,
        model: AgentModel,
        sink: Optional[ActionSink] = None,
        settings: Optional[Settings] = None,
        system_prompts: Sequence[str] = (AGENT_SYSTEM_PROMPT,),
    ) -> None:
        self.model = model
        self.sink = sink
        self.settings = settings or Settings()
        self.system_prompts = tuple(system_prompts)
        self.runs: dict[str, AgentRun] = {}
        self._controls: dict[str, _RunControl] = {}

    def create_run(self, request: RunRequest) -> AgentRun:
        if not request.goal or not request.goal.strip():
            raise ValueError("goal must be a non-empty string")
        run = AgentRun(
            id=request.run_id or f"run-{uuid.uuid4().hex[:12]}",
            goal=request.goal.strip(),
            max_iterations=effective_max_iterations(request.max_iterations, self.settings.max_iterations),
        )
        self.runs[run.id] = run
        self._controls[run.id] = _RunControl()
        return run

    def get_run(self, run_id: str) -> Optional[AgentRun]:
        return self.runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        run = self.runs.get(run_id)
        ctl = self._controls.get(run_id)
        if run is None or ctl is None or run.is_terminal:
            return False
        ctl.cancel_requested = True
        ctl.resume.set()
        return True

    def pause(self, run_id: str) -> bool:
        run = self.runs.get(run_id)
        ctl = self._controls.get(run_id)
        if run is None or ctl is None or run.status not in ("queued", "running") or ctl.pause_requested:
            return False
        ctl.pause_requested = True
        ctl.resume.clear()
        return True

    def resume(self, run_id: str) -> bool:
        run = self.runs.get(run_id)
        ctl = self._controls.get(run_id)
        if run is None or ctl is None or not ctl.pause_requested:
            return False
        ctl.pause_requested = False
        if run.status == "paused":
            run.transition("running")
            logger.info("run %s resumed", run_id)
        ctl.resume.set()
        return True

    def _emit(self, run: AgentRun, type_: EventType, data: dict[str, Any], iteration: int) -> AgentEvent:
        ev = AgentEvent(seq=len(run.events), run_id=run.id, type=type_, data=data, iteration=iteration)
        run.events.append(ev)
        return ev

    def _step(self, run: AgentRun, step: AgentStep) -> AgentEvent:
        run.upsert_step(step)
        return self._emit(run, "step", {"step": step.to_dict()}, step.iteration)

    @staticmethod
    def _new_step(
        iteration: int, type_: StepType, label: str, status: StepStatus, detail: Optional[str] = None
    ) -> AgentStep:
        return AgentStep(
            id=f"step-{iteration}-{type_}-{uuid.uuid4().hex[:6]}",
            type=type_,
            label=label,
            status=status,
            iteration=iteration,
            detail=detail,
        )

    async def _wait_if_paused(self, run: AgentRun, ctl: _RunControl) -> None:
        if not ctl.pause_requested or ctl.cancel_requested:
            return
        run.transition("paused")
        logger.info("run %s paused before iteration %d", run.id, run.iteration + 1)
        await ctl.resume.wait()

    async def _deliver(self, action: AgentAction) -> SinkOutcome:
        """Hand an action to the sink. Downstream failures come back as failed outcomes."""

        assert self.sink is not None
        try:
            kind = action.kind
            if kind is ActionKind.PATCH:
                return await self.sink.apply_patch(action.patch or "", action.summary)
            if kind is ActionKind.RUN_COMMAND:
                return await self.sink.run_command(action.command or "")
            return await self.sink.call_tool(action.tool or "", dict(action.tool_input))
        except ControlPlaneError as e:
            return SinkOutcome(ok=False, message=f"{e.code}: {e.message}")
        except Exception as e:  # noqa: BLE001
            logger.exception("action sink failed for %s", action.action)
            return SinkOutcome(ok=False, message=f"Downstream failure: {e}")

    async def run(self, request: RunRequest) -> AsyncIterator[AgentEvent]:
        run = self.create_run(request)
        async for ev in self.run_existing(run.id, request):
            yield ev

    async def run_existing(self, run_id: str, request: RunRequest) -> AsyncIterator[AgentEvent]:
        """Drive a run created with `create_run`; lets callers hold the id before the first event."""

        run = self.runs[run_id]
        ctl = self._controls[run_id]
        run.transition("running")
        logger.info("run %s started: %s (max_iterations=%d)", run.id, run.goal, run.max_iterations)

        goal = goal_message(run.goal, render_file_context(list(request.files)))
        log = ConversationLog(request.history)

        for iteration in range(1, run.max_iterations + 1):
            await self._wait_if_paused(run, ctl)
            if ctl.cancel_requested:
                run.transition("cancelled", "Run was cancelled by user")
                logger.info("run %s cancelled before iteration %d", run.id, iteration)
                yield self._emit(run, "agent_error", {"reason": run.reason, "status": "cancelled"}, run.iteration)
                return

            run.advance(iteration)
            think = self._new_step(iteration, "think", f"Iteration {iteration}: Analyzing...", "running")
            yield self._step(run, think)

            messages = build_messages(self.system_prompts, goal, log)
            try:
                resp = await asyncio.to_thread(self.model.complete, messages)
            except Exception as e:  # noqa: BLE001
                reason = f"AI error: {type(e).__name__}: {e}"
                logger.warning("run %s model call failed: %s", run.id, reason)
                yield self._step(run, think.with_status("failed"))
                yield self._step(run, self._new_step(iteration, "error", "AI error", "failed", str(e)[:DETAIL_CLIP]))
                run.transition("failed", reason)
                yield self._emit(run, "agent_error", {"reason": reason, "status": "failed"}, iteration)
                return

            action, parse_err = decode_agent_action(resp.text)
            if parse_err is not None:
                logger.warning("run %s iteration %d: %s", run.id, iteration, parse_err)
            log.append("assistant", resp.text)

            yield self._step(
                run,
                replace(
                    think,
                    label=f"Thinking: {action.summary or 'Analyzing...'}",
                    status="completed",
                    detail=(action.thinking or "")[:DETAIL_CLIP] or None,
                ),
            )

            kind = action.kind

            if kind is ActionKind.DONE:
                reason = action.done_reason or action.summary or "Goal completed"
                yield self._step(run, self._new_step(iteration, "done", "Goal completed", "completed", reason))
                run.transition("completed", reason)
                logger.info("run %s completed at iteration %d", run.id, iteration)
                yield self._emit(run, "agent_done", {"reason": reason}, iteration)
                return

            if kind is ActionKind.ERROR:
                reason = action.summary or "Agent error"
                yield self._step(run, self._new_step(iteration, "error", "Agent error", "failed", reason))
                run.transition("failed", reason)
                logger.info("run %s failed at iteration %d: %s", run.id, iteration, reason)
                yield self._emit(run, "agent_error", {"reason": reason, "status": "failed"}, iteration)
                return

            if kind is None:
                log.append("user", CONTINUE_TURN)
                continue

            async for ev in self._act(run, iteration, action, log):
                yield ev

        reason = f"Reached max iterations ({run.max_iterations})"
        yield self._step(run, self._new_step(run.iteration, "done", reason, "completed"))
        run.transition("completed", reason)
        logger.info("run %s stopped: %s", run.id, reason)
        yield self._emit(
            run,
            "agent_done",
            {"reason": f"Completed {run.max_iterations} iterations", "max_iterations_reached": True},
            run.iteration,
        )

    async def _act(
        self, run: AgentRun, iteration: int, action: AgentAction, log: ConversationLog
    ) -> AsyncIterator[AgentEvent]:
        kind = action.kind
        payload: dict[str, Any]
        event_type: EventType
        if kind is ActionKind.PATCH:
            step = self._new_step(iteration, "patch", "Generating patch", "running", action.summary or None)
            event_type = "patch"
            payload = {"diff": action.patch, "summary": action.summary}
            fallback_turn = PATCH_EMITTED_TURN
        elif kind is ActionKind.RUN_COMMAND:
            step = self._new_step(iteration, "run", f"Running: {action.command}", "running", action.command)
            event_type = "run_command"
            payload = {"command": action.command, "summary": action.summary}
            fallback_turn = command_emitted_turn(action.command or "")
        else:
            step = self._new_step(iteration, "tool_call", f"Tool: {action.tool}", "running", action.summary or None)
            event_type = "tool_call"
            payload = {"tool": action.tool, "input": dict(action.tool_input), "summary": action.summary}
            fallback_turn = tool_call_emitted_turn(action.tool or "")

        yield self._step(run, step)
        yield self._emit(run, event_type, payload, iteration)

        if self.sink is None:
            yield self._step(run, step.with_status("completed"))
            log.append("user", fallback_turn)
            return

        outcome = await self._deliver(action)
        yield self._step(run, step.with_status("completed" if outcome.ok else "failed", outcome.message[:DETAIL_CLIP]))
        log.append("user", outcome.message)
