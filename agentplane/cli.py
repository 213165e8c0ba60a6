from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from agentplane.core.agent.contracts import AgentEvent
from agentplane.core.agent.llm import LLMClient
from agentplane.core.agent.orchestrator import AgentOrchestrator, RunRequest
from agentplane.core.agent.sink import LocalActionSink, register_runner_tools
from agentplane.core.errors import ControlPlaneError, PolicyConfigError
from agentplane.core.gateway.gateway import ToolGateway
from agentplane.core.logging_utils import configure_logging
from agentplane.core.patch.apply_patch import apply_diff
from agentplane.core.patch.diff_parser import reverse_diff, unwrap_diff
from agentplane.core.policy.permissions import PermissionPolicy, assess
from agentplane.core.policy.policy_config import load_and_merge
from agentplane.core.policy.tools import ToolCall, describe_tool_call
from agentplane.core.runner.backends import SubprocessExecBackend
from agentplane.core.runner.session import SessionManager
from agentplane.core.settings import Settings
from agentplane.core.workspace import WorkspaceSnapshot

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()


@app.callback()
def _callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this file"),
) -> None:
    """agentplane: patch-and-execution control plane for coding agents."""
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING, log_path=log_file)


def _print_errors(errors: list[ControlPlaneError]) -> None:
    for e in sorted(errors, key=lambda e: (e.path or "", e.code)):
        typer.echo(str(e), err=True)


def _load_policy(policy: Optional[str]) -> PermissionPolicy:
    try:
        return load_and_merge(policy)
    except PolicyConfigError as e:
        _print_errors([e])
        raise typer.Exit(code=2)


def _require_dir(root: Path) -> Path:
    if not root.is_dir():
        typer.echo(f"{root}: E_ROOT_NOT_DIR: not a directory", err=True)
        raise typer.Exit(code=2)
    return root.resolve()


@app.command("apply")
def apply_cmd(
    diff_file: Path = typer.Argument(..., help="Unified diff to apply ('-' not supported)"),
    root: Path = typer.Option(Path("."), "--root", help="Directory holding the files to patch"),
    write: bool = typer.Option(False, "--write", help="Commit the result to disk"),
    reverse: bool = typer.Option(False, "--reverse", "-R", help="Apply the inverse of the diff (undo it)"),
) -> None:
    """Apply a unified diff to the files under ROOT, all-or-nothing. Prints JSON.

    DIFF_FILE may also be a message with the diff inside a code fence.
    """

    root = _require_dir(root)
    try:
        diff_text = diff_file.read_text(encoding="utf-8")
    except OSError as e:
        typer.echo(f"{diff_file}: E_DIFF_READ: {e}", err=True)
        raise typer.Exit(code=2)

    diff_text = unwrap_diff(diff_text)
    if reverse:
        diff_text = reverse_diff(diff_text)

    snapshot = WorkspaceSnapshot(root=root)
    before = snapshot.load_entries()
    outcome = apply_diff(diff_text, before)

    payload: dict[str, Any] = {
        "success": outcome.success,
        "results": [r.to_dict() for r in outcome.results],
        "summary": outcome.summary.to_dict(),
    }
    if outcome.error:
        payload["error"] = outcome.error

    if outcome.success and write:
        payload["written"] = snapshot.commit(before, outcome.updated_files or [])

    typer.echo(json.dumps(payload, indent=2, sort_keys=True))
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command("evaluate")
def evaluate_cmd(
    tool: str = typer.Argument(..., help="Tool name, e.g. run_command or evm_get_balance"),
    input_json: str = typer.Option("{}", "--input", help="Tool input as a JSON object"),
    policy: Optional[str] = typer.Option(None, "--policy", help="YAML policy overrides"),
) -> None:
    """Classify a tool call and print tier, decision and reason as JSON."""

    try:
        inp = json.loads(input_json)
    except json.JSONDecodeError as e:
        typer.echo(f"--input: E_INPUT_JSON: {e}", err=True)
        raise typer.Exit(code=2)
    if not isinstance(inp, dict):
        typer.echo("--input: E_INPUT_JSON: must be a JSON object", err=True)
        raise typer.Exit(code=2)

    call = ToolCall(tool=tool, input=inp)
    verdict = assess(call, _load_policy(policy))
    payload = verdict.to_dict()
    payload["description"] = describe_tool_call(call)
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@app.command("policy")
def policy_cmd(
    policy: Optional[str] = typer.Option(None, "--policy", help="YAML policy overrides"),
) -> None:
    """Print the effective permission policy."""
    typer.echo(json.dumps(_load_policy(policy).to_dict(), indent=2))


def _render_event(ev: AgentEvent) -> str:
    if ev.type == "step":
        s = ev.data["step"]
        return f"[{ev.iteration:>2}] {s['type']:<9} {s['status']:<9} {s['label']}"
    if ev.type == "patch":
        return f"[{ev.iteration:>2}] patch     {ev.data.get('summary') or ''}"
    if ev.type == "run_command":
        return f"[{ev.iteration:>2}] command   {ev.data.get('command')}"
    if ev.type == "tool_call":
        return f"[{ev.iteration:>2}] tool      {ev.data.get('tool')}"
    return f"{ev.type}: {ev.data.get('reason')}"


@app.command("agent")
def agent_cmd(
    goal: str = typer.Argument(..., help="What should the agent accomplish?"),
    root: Path = typer.Option(Path("."), "--root", help="Project directory"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", help="Iteration budget (capped)"),
    model: Optional[str] = typer.Option(None, "--model", help="Model override"),
    apply: bool = typer.Option(False, "--apply", help="Apply patches and run commands locally"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Run commands that need approval"),
) -> None:
    """Run the agent loop against the files under ROOT and print its event stream."""

    root = _require_dir(root)
    settings = Settings.from_env()
    snapshot = WorkspaceSnapshot(root=root)
    files = snapshot.load_entries()
    llm = LLMClient(default_model=model)

    sink: Optional[LocalActionSink] = None
    if apply:
        sessions = SessionManager(backend=SubprocessExecBackend(root), settings=settings)
        gateway = ToolGateway.from_settings(settings)
        register_runner_tools(gateway, sessions)
        session = sessions.create_session(root.name or "project")
        sessions.sync_workspace(session.id, files)
        sink = LocalActionSink(
            files,
            gateway,
            sessions,
            session.id,
            actor_key=root.name or None,
            auto_approve=auto_approve,
        )

    orchestrator = AgentOrchestrator(llm, sink=sink, settings=settings)
    request = RunRequest(goal=goal, files=files, max_iterations=max_iterations)

    async def _drive() -> list[AgentEvent]:
        seen: list[AgentEvent] = []
        async for ev in orchestrator.run(request):
            console.print(_render_event(ev), markup=False, highlight=False)
            seen.append(ev)
        return seen

    events = asyncio.run(_drive())
    final = events[-1]

    if sink is not None:
        written = snapshot.commit(files, sink.files)
        if written["written"] or written["deleted"]:
            console.print(f"wrote {len(written['written'])} file(s), deleted {len(written['deleted'])}", markup=False)

    table = Table(title="agentplane run")
    table.add_column("Status")
    table.add_column("Iterations")
    table.add_column("Model")
    table.add_column("LLM calls")
    table.add_column("In tok")
    table.add_column("Out tok")
    run = orchestrator.get_run(final.run_id)
    table.add_row(
        run.status if run else "?",
        str(run.iteration if run else 0),
        llm.model,
        str(llm.calls),
        str(llm.input_tokens),
        str(llm.output_tokens),
    )
    console.print(table)

    if final.type == "agent_error":
        raise typer.Exit(code=2)


def main() -> None:
    app(prog_name="agentplane")


cli = typer.main.get_command(app)
