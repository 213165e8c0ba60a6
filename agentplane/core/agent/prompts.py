from __future__ import annotations

from typing import Any

AGENT_SYSTEM_PROMPT = (
    "You are an autonomous coding agent working inside a project workspace.\n"
    "Complete the GOAL by changing code and verifying the result, one action per turn.\n"
    "\n"
    "Each turn choose exactly one action:\n"
    "- patch: a unified diff. New files use '--- /dev/null' and '+++ b/<path>'; "
    "deleted files use '+++ /dev/null'. Line numbers must match the files exactly.\n"
    "- run_command: one shell command (tests, build, lint). No pipes or redirection.\n"
    "- tool_call: one tool by name with a JSON input object.\n"
    "- done: the goal is achieved and verified; explain why in done_reason.\n"
    "- error: you are blocked; explain why in summary.\n"
    "\n"
    "After a patch, verify it with a command. If the same failure repeats, change approach.\n"
    "Never touch .env files, the .git directory, dependency directories or system paths.\n"
    "Output must follow the requested JSON schema.\n"
    "Never include explanations outside JSON.\n"
)

# Synthetic user turns appended after an action when no downstream sink reports back.
PATCH_EMITTED_TURN = (
    "Patch emitted to client. Awaiting application confirmation. "
    "Suggest a verification command (tests/build) as the next step."
)
CONTINUE_TURN = "Continue with the next step toward the goal."


def command_emitted_turn(command: str) -> str:
    return (
        f"Command `{command}` suggested to client. Awaiting execution result. "
        "Continue planning the next step assuming the command has not yet run."
    )


def tool_call_emitted_turn(tool: str) -> str:
    return f"Tool `{tool}` requested. Awaiting its result. Continue with the next step."


# OpenAI structured outputs: every object sets additionalProperties=false and lists
# every property as required; optional fields are nullable instead.
AGENT_ACTION_SCHEMA: dict[str, Any] = {
    "name": "agent_action",
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "thinking": {"type": "string"},
            "action": {
                "type": "string",
                "enum": ["patch", "run_command", "tool_call", "done", "error"],
            },
            "summary": {"type": "string"},
            "patch": {"type": ["string", "null"]},
            "command": {"type": ["string", "null"]},
            "tool": {"type": ["string", "null"]},
            # JSON-encoded object; strict mode cannot express free-form objects
            "tool_input": {"type": ["string", "null"]},
            "done_reason": {"type": ["string", "null"]},
        },
        "required": [
            "thinking",
            "action",
            "summary",
            "patch",
            "command",
            "tool",
            "tool_input",
            "done_reason",
        ],
    },
}
