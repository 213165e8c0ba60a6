from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

from agentplane.core.policy.tools import (
    DENIED_CHAIN_TOOLS,
    ChainOpType,
    ToolCall,
    ToolName,
    classify_chain_tool,
    generic_risk,
    is_chain_tool,
    resolve_server,
)

Decision = Literal["allow", "ask", "deny"]

# Command prefixes that never run, taken from the runner's own denylist.
DEFAULT_DENIED_COMMANDS: tuple[str, ...] = (
    "rm -rf /",
    "rm -rf ~",
    "sudo ",
    "dd ",
    "mkfs",
    "chmod 777",
    "curl ",
    "wget ",
    "ssh ",
    "cat /etc/",
    "cat ~/.ssh",
    "env ",
    "export ",
)

# Matched anywhere in each shell segment; nothing matching these ever runs.
BLOCKED_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\brm\s+-rf\s+/$",
        r"\brm\s+-rf\s+~$",
        r"\bdd\s+if=",
        r"\bmkfs\b",
        r"\bchmod\s+777\s+/",
        r"\bsudo\b",
        r"\bmount\b",
        r"\bchroot\b",
    )
)

_SEGMENT_SPLIT_RE = re.compile(r"&&|\|\||[;|&\n`()]")

DEFAULT_ALLOWED_COMMANDS: tuple[str, ...] = (
    "npm test",
    "npm run test",
    "npm run build",
    "npm run lint",
    "pytest",
    "python -m pytest",
    "ls",
    "pwd",
    "git status",
    "git diff",
    "git log",
)


RISK_SUBJECTS: frozenset[str] = frozenset({"read", "simulate", "write", "safe", "moderate", "dangerous"})

# (subject, effect) pairs, evaluated in order
Rule = tuple[str, Decision]


@dataclass(frozen=True)
class PermissionPolicy:
    """Project policy.

    `risk_rules` subjects are tier names (`read`, `write`, `safe`, ...).
    `pattern_rules` subjects are `prefix:<text>` or `re:<regex>` matched against the tool name.
    """

    allowed_tools: tuple[str, ...] = ()
    denied_tools: tuple[str, ...] = ()
    allowed_commands: tuple[str, ...] = ()
    denied_commands: tuple[str, ...] = ()
    risk_rules: tuple[Rule, ...] = ()
    pattern_rules: tuple[Rule, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed_tools": list(self.allowed_tools),
            "denied_tools": list(self.denied_tools),
            "allowed_commands": list(self.allowed_commands),
            "denied_commands": list(self.denied_commands),
            "risk_rules": dict(self.risk_rules),
            "pattern_rules": dict(self.pattern_rules),
        }


DEFAULT_PERMISSION_POLICY = PermissionPolicy(
    allowed_tools=(
        ToolName.READ_FILE.value,
        ToolName.LIST_FILES.value,
        ToolName.GREP.value,
        ToolName.GIT_STATUS.value,
    ),
    denied_tools=(),
    allowed_commands=DEFAULT_ALLOWED_COMMANDS,
    denied_commands=DEFAULT_DENIED_COMMANDS,
)


@dataclass(frozen=True)
class PermissionVerdict:
    """Decision plus the tier and reason it came from."""

    tool: str
    decision: Decision
    tier: str
    reason: str
    server: Optional[str] = None
    op_type: Optional[ChainOpType] = None
    matched: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "tool": self.tool,
            "decision": self.decision,
            "tier": self.tier,
            "reason": self.reason,
            "server": self.server,
        }
        if self.op_type is not None:
            d["op_type"] = self.op_type.value
        if self.matched is not None:
            d["matched"] = self.matched
        return d


def _first_prefix(command: str, prefixes: tuple[str, ...]) -> Optional[str]:
    for p in prefixes:
        if command.startswith(p):
            return p
    return None


def command_segments(command: str) -> list[str]:
    """Split a shell line on `;`, `&&`, `||`, `|`, `&`, subshells and backticks."""
    return [s.strip() for s in _SEGMENT_SPLIT_RE.split(command) if s.strip()]


def blocked_command(command: str) -> Optional[str]:
    """Return the pattern that blocks some segment of `command`, or None."""
    for seg in command_segments(command):
        for pattern in BLOCKED_COMMAND_PATTERNS:
            if pattern.search(seg):
                return pattern.pattern
    return None


def pattern_matches(subject: str, tool: str) -> bool:
    if subject.startswith("prefix:"):
        return tool.startswith(subject[len("prefix:") :])
    if subject.startswith("re:"):
        return re.search(subject[len("re:") :], tool) is not None
    return False


def assess(call: ToolCall, policy: PermissionPolicy = DEFAULT_PERMISSION_POLICY) -> PermissionVerdict:
    """Classify `call` and decide allow / ask / deny.

    Pure function of (tool, input, policy). Order:
      1) key-exposing chain operations are always denied
      2) policy.denied_tools
      3) run_command deny prefixes per shell segment, then blocked patterns
      4) policy.allowed_tools
      5) run_command allow prefixes; every segment must match
      6) policy.risk_rules, first rule for the call's tier
      7) policy.pattern_rules, first matching tool-name pattern
      8) chain tier: READ and SIMULATE allow, WRITE and unknown ask
      9) anything else asks
    """

    tool = call.tool
    server_enum = resolve_server(tool)
    server = server_enum.value if server_enum is not None else None
    chain = is_chain_tool(tool)
    op_type = classify_chain_tool(tool) if chain else None
    tier = op_type.value if op_type is not None else generic_risk(tool)

    def verdict(decision: Decision, reason: str, *, tier_override: Optional[str] = None, matched: Optional[str] = None) -> PermissionVerdict:
        return PermissionVerdict(
            tool=tool,
            decision=decision,
            tier=tier_override or tier,
            reason=reason,
            server=server,
            op_type=op_type,
            matched=matched,
        )

    if tool in DENIED_CHAIN_TOOLS:
        return verdict("deny", f"'{tool}' can expose private keys and is blocked by security policy")

    is_command = tool == ToolName.RUN_COMMAND.value
    command = call.command if is_command else ""
    segments = command_segments(command) if is_command else []

    if tool in policy.denied_tools:
        return verdict("deny", f"'{tool}' is on the project's denied tool list")

    if is_command:
        for seg in segments or [command]:
            hit = _first_prefix(seg, policy.denied_commands)
            if hit is not None:
                return verdict(
                    "deny",
                    f"command matches denied prefix '{hit}'",
                    tier_override="dangerous",
                    matched=hit,
                )
        blocked = blocked_command(command)
        if blocked is not None:
            return verdict("deny", f"command is blocked by pattern '{blocked}'", tier_override="dangerous", matched=blocked)

    if tool in policy.allowed_tools:
        return verdict("allow", f"'{tool}' is on the allowed tool list")

    if is_command and segments:
        hits = [_first_prefix(seg, policy.allowed_commands) for seg in segments]
        if all(h is not None for h in hits):
            return verdict("allow", f"command matches allowed prefix '{hits[0]}'", matched=hits[0])

    for subject, effect in policy.risk_rules:
        if subject.lower() == tier.lower():
            return verdict(effect, f"policy rule for risk={subject}")

    for subject, effect in policy.pattern_rules:
        if pattern_matches(subject, tool):
            return verdict(effect, f"policy rule matched '{subject}'", matched=subject)

    if is_command:
        return verdict("ask", "command is not on the allow list; needs approval")

    if op_type is not None:
        if op_type in (ChainOpType.READ, ChainOpType.SIMULATE):
            return verdict("allow", f"{op_type.value} chain operation")
        if op_type is ChainOpType.WRITE:
            return verdict("ask", "WRITE chain operation requires user approval")
        return verdict("ask", f"'{tool}' is not in the chain tool catalogue")

    return verdict("ask", f"'{tool}' ({tier}) needs approval")


def evaluate(call: ToolCall, policy: PermissionPolicy = DEFAULT_PERMISSION_POLICY) -> Decision:
    return assess(call, policy).decision
