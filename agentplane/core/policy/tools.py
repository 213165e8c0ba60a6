from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional, Union

RiskTier = Literal["safe", "moderate", "dangerous"]


class ToolName(str, Enum):
    """Generic workspace and web tools the agent can request."""

    READ_FILE = "read_file"
    LIST_FILES = "list_files"
    GREP = "grep"
    GIT_STATUS = "git_status"
    APPLY_PATCH = "apply_patch"
    RUN_COMMAND = "run_command"
    WEB_FETCH = "web_fetch"
    WEB_SEARCH = "web_search"


class ChainOpType(str, Enum):
    READ = "READ"
    SIMULATE = "SIMULATE"
    WRITE = "WRITE"
    UNKNOWN = "UNKNOWN"


class Server(str, Enum):
    """Downstream service a tool call is routed to."""

    WORKSPACE = "workspace"
    WEB = "web"
    EVM_RPC = "mcp-evm-rpc"
    CONTRACT_INTEL = "mcp-contract-intel"
    SOLANA = "mcp-solana"
    TX_SIMULATOR = "mcp-tx-simulator"
    WALLET = "wallet"


GENERIC_RISK: dict[ToolName, RiskTier] = {
    ToolName.READ_FILE: "safe",
    ToolName.LIST_FILES: "safe",
    ToolName.GREP: "safe",
    ToolName.GIT_STATUS: "safe",
    ToolName.APPLY_PATCH: "moderate",
    ToolName.RUN_COMMAND: "moderate",
    ToolName.WEB_FETCH: "dangerous",
    ToolName.WEB_SEARCH: "dangerous",
}

GENERIC_SERVER: dict[ToolName, Server] = {
    ToolName.READ_FILE: Server.WORKSPACE,
    ToolName.LIST_FILES: Server.WORKSPACE,
    ToolName.GREP: Server.WORKSPACE,
    ToolName.GIT_STATUS: Server.WORKSPACE,
    ToolName.APPLY_PATCH: Server.WORKSPACE,
    ToolName.RUN_COMMAND: Server.WORKSPACE,
    ToolName.WEB_FETCH: Server.WEB,
    ToolName.WEB_SEARCH: Server.WEB,
}

_R = ChainOpType.READ
_S = ChainOpType.SIMULATE
_W = ChainOpType.WRITE

CHAIN_CLASSIFICATION: dict[str, ChainOpType] = {
    # EVM RPC
    "evm_block_number": _R,
    "evm_get_balance": _R,
    "evm_call": _R,
    "evm_get_logs": _R,
    "evm_get_code": _R,
    "evm_estimate_gas": _R,
    "evm_get_transaction": _R,
    "evm_get_transaction_receipt": _R,
    "evm_get_block": _R,
    "evm_chain_id": _R,
    "evm_gas_price": _R,
    # contract intel
    "contract_get_abi": _R,
    "contract_get_source": _R,
    "contract_verified_status": _R,
    "contract_decode_calldata": _R,
    "contract_get_creation_tx": _R,
    "contract_get_events": _R,
    "contract_get_transactions": _R,
    # solana
    "solana_get_balance": _R,
    "solana_get_account_info": _R,
    "solana_get_transaction": _R,
    "solana_get_signatures": _R,
    "solana_get_token_accounts": _R,
    "solana_get_program_accounts": _R,
    "solana_get_slot": _R,
    "solana_get_block_height": _R,
    "solana_get_recent_blockhash": _R,
    "solana_get_supply": _R,
    "solana_get_epoch_info": _R,
    "solana_get_nft_metadata": _R,
    # simulation
    "sim_eth_call": _S,
    "sim_estimate_gas": _S,
    "sim_trace_call": _S,
    "sim_tenderly_simulate": _S,
    "sim_compare_gas": _S,
    "sim_decode_revert": _S,
    # wallet (executed client side, needs the user's signature)
    "wallet_send_transaction": _W,
    "wallet_sign_message": _W,
    "wallet_get_address": _R,
}

# Operations that could expose or use a private key. Never allowed, whatever the policy says.
DENIED_CHAIN_TOOLS: frozenset[str] = frozenset(
    {
        "evm_send_raw_transaction",
        "evm_sign_transaction",
        "solana_sign_transaction",
        "solana_send_transaction",
        "export_private_key",
    }
)

_CHAIN_PREFIXES: tuple[tuple[str, Server], ...] = (
    ("evm_", Server.EVM_RPC),
    ("contract_", Server.CONTRACT_INTEL),
    ("solana_", Server.SOLANA),
    ("sim_", Server.TX_SIMULATOR),
    ("wallet_", Server.WALLET),
)

SUMMARY_MAX_STRING = 100
SUMMARY_KEEP_CHARS = 60


def as_tool_name(tool: str) -> Optional[ToolName]:
    try:
        return ToolName(tool)
    except ValueError:
        return None


def is_chain_tool(tool: str) -> bool:
    return tool in DENIED_CHAIN_TOOLS or any(tool.startswith(p) for p, _ in _CHAIN_PREFIXES)


def classify_chain_tool(tool: str) -> ChainOpType:
    return CHAIN_CLASSIFICATION.get(tool, ChainOpType.UNKNOWN)


def generic_risk(tool: Union[str, ToolName]) -> RiskTier:
    """Risk of a generic tool. Unknown tools get the cautious middle tier."""
    name = tool if isinstance(tool, ToolName) else as_tool_name(tool)
    if name is None:
        return "moderate"
    return GENERIC_RISK[name]


def resolve_server(tool: str) -> Optional[Server]:
    for prefix, server in _CHAIN_PREFIXES:
        if tool.startswith(prefix):
            return server
    name = as_tool_name(tool)
    if name is not None:
        return GENERIC_SERVER[name]
    return None


@dataclass(frozen=True)
class ToolCall:
    tool: str
    input: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "ToolCall":
        if not isinstance(obj, dict):
            raise ValueError("tool call must be an object")
        tool = obj.get("tool")
        if not isinstance(tool, str) or not tool.strip():
            raise ValueError("tool must be a non-empty string")
        inp = obj.get("input") or {}
        if not isinstance(inp, dict):
            raise ValueError("input must be an object")
        return cls(tool=tool.strip(), input=inp)

    @property
    def command(self) -> str:
        cmd = self.input.get("command", "")
        return cmd.strip() if isinstance(cmd, str) else ""


def summarize_input(inp: dict[str, Any]) -> str:
    """Compact JSON for the audit trail: long strings are clipped, lists are counted."""

    out: dict[str, Any] = {}
    for k, v in inp.items():
        if isinstance(v, str) and len(v) > SUMMARY_MAX_STRING:
            out[k] = v[:SUMMARY_KEEP_CHARS] + "…"
        elif isinstance(v, (list, tuple)):
            out[k] = f"[{len(v)} items]"
        else:
            out[k] = v
    return json.dumps(out, ensure_ascii=False, default=str)


def describe_tool_call(call: ToolCall) -> str:
    inp = call.input
    name = as_tool_name(call.tool)
    if name is ToolName.READ_FILE:
        return f"Read file: {inp.get('path')}"
    if name is ToolName.LIST_FILES:
        return f"List files matching: {inp.get('glob', '*')}"
    if name is ToolName.GREP:
        where = f" in {inp['paths_glob']}" if inp.get("paths_glob") else ""
        return f'Search for "{inp.get("pattern")}"{where}'
    if name is ToolName.APPLY_PATCH:
        return "Apply code patch (unified diff)"
    if name is ToolName.RUN_COMMAND:
        where = f" (in {inp['cwd']})" if inp.get("cwd") else ""
        return f"Run: {inp.get('command')}{where}"
    if name is ToolName.GIT_STATUS:
        return "Check git status"
    if name is ToolName.WEB_FETCH:
        return f"Fetch URL: {inp.get('url')}"
    if name is ToolName.WEB_SEARCH:
        return f"Web search: {inp.get('query')}"
    if is_chain_tool(call.tool):
        return f"{classify_chain_tool(call.tool).value} chain call: {call.tool}"
    return f"Execute tool: {call.tool}"
