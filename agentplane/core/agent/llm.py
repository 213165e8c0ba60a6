from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from agentplane.core.agent.prompts import AGENT_ACTION_SCHEMA

logger = logging.getLogger("agentplane.agent")

DEFAULT_MODEL = "gpt-5-mini"


@dataclass(frozen=True)
class LLMResponse:
    text: str
    raw: Any = None


class AgentModel(Protocol):
    def complete(self, messages: list[dict[str, str]]) -> LLMResponse: ...


def _role_env_key(role: str) -> str:
    """Map a role name to its env var, e.g. `agent-fast` -> OPENAI_MODEL_AGENT_FAST."""

    role_key = re.sub(r"[^A-Za-z0-9]+", "_", role).strip("_").upper()
    return f"OPENAI_MODEL_{role_key}"


def model_for_role(role: str, default_model: str) -> str:
    """OPENAI_MODEL_<ROLE> if set, else `default_model`."""

    override = (os.getenv(_role_env_key(role), "") or "").strip()
    return override or default_model


def _extract_output_text(resp: Any) -> str:
    """Extract response text across OpenAI SDK response shapes."""

    raw = getattr(resp, "output_text", None)
    if isinstance(raw, str) and raw.strip():
        return raw

    out = getattr(resp, "output", None)
    if isinstance(out, list):
        texts: list[str] = []
        for item in out:
            content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
            if not isinstance(content, list):
                continue
            for c in content:
                t = c.get("text") if isinstance(c, dict) else getattr(c, "text", None)
                if isinstance(t, str) and t.strip():
                    texts.append(t)
        if texts:
            return "\n".join(texts)

    return ""


class LLMClient:
    """Thin wrapper around the OpenAI Responses API that returns one agent action per call."""

    def __init__(self, default_model: str | None = None, role: str = "agent") -> None:
        base = default_model or os.getenv("OPENAI_MODEL", DEFAULT_MODEL)
        self.model = model_for_role(role, base)

        self.calls = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.models_used: dict[str, int] = {}

    def is_configured(self) -> bool:
        return bool(os.getenv("OPENAI_API_KEY"))

    def complete(self, messages: list[dict[str, str]], json_schema: Optional[dict[str, Any]] = None) -> LLMResponse:
        """Synchronous call; run it in a thread from async code.

        Without OPENAI_API_KEY a stub `done` action is returned so the loop stays usable offline.
        """

        schema = json_schema or AGENT_ACTION_SCHEMA
        self.models_used[self.model] = self.models_used.get(self.model, 0) + 1

        if not self.is_configured():
            self.calls += 1
            logger.info("OPENAI_API_KEY not set; returning stub action")
            return LLMResponse(
                text=json.dumps(
                    {
                        "thinking": "LLM disabled (OPENAI_API_KEY not set).",
                        "action": "done",
                        "summary": "LLM disabled (OPENAI_API_KEY not set). No changes made.",
                        "patch": None,
                        "command": None,
                        "tool": None,
                        "tool_input": None,
                        "done_reason": "LLM disabled (OPENAI_API_KEY not set).",
                    }
                ),
                raw={"disabled": True, "model": self.model},
            )

        from openai import OpenAI  # type: ignore

        client = OpenAI()
        response = client.responses.create(
            model=self.model,
            input=messages,
            text={
                "format": {
                    "type": "json_schema",
                    "name": schema.get("name", "schema"),
                    "strict": True,
                    "schema": schema.get("schema", {}),
                }
            },
        )

        self.calls += 1
        self._accumulate_usage(response)
        return LLMResponse(text=_extract_output_text(response), raw=response)

    def _accumulate_usage(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return

        def get(k: str) -> int:
            if isinstance(usage, dict):
                return int(usage.get(k, 0) or 0)
            return int(getattr(usage, k, 0) or 0)

        self.input_tokens += get("input_tokens")
        self.output_tokens += get("output_tokens")

    def usage(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "calls": self.calls,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "models_used": dict(self.models_used),
        }
