from __future__ import annotations

import inspect
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from agentplane.core.errors import ControlPlaneError, PermissionDeniedError, RateLimitedError
from agentplane.core.gateway.audit import AuditEntry, AuditLog, AuditStatus, new_audit_id, utc_timestamp
from agentplane.core.gateway.rate_limit import RateDecision, RateLimiter
from agentplane.core.policy.permissions import DEFAULT_PERMISSION_POLICY, PermissionPolicy, PermissionVerdict, assess
from agentplane.core.policy.tools import Server, ToolCall, summarize_input
from agentplane.core.settings import Settings

logger = logging.getLogger("agentplane.gateway")

Handler = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]

GLOBAL_ACTOR = "global"


@dataclass(frozen=True)
class GatewayResponse:
    ok: bool
    status_code: int
    audit_id: str
    verdict: PermissionVerdict
    duration_ms: int
    result: Any = None
    error: Optional[ControlPlaneError] = None
    rate_limit: Optional[RateDecision] = None

    @property
    def needs_approval(self) -> bool:
        return self.error is not None and self.error.code == "E_NEEDS_APPROVAL"

    def to_dict(self) -> dict[str, Any]:
        gw: dict[str, Any] = {
            "auditId": self.audit_id,
            "opType": self.verdict.tier,
            "permission": self.verdict.decision,
            "server": self.verdict.server,
            "durationMs": self.duration_ms,
        }
        if self.rate_limit is not None:
            gw["rateLimit"] = self.rate_limit.to_dict()
        d: dict[str, Any] = {"ok": self.ok, "status": self.status_code, "gateway": gw}
        if self.ok:
            d["result"] = self.result
        elif self.error is not None:
            d["error"] = self.error.message
            d["code"] = self.error.code
        return d


@dataclass
class ToolGateway:
    """Single choke point for tool calls: policy, then rate limit, then dispatch; every call audited.

    Handlers are looked up by tool name first and then by downstream server.
    Wallet tools without a handler are returned to the caller for client-side execution.
    """

    limiter: RateLimiter
    audit: AuditLog
    policy: PermissionPolicy = DEFAULT_PERMISSION_POLICY
    handlers: dict[str, Handler] = field(default_factory=dict)
    server_handlers: dict[Server, Handler] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings, policy: PermissionPolicy = DEFAULT_PERMISSION_POLICY) -> "ToolGateway":
        return cls(
            limiter=RateLimiter(cap=settings.rate_limit_per_window, window_s=settings.rate_window_s),
            audit=AuditLog(capacity=settings.audit_capacity),
            policy=policy,
        )

    def register(self, tool: str, handler: Handler) -> None:
        self.handlers[tool] = handler

    def register_server(self, server: Server, handler: Handler) -> None:
        self.server_handlers[server] = handler

    def _handler_for(self, verdict: PermissionVerdict) -> Optional[Handler]:
        h = self.handlers.get(verdict.tool)
        if h is not None:
            return h
        if verdict.server is None:
            return None
        return self.server_handlers.get(Server(verdict.server))

    def _record(
        self,
        audit_id: str,
        verdict: PermissionVerdict,
        status: AuditStatus,
        started: float,
        actor_key: Optional[str],
        inp: dict[str, Any],
        error: Optional[str] = None,
    ) -> int:
        duration_ms = int((time.perf_counter() - started) * 1000)
        try:
            summary = summarize_input(inp)
        except (TypeError, ValueError):
            summary = None
        self.audit.append(
            AuditEntry(
                id=audit_id,
                timestamp=utc_timestamp(),
                server=verdict.server,
                tool=verdict.tool,
                op_type=verdict.tier,
                permission=verdict.decision,
                status=status,
                duration_ms=duration_ms,
                actor_key=actor_key,
                error=error,
                input_summary=summary,
            )
        )
        return duration_ms

    async def invoke(
        self,
        tool: str,
        inp: Optional[dict[str, Any]] = None,
        actor_key: Optional[str] = None,
        *,
        approved: bool = False,
    ) -> GatewayResponse:
        """Run one tool call through the gate.

        403 for policy denial or missing approval, 429 for rate limiting, 400 when no
        handler exists, 500 when the handler raises. Never raises itself.
        """

        started = time.perf_counter()
        inp = dict(inp or {})
        audit_id = new_audit_id()
        verdict = assess(ToolCall(tool=tool, input=inp), self.policy)

        def fail(status_code: int, err: ControlPlaneError, audit_status: AuditStatus, rate: Optional[RateDecision] = None) -> GatewayResponse:
            ms = self._record(audit_id, verdict, audit_status, started, actor_key, inp, err.message)
            logger.info("gateway %s %s -> %s (%s)", actor_key or GLOBAL_ACTOR, tool, status_code, err.code)
            return GatewayResponse(
                ok=False,
                status_code=status_code,
                audit_id=audit_id,
                verdict=verdict,
                duration_ms=ms,
                error=err,
                rate_limit=rate,
            )

        if verdict.decision == "deny":
            return fail(
                403,
                PermissionDeniedError(
                    code="E_PERMISSION_DENIED",
                    message=f"DENIED: {verdict.reason}",
                    path=tool,
                ),
                "denied",
                self.limiter.peek(actor_key or GLOBAL_ACTOR),
            )

        rate = self.limiter.check(actor_key or GLOBAL_ACTOR)
        if not rate.allowed:
            retry_s = math.ceil(rate.reset_in_s)
            return fail(
                429,
                RateLimitedError(
                    code="E_RATE_LIMITED",
                    message=f"Rate limit exceeded ({self.limiter.cap}/window). Try again in {retry_s}s.",
                    path=tool,
                ),
                "denied",
                rate,
            )

        if verdict.decision == "ask" and not approved:
            return fail(
                403,
                PermissionDeniedError(
                    code="E_NEEDS_APPROVAL",
                    message=f"needs_approval: {verdict.reason}",
                    path=tool,
                ),
                "denied",
                rate,
            )

        handler = self._handler_for(verdict)
        if handler is None:
            if verdict.server == Server.WALLET.value:
                ms = self._record(audit_id, verdict, "success", started, actor_key, inp)
                return GatewayResponse(
                    ok=True,
                    status_code=200,
                    audit_id=audit_id,
                    verdict=verdict,
                    duration_ms=ms,
                    result={"client_side": True, "tool": tool, "input": inp},
                    rate_limit=rate,
                )
            return fail(
                400,
                ControlPlaneError(code="E_UNKNOWN_TOOL", message=f"no handler for tool '{tool}'", path=tool),
                "error",
                rate,
            )

        try:
            result = handler(inp)
            if inspect.isawaitable(result):
                result = await result
        except ControlPlaneError as e:
            return fail(500, e, "error", rate)
        except Exception as e:  # noqa: BLE001
            logger.exception("handler for %s failed", tool)
            return fail(500, ControlPlaneError(code="E_TOOL_FAILED", message=str(e) or type(e).__name__, path=tool), "error", rate)

        ms = self._record(audit_id, verdict, "success", started, actor_key, inp)
        logger.debug("gateway %s %s -> 200 in %dms", actor_key or GLOBAL_ACTOR, tool, ms)
        return GatewayResponse(
            ok=True,
            status_code=200,
            audit_id=audit_id,
            verdict=verdict,
            duration_ms=ms,
            result=result,
            rate_limit=rate,
        )

    def audit_query(
        self,
        *,
        limit: int = 50,
        server: Optional[str] = None,
        op_type: Optional[str] = None,
        actor_key: Optional[str] = None,
    ) -> dict[str, Any]:
        entries = self.audit.query(limit=limit, server=server, op_type=op_type, actor_key=actor_key)
        return {
            "entries": [e.to_dict() for e in entries],
            "total": len(self.audit),
            "rateLimit": self.limiter.config(),
        }
