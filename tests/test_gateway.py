import asyncio

from agentplane.core.agent.sink import register_runner_tools
from agentplane.core.errors import ControlPlaneError
from agentplane.core.gateway.audit import AuditLog
from agentplane.core.gateway.gateway import ToolGateway
from agentplane.core.gateway.rate_limit import RateLimiter
from agentplane.core.policy.tools import Server
from agentplane.core.runner.backends import NullExecBackend
from agentplane.core.runner.session import SessionManager
from agentplane.core.settings import Settings


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _gateway(cap: int = 10) -> ToolGateway:
    return ToolGateway(limiter=RateLimiter(cap=cap, window_s=60, clock=FakeClock()), audit=AuditLog(capacity=50))


def test_denied_tool_never_reaches_handler():
    gw = _gateway()
    calls = []
    gw.register("evm_sign_transaction", lambda inp: calls.append(inp))

    r = asyncio.run(gw.invoke("evm_sign_transaction", {"tx": "0x"}, "proj"))
    assert not r.ok
    assert r.status_code == 403
    assert r.error.code == "E_PERMISSION_DENIED"
    assert r.error.message.startswith("DENIED: ")
    assert calls == []

    entry = gw.audit.query()[0]
    assert entry.status == "denied"
    assert entry.permission == "deny"
    assert entry.actor_key == "proj"


def test_rate_limit_returns_429_with_retry_hint():
    gw = _gateway(cap=2)
    gw.register("read_file", lambda inp: "content")

    ok = [asyncio.run(gw.invoke("read_file", {"path": "/a"}, "p")).ok for _ in range(2)]
    assert ok == [True, True]

    r = asyncio.run(gw.invoke("read_file", {"path": "/a"}, "p"))
    assert r.status_code == 429
    assert r.error.code == "E_RATE_LIMITED"
    assert "Try again in 60s" in r.error.message
    assert r.to_dict()["gateway"]["rateLimit"]["remaining"] == 0

    # other actors keep their own budget
    assert asyncio.run(gw.invoke("read_file", {"path": "/a"}, "q")).ok


def test_denial_does_not_consume_rate_budget():
    gw = _gateway(cap=1)
    gw.register("read_file", lambda inp: "x")
    asyncio.run(gw.invoke("export_private_key", {}, "p"))
    assert asyncio.run(gw.invoke("read_file", {"path": "/a"}, "p")).ok


def test_ask_requires_approval():
    gw = _gateway()
    seen = []
    gw.register("run_command", lambda inp: seen.append(inp["command"]) or {"exitCode": 0})

    r = asyncio.run(gw.invoke("run_command", {"command": "make build"}))
    assert r.status_code == 403
    assert r.needs_approval
    assert r.error.message.startswith("needs_approval: ")
    assert seen == []

    r2 = asyncio.run(gw.invoke("run_command", {"command": "make build"}, approved=True))
    assert r2.ok
    assert r2.result == {"exitCode": 0}
    assert seen == ["make build"]


def test_async_handler_is_awaited():
    gw = _gateway()

    async def handler(inp):
        await asyncio.sleep(0)
        return {"balance": "1"}

    gw.register_server(Server.EVM_RPC, handler)
    r = asyncio.run(gw.invoke("evm_get_balance", {"address": "0x1"}))
    assert r.ok
    assert r.result == {"balance": "1"}
    assert r.to_dict()["gateway"]["opType"] == "READ"


def test_handler_errors_become_500():
    gw = _gateway()

    def boom(inp):
        raise RuntimeError("upstream down")

    def typed(inp):
        raise ControlPlaneError(code="E_UPSTREAM", message="rpc timeout")

    gw.register("read_file", boom)
    gw.register("grep", typed)

    r = asyncio.run(gw.invoke("read_file", {"path": "/a"}))
    assert r.status_code == 500
    assert r.error.code == "E_TOOL_FAILED"
    assert "upstream down" in r.error.message

    r2 = asyncio.run(gw.invoke("grep", {"pattern": "x"}))
    assert r2.status_code == 500
    assert r2.error.code == "E_UPSTREAM"

    statuses = [e.status for e in gw.audit.query()]
    assert statuses == ["error", "error"]


def test_wallet_tools_are_returned_for_client_side_execution():
    gw = _gateway()
    r = asyncio.run(gw.invoke("wallet_get_address", {"chain": "evm"}))
    assert r.ok
    assert r.result == {"client_side": True, "tool": "wallet_get_address", "input": {"chain": "evm"}}


def test_unknown_tool_without_handler_is_400():
    gw = _gateway()
    r = asyncio.run(gw.invoke("sim_eth_call", {}))
    assert r.status_code == 400
    assert r.error.code == "E_UNKNOWN_TOOL"
    assert gw.audit.query()[0].status == "error"


def test_audit_query_payload():
    gw = _gateway()
    gw.register("read_file", lambda inp: "x")
    asyncio.run(gw.invoke("read_file", {"path": "/a"}, "p1"))
    asyncio.run(gw.invoke("evm_sign_transaction", {}, "p2"))

    q = gw.audit_query(limit=10)
    assert q["total"] == 2
    assert q["rateLimit"] == {"maxPerMinute": 10, "windowMs": 60000}
    assert [e["tool"] for e in q["entries"]] == ["evm_sign_transaction", "read_file"]

    only_p1 = gw.audit_query(actor_key="p1")
    assert [e["projectKey"] for e in only_p1["entries"]] == ["p1"]

    entry = q["entries"][1]
    assert entry["inputSummary"] == '{"path": "/a"}'


def test_response_to_dict():
    gw = _gateway()
    gw.register("read_file", lambda inp: "body")
    ok = asyncio.run(gw.invoke("read_file", {"path": "/a"})).to_dict()
    assert ok["ok"] is True
    assert ok["status"] == 200
    assert ok["result"] == "body"
    assert ok["gateway"]["permission"] == "allow"
    assert ok["gateway"]["server"] == "workspace"

    bad = asyncio.run(gw.invoke("export_private_key", {})).to_dict()
    assert bad["code"] == "E_PERMISSION_DENIED"
    assert "result" not in bad


def test_from_settings():
    gw = ToolGateway.from_settings(Settings(rate_limit_per_window=5, audit_capacity=7))
    assert gw.limiter.cap == 5
    assert gw.audit.capacity == 7


def test_chained_destructive_command_never_reaches_session():
    gw = _gateway()
    backend = NullExecBackend()
    sessions = SessionManager(backend=backend)
    register_runner_tools(gw, sessions)
    s = sessions.create_session("p")

    for command in ("ls && rm -rf /", "git status; sudo rm -rf build", "pwd | mkfs.ext4 /dev/sda"):
        r = asyncio.run(gw.invoke("run_command", {"command": command, "session_id": s.id}, "p"))
        assert not r.ok, command
        assert r.status_code == 403
        assert r.verdict.decision == "deny"
        assert r.verdict.tier == "dangerous"
    assert backend.commands == []

    r = asyncio.run(gw.invoke("run_command", {"command": "ls && pwd", "session_id": s.id}, "p"))
    assert r.ok
    assert backend.commands == [(s.id, s.workspace_path, "ls && pwd")]


def test_policy_denial_reports_rate_budget_without_charging():
    gw = _gateway(cap=3)
    gw.register("read_file", lambda inp: "x")

    fresh = asyncio.run(gw.invoke("export_private_key", {}, "p")).to_dict()
    assert fresh["gateway"]["rateLimit"] == {"remaining": 3, "resetIn": 60000}

    asyncio.run(gw.invoke("read_file", {"path": "/a"}, "p"))
    after = asyncio.run(gw.invoke("export_private_key", {}, "p")).to_dict()
    assert after["gateway"]["rateLimit"]["remaining"] == 2

    oks = [asyncio.run(gw.invoke("read_file", {"path": "/a"}, "p")).ok for _ in range(3)]
    assert oks == [True, True, False]


def test_concurrent_invocations_respect_cap_and_audit_every_call():
    async def scenario():
        gw = ToolGateway(limiter=RateLimiter(cap=10, window_s=60, clock=FakeClock()), audit=AuditLog(capacity=25))

        async def handler(inp):
            await asyncio.sleep(0)
            return inp["path"]

        gw.register("read_file", handler)
        return gw, await asyncio.gather(*(gw.invoke("read_file", {"path": f"/f{i}"}, "p") for i in range(40)))

    gw, responses = asyncio.run(scenario())
    assert sum(1 for r in responses if r.ok) == 10
    assert sum(1 for r in responses if r.status_code == 429) == 30
    assert len(gw.audit) == 25
    assert len({r.audit_id for r in responses}) == 40
