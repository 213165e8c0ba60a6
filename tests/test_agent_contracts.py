import json

from agentplane.core.agent.contracts import (
    ActionKind,
    AgentEvent,
    AgentRun,
    AgentStep,
    RunStateError,
    decode_agent_action,
    extract_json_object,
    parse_agent_action,
)


def test_strict_json_decodes():
    raw = json.dumps({"action": "run_command", "thinking": "t", "summary": "s", "command": "npm test"})
    action, err = decode_agent_action(raw)
    assert err is None
    assert action.kind is ActionKind.RUN_COMMAND
    assert action.command == "npm test"


def test_json_embedded_in_prose_is_recovered():
    raw = 'Sure! Here is my answer:\n```json\n{"action": "done", "done_reason": "all {good}"}\n```\nbye {not json}'
    action, err = decode_agent_action(raw)
    assert err is None
    assert action.kind is ActionKind.DONE
    assert action.done_reason == "all {good}"


def test_undecodable_output_becomes_error_action():
    action, err = decode_agent_action("I refuse to answer in JSON")
    assert action.kind is ActionKind.ERROR
    assert action.thinking == "I refuse to answer in JSON"
    assert err.code == "E_MODEL_OUTPUT"
    assert err.message == "AI response was not valid JSON"

    action2, err2 = decode_agent_action("{broken: json,}")
    assert action2.kind is ActionKind.ERROR
    assert err2.message == "Failed to parse AI response"


def test_unknown_or_incomplete_actions_have_no_kind():
    cases = [
        {"action": "dance"},
        {"action": "patch"},
        {"action": "run_command", "command": ""},
        {"action": "tool_call"},
    ]
    for obj in cases:
        assert parse_agent_action(obj).kind is None, obj


def test_tool_input_json_string_is_decoded():
    a = parse_agent_action({"action": "tool_call", "tool": "evm_call", "tool_input": '{"to": "0x1"}'})
    assert a.kind is ActionKind.TOOL_CALL
    assert a.tool_input == {"to": "0x1"}

    b = parse_agent_action({"action": "tool_call", "tool": "evm_call", "tool_input": "not json"})
    assert b.tool_input == {"raw": "not json"}

    try:
        parse_agent_action({"action": "tool_call", "tool": "x", "tool_input": [1]})
        assert False, "expected ValueError"
    except ValueError:
        pass


def test_extract_json_object_respects_strings():
    assert extract_json_object('x {"a": "}"} y') == '{"a": "}"}'
    assert extract_json_object('{"a": "\\"}"}') == '{"a": "\\"}"}'
    assert extract_json_object("no braces") is None
    assert extract_json_object("{ unbalanced") is None


def test_run_transitions():
    run = AgentRun(id="r1", goal="g", max_iterations=3)
    run.transition("running")
    run.transition("paused")
    run.transition("running")
    run.transition("completed", reason="done")
    assert run.is_terminal
    assert run.reason == "done"

    try:
        run.transition("running")
        assert False, "expected RunStateError"
    except RunStateError:
        pass

    fresh = AgentRun(id="r2", goal="g", max_iterations=3)
    try:
        fresh.transition("completed")
        assert False, "expected RunStateError"
    except RunStateError:
        pass


def test_iteration_must_increase_within_budget():
    run = AgentRun(id="r", goal="g", max_iterations=2)
    run.advance(1)
    run.advance(2)
    for bad in (2, 3):
        try:
            run.advance(bad)
            assert False, f"expected RunStateError for {bad}"
        except RunStateError:
            pass
    assert run.iteration == 2


def test_upsert_step_replaces_by_id():
    run = AgentRun(id="r", goal="g", max_iterations=1)
    step = AgentStep(id="s1", type="think", label="Thinking", status="running", iteration=1)
    run.upsert_step(step)
    run.upsert_step(step.with_status("completed", detail="ok"))
    assert len(run.steps) == 1
    assert run.steps[0].status == "completed"
    assert run.to_dict()["steps"] == [{"id": "s1", "type": "think", "label": "Thinking", "status": "completed", "detail": "ok"}]


def test_event_to_dict_flattens_data():
    ev = AgentEvent(seq=3, run_id="r", type="agent_done", data={"reason": "ok"}, iteration=2)
    d = ev.to_dict()
    assert d["seq"] == 3
    assert d["type"] == "agent_done"
    assert d["reason"] == "ok"
    assert d["iteration"] == 2
