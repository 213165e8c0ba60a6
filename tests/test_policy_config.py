from pathlib import Path

from agentplane.core.errors import PolicyConfigError
from agentplane.core.policy.permissions import DEFAULT_PERMISSION_POLICY, evaluate
from agentplane.core.policy.policy_config import load_and_merge, load_policy_file, merged_policy
from agentplane.core.policy.tools import ToolCall


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "policy.yaml"
    p.write_text(text, encoding="utf-8")
    return p


def test_no_file_gives_default_policy():
    assert load_and_merge(None) == DEFAULT_PERMISSION_POLICY
    assert merged_policy() == DEFAULT_PERMISSION_POLICY


def test_plain_key_replaces_and_extra_key_extends(tmp_path: Path):
    p = _write(
        tmp_path,
        "allowed_tools: [read_file]\n"
        "extra_denied_commands: ['npm publish', 'sudo ']\n"
        "extra_allowed_commands: ['make test']\n",
    )
    policy = load_and_merge(p)

    assert policy.allowed_tools == ("read_file",)
    assert policy.denied_commands[-1] == "npm publish"
    # duplicates are not appended twice
    assert policy.denied_commands.count("sudo ") == 1
    assert "make test" in policy.allowed_commands

    assert evaluate(ToolCall("run_command", {"command": "npm publish --tag x"}), policy) == "deny"
    assert evaluate(ToolCall("run_command", {"command": "make test"}), policy) == "allow"
    assert evaluate(ToolCall("grep", {"pattern": "x"}), policy) == "ask"


def test_command_prefixes_keep_trailing_space(tmp_path: Path):
    p = _write(tmp_path, "denied_commands: ['rm ']\ndenied_tools: ['  web_fetch  ']\n")
    raw = load_policy_file(p)
    assert raw["denied_commands"] == ["rm "]
    assert raw["denied_tools"] == ["web_fetch"]


def test_empty_file_is_no_overrides(tmp_path: Path):
    p = _write(tmp_path, "")
    assert load_policy_file(p) == {}
    assert load_and_merge(p) == DEFAULT_PERMISSION_POLICY


def test_errors_have_codes(tmp_path: Path):
    cases = [
        ("not_a_key: [x]\n", "E_POLICY_UNKNOWN_KEY"),
        ("allowed_tools: read_file\n", "E_POLICY_INVALID"),
        ("allowed_tools: [1, 2]\n", "E_POLICY_INVALID"),
        ("- just\n- a list\n", "E_POLICY_INVALID"),
        ("allowed_tools: [unclosed\n", "E_POLICY_YAML"),
    ]
    for text, code in cases:
        p = _write(tmp_path, text)
        try:
            load_policy_file(p)
            assert False, f"expected PolicyConfigError for {text!r}"
        except PolicyConfigError as e:
            assert e.code == code, (text, e.code)
            assert e.path == str(p)


def test_missing_file_is_read_error(tmp_path: Path):
    try:
        load_policy_file(tmp_path / "missing.yaml")
        assert False, "expected PolicyConfigError"
    except PolicyConfigError as e:
        assert e.code == "E_POLICY_READ"


def test_rule_keys_load_in_file_order(tmp_path: Path):
    p = _write(
        tmp_path,
        "risk_rules:\n  write: deny\n  Simulate: ask\n"
        "pattern_rules:\n  'prefix:evm_get_': deny\n  're:^solana_': allow\n",
    )
    raw = load_policy_file(p)
    assert raw["risk_rules"] == [("write", "deny"), ("Simulate", "ask")]
    assert raw["pattern_rules"] == [("prefix:evm_get_", "deny"), ("re:^solana_", "allow")]

    policy = load_and_merge(p)
    assert policy.risk_rules == (("write", "deny"), ("Simulate", "ask"))
    assert policy.to_dict()["pattern_rules"] == {"prefix:evm_get_": "deny", "re:^solana_": "allow"}

    assert evaluate(ToolCall("wallet_send_transaction", {}), policy) == "deny"
    assert evaluate(ToolCall("sim_trace_call", {}), policy) == "ask"
    assert evaluate(ToolCall("evm_get_balance", {}), policy) == "deny"
    assert evaluate(ToolCall("solana_airdrop", {}), policy) == "allow"


def test_extra_rules_keep_earlier_subjects(tmp_path: Path):
    base = load_and_merge(_write(tmp_path, "risk_rules: {write: deny}\n"))
    merged = merged_policy({"extra_risk_rules": [("write", "allow"), ("read", "ask")]}, base=base)
    assert merged.risk_rules == (("write", "deny"), ("read", "ask"))

    replaced = merged_policy({"risk_rules": [("read", "deny")]}, base=base)
    assert replaced.risk_rules == (("read", "deny"),)


def test_rule_errors_have_codes(tmp_path: Path):
    cases = [
        "risk_rules: [write]\n",
        "risk_rules: {write: block}\n",
        "risk_rules: {admin: deny}\n",
        "pattern_rules: {wallet_: deny}\n",
        "pattern_rules: {'prefix:': deny}\n",
        "pattern_rules: {'re:(': deny}\n",
        "extra_pattern_rules: {'re:[a-': ask}\n",
    ]
    for text in cases:
        p = _write(tmp_path, text)
        try:
            load_policy_file(p)
            assert False, f"expected PolicyConfigError for {text!r}"
        except PolicyConfigError as e:
            assert e.code == "E_POLICY_INVALID", (text, e.code)
