from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from agentplane.core.errors import PolicyConfigError
from agentplane.core.policy.permissions import DEFAULT_PERMISSION_POLICY, RISK_SUBJECTS, PermissionPolicy

LIST_KEYS = ("allowed_tools", "denied_tools", "allowed_commands", "denied_commands")
RULE_KEYS = ("risk_rules", "pattern_rules")
EFFECTS = ("allow", "ask", "deny")


def _string_list(key: str, value: Any, source: str) -> list[str]:
    if not isinstance(value, list):
        raise PolicyConfigError(code="E_POLICY_INVALID", message=f"'{key}' must be a list of strings", path=source)
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise PolicyConfigError(
                code="E_POLICY_INVALID", message=f"'{key}' items must be non-empty strings", path=source
            )
        # command prefixes keep their trailing space ("sudo "), tool names are trimmed
        out.append(item if key.endswith("_commands") else item.strip())
    return out


def _check_subject(key: str, subject: str, source: str) -> None:
    if key.endswith("risk_rules"):
        if subject.lower() not in RISK_SUBJECTS:
            raise PolicyConfigError(
                code="E_POLICY_INVALID",
                message=f"'{key}' subject '{subject}' must be one of {sorted(RISK_SUBJECTS)}",
                path=source,
            )
        return
    if subject.startswith("prefix:") and len(subject) > len("prefix:"):
        return
    if subject.startswith("re:"):
        try:
            re.compile(subject[len("re:") :])
        except re.error as e:
            raise PolicyConfigError(code="E_POLICY_INVALID", message=f"'{key}' bad regex '{subject}': {e}", path=source) from e
        return
    raise PolicyConfigError(
        code="E_POLICY_INVALID", message=f"'{key}' subject '{subject}' must start with 'prefix:' or 're:'", path=source
    )


def _rule_list(key: str, value: Any, source: str) -> list[tuple[str, str]]:
    """Rules are a mapping of subject -> effect; YAML order is evaluation order."""
    if not isinstance(value, dict):
        raise PolicyConfigError(code="E_POLICY_INVALID", message=f"'{key}' must be a mapping of subject: effect", path=source)
    out: list[tuple[str, str]] = []
    for subject, effect in value.items():
        if not isinstance(subject, str) or not subject.strip():
            raise PolicyConfigError(code="E_POLICY_INVALID", message=f"'{key}' subjects must be non-empty strings", path=source)
        if effect not in EFFECTS:
            raise PolicyConfigError(
                code="E_POLICY_INVALID", message=f"'{key}' effect for '{subject}' must be allow, ask or deny", path=source
            )
        subject = subject.strip()
        _check_subject(key, subject, source)
        out.append((subject, effect))
    return out


def load_policy_file(path: str | Path) -> dict[str, list[Any]]:
    """Load policy overrides from YAML.

    Format:
      allowed_tools: [read_file, ...]          # replaces the default list
      extra_denied_commands: ["npm publish"]   # appended to the default list
      risk_rules: {write: deny}                # tier -> effect
      pattern_rules: {"prefix:wallet_": ask, "re:^sim_": allow}

    Returns a mapping of (possibly `extra_`-prefixed) key -> values; rule keys map
    to (subject, effect) pairs.
    """
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise PolicyConfigError(code="E_POLICY_READ", message=str(e), path=str(p)) from e
    except yaml.YAMLError as e:
        raise PolicyConfigError(code="E_POLICY_YAML", message=f"invalid YAML: {e}", path=str(p)) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise PolicyConfigError(code="E_POLICY_INVALID", message="policy file must be a mapping", path=str(p))

    keys = LIST_KEYS + RULE_KEYS
    known = set(keys) | {f"extra_{k}" for k in keys}
    out: dict[str, list[Any]] = {}
    for k, v in raw.items():
        if k not in known:
            raise PolicyConfigError(code="E_POLICY_UNKNOWN_KEY", message=f"unknown policy key '{k}'", path=str(p))
        if k.endswith("_rules"):
            out[k] = _rule_list(k, v, str(p))
        else:
            out[k] = _string_list(k, v, str(p))
    return out


def merged_policy(
    overrides: dict[str, list[Any]] | None = None,
    base: PermissionPolicy = DEFAULT_PERMISSION_POLICY,
) -> PermissionPolicy:
    """Return `base` with overrides applied.

    Plain keys replace the base list; `extra_` keys extend it (duplicates dropped).
    An `extra_` rule whose subject is already present leaves the earlier rule in place.
    """
    fields: dict[str, list[Any]] = {k: list(getattr(base, k)) for k in LIST_KEYS + RULE_KEYS}
    if overrides:
        for key in LIST_KEYS:
            if key in overrides:
                fields[key] = list(overrides[key])
            for item in overrides.get(f"extra_{key}", []):
                if item not in fields[key]:
                    fields[key].append(item)
        for key in RULE_KEYS:
            if key in overrides:
                fields[key] = [tuple(r) for r in overrides[key]]
            for subject, effect in overrides.get(f"extra_{key}", []):
                if subject not in {s for s, _ in fields[key]}:
                    fields[key].append((subject, effect))
    return PermissionPolicy(**{k: tuple(v) for k, v in fields.items()})


def load_and_merge(policy_file: str | Path | None) -> PermissionPolicy:
    if not policy_file:
        return merged_policy()
    return merged_policy(load_policy_file(policy_file))
