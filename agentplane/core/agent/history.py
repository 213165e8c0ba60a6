from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Literal, Optional, Sequence

from agentplane.core.patch.apply_patch import FileEntry

Role = Literal["system", "user", "assistant"]

MAX_CONTEXT_FILES = 20
MAX_FILE_CONTEXT_CHARS = 100_000
MAX_HISTORY_PAIRS = 10
HISTORY_TRUNCATED_MARKER = "[Earlier conversation history truncated for context management]"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "Message":
        role = obj.get("role")
        if role not in ("system", "user", "assistant"):
            raise ValueError(f"unsupported message role: {role!r}")
        content = obj.get("content") or ""
        return cls(role=role, content=str(content))


class ConversationLog:
    """Append-only record of user/assistant turns for one run."""

    def __init__(self, initial: Iterable[Message] = ()) -> None:
        self._entries: list[Message] = list(initial)

    def append(self, role: Role, content: str) -> Message:
        msg = Message(role=role, content=content)
        self._entries.append(msg)
        return msg

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._entries)


def render_file_context(
    files: Sequence[FileEntry],
    *,
    max_files: int = MAX_CONTEXT_FILES,
    max_chars: int = MAX_FILE_CONTEXT_CHARS,
) -> str:
    parts: list[str] = []
    used = 0
    selected = list(files)[:max_files]
    for f in selected:
        part = f"--- {f.path} ---\n{f.content}"
        if used + len(part) > max_chars:
            omitted = len(files) - len(parts)
            parts.append(f"[...truncated: {omitted} more files omitted to stay within context limits]")
            break
        parts.append(part)
        used += len(part)
    else:
        if len(files) > max_files:
            parts.append(f"[...truncated: {len(files) - max_files} more files omitted to stay within context limits]")
    return "\n\n".join(parts)


def goal_message(goal: str, file_context: str) -> Message:
    return Message(role="user", content=f"GOAL: {goal}\n\nPROJECT FILES:\n{file_context}")


def build_messages(
    system_prompts: Sequence[str],
    goal: Message,
    turns: Iterable[Message],
    *,
    max_pairs: Optional[int] = MAX_HISTORY_PAIRS,
) -> list[dict[str, str]]:
    """Pure reducer from conversation state to the next model prompt.

    System prompts and the goal message are always kept; the exchange that follows
    is windowed to the last `max_pairs` user/assistant pairs behind a marker.
    """

    all_turns = list(turns)
    rest = [m for m in all_turns if m.role != "system"]
    extra_system = [m for m in all_turns if m.role == "system"]

    out: list[dict[str, str]] = [{"role": "system", "content": p} for p in system_prompts]
    out.extend(m.to_dict() for m in extra_system)
    out.append(goal.to_dict())

    if max_pairs is not None and len(rest) > max_pairs * 2:
        rest = rest[-max_pairs * 2 :]
        out.append({"role": "user", "content": HISTORY_TRUNCATED_MARKER})
    out.extend(m.to_dict() for m in rest)
    return out
