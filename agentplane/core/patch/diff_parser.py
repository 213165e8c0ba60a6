from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Optional

LineType = Literal["context", "add", "remove"]

DEV_NULL = "/dev/null"

HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_OLD_FILE_RE = re.compile(r"^---\s+(a/)?")
_NEW_FILE_RE = re.compile(r"^\+\+\+\s+(b/)?")
_DIFF_FENCE_RE = re.compile(r"```diff\n([\s\S]*?)```")
_ANY_FENCE_RE = re.compile(r"```(?:\w+)?\n([\s\S]*?)```")


@dataclass(frozen=True)
class DiffLine:
    type: LineType
    content: str


@dataclass(frozen=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: tuple[DiffLine, ...] = ()

    @property
    def added(self) -> int:
        return sum(1 for ln in self.lines if ln.type == "add")

    @property
    def removed(self) -> int:
        return sum(1 for ln in self.lines if ln.type == "remove")

    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@"


@dataclass(frozen=True)
class ParsedPatch:
    """One file's worth of hunks. `old_file == /dev/null` marks creation."""

    old_file: str
    new_file: str
    hunks: tuple[Hunk, ...] = field(default_factory=tuple)

    @property
    def is_creation(self) -> bool:
        return self.old_file == DEV_NULL

    @property
    def is_deletion(self) -> bool:
        return self.new_file == DEV_NULL and self.old_file != DEV_NULL

    @property
    def lines_added(self) -> int:
        return sum(h.added for h in self.hunks)

    @property
    def lines_removed(self) -> int:
        return sum(h.removed for h in self.hunks)


def _strip_file_header(line: str, pattern: re.Pattern[str]) -> str:
    path = pattern.sub("", line, count=1)
    # git may append a tab-separated timestamp
    return path.split("\t", 1)[0].strip()


def _trim_trailing_blank_context(lines: list[DiffLine], old_count: int) -> None:
    """Drop empty context lines beyond the declared old-side count.

    A diff that ends with a newline splits into a trailing "" which would otherwise
    be replayed as an extra blank line.
    """

    def old_side() -> int:
        return sum(1 for ln in lines if ln.type != "add")

    while lines and lines[-1].type == "context" and lines[-1].content == "" and old_side() > old_count:
        lines.pop()


def _is_file_header(lines: list[str], i: int) -> bool:
    """`---` starts the next file only when `+++` follows; otherwise it is a removed `--` line."""
    return lines[i].startswith("---") and i + 1 < len(lines) and lines[i + 1].startswith("+++")


def parse_unified_diff(raw: str) -> list[ParsedPatch]:
    """Parse unified-diff text into per-file patches.

    Tolerant: malformed `@@` headers and surrounding noise are skipped. Patches
    without any hunk are dropped, so an empty result means nothing usable was found.
    """

    patches: list[ParsedPatch] = []
    lines = raw.split("\n")
    i = 0

    while i < len(lines):
        if not lines[i].startswith("---"):
            i += 1
            continue

        old_file = _strip_file_header(lines[i], _OLD_FILE_RE)
        i += 1
        if i >= len(lines) or not lines[i].startswith("+++"):
            continue
        new_file = _strip_file_header(lines[i], _NEW_FILE_RE)
        i += 1

        hunks: list[Hunk] = []
        while i < len(lines) and not _is_file_header(lines, i):
            if not lines[i].startswith("@@"):
                i += 1
                continue

            m = HUNK_HEADER_RE.match(lines[i])
            i += 1
            if not m:
                continue

            old_count = int(m.group(2) if m.group(2) is not None else 1)
            body: list[DiffLine] = []
            while i < len(lines) and not lines[i].startswith("@@") and not _is_file_header(lines, i):
                line = lines[i]
                if line.startswith("+"):
                    body.append(DiffLine("add", line[1:]))
                elif line.startswith("-"):
                    body.append(DiffLine("remove", line[1:]))
                elif line.startswith(" ") or line == "":
                    body.append(DiffLine("context", line[1:] if line.startswith(" ") else line))
                elif line.startswith("\\"):
                    # "\ No newline at end of file"
                    pass
                else:
                    break
                i += 1

            _trim_trailing_blank_context(body, old_count)
            hunks.append(
                Hunk(
                    old_start=int(m.group(1)),
                    old_count=old_count,
                    new_start=int(m.group(3)),
                    new_count=int(m.group(4) if m.group(4) is not None else 1),
                    lines=tuple(body),
                )
            )

        if hunks:
            patches.append(ParsedPatch(old_file=old_file, new_file=new_file, hunks=tuple(hunks)))

    return patches


def invert_patch(patch: ParsedPatch) -> ParsedPatch:
    """Return the patch that undoes `patch`: add/remove swapped, ranges swapped."""

    swap = {"add": "remove", "remove": "add", "context": "context"}
    hunks = tuple(
        Hunk(
            old_start=h.new_start,
            old_count=h.new_count,
            new_start=h.old_start,
            new_count=h.old_count,
            lines=tuple(DiffLine(swap[ln.type], ln.content) for ln in h.lines),  # type: ignore[arg-type]
        )
        for h in patch.hunks
    )
    return ParsedPatch(old_file=patch.new_file, new_file=patch.old_file, hunks=hunks)


def render_patch(patch: ParsedPatch) -> str:
    prefix = {"add": "+", "remove": "-", "context": " "}
    old = patch.old_file if patch.old_file == DEV_NULL else f"a/{patch.old_file.lstrip('/')}"
    new = patch.new_file if patch.new_file == DEV_NULL else f"b/{patch.new_file.lstrip('/')}"
    out = [f"--- {old}", f"+++ {new}"]
    for h in patch.hunks:
        out.append(h.header())
        out.extend(prefix[ln.type] + ln.content for ln in h.lines)
    return "\n".join(out)


def extract_diff_from_message(message: str) -> Optional[str]:
    """Pull a unified diff out of free-form assistant text, if one is present."""

    m = _DIFF_FENCE_RE.search(message)
    if m:
        return m.group(1).strip()

    for block in _ANY_FENCE_RE.findall(message):
        inner = block.strip()
        if "--- " in inner and "+++ " in inner and "@@ " in inner:
            return inner

    return None


def unwrap_diff(text: str) -> str:
    """Diff text with any surrounding code fence removed; plain diffs pass through."""
    if "```" not in text:
        return text
    return extract_diff_from_message(text) or text


def reverse_diff(raw: str) -> str:
    """Render the diff that undoes every file patch in `raw`."""
    return "\n".join(render_patch(invert_patch(p)) for p in parse_unified_diff(raw))
