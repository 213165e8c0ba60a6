from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Optional

from agentplane.core.errors import DiffParseError, PatchApplyError, PathForbiddenError
from agentplane.core.patch.diff_parser import ParsedPatch, parse_unified_diff
from agentplane.core.patch.paths import forbidden_reason, normalize_path

logger = logging.getLogger("agentplane.patch")

ApplyStatus = Literal["applied", "created", "failed"]


@dataclass(frozen=True)
class FileEntry:
    path: str
    content: str

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "FileEntry":
        if not isinstance(obj, dict):
            raise ValueError("file entry must be an object")
        path = obj.get("path")
        content = obj.get("content", "")
        if not isinstance(path, str) or not path:
            raise ValueError("file entry path must be a non-empty string")
        if not isinstance(content, str):
            raise ValueError(f"file entry content must be a string: {path}")
        return cls(path=path, content=content)

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "content": self.content}


@dataclass(frozen=True)
class ApplyResult:
    path: str
    status: ApplyStatus
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"path": self.path, "status": self.status}
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class ApplySummary:
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "filesChanged": self.files_changed,
            "linesAdded": self.lines_added,
            "linesRemoved": self.lines_removed,
        }


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of one batch. `updated_files` and `snapshot` are mutually exclusive."""

    success: bool
    results: list[ApplyResult]
    summary: ApplySummary
    updated_files: Optional[list[FileEntry]] = None
    snapshot: Optional[list[FileEntry]] = None
    error: Optional[str] = None
    errors: list[PatchApplyError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
        }
        if self.updated_files is not None:
            d["updatedFiles"] = [f.to_dict() for f in self.updated_files]
        if self.snapshot is not None:
            d["snapshot"] = [f.to_dict() for f in self.snapshot]
        if self.error is not None:
            d["error"] = self.error
        return d


def build_new_file_content(patch: ParsedPatch) -> str:
    """Content of a created file: every `add` line across all hunks, in source order."""
    return "\n".join(ln.content for h in patch.hunks for ln in h.lines if ln.type == "add")


def apply_patch_to_content(content: str, patch: ParsedPatch, *, path: str = "") -> str:
    """Replay hunks against `content` by line number.

    Hunks are applied from the highest `old_start` down so that each splice leaves
    the line numbers of the hunks still to be applied untouched. Context lines are
    replayed verbatim; removed lines are dropped.
    """

    lines = content.split("\n")
    for hunk in sorted(patch.hunks, key=lambda h: h.old_start, reverse=True):
        if hunk.old_count == 0:
            # pure insertion: "@@ -N,0" inserts after line N
            start = hunk.old_start
        else:
            start = max(hunk.old_start - 1, 0)

        if start > len(lines):
            raise PatchApplyError(
                code="E_PATCH_HUNK_OUT_OF_RANGE",
                message=f"hunk {hunk.header()} starts beyond end of file ({len(lines)} lines)",
                path=path or None,
            )

        replacement = [ln.content for ln in hunk.lines if ln.type in ("add", "context")]
        lines[start : start + hunk.old_count] = replacement

    return "\n".join(lines)


def _index_of(files: list[FileEntry], path: str) -> int:
    target = normalize_path(path)
    for idx, f in enumerate(files):
        if f.path == path or normalize_path(f.path) == target:
            return idx
    return -1


def _check_paths(patches: Iterable[ParsedPatch]) -> list[PathForbiddenError]:
    errors: list[PathForbiddenError] = []
    for p in patches:
        for candidate in {p.old_file, p.new_file}:
            reason = forbidden_reason(candidate)
            if reason:
                errors.append(
                    PathForbiddenError(
                        code="E_PATH_FORBIDDEN",
                        message=f"refusing to touch {candidate}: {reason}",
                        path=normalize_path(candidate),
                    )
                )
    return errors


def apply_patches(patches: list[ParsedPatch], files: Iterable[FileEntry]) -> ApplyOutcome:
    """Apply a batch of parsed patches all-or-nothing.

    `files` is never mutated. On any failure the pre-batch snapshot is returned and
    the updated list is withheld.
    """

    snapshot = list(files)

    if not patches:
        err = DiffParseError(code="E_PATCH_NO_HUNKS", message="No valid patches found in diff")
        logger.info("apply rejected: %s", err.message)
        return ApplyOutcome(
            success=False, results=[], summary=ApplySummary(), snapshot=snapshot, error=err.message
        )

    forbidden = _check_paths(patches)
    if forbidden:
        for e in forbidden:
            logger.warning("apply rejected: %s", e)
        return ApplyOutcome(
            success=False,
            results=[ApplyResult(path=e.path or "", status="failed", error=e.message) for e in forbidden],
            summary=ApplySummary(),
            snapshot=snapshot,
            error=forbidden[0].message,
        )

    working = list(snapshot)
    results: list[ApplyResult] = []
    errors: list[PatchApplyError] = []
    added = 0
    removed = 0

    for patch in patches:
        if patch.is_creation:
            path = normalize_path(patch.new_file)
            content = build_new_file_content(patch)
            idx = _index_of(working, path)
            if idx == -1:
                working.append(FileEntry(path=path, content=content))
            else:
                working[idx] = FileEntry(path=working[idx].path, content=content)
            results.append(ApplyResult(path=path, status="created"))
            added += patch.lines_added
            continue

        old_path = normalize_path(patch.old_file)
        idx = _index_of(working, old_path)
        if idx == -1:
            errors.append(PatchApplyError(code="E_PATCH_FILE_NOT_FOUND", message="File not found", path=old_path))
            results.append(ApplyResult(path=old_path, status="failed", error="File not found"))
            continue

        if patch.is_deletion:
            del working[idx]
            results.append(ApplyResult(path=old_path, status="applied"))
            removed += patch.lines_removed
            continue

        new_path = normalize_path(patch.new_file)
        try:
            updated = apply_patch_to_content(working[idx].content, patch, path=old_path)
        except PatchApplyError as e:
            errors.append(e)
            results.append(ApplyResult(path=old_path, status="failed", error=e.message))
            continue

        keep_path = working[idx].path if new_path == old_path else new_path
        working[idx] = FileEntry(path=keep_path, content=updated)
        results.append(ApplyResult(path=new_path, status="applied"))
        added += patch.lines_added
        removed += patch.lines_removed

    if errors:
        logger.info("apply rolled back: %d of %d patches failed", len(errors), len(patches))
        return ApplyOutcome(
            success=False,
            results=results,
            summary=ApplySummary(),
            snapshot=snapshot,
            error=str(errors[0]),
            errors=errors,
        )

    summary = ApplySummary(files_changed=len(results), lines_added=added, lines_removed=removed)
    logger.debug(
        "apply ok: files=%d +%d -%d", summary.files_changed, summary.lines_added, summary.lines_removed
    )
    return ApplyOutcome(success=True, results=results, summary=summary, updated_files=working)


def apply_diff(diff_text: str, files: Iterable[FileEntry]) -> ApplyOutcome:
    """Parse `diff_text` and apply it to `files`. Never raises for patch-level problems."""
    return apply_patches(parse_unified_diff(diff_text or ""), files)
