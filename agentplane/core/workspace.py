from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from agentplane.core.patch.apply_patch import FileEntry
from agentplane.core.patch.paths import normalize_path

MAX_FILE_BYTES = 512_000


def _should_ignore(rel_path: str) -> bool:
    ignore_prefixes = (
        ".git/",
        ".venv/",
        "venv/",
        "node_modules/",
        ".idea/",
        "__pycache__/",
        ".pytest_cache/",
        ".tox/",
        ".cache/",
    )
    return rel_path.startswith(ignore_prefixes) or "/__pycache__/" in rel_path


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """A directory on disk viewed as the in-memory file set the patch applier works on."""

    root: Path

    def list_files(self) -> list[str]:
        out: list[str] = []
        for p in self.root.rglob("*"):
            if p.is_dir():
                continue
            rp = p.relative_to(self.root).as_posix()
            if _should_ignore(rp):
                continue
            out.append(rp)
        return sorted(out)

    def load_entries(self) -> list[FileEntry]:
        """Text files only; binary and oversized files are skipped."""
        entries: list[FileEntry] = []
        for rp in self.list_files():
            p = self.root / rp
            if p.stat().st_size > MAX_FILE_BYTES:
                continue
            try:
                content = p.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                continue
            entries.append(FileEntry(path=normalize_path(rp), content=content))
        return entries

    def commit(self, before: Iterable[FileEntry], after: Iterable[FileEntry]) -> dict[str, list[str]]:
        """Write `after` to disk and delete files present in `before` but not in `after`."""

        old = {normalize_path(f.path): f.content for f in before}
        new = {normalize_path(f.path): f.content for f in after}
        written: list[str] = []
        deleted: list[str] = []

        for path, content in sorted(new.items()):
            if old.get(path) == content:
                continue
            target = self.root / path.lstrip("/")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            written.append(path)

        for path in sorted(set(old) - set(new)):
            target = self.root / path.lstrip("/")
            if target.exists():
                target.unlink()
                deleted.append(path)

        return {"written": written, "deleted": deleted}
