from agentplane.core.patch.apply_patch import (
    FileEntry,
    apply_diff,
    apply_patch_to_content,
    apply_patches,
)
from agentplane.core.errors import PatchApplyError
from agentplane.core.patch.diff_parser import invert_patch, parse_unified_diff


def _twelve_lines() -> str:
    return "\n".join(f"l{i}" for i in range(1, 13))


def test_single_replacement_updates_copy_only():
    files = [FileEntry(path="/x.txt", content="old")]
    out = apply_diff("--- a/x.txt\n+++ b/x.txt\n@@ -1,1 +1,1 @@\n-old\n+new", files)

    assert out.success
    assert out.updated_files == [FileEntry(path="/x.txt", content="new")]
    assert [(r.path, r.status) for r in out.results] == [("/x.txt", "applied")]
    assert out.summary.to_dict() == {"filesChanged": 1, "linesAdded": 1, "linesRemoved": 1}
    assert out.snapshot is None
    # caller's list untouched
    assert files == [FileEntry(path="/x.txt", content="old")]


def test_hunks_are_applied_bottom_up():
    diff = (
        "--- a/f.txt\n+++ b/f.txt\n"
        "@@ -1,1 +1,2 @@\n-l1\n+A\n+B\n"
        "@@ -10,1 +11,1 @@\n-l10\n+X\n"
    )
    out = apply_diff(diff, [FileEntry(path="/f.txt", content=_twelve_lines())])
    assert out.success
    got = out.updated_files[0].content.split("\n")
    assert got == ["A", "B", "l2", "l3", "l4", "l5", "l6", "l7", "l8", "l9", "X", "l11", "l12"]


def test_top_down_replay_would_shift_later_hunks():
    first = parse_unified_diff("--- a/f\n+++ b/f\n@@ -1,1 +1,2 @@\n-l1\n+A\n+B")[0]
    second = parse_unified_diff("--- a/f\n+++ b/f\n@@ -10,1 +11,1 @@\n-l10\n+X")[0]

    content = apply_patch_to_content(_twelve_lines(), first)
    content = apply_patch_to_content(content, second)

    # line numbers of the second hunk now point one line too early
    assert content.split("\n")[9] == "X"
    assert "l10" in content.split("\n")
    assert "l9" not in content.split("\n")


def test_creation_from_dev_null():
    out = apply_diff("--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1,2 @@\n+a\n+b", [])
    assert out.success
    assert out.updated_files == [FileEntry(path="/new.txt", content="a\nb")]
    assert out.results[0].status == "created"
    assert out.summary.lines_added == 2


def test_creation_over_existing_file_replaces_it():
    files = [FileEntry(path="/new.txt", content="stale")]
    out = apply_diff("--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1,1 @@\n+fresh", files)
    assert out.success
    assert out.updated_files == [FileEntry(path="/new.txt", content="fresh")]


def test_batch_is_all_or_nothing():
    files = [FileEntry(path="/x.txt", content="old")]
    diff = (
        "--- a/x.txt\n+++ b/x.txt\n@@ -1,1 +1,1 @@\n-old\n+new\n"
        "--- a/missing.txt\n+++ b/missing.txt\n@@ -1,1 +1,1 @@\n-a\n+b\n"
    )
    out = apply_diff(diff, files)

    assert not out.success
    assert out.updated_files is None
    assert out.snapshot == files
    assert out.summary.to_dict() == {"filesChanged": 0, "linesAdded": 0, "linesRemoved": 0}
    failed = [r for r in out.results if r.status == "failed"]
    assert [(r.path, r.error) for r in failed] == [("/missing.txt", "File not found")]
    assert out.errors[0].code == "E_PATCH_FILE_NOT_FOUND"


def test_no_patches_reports_error():
    out = apply_diff("nothing to see", [FileEntry(path="/a", content="a")])
    assert not out.success
    assert out.error == "No valid patches found in diff"
    assert out.results == []
    assert out.snapshot == [FileEntry(path="/a", content="a")]


def test_forbidden_paths_reject_whole_batch():
    cases = [
        "--- a/.env\n+++ b/.env\n@@ -1 +1 @@\n-a\n+b",
        "--- a/../outside.txt\n+++ b/../outside.txt\n@@ -1 +1 @@\n-a\n+b",
        "--- a/.git/config\n+++ b/.git/config\n@@ -1 +1 @@\n-a\n+b",
        "--- a/node_modules/x/y.js\n+++ b/node_modules/x/y.js\n@@ -1 +1 @@\n-a\n+b",
        "--- /etc/passwd\n+++ /etc/passwd\n@@ -1 +1 @@\n-a\n+b",
        "--- /dev/null\n+++ b/.env.local\n@@ -0,0 +1 @@\n+SECRET=1",
    ]
    for diff in cases:
        out = apply_diff(diff, [FileEntry(path="/ok.txt", content="a")])
        assert not out.success, diff
        assert out.updated_files is None, diff
        assert out.results and all(r.status == "failed" for r in out.results), diff


def test_deletion_removes_entry():
    files = [FileEntry(path="/old.txt", content="a"), FileEntry(path="/keep.txt", content="k")]
    out = apply_diff("--- a/old.txt\n+++ /dev/null\n@@ -1,1 +0,0 @@\n-a", files)
    assert out.success
    assert out.updated_files == [FileEntry(path="/keep.txt", content="k")]
    assert out.results[0].status == "applied"
    assert out.summary.lines_removed == 1


def test_rename_moves_content_to_new_path():
    out = apply_diff(
        "--- a/old.txt\n+++ b/new.txt\n@@ -1,1 +1,1 @@\n-a\n+b",
        [FileEntry(path="/old.txt", content="a")],
    )
    assert out.success
    assert out.updated_files == [FileEntry(path="/new.txt", content="b")]
    assert out.results[0].path == "/new.txt"


def test_hunk_beyond_end_of_file_fails():
    out = apply_diff(
        "--- a/f.txt\n+++ b/f.txt\n@@ -5,1 +5,1 @@\n-x\n+y",
        [FileEntry(path="/f.txt", content="only")],
    )
    assert not out.success
    assert out.errors[0].code == "E_PATCH_HUNK_OUT_OF_RANGE"
    assert out.errors[0].path == "/f.txt"

    p = parse_unified_diff("--- a/f\n+++ b/f\n@@ -9,1 +9,1 @@\n-x\n+y")[0]
    try:
        apply_patch_to_content("a\nb", p, path="/f")
        assert False, "expected PatchApplyError"
    except PatchApplyError as e:
        assert e.code == "E_PATCH_HUNK_OUT_OF_RANGE"


def test_pure_insertion_goes_after_named_line():
    out = apply_diff(
        "--- a/f.txt\n+++ b/f.txt\n@@ -2,0 +3,1 @@\n+inserted",
        [FileEntry(path="/f.txt", content="a\nb\nc")],
    )
    assert out.success
    assert out.updated_files[0].content == "a\nb\ninserted\nc"


def test_inverted_patch_restores_original():
    original = "a\nb\nc"
    p = parse_unified_diff("--- a/f\n+++ b/f\n@@ -1,3 +1,3 @@\n a\n-b\n+B\n c")[0]
    changed = apply_patch_to_content(original, p)
    assert changed == "a\nB\nc"
    assert apply_patch_to_content(changed, invert_patch(p)) == original


def test_paths_without_leading_slash_are_matched():
    files = [FileEntry(path="x.txt", content="old")]
    out = apply_diff("--- a/x.txt\n+++ b/x.txt\n@@ -1 +1 @@\n-old\n+new", files)
    assert out.success
    assert out.updated_files == [FileEntry(path="x.txt", content="new")]


def test_outcome_to_dict_shapes():
    ok = apply_diff("--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b", [FileEntry(path="/x", content="a")]).to_dict()
    assert set(ok) == {"success", "results", "summary", "updatedFiles"}
    assert ok["updatedFiles"] == [{"path": "/x", "content": "b"}]

    bad = apply_diff("", [FileEntry(path="/x", content="a")]).to_dict()
    assert set(bad) == {"success", "results", "summary", "snapshot", "error"}


def test_file_entry_from_dict_validates():
    assert FileEntry.from_dict({"path": "/a", "content": "x"}) == FileEntry(path="/a", content="x")
    try:
        FileEntry.from_dict({"content": "x"})
        assert False, "expected ValueError"
    except ValueError:
        pass


def test_apply_patches_accepts_generator_input():
    patches = parse_unified_diff("--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b")
    out = apply_patches(patches, (f for f in [FileEntry(path="/x", content="a")]))
    assert out.success
    assert out.updated_files == [FileEntry(path="/x", content="b")]


def test_removing_a_markdown_rule_keeps_following_lines():
    files = [FileEntry(path="/r.md", content="title\n---\nbody")]
    out = apply_diff("--- a/r.md\n+++ b/r.md\n@@ -1,3 +1,2 @@\n title\n----\n body", files)
    assert out.success
    assert out.updated_files == [FileEntry(path="/r.md", content="title\nbody")]
    assert out.summary.to_dict() == {"filesChanged": 1, "linesAdded": 0, "linesRemoved": 1}
