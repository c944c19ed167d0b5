"""Tests for raw diff and patch parsing against captured byte fixtures."""

import pytest

from artifact_harvester.errors import DiffComputationFailure
from artifact_harvester.services.git_history.diff_extractor import (
    _unquote_c_path,
    parse_patch,
    parse_raw_diff,
    split_gitlinks,
)
from artifact_harvester.services.git_history.models import ChangeStatus, FileChange

A = "a" * 40
B = "b" * 40
C = "c" * 40
Z = "0" * 40


def record(meta: str, *paths: str) -> bytes:
    return b"\x00".join([meta.encode("ascii"), *(p.encode("utf-8") for p in paths)]) + b"\x00"


class TestParseRawDiff:
    """Single-parent records: one leading colon."""

    def test_status_letters_map_to_change_statuses(self):
        output = (
            record(f":000000 100644 {Z} {A} A", "new.txt")
            + record(f":100644 100644 {A} {B} M", "mod.txt")
            + record(f":100644 000000 {B} {Z} D", "gone.txt")
            + record(f":100644 120000 {A} {B} T", "link")
        )

        changes = parse_raw_diff(output)

        assert [(c.path, c.status) for c in changes] == [
            ("new.txt", ChangeStatus.ADDED),
            ("mod.txt", ChangeStatus.MODIFIED),
            ("gone.txt", ChangeStatus.DELETED),
            ("link", ChangeStatus.TYPE_CHANGED),
        ]

    def test_added_file_has_no_previous_side(self):
        change = parse_raw_diff(record(f":000000 100644 {Z} {A} A", "new.txt"))[0]

        assert change.blob_id == A
        assert change.mode == "100644"
        assert change.previous_blob_id is None
        assert change.previous_mode is None
        assert change.has_content

    def test_deleted_file_keeps_only_previous_side(self):
        change = parse_raw_diff(record(f":100644 000000 {B} {Z} D", "gone.txt"))[0]

        assert change.blob_id is None
        assert change.mode is None
        assert change.previous_blob_id == B
        assert change.previous_mode == "100644"
        assert not change.has_content

    def test_rename_carries_previous_path_and_score(self):
        change = parse_raw_diff(
            record(f":100644 100644 {A} {A} R100", "old name.txt", "new name.txt")
        )[0]

        assert change.status == ChangeStatus.RENAMED
        assert change.previous_path == "old name.txt"
        assert change.path == "new name.txt"
        assert change.similarity == 100

    def test_copy_followed_by_more_records(self):
        output = record(f":100644 100644 {A} {B} C075", "src.txt", "copy.txt") + record(
            f":100644 100644 {A} {B} M", "after.txt"
        )

        changes = parse_raw_diff(output)

        assert len(changes) == 2
        assert changes[0].status == ChangeStatus.COPIED
        assert changes[0].previous_path == "src.txt"
        assert changes[0].path == "copy.txt"
        assert changes[0].similarity == 75
        assert changes[1].path == "after.txt"

    def test_utf8_paths_are_decoded(self):
        change = parse_raw_diff(record(f":000000 100644 {Z} {A} A", "docs/naïve.md"))[0]

        assert change.path == "docs/naïve.md"

    def test_empty_output_yields_no_changes(self):
        assert parse_raw_diff(b"") == []

    def test_unknown_status_letter_is_a_diff_failure(self):
        output = record(f":100644 100644 {A} {B} X", "a.txt")

        with pytest.raises(DiffComputationFailure, match="Cannot parse"):
            parse_raw_diff(output)


class TestParseCombinedDiff:
    """Merge records: one leading colon per parent."""

    def test_modified_in_merge(self):
        output = record(f"::100644 100644 100644 {A} {B} {C} MM", "both.txt")

        change = parse_raw_diff(output)[0]

        assert change.status == ChangeStatus.MODIFIED
        assert change.path == "both.txt"
        assert change.blob_id == C
        assert change.previous_blob_id == A

    def test_added_by_merge(self):
        output = record(f"::000000 000000 100644 {Z} {Z} {C} AA", "added.txt")

        change = parse_raw_diff(output)[0]

        assert change.status == ChangeStatus.ADDED
        assert change.blob_id == C

    def test_deleted_by_merge(self):
        output = record(f"::100644 100644 000000 {A} {B} {Z} DD", "dropped.txt")

        change = parse_raw_diff(output)[0]

        assert change.status == ChangeStatus.DELETED
        assert change.blob_id is None
        assert not change.has_content


PATCH_TEXT = "\n".join(
    [
        "diff --git a/a.txt b/a.txt",
        "index e69de29..abcdef0 100644",
        "--- a/a.txt",
        "+++ b/a.txt",
        "@@ -1,2 +1,3 @@",
        " keep",
        "-old",
        "+new",
        "+extra",
        "diff --git a/img.bin b/img.bin",
        "new file mode 100644",
        "index 0000000..1234567",
        "Binary files /dev/null and b/img.bin differ",
        "diff --git a/old.txt b/new.txt",
        "similarity index 100%",
        "rename from old.txt",
        "rename to new.txt",
        "diff --git a/gone.txt b/gone.txt",
        "deleted file mode 100644",
        "index abcdef0..0000000",
        "--- a/gone.txt",
        "+++ /dev/null",
        "@@ -1 +0,0 @@",
        "-bye",
        "",
    ]
)


class TestParsePatch:
    def test_line_counts_per_path(self):
        summaries = parse_patch(PATCH_TEXT)

        assert summaries["a.txt"].added == 2
        assert summaries["a.txt"].removed == 1
        assert summaries["a.txt"].patch.startswith("diff --git a/a.txt b/a.txt")
        assert not summaries["a.txt"].binary

    def test_binary_files_are_flagged(self):
        summary = parse_patch(PATCH_TEXT)["img.bin"]

        assert summary.binary
        assert summary.added == 0
        assert summary.removed == 0

    def test_pure_rename_is_keyed_by_new_path(self):
        summaries = parse_patch(PATCH_TEXT)

        assert "new.txt" in summaries
        assert "old.txt" not in summaries
        assert summaries["new.txt"].added == 0

    def test_deletion_is_keyed_by_old_path(self):
        summary = parse_patch(PATCH_TEXT)["gone.txt"]

        assert summary.removed == 1
        assert summary.added == 0

    def test_removed_line_that_looks_like_a_header(self):
        text = "\n".join(
            [
                "diff --git a/notes.md b/notes.md",
                "--- a/notes.md",
                "+++ b/notes.md",
                "@@ -1,2 +1 @@",
                "--- a divider",
                " body",
            ]
        )

        summary = parse_patch(text)["notes.md"]

        assert summary.removed == 1
        assert summary.added == 0

    def test_quoted_paths(self):
        text = "\n".join(
            [
                'diff --git "a/na\\303\\257ve.txt" "b/na\\303\\257ve.txt"',
                '--- "a/na\\303\\257ve.txt"',
                '+++ "b/na\\303\\257ve.txt"',
                "@@ -1 +1 @@",
                "-a",
                "+b",
            ]
        )

        assert "naïve.txt" in parse_patch(text)


class TestHelpers:
    def test_unquote_c_path(self):
        assert _unquote_c_path('"tab\\there"') == "tab\there"
        assert _unquote_c_path('"quote\\"d"') == 'quote"d'
        assert _unquote_c_path('"na\\303\\257ve"') == "naïve"
        assert _unquote_c_path("plain.txt") == "plain.txt"

    def test_split_gitlinks(self):
        regular = FileChange(path="a.txt", status=ChangeStatus.ADDED, blob_id=A, mode="100644")
        submodule = FileChange(path="vendor/lib", status=ChangeStatus.ADDED, blob_id=B, mode="160000")
        removed_submodule = FileChange(
            path="old/lib", status=ChangeStatus.DELETED, previous_blob_id=C, previous_mode="160000"
        )

        kept, gitlinks = split_gitlinks([regular, submodule, removed_submodule])

        assert kept == [regular]
        assert gitlinks == [submodule, removed_submodule]
