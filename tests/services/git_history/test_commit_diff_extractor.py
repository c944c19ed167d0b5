"""Tests for CommitDiffExtractor against real repositories and fake runners."""

from dataclasses import replace
from unittest.mock import Mock

import pytest

from artifact_harvester.errors import DiffComputationFailure, GitCallTimeout, GitCommandError
from artifact_harvester.services.git_history.commit_graph_walker import CommitGraphWalker
from artifact_harvester.services.git_history.diff_extractor import (
    STRATEGY_COMBINED,
    STRATEGY_EMPTY,
    STRATEGY_PARENT,
    STRATEGY_PARENT_UNION,
    STRATEGY_ROOT,
    CommitDiffExtractor,
)
from artifact_harvester.services.git_history.models import (
    ChangeStatus,
    CommitInfo,
    Signature,
)
from artifact_harvester.utils.git_runner import GitRunner


def read_commit(repo, commit_hash: str) -> CommitInfo:
    return CommitGraphWalker(GitRunner(repo.path)).read_commits([commit_hash])[commit_hash]


def extract(repo, commit_hash: str, with_patches: bool = True):
    extractor = CommitDiffExtractor(GitRunner(repo.path))
    return extractor.extract(read_commit(repo, commit_hash), with_patches=with_patches)


class TestSingleParentDiffs:
    def test_root_commit_diffs_against_empty_tree(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "alpha\n")
        repo.write("dir/b.txt", "beta\n")
        root = repo.commit("Initial")

        result = extract(repo, root)

        assert result.strategy == STRATEGY_ROOT
        assert sorted(c.path for c in result.changes) == ["a.txt", "dir/b.txt"]
        assert all(c.status == ChangeStatus.ADDED for c in result.changes)
        assert result.tree_delta == result.changes

    def test_modification_with_patch_summary(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "one\ntwo\n")
        repo.commit("Initial")
        repo.write("a.txt", "one\nthree\nfour\n")
        second = repo.commit("Change a")

        result = extract(repo, second)

        assert result.strategy == STRATEGY_PARENT
        [change] = result.changes
        assert change.status == ChangeStatus.MODIFIED
        assert change.blob_id == repo.blob_id("a.txt")
        assert change.patch is not None
        assert change.patch.added == 2
        assert change.patch.removed == 1
        assert "+three" in change.patch.patch

    def test_rename_integrity(self, git_repo):
        repo = git_repo()
        repo.write("old.txt", "same content\nacross the rename\n")
        repo.commit("Initial")
        repo.move("old.txt", "new.txt")
        renamed = repo.commit("Rename")

        [change] = extract(repo, renamed).changes

        assert change.status == ChangeStatus.RENAMED
        assert change.previous_path == "old.txt"
        assert change.path == "new.txt"
        assert change.similarity == 100

    def test_deletion(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "a\n")
        repo.write("b.txt", "b\n")
        repo.commit("Initial")
        repo.remove("b.txt")
        removed = repo.commit("Remove b")

        [change] = extract(repo, removed).changes

        assert change.status == ChangeStatus.DELETED
        assert change.path == "b.txt"
        assert not change.has_content

    def test_binary_file_is_flagged_not_diffed(self, git_repo):
        repo = git_repo()
        repo.write("img.bin", b"\x89PNG\x00\x01\x02\x03")
        added = repo.commit("Add binary")

        [change] = extract(repo, added).changes

        assert change.patch is not None
        assert change.patch.binary
        assert change.patch.added == 0


class TestMergeDiffs:
    @pytest.mark.parametrize(
        "feature_files,main_files",
        [
            (["x.txt", "y.txt"], ["z.txt"]),
            (["f1.txt", "f2.txt", "f3.txt"], ["m1.txt", "m2.txt"]),
            (["f1.txt", "f2.txt", "f3.txt", "f4.txt"], ["m1.txt", "m2.txt", "m3.txt", "m4.txt"]),
        ],
    )
    def test_clean_merge_reports_union_of_both_sides(self, git_repo, feature_files, main_files):
        repo = git_repo()
        repo.write("shared-a.txt", "base\n")
        repo.write("shared-b.txt", "base\n")
        repo.commit("Base")

        repo.checkout("feature", create=True)
        for name in feature_files:
            repo.write(name, f"feature {name}\n")
        repo.write("shared-a.txt", "changed on feature\n")
        repo.commit("Feature work")

        repo.checkout("main")
        for name in main_files:
            repo.write(name, f"main {name}\n")
        repo.write("shared-b.txt", "changed on main\n")
        repo.commit("Main work")
        merge = repo.merge("feature")

        result = extract(repo, merge)

        assert result.strategy == STRATEGY_PARENT_UNION
        expected = sorted(feature_files + main_files + ["shared-a.txt", "shared-b.txt"])
        assert [c.path for c in result.changes] == expected
        assert sorted(c.path for c in result.tree_delta) == sorted(
            feature_files + ["shared-a.txt"]
        )

    def test_conflict_resolution_uses_combined_diff(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "base\n")
        repo.commit("Base")
        repo.checkout("feature", create=True)
        repo.write("a.txt", "feature\n")
        repo.write("b.txt", "only on feature\n")
        repo.commit("Feature")
        repo.checkout("main")
        repo.write("a.txt", "main\n")
        repo.commit("Main")
        merge = repo.merge_with_conflict("feature", {"a.txt": "resolved\n"})

        result = extract(repo, merge)

        assert result.strategy == STRATEGY_COMBINED
        [change] = result.changes
        assert change.path == "a.txt"
        assert change.status == ChangeStatus.MODIFIED
        assert change.blob_id == repo.blob_id("a.txt")
        assert change.patch is not None
        assert sorted(c.path for c in result.tree_delta) == ["a.txt", "b.txt"]

    def test_merge_dropping_incoming_file_reports_union_deletion(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "a\n")
        repo.commit("Base")
        repo.checkout("feature", create=True)
        repo.write("b.txt", "b\n")
        repo.commit("Feature")
        repo.checkout("main")
        repo.git("merge", "--no-ff", "--no-commit", "feature")
        # Undo the incoming change so the merge tree equals the first parent
        repo.git("rm", "-f", "--quiet", "b.txt")
        repo.git("commit", "--quiet", "-m", "Empty merge")
        merge = repo.head()

        result = extract(repo, merge)

        assert result.strategy == STRATEGY_PARENT_UNION
        assert [(c.path, c.status) for c in result.changes] == [
            ("b.txt", ChangeStatus.DELETED)
        ]
        assert result.tree_delta == []


P1 = "1" * 40
P2 = "2" * 40
MERGE = "m" * 40


def merge_commit() -> CommitInfo:
    who = Signature(name="T", email="t@t", date="2024-01-01T00:00:00+00:00")
    return CommitInfo(
        hash=MERGE,
        tree_hash="t" * 40,
        parent_hashes=(P1, P2),
        author=who,
        committer=who,
        message="Merge",
    )


def raw_added(path: str) -> bytes:
    return f":000000 100644 {'0' * 40} {'a' * 40} A".encode() + b"\x00" + path.encode() + b"\x00"


class TestMergeFallbackChain:
    """Fallback order with a fake runner: combined, per-parent union, empty."""

    def make_runner(self, combined=b"", per_parent=None, failing=()):
        per_parent = per_parent or {}

        def run(args, timeout=None, input=None):
            if "-c" in args:
                if "combined" in failing:
                    raise GitCommandError(["git", *args], 128, "combined broke")
                return combined
            parent = args[-2]
            if parent in failing:
                raise GitCommandError(["git", *args], 128, "diff broke")
            return per_parent.get(parent, b"")

        runner = Mock(spec=GitRunner)
        runner.run.side_effect = run
        return runner

    def test_failed_combined_diff_falls_back_to_union(self):
        runner = self.make_runner(
            per_parent={P1: raw_added("from-feature.txt"), P2: raw_added("from-main.txt")},
            failing=("combined",),
        )

        result = CommitDiffExtractor(runner).extract(merge_commit(), with_patches=False)

        assert result.strategy == STRATEGY_PARENT_UNION
        assert [c.path for c in result.changes] == ["from-feature.txt", "from-main.txt"]
        assert len(result.warnings) == 1

    def test_first_parent_entries_take_precedence(self):
        runner = self.make_runner(
            per_parent={P1: raw_added("same.txt"), P2: raw_added("same.txt")},
        )

        result = CommitDiffExtractor(runner).extract(merge_commit(), with_patches=False)

        [change] = result.changes
        assert change is result.tree_delta[0]

    def test_everything_empty_yields_no_changes(self):
        runner = self.make_runner()

        result = CommitDiffExtractor(runner).extract(merge_commit(), with_patches=False)

        assert result.strategy == STRATEGY_EMPTY
        assert result.changes == []

    def test_first_parent_failure_is_a_diff_failure(self):
        runner = self.make_runner(failing=(P1,))

        with pytest.raises(DiffComputationFailure):
            CommitDiffExtractor(runner).extract(merge_commit(), with_patches=False)

    def test_second_parent_failure_is_only_a_warning(self):
        runner = self.make_runner(per_parent={P1: raw_added("a.txt")}, failing=(P2,))

        result = CommitDiffExtractor(runner).extract(merge_commit(), with_patches=False)

        assert [c.path for c in result.changes] == ["a.txt"]
        assert result.warnings

    def test_patch_failure_leaves_changes_without_patch(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "a\n")
        root = repo.commit("Initial")
        commit = read_commit(repo, root)
        runner = GitRunner(repo.path)
        extractor = CommitDiffExtractor(runner)
        extractor._patch_text = Mock(side_effect=GitCommandError(["git"], 1, "nope"))

        result = extractor.extract(commit)

        assert [c.path for c in result.changes] == ["a.txt"]
        assert result.changes[0].patch is None

    def test_timed_out_patch_leaves_changes_without_patch(self, git_repo):
        repo = git_repo()
        repo.write("a.txt", "a\n")
        root = repo.commit("Initial")
        commit = read_commit(repo, root)
        extractor = CommitDiffExtractor(GitRunner(repo.path))
        extractor._patch_text = Mock(side_effect=GitCallTimeout("diff-tree timed out"))

        result = extractor.extract(commit)

        assert [c.path for c in result.changes] == ["a.txt"]
        assert result.changes[0].patch is None

    def test_timed_out_first_parent_diff_is_a_diff_failure(self):
        runner = Mock(spec=GitRunner)
        runner.run.side_effect = GitCallTimeout("diff-tree timed out")

        with pytest.raises(DiffComputationFailure):
            CommitDiffExtractor(runner).extract(merge_commit(), with_patches=False)

    def test_unknown_status_letter_is_a_diff_failure(self):
        runner = Mock(spec=GitRunner)
        runner.run.return_value = (
            f":100644 100644 {'a' * 40} {'b' * 40} X".encode() + b"\x00a.txt\x00"
        )
        commit = replace(merge_commit(), parent_hashes=(P1,))

        with pytest.raises(DiffComputationFailure):
            CommitDiffExtractor(runner).extract(commit, with_patches=False)
