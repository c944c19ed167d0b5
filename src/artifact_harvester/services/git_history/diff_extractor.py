"""
Per-commit change extraction.

Raw changes come from ``git diff-tree -r -z --raw`` with rename and copy
detection. The NUL-delimited record stream is parsed into FileChange rows:

    :<old mode> <new mode> <old id> <new id> <status>[score] NUL <path> NUL [<new path> NUL]

Combined (merge) records carry one leading colon per parent:

    ::<mode p1> <mode p2> <mode result> <id p1> <id p2> <id result> <statuses> NUL <path> NUL

Strategy per commit:
    - root commit: diff against the empty tree (``--root``)
    - one parent: diff against the parent
    - merge: combined diff; when that is empty, the union of the diffs against
      every parent with first-parent entries taking precedence; when that is
      empty too, zero changes are accepted

Independently of the reported changes, every commit also gets its
first-parent tree delta, which is what snapshot tracking applies.

Patch summaries come from a separate ``diff-tree -p`` render with very wide
context. Failing to produce them is logged and otherwise ignored.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ...errors import DiffComputationFailure, GitCallTimeout, GitCommandError
from ...utils.git_runner import GitRunner
from .models import NULL_OBJECT_ID, ChangeStatus, CommitInfo, FileChange, PatchSummary

logger = logging.getLogger(__name__)

NULL_MODE = "000000"
GITLINK_MODE = "160000"

STRATEGY_ROOT = "root"
STRATEGY_PARENT = "parent"
STRATEGY_COMBINED = "combined"
STRATEGY_PARENT_UNION = "parent-union"
STRATEGY_EMPTY = "empty"

_DIFF_OPTS = ["-r", "-z", "--raw", "--no-commit-id", "-M", "-C"]
_HUNK_HEADER = re.compile(r"^@@")


@dataclass
class DiffResult:
    """Reported changes of one commit plus its first-parent tree delta."""

    changes: List[FileChange]
    tree_delta: List[FileChange]
    strategy: str
    warnings: List[str] = field(default_factory=list)


def _none_if_null(object_id: str) -> Optional[str]:
    return None if not object_id or object_id == NULL_OBJECT_ID else object_id


def _none_if_null_mode(mode: str) -> Optional[str]:
    return None if not mode or mode == NULL_MODE else mode


def _decode_path(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def parse_raw_diff(output: bytes) -> List[FileChange]:
    """Parse ``diff-tree -z --raw`` output (single or combined) into changes.

    Raises:
        DiffComputationFailure: If a record carries an unknown status letter
    """
    tokens = output.split(b"\x00")
    changes: List[FileChange] = []
    i = 0
    while i < len(tokens):
        token = tokens[i].lstrip(b"\n")
        if not token.startswith(b":"):
            # commit id lines or trailing empties
            i += 1
            continue

        colons = len(token) - len(token.lstrip(b":"))
        meta = token[colons:].decode("ascii", errors="replace").split()

        if colons == 1:
            if len(meta) < 5 or i + 1 >= len(tokens):
                logger.warning(f"Malformed raw diff record: {token!r}")
                i += 1
                continue
            old_mode, new_mode, old_id, new_id, status_field = meta[:5]
            try:
                status = ChangeStatus.from_letter(status_field)
            except ValueError as e:
                raise DiffComputationFailure(
                    f"Cannot parse raw diff record {token!r}: {e}"
                ) from e
            score = int(status_field[1:]) if status_field[1:].isdigit() else None

            if status in (ChangeStatus.RENAMED, ChangeStatus.COPIED):
                previous_path = _decode_path(tokens[i + 1])
                path = _decode_path(tokens[i + 2]) if i + 2 < len(tokens) else ""
                i += 3
            else:
                previous_path = None
                path = _decode_path(tokens[i + 1])
                i += 2

            changes.append(
                FileChange(
                    path=path,
                    status=status,
                    blob_id=None
                    if status == ChangeStatus.DELETED
                    else _none_if_null(new_id),
                    previous_blob_id=_none_if_null(old_id),
                    mode=None
                    if status == ChangeStatus.DELETED
                    else _none_if_null_mode(new_mode),
                    previous_mode=_none_if_null_mode(old_mode),
                    previous_path=previous_path,
                    similarity=score,
                )
            )
        else:
            if i + 1 >= len(tokens):
                logger.warning(f"Combined diff record without path: {token!r}")
                break
            changes.append(_parse_combined_record(colons, meta, tokens[i + 1]))
            i += 2
    return changes


def _parse_combined_record(parents: int, meta: List[str], raw_path: bytes) -> FileChange:
    modes = meta[: parents + 1]
    ids = meta[parents + 1 : 2 * parents + 2]
    letters = meta[2 * parents + 2] if len(meta) > 2 * parents + 2 else ""

    parent_modes, result_mode = modes[:parents], modes[parents]
    parent_ids, result_id = ids[:parents], ids[parents]

    if result_mode == NULL_MODE:
        status = ChangeStatus.DELETED
    elif all(m == NULL_MODE for m in parent_modes):
        status = ChangeStatus.ADDED
    elif letters and all(ch == "T" for ch in letters):
        status = ChangeStatus.TYPE_CHANGED
    else:
        status = ChangeStatus.MODIFIED

    return FileChange(
        path=_decode_path(raw_path),
        status=status,
        blob_id=None if status == ChangeStatus.DELETED else _none_if_null(result_id),
        previous_blob_id=_none_if_null(parent_ids[0]) if parent_ids else None,
        mode=None if status == ChangeStatus.DELETED else _none_if_null_mode(result_mode),
        previous_mode=_none_if_null_mode(parent_modes[0]) if parent_modes else None,
    )


def _unquote_c_path(value: str) -> str:
    """Undo git's C-style quoting of a path (``"a/na\\303\\257ve"``)."""
    if not (len(value) >= 2 and value[0] == '"' and value[-1] == '"'):
        return value
    body = value[1:-1]
    out = bytearray()
    i = 0
    escapes = {"n": 10, "t": 9, '"': 34, "\\": 92, "a": 7, "b": 8, "f": 12, "r": 13, "v": 11}
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            octal = body[i + 1 : i + 4]
            if len(octal) == 3 and all(c in "01234567" for c in octal):
                out.append(int(octal, 8))
                i += 4
                continue
            out.append(escapes.get(nxt, ord(nxt)))
            i += 2
            continue
        out.extend(ch.encode("utf-8"))
        i += 1
    return out.decode("utf-8", errors="replace")


def _strip_prefix(value: str, prefix: str) -> Optional[str]:
    value = _unquote_c_path(value.rstrip("\t"))
    if value == "/dev/null":
        return None
    return value[len(prefix) :] if value.startswith(prefix) else value


def _header_path(header: str) -> Optional[str]:
    """Path from ``diff --git a/P b/P`` when both sides are equal."""
    rest = header[len("diff --git ") :]
    length = (len(rest) - 5) // 2
    if length <= 0:
        return None
    candidate = rest[2 : 2 + length]
    if rest == f"a/{candidate} b/{candidate}":
        return candidate
    return None


def parse_patch(text: str) -> Dict[str, PatchSummary]:
    """Split a unified diff into per-path summaries keyed by the new path.

    Deleted paths are keyed by their old path.
    """
    summaries: Dict[str, PatchSummary] = {}
    sections: List[List[str]] = []
    for line in text.split("\n"):
        if line.startswith("diff --git "):
            sections.append([line])
        elif sections:
            sections[-1].append(line)

    for lines in sections:
        old_path: Optional[str] = None
        new_path: Optional[str] = None
        summary = PatchSummary()
        in_hunk = False

        for line in lines[1:]:
            if not in_hunk:
                if _HUNK_HEADER.match(line):
                    in_hunk = True
                elif line.startswith("--- "):
                    old_path = _strip_prefix(line[4:], "a/")
                elif line.startswith("+++ "):
                    new_path = _strip_prefix(line[4:], "b/")
                elif line.startswith("rename to ") or line.startswith("copy to "):
                    new_path = _unquote_c_path(line.split(" to ", 1)[1])
                elif line.startswith("rename from ") or line.startswith("copy from "):
                    old_path = _unquote_c_path(line.split(" from ", 1)[1])
                elif line.startswith("Binary files ") or line == "GIT binary patch":
                    summary.binary = True
                continue
            if line.startswith("+"):
                summary.added += 1
            elif line.startswith("-"):
                summary.removed += 1

        path = new_path or old_path or _header_path(lines[0])
        if not path:
            logger.debug(f"Unable to determine path for patch section {lines[0]!r}")
            continue
        summary.patch = "\n".join(lines).rstrip("\n")
        summaries[path] = summary
    return summaries


class CommitDiffExtractor:
    """Computes changed paths and patch summaries of single commits."""

    def __init__(self, runner: GitRunner, context_lines: int = 100000):
        self.runner = runner
        self.context_lines = context_lines

    def extract(self, commit: CommitInfo, with_patches: bool = True) -> DiffResult:
        """Compute the change set of ``commit``.

        Raises:
            DiffComputationFailure: If no diff strategy could run at all
        """
        if commit.is_root:
            changes = self._diff_or_fail(commit, None, STRATEGY_ROOT)
            result = DiffResult(changes=changes, tree_delta=changes, strategy=STRATEGY_ROOT)
        elif not commit.is_merge:
            changes = self._diff_or_fail(commit, commit.parent_hashes[0], STRATEGY_PARENT)
            result = DiffResult(
                changes=changes, tree_delta=changes, strategy=STRATEGY_PARENT
            )
        else:
            result = self._extract_merge(commit)

        if with_patches and result.changes:
            self.attach_patches(commit, result.changes)
        return result

    def _diff_or_fail(
        self, commit: CommitInfo, parent: Optional[str], strategy: str
    ) -> List[FileChange]:
        try:
            return self.diff_against(commit.hash, parent)
        except (GitCommandError, GitCallTimeout) as e:
            raise DiffComputationFailure(
                f"{strategy} diff failed for {commit.short_hash}: {e}"
            ) from e

    def _extract_merge(self, commit: CommitInfo) -> DiffResult:
        warnings: List[str] = []
        parent_diffs: Dict[str, List[FileChange]] = {}

        def parent_diff(parent: str) -> Optional[List[FileChange]]:
            if parent not in parent_diffs:
                try:
                    parent_diffs[parent] = self.diff_against(commit.hash, parent)
                except (GitCommandError, GitCallTimeout) as e:
                    message = f"Diff of {commit.short_hash} against parent {parent[:7]} failed: {e}"
                    logger.warning(message)
                    warnings.append(message)
                    return None
            return parent_diffs[parent]

        first_parent = commit.parent_hashes[0]
        tree_delta = parent_diff(first_parent)
        if tree_delta is None:
            raise DiffComputationFailure(
                f"Cannot diff merge {commit.short_hash} against its first parent"
            )

        try:
            combined = self.combined_diff(commit.hash)
        except (GitCommandError, GitCallTimeout) as e:
            message = f"Combined diff failed for merge {commit.short_hash}: {e}"
            logger.warning(message)
            warnings.append(message)
            combined = []

        if combined:
            return DiffResult(
                changes=combined,
                tree_delta=tree_delta,
                strategy=STRATEGY_COMBINED,
                warnings=warnings,
            )

        logger.debug(
            f"Combined diff of merge {commit.short_hash} is empty, "
            "falling back to per-parent union"
        )
        union: Dict[str, FileChange] = {}
        for parent in commit.parent_hashes:
            for change in parent_diff(parent) or []:
                union.setdefault(change.path, change)

        if union:
            return DiffResult(
                changes=sorted(union.values(), key=lambda c: c.path),
                tree_delta=tree_delta,
                strategy=STRATEGY_PARENT_UNION,
                warnings=warnings,
            )

        logger.info(f"Merge {commit.short_hash} introduces no changes")
        return DiffResult(
            changes=[], tree_delta=tree_delta, strategy=STRATEGY_EMPTY, warnings=warnings
        )

    def diff_against(self, commit_hash: str, parent: Optional[str]) -> List[FileChange]:
        """Raw changes of ``commit_hash`` versus ``parent`` (empty tree if None)."""
        if parent is None:
            args = ["diff-tree", *_DIFF_OPTS, "--root", commit_hash]
        else:
            args = ["diff-tree", *_DIFF_OPTS, parent, commit_hash]
        return parse_raw_diff(self.runner.run(args))

    def combined_diff(self, commit_hash: str) -> List[FileChange]:
        """Paths of a merge that differ from every parent."""
        output = self.runner.run(
            ["diff-tree", "-r", "-z", "-c", "--raw", "--no-commit-id", commit_hash]
        )
        return parse_raw_diff(output)

    def attach_patches(self, commit: CommitInfo, changes: List[FileChange]) -> None:
        """Attach per-path patch summaries; failures only log a warning."""
        pending = {c.path for c in changes}
        parents: List[Optional[str]] = list(commit.parent_hashes) or [None]
        found: Dict[str, PatchSummary] = {}

        for parent in parents:
            if not pending:
                break
            try:
                text = self._patch_text(commit.hash, parent)
            except (GitCommandError, GitCallTimeout) as e:
                logger.warning(f"Patch extraction failed for {commit.short_hash}: {e}")
                continue
            for path, summary in parse_patch(text).items():
                if path in pending:
                    found[path] = summary
                    pending.discard(path)

        for change in changes:
            change.patch = found.get(change.path)

    def _patch_text(self, commit_hash: str, parent: Optional[str]) -> str:
        args = [
            "-c",
            "core.quotePath=false",
            "diff-tree",
            "-p",
            "-r",
            "-M",
            "-C",
            "--no-commit-id",
            "--no-color",
            f"--unified={self.context_lines}",
        ]
        if parent is None:
            args.extend(["--root", commit_hash])
        else:
            args.extend([parent, commit_hash])
        return self.runner.run_text(args)


def split_gitlinks(changes: List[FileChange]) -> Tuple[List[FileChange], List[FileChange]]:
    """Separate submodule entries (no readable blob) from regular paths."""
    regular, gitlinks = [], []
    for change in changes:
        if change.mode == GITLINK_MODE or (
            change.status == ChangeStatus.DELETED and change.previous_mode == GITLINK_MODE
        ):
            gitlinks.append(change)
        else:
            regular.append(change)
    return regular, gitlinks
