"""
Running "path -> last-known file reference" state across the commit stream.

Each commit's snapshot is derived from its first parent's snapshot plus the
first-parent tree delta, so the map after processing a commit is exactly the
tree of that commit regardless of which branch was walked before it.

Only snapshots that still have unprocessed children in the current run are
kept in memory. When a parent has a single pending child its map is handed
over instead of copied, so a linear history never copies the map at all.
Snapshots of commits harvested by an earlier run are loaded on demand
through ``loader``.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import ChangeStatus, CommitInfo, FileChange, SnapshotEntry

logger = logging.getLogger(__name__)

Snapshot = Dict[str, SnapshotEntry]
SnapshotLoader = Callable[[str], Optional[List[Dict]]]


def entries_from_payload(payload: Iterable[Dict]) -> Snapshot:
    """Rebuild a snapshot map from a stored commit payload's snapshot list."""
    snapshot: Snapshot = {}
    for item in payload:
        snapshot[item["path"]] = SnapshotEntry(
            path=item["path"],
            blob_id=item["blobId"],
            mode=item.get("mode"),
            size=item.get("size"),
            file_external_id=item["fileExternalId"],
            commit_hash=item["commitHash"],
        )
    return snapshot


class SnapshotStateTracker:
    """Single-writer owner of the per-commit snapshot maps of one run."""

    def __init__(self, loader: Optional[SnapshotLoader] = None):
        self.loader = loader
        self._snapshots: Dict[str, Snapshot] = {}
        self._pending_children: Dict[str, int] = {}
        self._loaded: Dict[str, Optional[Snapshot]] = {}
        self.current: Snapshot = {}
        self.current_commit: Optional[str] = None

    def plan(self, commits: Iterable[CommitInfo]) -> None:
        """Register the commits of this run so snapshots can be evicted early."""
        for commit in commits:
            for parent in commit.parent_hashes:
                self._pending_children[parent] = self._pending_children.get(parent, 0) + 1

    def snapshot_of(self, commit_hash: str) -> Optional[Snapshot]:
        """Snapshot of a commit from this run or, failing that, a stored one."""
        if commit_hash in self._snapshots:
            return self._snapshots[commit_hash]
        if commit_hash not in self._loaded:
            payload = self.loader(commit_hash) if self.loader else None
            self._loaded[commit_hash] = (
                entries_from_payload(payload) if payload is not None else None
            )
        return self._loaded[commit_hash]

    def base_of(self, commit: CommitInfo) -> Optional[Snapshot]:
        """Starting snapshot of ``commit``: empty for roots, None if unavailable."""
        if commit.is_root:
            return {}
        return self.snapshot_of(commit.parent_hashes[0])

    def inherit(
        self, commit: CommitInfo, tree_delta: List[FileChange], reported: Iterable[str]
    ) -> Tuple[Snapshot, List[FileChange]]:
        """Resolve delta paths that ``commit`` does not report itself.

        A merge can take a file unchanged from a second parent; the entry is
        then reused from that parent's snapshot. Paths no parent can account
        for are returned so the caller reports them as regular changes.
        """
        reported_paths = set(reported)
        inherited: Snapshot = {}
        unresolved: List[FileChange] = []
        for change in tree_delta:
            if change.path in reported_paths or not change.has_content:
                continue
            entry = self._find_in_other_parents(commit, change)
            if entry is not None:
                inherited[change.path] = entry
            else:
                unresolved.append(change)
        return inherited, unresolved

    def _find_in_other_parents(
        self, commit: CommitInfo, change: FileChange
    ) -> Optional[SnapshotEntry]:
        for parent in commit.parent_hashes[1:]:
            snapshot = self.snapshot_of(parent) or {}
            entry = snapshot.get(change.path)
            if entry is not None and entry.blob_id == change.blob_id:
                return entry
        return None

    def advance(
        self,
        commit: CommitInfo,
        tree_delta: List[FileChange],
        entries: Snapshot,
    ) -> Snapshot:
        """Apply ``commit``'s first-parent delta and make it the current snapshot.

        Args:
            commit: The commit being processed
            tree_delta: First-parent changes, gitlinks excluded
            entries: New entry for every added or modified delta path

        Returns:
            The snapshot of ``commit``
        """
        snapshot = self._take_base(commit)
        for change in tree_delta:
            if change.status == ChangeStatus.DELETED:
                snapshot.pop(change.path, None)
                continue
            if change.status == ChangeStatus.RENAMED and change.previous_path:
                snapshot.pop(change.previous_path, None)
            entry = entries.get(change.path)
            if entry is None:
                logger.warning(
                    f"No file reference for {change.path} in {commit.short_hash}"
                )
                continue
            snapshot[change.path] = entry

        if self._pending_children.get(commit.hash):
            self._snapshots[commit.hash] = snapshot
        self._release_parents(commit)
        self.current = snapshot
        self.current_commit = commit.hash
        return snapshot

    def discard(self, commit: CommitInfo) -> None:
        """Drop a commit that will not be processed in this run."""
        self._pending_children.pop(commit.hash, None)
        self._snapshots.pop(commit.hash, None)
        self._release_parents(commit)

    def _take_base(self, commit: CommitInfo) -> Snapshot:
        if commit.is_root:
            return {}
        first = commit.parent_hashes[0]
        if first in self._snapshots and self._pending_children.get(first) == 1:
            self._pending_children.pop(first)
            return self._snapshots.pop(first)
        return dict(self.snapshot_of(first) or {})

    def _release_parents(self, commit: CommitInfo) -> None:
        for parent in commit.parent_hashes:
            remaining = self._pending_children.get(parent)
            if remaining is None:
                continue
            if remaining <= 1:
                self._pending_children.pop(parent)
                self._snapshots.pop(parent, None)
            else:
                self._pending_children[parent] = remaining - 1

    @property
    def retained(self) -> int:
        """Number of snapshots currently held in memory."""
        return len(self._snapshots)
