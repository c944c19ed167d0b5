"""
Git history harvester.

Drives one harvest of one git source:

    stage clone -> resolve branches -> walk commits -> drop harvested commits
    -> per commit, oldest first: diff -> read blobs -> advance snapshot
    -> normalize -> emit

Records are emitted in batches through the ``emit_batch`` callback. Within a
commit, file records precede the commit record, so a stored commit record
(what the resume filter looks for) implies its files are stored too.

A commit whose diff or blobs cannot be produced is skipped together with its
descendants in this run; unrelated commits continue. The next run retries
them because no commit record was written.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from ...config import GitSourceOptions, HarvestConfig, Source
from ...errors import (
    BlobReadFailure,
    DiffComputationFailure,
    GitCallTimeout,
    HarvestCancelled,
    HarvestTimeout,
    SourceConfigurationError,
)
from ...storage.artifact_store import ArtifactStore
from ...storage.models import NormalizedArtifact
from ...utils.git_runner import Deadline, GitRunner
from .artifact_normalizer import ArtifactNormalizer
from .branch_resolver import BranchResolver
from .commit_graph_walker import CommitGraphWalker
from .diff_extractor import CommitDiffExtractor, split_gitlinks
from .git_blob_reader import BlobSnapshotReader
from .models import CommitHarvest, CommitInfo, SnapshotEntry
from .repository_stager import RepositoryStager
from .resume_filter import IncrementalResumeFilter
from .snapshot_tracker import SnapshotStateTracker

logger = logging.getLogger(__name__)

EmitBatch = Callable[[List[NormalizedArtifact]], None]


def parse_source_options(source: Source) -> GitSourceOptions:
    """Normalize a source's raw options.

    Raises:
        SourceConfigurationError: If the options are invalid
    """
    try:
        return GitSourceOptions(**source.options)
    except ValidationError as e:
        raise SourceConfigurationError(
            f"Invalid git options for source {source.id}: {e}"
        ) from e


class GitHistoryHarvester:
    """Extracts commit and file records from a git source."""

    plugin_key = "git"

    def __init__(self, config: HarvestConfig, store: Optional[ArtifactStore] = None):
        self.config = config
        self.store = store

    def harvest(
        self,
        source: Source,
        emit_batch: EmitBatch,
        deadline: Optional[Deadline] = None,
        stats: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Harvest ``source`` and hand its records to ``emit_batch``.

        Returns:
            Run statistics (branches, commit counts, emitted records)

        Raises:
            SourceConfigurationError: If the source options are invalid
            CloneFailure: If the repository cannot be cloned
            BranchResolutionFailure: If no explicitly requested branch resolves
            HarvestTimeout: If the run deadline expires
            HarvestCancelled: If the run is cancelled
        """
        options = parse_source_options(source)
        deadline = deadline or Deadline(self.config.run_timeout_seconds)
        stats = stats if stats is not None else {}

        stager = RepositoryStager(
            options,
            workdir_root=self.config.workdir_root,
            clone_timeout=self.config.clone_timeout_seconds,
            deadline=deadline,
        )
        with stager.stage() as staged:
            runner = GitRunner(
                staged.path,
                deadline=deadline,
                command_timeout=self.config.git_timeout_seconds,
                env=staged.env,
            )
            self._harvest_clone(source, options, runner, emit_batch, deadline, stats)
        return stats

    def _harvest_clone(
        self,
        source: Source,
        options: GitSourceOptions,
        runner: GitRunner,
        emit_batch: EmitBatch,
        deadline: Deadline,
        stats: Dict[str, Any],
    ) -> None:
        normalizer = ArtifactNormalizer(options.repo_url)
        resolver = BranchResolver(
            runner, default_branch=options.default_branch or self.config.default_branch
        )
        walker = CommitGraphWalker(runner)

        branches = resolver.resolve(options.branches)
        graph = walker.walk(branches, explicit=bool(options.branches))
        stats["branches"] = graph.resolved_branches
        stats["branches_failed"] = sorted(graph.failed_branches)
        stats["commits_total"] = len(graph.order)

        resume = IncrementalResumeFilter(
            lookup=lambda ids, kind: self._existing_ids(source.id, ids, kind),
            external_id=normalizer.commit_id,
        ).filter(graph.order)
        stats["commits_already_harvested"] = len(resume.already_harvested)
        stats["commits_new"] = 0
        stats["commits_failed"] = 0
        stats["files"] = 0
        if not resume.pending:
            logger.info(f"Source {source.id}: nothing new to harvest")
            return

        commits = walker.read_commits(resume.pending, graph.membership)
        tracker = SnapshotStateTracker(
            loader=lambda commit_hash: self._stored_snapshot(
                source.id, normalizer.commit_id(commit_hash)
            )
        )
        tracker.plan(commits[h] for h in resume.pending if h in commits)

        processor = _CommitProcessor(
            normalizer=normalizer,
            extractor=CommitDiffExtractor(runner, self.config.diff_context_lines),
            reader=BlobSnapshotReader(runner, self.config.binary_sniff_bytes),
            tracker=tracker,
        )

        buffer: List[NormalizedArtifact] = []
        failed: Set[str] = set()

        def flush() -> None:
            if buffer:
                emit_batch(list(buffer))
                buffer.clear()

        try:
            for commit_hash in resume.pending:
                deadline.check()
                commit = commits.get(commit_hash)
                if commit is None:
                    logger.warning(f"Skipping commit {commit_hash}: metadata unavailable")
                    failed.add(commit_hash)
                    continue

                failed_parents = [p for p in commit.parent_hashes if p in failed]
                if failed_parents:
                    logger.warning(
                        f"Skipping commit {commit.hash}: parent {failed_parents[0]} "
                        "was not harvested"
                    )
                    failed.add(commit.hash)
                    tracker.discard(commit)
                    continue

                try:
                    records = processor.process(commit)
                except (DiffComputationFailure, BlobReadFailure, GitCallTimeout) as e:
                    logger.warning(f"Skipping commit {commit.hash}: {e}")
                    failed.add(commit.hash)
                    tracker.discard(commit)
                    continue

                if records is None:
                    failed.add(commit.hash)
                    tracker.discard(commit)
                    continue

                buffer.extend(records)
                stats["commits_new"] += 1
                stats["files"] += len(records) - 1
                if len(buffer) >= self.config.batch_size:
                    flush()
        except (HarvestTimeout, HarvestCancelled):
            # completed commits stay durable; the next run resumes after them
            flush()
            raise
        finally:
            stats["commits_failed"] = len(failed)

        flush()
        logger.info(
            f"Source {source.id}: harvested {stats['commits_new']} commit(s), "
            f"{stats['files']} file record(s), {len(failed)} commit(s) skipped"
        )

    def _existing_ids(self, source_id: str, ids: List[str], kind: str) -> Set[str]:
        if self.store is None:
            return set()
        return self.store.existing_external_ids(source_id, ids, artifact_type=kind)

    def _stored_snapshot(self, source_id: str, external_id: str) -> Optional[List[Dict]]:
        if self.store is None:
            return None
        return self.store.get_artifact_data(source_id, external_id, "snapshot")


class _CommitProcessor:
    """Turns one commit into its file records followed by its commit record."""

    def __init__(
        self,
        normalizer: ArtifactNormalizer,
        extractor: CommitDiffExtractor,
        reader: BlobSnapshotReader,
        tracker: SnapshotStateTracker,
    ):
        self.normalizer = normalizer
        self.extractor = extractor
        self.reader = reader
        self.tracker = tracker

    def process(self, commit: CommitInfo) -> Optional[List[NormalizedArtifact]]:
        """Records of ``commit``, or None when its parent snapshot is unknown.

        Raises:
            DiffComputationFailure: If the commit cannot be diffed
            BlobReadFailure: If a changed blob cannot be read
        """
        if self.tracker.base_of(commit) is None:
            logger.warning(
                f"Skipping commit {commit.hash}: no snapshot for parent "
                f"{commit.parent_hashes[0]}"
            )
            return None

        diff = self.extractor.extract(commit)
        changes, gitlinks = split_gitlinks(diff.changes)
        delta, _ = split_gitlinks(diff.tree_delta)
        if gitlinks:
            logger.debug(f"{commit.short_hash}: ignoring {len(gitlinks)} submodule entries")

        inherited, unresolved = self.tracker.inherit(
            commit, delta, [c.path for c in changes]
        )
        if unresolved:
            logger.debug(
                f"{commit.short_hash}: reporting {len(unresolved)} path(s) "
                f"found only in the first-parent delta"
            )
            self.extractor.attach_patches(commit, unresolved)
            changes.extend(unresolved)

        try:
            blobs = self.reader.read_changes(changes)
        except BlobReadFailure as e:
            e.commit_hash = commit.hash
            raise

        harvest = CommitHarvest(commit=commit, changes=changes, blobs=blobs)
        file_records = self.normalizer.file_artifacts(harvest)

        entries: Dict[str, SnapshotEntry] = dict(inherited)
        for change in delta:
            if not change.has_content or change.path in entries:
                continue
            if change.size is None and change.blob_id in blobs:
                change.size = blobs[change.blob_id].size
            entries[change.path] = self.normalizer.snapshot_entry(commit, change)

        snapshot = self.tracker.advance(commit, delta, entries)
        commit_record = self.normalizer.commit_artifact(
            harvest,
            list(snapshot.values()),
            [record.external_id for record in file_records],
        )
        return [*file_records, commit_record]
