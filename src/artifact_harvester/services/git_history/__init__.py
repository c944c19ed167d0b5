"""Git history extraction: commits and files of every branch as artifacts."""

from .artifact_normalizer import ArtifactNormalizer, repository_slug
from .git_history_harvester import GitHistoryHarvester, parse_source_options
from .models import ArtifactKind, ChangeStatus, ContentEncoding
from .snapshot_tracker import SnapshotStateTracker

__all__ = [
    "ArtifactNormalizer",
    "repository_slug",
    "GitHistoryHarvester",
    "parse_source_options",
    "ArtifactKind",
    "ChangeStatus",
    "ContentEncoding",
    "SnapshotStateTracker",
]
