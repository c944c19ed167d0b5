"""
Mapping of harvested commits onto NormalizedArtifact records.

One ``commit`` record per commit and one ``file`` record per non-deleted
changed path. External ids are derived from the repository slug so that the
same repository reached through different credentials or URL spellings
keeps the same ids:

    commit:<sha1("commit:" slug ":" hash)>
    file:<sha1("file:" slug ":" hash ":" path)>
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlsplit

from ...storage.models import NormalizedArtifact
from .models import (
    ArtifactKind,
    BlobContent,
    CommitHarvest,
    CommitInfo,
    FileChange,
    SnapshotEntry,
)

logger = logging.getLogger(__name__)


def _strip_git_suffix(path: str) -> str:
    path = path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path


def repository_slug(repo_url: str) -> str:
    """Credential-free ``host/path`` identity of a repository URL."""
    url = repo_url.strip()
    if "://" not in url and ":" in url and not url.startswith("/"):
        # scp-like syntax: user@host:owner/repo.git
        host, _, path = url.partition(":")
        host = host.split("@", 1)[-1]
        return f"{host}/{_strip_git_suffix(path).lstrip('/')}".lower()

    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    path = _strip_git_suffix(parts.path).lstrip("/")
    return f"{host}/{path}".strip("/").lower() if host else path.lower()


def web_base_url(repo_url: str) -> Optional[str]:
    """Browsable base URL for http(s) repositories, None otherwise."""
    parts = urlsplit(repo_url.strip())
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    host = parts.hostname
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}/{_strip_git_suffix(parts.path).lstrip('/')}"


def _sha1(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def commit_external_id(slug: str, commit_hash: str) -> str:
    return f"commit:{_sha1(f'commit:{slug}:{commit_hash}')}"


def file_external_id(slug: str, commit_hash: str, path: str) -> str:
    return f"file:{_sha1(f'file:{slug}:{commit_hash}:{path}')}"


def to_utc_iso(date: str) -> str:
    """ISO 8601 date with offset converted to UTC so timestamps sort lexically."""
    try:
        parsed = datetime.fromisoformat(date.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable commit date {date!r}")
        return date
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


class ArtifactNormalizer:
    """Builds the commit and file records of one repository."""

    def __init__(self, repo_url: str):
        self.repo_url = repo_url
        self.slug = repository_slug(repo_url)
        self.base_url = web_base_url(repo_url)

    def commit_id(self, commit_hash: str) -> str:
        return commit_external_id(self.slug, commit_hash)

    def file_id(self, commit_hash: str, path: str) -> str:
        return file_external_id(self.slug, commit_hash, path)

    def commit_url(self, commit_hash: str) -> Optional[str]:
        if not self.base_url:
            return None
        return f"{self.base_url}/commit/{commit_hash}"

    def file_url(self, commit_hash: str, path: str) -> Optional[str]:
        if not self.base_url:
            return None
        return f"{self.base_url}/blob/{commit_hash}/{quote(path)}"

    def snapshot_entry(self, commit: CommitInfo, change: FileChange) -> SnapshotEntry:
        """Reference to the file record ``commit`` produces for ``change``."""
        return SnapshotEntry(
            path=change.path,
            blob_id=change.blob_id or "",
            mode=change.mode,
            size=change.size,
            file_external_id=self.file_id(commit.hash, change.path),
            commit_hash=commit.hash,
        )

    def file_artifacts(self, harvest: CommitHarvest) -> List[NormalizedArtifact]:
        commit = harvest.commit
        artifacts = []
        for change in harvest.changes:
            if not change.has_content:
                continue
            blob = harvest.blobs.get(change.blob_id)
            if blob is None:
                logger.warning(
                    f"No content for {change.path} in {commit.short_hash}; record omitted"
                )
                continue
            artifacts.append(self.file_artifact(commit, change, blob))
        return artifacts

    def file_artifact(
        self, commit: CommitInfo, change: FileChange, blob: BlobContent
    ) -> NormalizedArtifact:
        data: Dict[str, Any] = {
            "artifactType": ArtifactKind.FILE.value,
            "commitHash": commit.hash,
            "path": change.path,
            "previousPath": change.previous_path,
            "status": change.status.value,
            "blobId": blob.blob_id,
            "mode": change.mode,
            "size": blob.size,
            "encoding": blob.encoding.value,
            "content": blob.content,
            "branches": list(commit.branches),
        }
        return NormalizedArtifact(
            external_id=self.file_id(commit.hash, change.path),
            display_name=f"{change.path} @ {commit.short_hash}",
            version=blob.blob_id,
            data=data,
            metadata={
                "artifactType": ArtifactKind.FILE.value,
                "commitHash": commit.hash,
                "path": change.path,
            },
            original_url=self.file_url(commit.hash, change.path),
            timestamp=to_utc_iso(commit.committer.date),
        )

    def commit_artifact(
        self,
        harvest: CommitHarvest,
        snapshot: List[SnapshotEntry],
        file_ids: List[str],
    ) -> NormalizedArtifact:
        commit = harvest.commit
        data: Dict[str, Any] = {
            "artifactType": ArtifactKind.COMMIT.value,
            "commitHash": commit.hash,
            "treeHash": commit.tree_hash,
            "parents": list(commit.parent_hashes),
            "branches": list(commit.branches),
            "author": {
                "name": commit.author.name,
                "email": commit.author.email,
                "date": commit.author.date,
            },
            "committer": {
                "name": commit.committer.name,
                "email": commit.committer.email,
                "date": commit.committer.date,
            },
            "message": commit.message,
            "changes": [change.to_payload() for change in harvest.changes],
            "fileArtifacts": file_ids,
            "snapshot": [
                entry.to_payload() for entry in sorted(snapshot, key=lambda e: e.path)
            ],
        }
        subject = commit.subject
        display_name = f"{commit.short_hash} {subject}" if subject else commit.short_hash
        return NormalizedArtifact(
            external_id=self.commit_id(commit.hash),
            display_name=display_name,
            version=commit.hash,
            data=data,
            metadata={
                "artifactType": ArtifactKind.COMMIT.value,
                "commitHash": commit.hash,
            },
            original_url=self.commit_url(commit.hash),
            timestamp=to_utc_iso(commit.committer.date),
        )
