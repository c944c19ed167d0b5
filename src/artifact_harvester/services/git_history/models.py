"""Data models for git history extraction."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# git's all-zero object id, used for "no object" on either side of a diff
NULL_OBJECT_ID = "0" * 40


class ChangeStatus(str, Enum):
    """Status of a path in a commit diff, keyed by git's status letter."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    COPIED = "copied"
    TYPE_CHANGED = "type_changed"
    UNMERGED = "unmerged"

    @classmethod
    def from_letter(cls, letter: str) -> "ChangeStatus":
        try:
            return _STATUS_LETTERS[letter[:1].upper()]
        except KeyError:
            raise ValueError(f"Unknown diff status letter: {letter!r}")


_STATUS_LETTERS = {
    "A": ChangeStatus.ADDED,
    "M": ChangeStatus.MODIFIED,
    "D": ChangeStatus.DELETED,
    "R": ChangeStatus.RENAMED,
    "C": ChangeStatus.COPIED,
    "T": ChangeStatus.TYPE_CHANGED,
    "U": ChangeStatus.UNMERGED,
}


class ContentEncoding(str, Enum):
    UTF8 = "utf8"
    BASE64 = "base64"


class ArtifactKind(str, Enum):
    COMMIT = "commit"
    FILE = "file"


@dataclass(frozen=True)
class Signature:
    """Author or committer identity with an ISO 8601 timestamp."""

    name: str
    email: str
    date: str


@dataclass(frozen=True)
class CommitInfo:
    """Metadata of one commit, read once and never mutated."""

    hash: str
    tree_hash: str
    parent_hashes: Tuple[str, ...]
    author: Signature
    committer: Signature
    message: str
    branches: Tuple[str, ...] = ()

    @property
    def short_hash(self) -> str:
        return self.hash[:7]

    @property
    def subject(self) -> str:
        lines = self.message.strip().splitlines()
        return lines[0] if lines else ""

    @property
    def is_merge(self) -> bool:
        return len(self.parent_hashes) > 1

    @property
    def is_root(self) -> bool:
        return not self.parent_hashes


@dataclass
class PatchSummary:
    """Line counts and raw unified diff text for one path."""

    added: int = 0
    removed: int = 0
    patch: str = ""
    binary: bool = False


@dataclass
class FileChange:
    """One path touched by a commit."""

    path: str
    status: ChangeStatus
    blob_id: Optional[str] = None
    previous_blob_id: Optional[str] = None
    mode: Optional[str] = None
    previous_mode: Optional[str] = None
    previous_path: Optional[str] = None
    similarity: Optional[int] = None
    size: Optional[int] = None
    patch: Optional[PatchSummary] = None

    @property
    def has_content(self) -> bool:
        """True when the new side of the change references a readable blob."""
        return (
            self.status != ChangeStatus.DELETED
            and bool(self.blob_id)
            and self.blob_id != NULL_OBJECT_ID
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "previousPath": self.previous_path,
            "status": self.status.value,
            "blobId": self.blob_id,
            "previousBlobId": self.previous_blob_id,
            "mode": self.mode,
            "previousMode": self.previous_mode,
            "similarity": self.similarity,
            "size": self.size,
            "added": self.patch.added if self.patch else None,
            "removed": self.patch.removed if self.patch else None,
            "patch": self.patch.patch if self.patch else None,
            "binary": self.patch.binary if self.patch else None,
        }


@dataclass(frozen=True)
class BlobContent:
    """Raw bytes of a content object, encoded for the normalized payload."""

    blob_id: str
    size: int
    encoding: ContentEncoding
    content: str

    @property
    def is_binary(self) -> bool:
        return self.encoding == ContentEncoding.BASE64


@dataclass(frozen=True)
class SnapshotEntry:
    """Last-known reference of a path as of some commit."""

    path: str
    blob_id: str
    mode: Optional[str]
    size: Optional[int]
    file_external_id: str
    commit_hash: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "blobId": self.blob_id,
            "mode": self.mode,
            "size": self.size,
            "fileExternalId": self.file_external_id,
            "commitHash": self.commit_hash,
        }


@dataclass
class CommitHarvest:
    """Everything gathered for one commit before normalization."""

    commit: CommitInfo
    changes: List[FileChange]
    blobs: Dict[str, BlobContent] = field(default_factory=dict)
