"""Entities of the versioning store and the harvester's output unit."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass
class NormalizedArtifact:
    """Universal output unit of an extractor."""

    external_id: str
    display_name: str
    version: str
    data: Dict[str, Any]
    metadata: Optional[Dict[str, Any]] = None
    original_url: Optional[str] = None
    timestamp: Optional[str] = None


@dataclass
class Artifact:
    """An artifact keyed by (source_id, external_id).

    ``last_version_id`` references the current ArtifactVersion by id only.
    """

    id: str
    source_id: str
    plugin_key: str
    external_id: str
    display_name: str
    last_version_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ArtifactVersion:
    """Immutable checksum-stamped snapshot of one NormalizedArtifact."""

    id: str
    artifact_id: str
    version: str
    data: Dict[str, Any]
    checksum: str
    metadata: Optional[Dict[str, Any]] = None
    original_url: Optional[str] = None
    timestamp: Optional[str] = None
    created_at: Optional[str] = None


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PersistOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class ExtractionRun:
    """Bookkeeping for one harvest of one source."""

    id: str
    source_id: str
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_artifacts: int = 0
    updated_artifacts: int = 0
    skipped_artifacts: int = 0
    stats: Dict[str, Any] = field(default_factory=dict)

    def record(self, outcome: PersistOutcome) -> None:
        if outcome == PersistOutcome.CREATED:
            self.created_artifacts += 1
        elif outcome == PersistOutcome.UPDATED:
            self.updated_artifacts += 1
        else:
            self.skipped_artifacts += 1
