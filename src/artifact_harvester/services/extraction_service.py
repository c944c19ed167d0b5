"""
Extraction runs and content-addressed persistence.

ExtractionService.run_extraction() records an ExtractionRun, lets the
source's harvester stream batches of NormalizedArtifact records and persists
each one: a new ArtifactVersion is stored only when the checksum over
(version, data, metadata) differs from the artifact's current version.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from ..config import HarvestConfig, Source
from ..errors import SourceConfigurationError
from ..storage.artifact_store import ArtifactStore
from ..storage.checksum import compute_checksum
from ..storage.models import (
    ExtractionRun,
    NormalizedArtifact,
    PersistOutcome,
    RunStatus,
)
from ..utils.exception_logger import ExceptionLogger
from ..utils.git_runner import Deadline
from .git_history import GitHistoryHarvester

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExtractionService:
    """Runs harvests and applies the versioning rules to their output."""

    def __init__(
        self,
        store: ArtifactStore,
        config: Optional[HarvestConfig] = None,
        harvesters: Optional[Dict[str, object]] = None,
    ):
        self.store = store
        self.config = config or HarvestConfig()
        self.harvesters = harvesters or {
            GitHistoryHarvester.plugin_key: GitHistoryHarvester(self.config, store)
        }

    def run_extraction(
        self, source: Source, deadline: Optional[Deadline] = None
    ) -> ExtractionRun:
        """Harvest ``source`` and persist everything it emits.

        The run is saved as RUNNING first, its counters after every batch,
        and SUCCESS or FAILED at the end. Failures are re-raised after the
        run has been marked FAILED.
        """
        harvester = self.harvesters.get(source.plugin_key)
        if harvester is None:
            raise SourceConfigurationError(
                f"No harvester registered for plugin {source.plugin_key!r}"
            )

        self.store.upsert_source(source)
        run = ExtractionRun(
            id=str(uuid.uuid4()),
            source_id=source.id,
            status=RunStatus.RUNNING,
            started_at=_utcnow(),
        )
        self.store.save_run(run)
        logger.info(f"Starting extraction run {run.id} for source {source.id}")

        def emit_batch(batch: List[NormalizedArtifact]) -> None:
            if not batch:
                return
            self.persist_artifacts(run, source, batch)
            self.store.save_run(run)

        try:
            harvester.harvest(
                source,
                emit_batch,
                deadline=deadline or Deadline(self.config.run_timeout_seconds),
                stats=run.stats,
            )
            run.status = RunStatus.SUCCESS
            run.finished_at = _utcnow()
            self.store.save_run(run)
        except Exception as e:
            logger.error(f"Extraction failed for source {source.id}: {e}")
            run.status = RunStatus.FAILED
            run.finished_at = _utcnow()
            run.error_message = str(e) or type(e).__name__
            self.store.save_run(run)
            self._log_exception(e, run)
            raise
        finally:
            logger.info(
                f"Source {source.id} run {run.id} finished with status "
                f"{run.status.value} (created={run.created_artifacts}, "
                f"updated={run.updated_artifacts}, skipped={run.skipped_artifacts})"
            )
        return run

    def persist_artifacts(
        self, run: ExtractionRun, source: Source, artifacts: Iterable[NormalizedArtifact]
    ) -> None:
        for normalized in artifacts:
            run.record(self.persist_artifact(source, normalized))

    def persist_artifact(
        self, source: Source, normalized: NormalizedArtifact
    ) -> PersistOutcome:
        """Store ``normalized`` as a new version unless its checksum is current.

        Raises:
            PersistenceFailure: If the store rejects a write
        """
        artifact = self.store.find_artifact(source.id, normalized.external_id)
        checksum = compute_checksum(
            normalized.version, normalized.data, normalized.metadata
        )

        if artifact is None:
            artifact = self.store.create_artifact(source.id, source.plugin_key, normalized)

        latest_checksum = self.store.get_latest_checksum(artifact)
        if latest_checksum == checksum:
            logger.debug(
                f"Skipping artifact {normalized.external_id} (source {source.id}): "
                "checksum matches the latest version"
            )
            return PersistOutcome.SKIPPED

        version_label = str(self.store.count_versions(artifact.id) + 1)
        self.store.add_version(artifact, normalized, version_label, checksum)
        return PersistOutcome.UPDATED if latest_checksum else PersistOutcome.CREATED

    def _log_exception(self, exception: Exception, run: ExtractionRun) -> None:
        if self.config.exception_log_dir is None:
            return
        ExceptionLogger.for_directory(self.config.exception_log_dir).log_exception(
            exception,
            context={"source_id": run.source_id, "run_id": run.id, "stats": run.stats},
        )
