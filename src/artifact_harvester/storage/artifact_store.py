"""SQLite storage for artifacts, artifact versions and extraction runs.

Artifacts are keyed by (source_id, external_id) and point at their current
version by id. Versions are append-only and reference their artifact by id.
JSON payloads are stored canonically (sorted keys) so a stored version can be
re-hashed to the same checksum.

Besides the write primitives used by the extraction service, the store
answers the read queries of the browsing layer (commit listing, per-commit
files, snapshot listing, file content) directly from stored payloads: commit
payloads carry their full snapshot reference list, so nothing here replays
history.

Schema:
    sources(id PK, name, plugin_key, options, created_at, updated_at)
    artifacts(id PK, source_id, plugin_key, external_id, display_name,
              artifact_type, commit_hash, path, last_version_id,
              created_at, updated_at, UNIQUE(source_id, external_id))
    artifact_versions(id PK, artifact_id, version, data, metadata,
              original_url, timestamp, checksum, created_at)
    extraction_runs(id PK, source_id, status, started_at, finished_at,
              error_message, created_artifacts, updated_artifacts,
              skipped_artifacts, stats, created_at)
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from ..config import Source
from ..errors import PersistenceFailure
from .checksum import canonical_json
from .models import (
    Artifact,
    ArtifactVersion,
    ExtractionRun,
    NormalizedArtifact,
    RunStatus,
)

logger = logging.getLogger(__name__)

# SQLite's default host-parameter limit is 999; stay well below it
_IN_CHUNK = 500

COMMIT_SORTS = {
    "newest": "v.timestamp DESC, a.rowid DESC",
    "oldest": "v.timestamp ASC, a.rowid ASC",
    "author": "json_extract(v.data, '$.author.name') COLLATE NOCASE ASC, v.timestamp DESC",
    "message": "json_extract(v.data, '$.message') COLLATE NOCASE ASC, v.timestamp DESC",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


def _like_escape(value: str) -> str:
    """Escape LIKE wildcards so ``value`` matches literally (``ESCAPE '\\'``)."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _chunks(items: List[str], size: int = _IN_CHUNK) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class ArtifactStore:
    """SQLite-backed versioning store."""

    def __init__(self, db_path: Path):
        """Initialize the store, creating the database and schema if needed.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back and wrap on error."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceFailure(f"Artifact store error: {e}") from e
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize SQLite database with schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sources (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    plugin_key TEXT NOT NULL,
                    options TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    plugin_key TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    artifact_type TEXT,
                    commit_hash TEXT,
                    path TEXT,
                    last_version_id TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE (source_id, external_id)
                );

                CREATE INDEX IF NOT EXISTS idx_artifacts_type_commit
                ON artifacts(source_id, artifact_type, commit_hash);

                CREATE TABLE IF NOT EXISTS artifact_versions (
                    id TEXT PRIMARY KEY,
                    artifact_id TEXT NOT NULL,
                    version TEXT NOT NULL,
                    data TEXT NOT NULL,
                    metadata TEXT,
                    original_url TEXT,
                    timestamp TEXT,
                    checksum TEXT NOT NULL,
                    created_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_versions_artifact
                ON artifact_versions(artifact_id);

                CREATE TABLE IF NOT EXISTS extraction_runs (
                    id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    error_message TEXT,
                    created_artifacts INTEGER DEFAULT 0,
                    updated_artifacts INTEGER DEFAULT 0,
                    skipped_artifacts INTEGER DEFAULT 0,
                    stats TEXT,
                    created_at TEXT
                );
                """
            )

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def upsert_source(self, source: Source) -> None:
        now = _now()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO sources (id, name, plugin_key, options, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    plugin_key = excluded.plugin_key,
                    updated_at = excluded.updated_at
                """,
                (source.id, source.name, source.plugin_key, None, now, now),
            )

    def get_source(self, source_id: str) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, name, plugin_key FROM sources WHERE id = ?", (source_id,)
            ).fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Artifacts and versions
    # ------------------------------------------------------------------

    def find_artifact(self, source_id: str, external_id: str) -> Optional[Artifact]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE source_id = ? AND external_id = ?",
                (source_id, external_id),
            ).fetchone()
        return self._row_to_artifact(row) if row else None

    def get_artifact_data(
        self, source_id: str, external_id: str, key: Optional[str] = None
    ) -> Optional[Any]:
        """Current data payload of an artifact, or one top-level key of it."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT v.data AS data FROM artifacts a
                JOIN artifact_versions v ON v.id = a.last_version_id
                WHERE a.source_id = ? AND a.external_id = ?
                """,
                (source_id, external_id),
            ).fetchone()
        if row is None:
            return None
        data = json.loads(row["data"])
        return data.get(key) if key is not None else data

    def create_artifact(
        self,
        source_id: str,
        plugin_key: str,
        normalized: NormalizedArtifact,
    ) -> Artifact:
        """Insert a new artifact without any version."""
        metadata = normalized.metadata or {}
        now = _now()
        artifact = Artifact(
            id=str(uuid.uuid4()),
            source_id=source_id,
            plugin_key=plugin_key,
            external_id=normalized.external_id,
            display_name=normalized.display_name,
            created_at=now,
            updated_at=now,
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO artifacts
                (id, source_id, plugin_key, external_id, display_name,
                 artifact_type, commit_hash, path, last_version_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    artifact.id,
                    source_id,
                    plugin_key,
                    normalized.external_id,
                    normalized.display_name,
                    metadata.get("artifactType"),
                    metadata.get("commitHash"),
                    metadata.get("path"),
                    now,
                    now,
                ),
            )
        return artifact

    def get_version(self, version_id: str) -> Optional[ArtifactVersion]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM artifact_versions WHERE id = ?", (version_id,)
            ).fetchone()
        return self._row_to_version(row) if row else None

    def get_latest_checksum(self, artifact: Artifact) -> Optional[str]:
        if not artifact.last_version_id:
            return None
        with self._connection() as conn:
            row = conn.execute(
                "SELECT checksum FROM artifact_versions WHERE id = ?",
                (artifact.last_version_id,),
            ).fetchone()
        return row["checksum"] if row else None

    def count_versions(self, artifact_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM artifact_versions WHERE artifact_id = ?",
                (artifact_id,),
            ).fetchone()
        return int(row["n"])

    def add_version(
        self,
        artifact: Artifact,
        normalized: NormalizedArtifact,
        version_label: str,
        checksum: str,
    ) -> ArtifactVersion:
        """Append a version and repoint the artifact at it in one transaction."""
        now = _now()
        version = ArtifactVersion(
            id=str(uuid.uuid4()),
            artifact_id=artifact.id,
            version=version_label,
            data=normalized.data,
            metadata=normalized.metadata,
            original_url=normalized.original_url,
            timestamp=normalized.timestamp,
            checksum=checksum,
            created_at=now,
        )
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO artifact_versions
                (id, artifact_id, version, data, metadata, original_url, timestamp, checksum, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version.id,
                    artifact.id,
                    version_label,
                    canonical_json(normalized.data),
                    canonical_json(normalized.metadata)
                    if normalized.metadata is not None
                    else None,
                    normalized.original_url,
                    normalized.timestamp,
                    checksum,
                    now,
                ),
            )
            conn.execute(
                """
                UPDATE artifacts
                SET last_version_id = ?, display_name = ?, updated_at = ?
                WHERE id = ?
                """,
                (version.id, normalized.display_name, now, artifact.id),
            )
        artifact.last_version_id = version.id
        artifact.display_name = normalized.display_name
        artifact.updated_at = now
        return version

    def list_versions(self, artifact_id: str) -> List[ArtifactVersion]:
        """All versions of an artifact, newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM artifact_versions WHERE artifact_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (artifact_id,),
            ).fetchall()
        return [self._row_to_version(row) for row in rows]

    def existing_external_ids(
        self,
        source_id: str,
        external_ids: Iterable[str],
        artifact_type: Optional[str] = None,
    ) -> Set[str]:
        """Subset of ``external_ids`` that already have a stored version."""
        ids = list(dict.fromkeys(external_ids))
        found: Set[str] = set()
        if not ids:
            return found

        with self._connection() as conn:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" * len(chunk))
                sql = (
                    "SELECT external_id FROM artifacts "
                    f"WHERE source_id = ? AND external_id IN ({placeholders}) "
                    "AND last_version_id IS NOT NULL"
                )
                params: List[Any] = [source_id, *chunk]
                if artifact_type is not None:
                    sql += " AND artifact_type = ?"
                    params.append(artifact_type)
                found.update(row["external_id"] for row in conn.execute(sql, params))
        return found

    # ------------------------------------------------------------------
    # Extraction runs
    # ------------------------------------------------------------------

    def save_run(self, run: ExtractionRun) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO extraction_runs
                (id, source_id, status, started_at, finished_at, error_message,
                 created_artifacts, updated_artifacts, skipped_artifacts, stats, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    finished_at = excluded.finished_at,
                    error_message = excluded.error_message,
                    created_artifacts = excluded.created_artifacts,
                    updated_artifacts = excluded.updated_artifacts,
                    skipped_artifacts = excluded.skipped_artifacts,
                    stats = excluded.stats
                """,
                (
                    run.id,
                    run.source_id,
                    run.status.value,
                    run.started_at.isoformat() if run.started_at else None,
                    run.finished_at.isoformat() if run.finished_at else None,
                    run.error_message,
                    run.created_artifacts,
                    run.updated_artifacts,
                    run.skipped_artifacts,
                    canonical_json(run.stats),
                    _now(),
                ),
            )

    def get_run(self, run_id: str) -> Optional[ExtractionRun]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM extraction_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(
        self, page: int = 1, limit: int = 25, source_id: Optional[str] = None
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = _clamp(limit, 1, 200)
        where = "WHERE source_id = ?" if source_id else ""
        params: List[Any] = [source_id] if source_id else []
        with self._connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS n FROM extraction_runs {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"""
                SELECT * FROM extraction_runs {where}
                ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?
                """,
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        return {
            "items": [self._row_to_run(row) for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
        }

    # ------------------------------------------------------------------
    # Browsing queries
    # ------------------------------------------------------------------

    def list_commits(
        self,
        source_id: str,
        search: Optional[str] = None,
        sort: str = "newest",
        page: int = 1,
        limit: int = 25,
    ) -> Dict[str, Any]:
        """Paginated commit payloads, filterable across hash/author/message/path."""
        if sort not in COMMIT_SORTS:
            raise ValueError(
                f"Unknown sort {sort!r}; expected one of {sorted(COMMIT_SORTS)}"
            )
        page = max(page, 1)
        limit = _clamp(limit, 1, 200)

        where = ["a.source_id = ?", "a.artifact_type = 'commit'"]
        params: List[Any] = [source_id]
        if search:
            like = f"%{_like_escape(search)}%"
            where.append(
                """(
                    a.commit_hash LIKE ? ESCAPE '\\'
                    OR json_extract(v.data, '$.author.name') LIKE ? ESCAPE '\\'
                    OR json_extract(v.data, '$.author.email') LIKE ? ESCAPE '\\'
                    OR json_extract(v.data, '$.message') LIKE ? ESCAPE '\\'
                    OR EXISTS (
                        SELECT 1 FROM json_each(v.data, '$.changes') c
                        WHERE json_extract(c.value, '$.path') LIKE ? ESCAPE '\\'
                           OR json_extract(c.value, '$.previousPath') LIKE ? ESCAPE '\\'
                    )
                )"""
            )
            params.extend([like] * 6)

        base = f"""
            FROM artifacts a
            JOIN artifact_versions v ON v.id = a.last_version_id
            WHERE {' AND '.join(where)}
        """
        with self._connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n {base}", params).fetchone()["n"]
            rows = conn.execute(
                f"SELECT v.data AS data {base} ORDER BY {COMMIT_SORTS[sort]} "
                "LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        return {
            "items": [json.loads(row["data"]) for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
        }

    def get_commit(self, source_id: str, commit_hash: str) -> Optional[Dict[str, Any]]:
        """Commit payload by full hash or unique prefix."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT v.data AS data FROM artifacts a
                JOIN artifact_versions v ON v.id = a.last_version_id
                WHERE a.source_id = ? AND a.artifact_type = 'commit'
                  AND a.commit_hash LIKE ? ESCAPE '\\'
                LIMIT 2
                """,
                (source_id, f"{_like_escape(commit_hash)}%"),
            ).fetchall()
        if len(rows) != 1:
            return None
        return json.loads(rows[0]["data"])

    def list_commit_files(
        self, source_id: str, commit_hash: str, limit: int = 500
    ) -> Dict[str, Any]:
        """File payloads produced by one commit, ordered by path."""
        limit = _clamp(limit, 1, 2000)
        commit = self.get_commit(source_id, commit_hash)
        full_hash = commit["commitHash"] if commit else commit_hash
        with self._connection() as conn:
            total = conn.execute(
                """
                SELECT COUNT(*) AS n FROM artifacts
                WHERE source_id = ? AND artifact_type = 'file' AND commit_hash = ?
                  AND last_version_id IS NOT NULL
                """,
                (source_id, full_hash),
            ).fetchone()["n"]
            rows = conn.execute(
                """
                SELECT v.data AS data FROM artifacts a
                JOIN artifact_versions v ON v.id = a.last_version_id
                WHERE a.source_id = ? AND a.artifact_type = 'file' AND a.commit_hash = ?
                ORDER BY a.path ASC LIMIT ?
                """,
                (source_id, full_hash, limit),
            ).fetchall()
        return {
            "items": [json.loads(row["data"]) for row in rows],
            "total": total,
            "page": 1,
            "limit": limit,
        }

    def get_snapshot(
        self, source_id: str, commit_hash: str, page: int = 1, limit: int = 500
    ) -> Optional[Dict[str, Any]]:
        """The full tree (path -> content reference) as of a commit."""
        commit = self.get_commit(source_id, commit_hash)
        if commit is None:
            return None
        page = max(page, 1)
        limit = _clamp(limit, 1, 2000)
        entries = sorted(commit.get("snapshot", []), key=lambda e: e["path"])
        start = (page - 1) * limit
        return {
            "commitHash": commit["commitHash"],
            "items": entries[start : start + limit],
            "total": len(entries),
            "page": page,
            "limit": limit,
        }

    def get_file_content(
        self, source_id: str, commit_hash: str, path: str
    ) -> Optional[Dict[str, Any]]:
        """File payload for ``path`` as it existed at ``commit_hash``."""
        commit = self.get_commit(source_id, commit_hash)
        if commit is None:
            return None
        entry = next(
            (e for e in commit.get("snapshot", []) if e["path"] == path), None
        )
        if entry is None:
            return None
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT v.data AS data FROM artifacts a
                JOIN artifact_versions v ON v.id = a.last_version_id
                WHERE a.source_id = ? AND a.external_id = ?
                """,
                (source_id, entry["fileExternalId"]),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_artifact(row: sqlite3.Row) -> Artifact:
        return Artifact(
            id=row["id"],
            source_id=row["source_id"],
            plugin_key=row["plugin_key"],
            external_id=row["external_id"],
            display_name=row["display_name"],
            last_version_id=row["last_version_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> ArtifactVersion:
        return ArtifactVersion(
            id=row["id"],
            artifact_id=row["artifact_id"],
            version=row["version"],
            data=json.loads(row["data"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            original_url=row["original_url"],
            timestamp=row["timestamp"],
            checksum=row["checksum"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> ExtractionRun:
        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return ExtractionRun(
            id=row["id"],
            source_id=row["source_id"],
            status=RunStatus(row["status"]),
            started_at=parse(row["started_at"]),
            finished_at=parse(row["finished_at"]),
            error_message=row["error_message"],
            created_artifacts=row["created_artifacts"],
            updated_artifacts=row["updated_artifacts"],
            skipped_artifacts=row["skipped_artifacts"],
            stats=json.loads(row["stats"]) if row["stats"] else {},
        )
