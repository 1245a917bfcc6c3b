"""SOCI artifacts metadata database backed by SQLite.

Records which index and zTOC artifacts were produced for which
image/platform pairs. One database per workspace; never shared across
invocations.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from soci_publisher.models.descriptors import (
    ArtifactEntry,
    ArtifactEntryType,
    Descriptor,
    IndexDescriptorInfo,
)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_ARTIFACTS = """
CREATE TABLE IF NOT EXISTS soci_artifacts (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    digest           TEXT NOT NULL,
    size             INTEGER NOT NULL,
    media_type       TEXT NOT NULL,
    artifact_type    TEXT NOT NULL DEFAULT '',
    entry_type       TEXT NOT NULL,
    image_digest     TEXT NOT NULL,
    image_name       TEXT NOT NULL DEFAULT '',
    platform         TEXT NOT NULL DEFAULT '',
    original_digest  TEXT NOT NULL DEFAULT '',
    created_at       TEXT NOT NULL
);
"""

_CREATE_IDX_IMAGE = """
CREATE INDEX IF NOT EXISTS idx_image_platform
    ON soci_artifacts(image_digest, platform, entry_type, id);
"""

_COLUMNS = (
    "digest, size, media_type, artifact_type, entry_type, image_digest, "
    "image_name, platform, original_digest, created_at"
)


class ArtifactsDb:
    """SQLite store of produced SOCI artifacts.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
        Opening a file that is not a valid database raises
        ``sqlite3.DatabaseError``.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_ARTIFACTS)
            conn.execute(_CREATE_IDX_IMAGE)
            conn.commit()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def record(self, entry: ArtifactEntry) -> ArtifactEntry:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO soci_artifacts ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.digest,
                    entry.size,
                    entry.media_type,
                    entry.artifact_type,
                    entry.entry_type.value,
                    entry.image_digest,
                    entry.image_name,
                    entry.platform,
                    entry.original_digest,
                    _to_utc(entry.created_at).isoformat(),
                ),
            )
            conn.commit()
        return entry

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_entries(
        self,
        image_digest: str,
        *,
        entry_type: ArtifactEntryType | None = None,
        platforms: list[str] | None = None,
    ) -> list[ArtifactEntry]:
        """Entries for an image in insertion order, optionally filtered."""
        query = f"SELECT {_COLUMNS} FROM soci_artifacts WHERE image_digest = ?"
        params: list[object] = [image_digest]
        if entry_type is not None:
            query += " AND entry_type = ?"
            params.append(entry_type.value)
        if platforms:
            query += f" AND platform IN ({', '.join('?' for _ in platforms)})"
            params.extend(platforms)
        query += " ORDER BY id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_index_descriptors(
        self, image_digest: str, platforms: list[str]
    ) -> list[IndexDescriptorInfo]:
        """Every SOCI index recorded for the image, oldest first."""
        entries = self.get_entries(
            image_digest, entry_type=ArtifactEntryType.SOCI_INDEX, platforms=platforms
        )
        infos = [
            IndexDescriptorInfo(
                descriptor=Descriptor(
                    media_type=e.media_type,
                    digest=e.digest,
                    size=e.size,
                    artifact_type=e.artifact_type or None,
                ),
                created_at=e.created_at,
            )
            for e in entries
        ]
        return sorted(infos, key=lambda info: info.created_at)

    def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM soci_artifacts").fetchone()
        return int(row[0])


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_entry(row: sqlite3.Row) -> ArtifactEntry:
    return ArtifactEntry(
        digest=row["digest"],
        size=row["size"],
        media_type=row["media_type"],
        artifact_type=row["artifact_type"],
        entry_type=ArtifactEntryType(row["entry_type"]),
        image_digest=row["image_digest"],
        image_name=row["image_name"],
        platform=row["platform"],
        original_digest=row["original_digest"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
