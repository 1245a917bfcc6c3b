"""Storage provisioner: the three handles living inside a workspace.

Layout inside the workspace::

    store/         content store and OCI layout artifact store (shared blobs)
    artifacts.db   SOCI artifacts metadata database

None of the initialisers retries; retry policy belongs to whoever
re-invokes the pipeline.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from soci_publisher.core.artifacts_db import ArtifactsDb
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.content_store import ContentStore
from soci_publisher.core.oci_store import GcArtifactStore, OciLayoutStore
from soci_publisher.errors import StorageInitError

ARTIFACTS_STORE_NAME = "store"
ARTIFACTS_DB_NAME = "artifacts.db"


def init_content_store(workspace: Path) -> ContentStore:
    try:
        return ContentStore(workspace / ARTIFACTS_STORE_NAME)
    except OSError as exc:
        raise StorageInitError(f"Content store initialization failed: {exc}") from exc


def init_artifact_store(
    workspace: Path, cancel: CancellationToken | None = None
) -> GcArtifactStore:
    """Open the OCI layout store wrapped in the GC-aware adapter."""
    if cancel is not None:
        cancel.raise_if_cancelled()
    try:
        layout = OciLayoutStore(workspace / ARTIFACTS_STORE_NAME)
    except (OSError, ValueError) as exc:
        # json.JSONDecodeError is a ValueError: corrupt oci-layout/index.json
        raise StorageInitError(f"OCI store initialization failed: {exc}") from exc
    return GcArtifactStore(layout)


def init_artifacts_db(workspace: Path) -> ArtifactsDb:
    try:
        return ArtifactsDb(workspace / ARTIFACTS_DB_NAME)
    except (OSError, sqlite3.Error) as exc:
        raise StorageInitError(f"Artifacts database initialization failed: {exc}") from exc

