"""Shared test fixtures for soci-publisher."""

from __future__ import annotations

from pathlib import Path

import pytest

from soci_publisher.core.artifacts_db import ArtifactsDb
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.content_store import ContentStore
from soci_publisher.core.oci_store import GcArtifactStore, OciLayoutStore
from soci_publisher.indexer.base import BuildOptions
from soci_publisher.models.descriptors import Platform
from soci_publisher.models.request import InvocationRequest
from tests.fakes import FakeImage, make_image


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def content_store(tmp_dir: Path) -> ContentStore:
    """Provide a fresh ContentStore in a temp directory."""
    return ContentStore(tmp_dir / "store")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> GcArtifactStore:
    """Provide a GC-aware OCI layout store sharing blobs with ``content_store``."""
    return GcArtifactStore(OciLayoutStore(tmp_dir / "store"))


@pytest.fixture
def artifacts_db(tmp_dir: Path) -> ArtifactsDb:
    """Provide a fresh ArtifactsDb backed by a temp SQLite database."""
    return ArtifactsDb(tmp_dir / "artifacts.db")


@pytest.fixture
def cancel() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def build_options() -> BuildOptions:
    """Build options pinned to linux/amd64 so tests do not depend on the host."""
    return BuildOptions(platform=Platform(os="linux", architecture="amd64"))


@pytest.fixture
def image() -> FakeImage:
    return make_image()


@pytest.fixture
def request_for(image: FakeImage):
    """Factory fixture: an InvocationRequest for a digest (default: ``image``)."""

    def _factory(digest: str | None = None, **overrides: str) -> InvocationRequest:
        fields = {
            "repository": "team/app",
            "digest": digest or image.digest,
            "region": "us-west-2",
            "account": "123456789012",
        }
        fields.update(overrides)
        return InvocationRequest(**fields)

    return _factory
