"""Index builder capability required by the orchestrator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from soci_publisher.core.artifacts_db import ArtifactsDb
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.content_store import ContentStore
from soci_publisher.core.oci_store import GcArtifactStore
from soci_publisher.models.descriptors import (
    ImageRef,
    IndexDescriptorInfo,
    Platform,
    default_platform,
)


class BuildOptions(BaseModel):
    """Options handed to the index builder.

    The orchestrator always uses the defaults: every layer is indexed and
    the target platform is the platform of the running process.
    """

    model_config = ConfigDict(frozen=True)

    min_layer_size: int = 0
    platform: Platform = Field(default_factory=default_platform)
    span_size: int = 4 * 1024 * 1024


@runtime_checkable
class IndexBuilder(Protocol):
    """Protocol for SOCI index construction backends."""

    def build(
        self,
        image: ImageRef,
        content_store: ContentStore,
        artifact_store: GcArtifactStore,
        artifacts_db: ArtifactsDb,
        options: BuildOptions,
        cancel: CancellationToken,
    ) -> None:
        """Index *image*, writing artifacts to the store and recording them.

        Raises ``BuildError`` on failure.
        """
        ...

    def list_descriptors(
        self,
        content_store: ContentStore,
        artifacts_db: ArtifactsDb,
        image: ImageRef,
        platforms: list[Platform],
    ) -> list[IndexDescriptorInfo]:
        """Every index recorded for *image* across *platforms*, oldest first.

        An empty list is a valid answer, distinct from a build failure.
        """
        ...
