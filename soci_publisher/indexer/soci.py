"""SOCI index builder.

For each gzip tar layer of the target platform manifest a zTOC is written
to the artifact store; the zTOCs are then collected into a SOCI index
manifest whose ``subject`` is the image manifest. Both kinds of artifact
are recorded in the artifacts database.

The index content carries no timestamps, so re-indexing the same image
yields the same index digest.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from soci_publisher import media_types
from soci_publisher.core.artifacts_db import ArtifactsDb
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.content_store import BlobNotFoundError, ContentStore
from soci_publisher.core.hasher import canonical_json_bytes
from soci_publisher.core.oci_store import GcArtifactStore
from soci_publisher.errors import BuildError, PipelineCancelledError
from soci_publisher.indexer.base import BuildOptions
from soci_publisher.indexer.ztoc import BUILD_TOOL, ZtocError, build_ztoc
from soci_publisher.models.descriptors import (
    ArtifactEntry,
    ArtifactEntryType,
    Descriptor,
    ImageRef,
    IndexDescriptorInfo,
    Platform,
)

logger = logging.getLogger(__name__)

GC_LABEL_REF = "soci.gc.ref"


def select_platform_manifest(
    store: GcArtifactStore, target: Descriptor, platform: Platform
) -> Descriptor:
    """Resolve *target* to the manifest for *platform*.

    A plain image manifest is returned unchanged. For an image index the
    first entry matching *platform* is returned.
    """
    if target.media_type not in media_types.IMAGE_INDEXES:
        return target
    index = store.fetch_json(target.digest)
    for entry in index.get("manifests") or []:
        candidate = Descriptor.from_oci(entry)
        if candidate.platform is not None and platform.matches(candidate.platform):
            return candidate
    raise BuildError(f"No manifest for platform {platform.format()} in {target.digest}")


class SociIndexBuilder:
    """Builds SOCI indexes from images resident in the artifact store."""

    def build(
        self,
        image: ImageRef,
        content_store: ContentStore,
        artifact_store: GcArtifactStore,
        artifacts_db: ArtifactsDb,
        options: BuildOptions,
        cancel: CancellationToken,
    ) -> None:
        logger.info("Building SOCI index for %s (%s)", image.name, options.platform.format())
        try:
            self._build(image, content_store, artifact_store, artifacts_db, options, cancel)
        except (BuildError, PipelineCancelledError):
            self._discard_partial(artifact_store)
            raise
        except Exception as exc:
            self._discard_partial(artifact_store)
            raise BuildError(f"SOCI index build failed: {exc}") from exc

    @staticmethod
    def _discard_partial(artifact_store: GcArtifactStore) -> None:
        try:
            removed = artifact_store.garbage_collect()
        except OSError as exc:
            logger.error("Could not discard partial SOCI artifacts: %s", exc)
            return
        logger.debug("Removed %d partial artifacts after failed build", len(removed))

    def _build(
        self,
        image: ImageRef,
        content_store: ContentStore,
        artifact_store: GcArtifactStore,
        artifacts_db: ArtifactsDb,
        options: BuildOptions,
        cancel: CancellationToken,
    ) -> None:
        platform = options.platform
        manifest_desc = select_platform_manifest(artifact_store, image.target, platform)
        manifest = artifact_store.fetch_json(manifest_desc.digest)

        ztoc_descs: list[Descriptor] = []
        for raw_layer in manifest.get("layers") or []:
            cancel.raise_if_cancelled()
            layer = Descriptor.from_oci(raw_layer)
            ztoc_desc = self._build_layer_ztoc(layer, content_store, artifact_store, options, cancel)
            if ztoc_desc is None:
                continue
            ztoc_descs.append(ztoc_desc)
            self._record(
                artifacts_db,
                ztoc_desc,
                ArtifactEntryType.ZTOC,
                image,
                platform,
                original_digest=layer.digest,
            )

        if not ztoc_descs:
            raise BuildError("No ztocs created, all layers either skipped or produced errors")

        config_desc = artifact_store.push_bytes(
            media_types.EMPTY_JSON_DATA, media_types.OCI_EMPTY_JSON
        )
        index_document: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": media_types.OCI_IMAGE_MANIFEST,
            "artifactType": media_types.SOCI_INDEX_ARTIFACT_TYPE,
            "config": config_desc.to_oci(),
            "layers": [d.to_oci() for d in ztoc_descs],
            "subject": Descriptor(
                media_type=manifest_desc.media_type,
                digest=manifest_desc.digest,
                size=manifest_desc.size,
            ).to_oci(),
            "annotations": {media_types.ANNOTATION_BUILD_TOOL: BUILD_TOOL},
        }
        index_desc = artifact_store.push_bytes(
            canonical_json_bytes(index_document),
            media_types.OCI_IMAGE_MANIFEST,
            artifact_type=media_types.SOCI_INDEX_ARTIFACT_TYPE,
        )
        artifact_store.tag(index_desc, index_desc.digest)
        artifact_store.label(index_desc.digest, GC_LABEL_REF, manifest_desc.digest)
        self._record(artifacts_db, index_desc, ArtifactEntryType.SOCI_INDEX, image, platform)
        logger.info(
            "Built SOCI index %s with %d ztocs for %s",
            index_desc.digest,
            len(ztoc_descs),
            image.name,
        )

    def _build_layer_ztoc(
        self,
        layer: Descriptor,
        content_store: ContentStore,
        artifact_store: GcArtifactStore,
        options: BuildOptions,
        cancel: CancellationToken,
    ) -> Descriptor | None:
        if layer.size < options.min_layer_size:
            logger.debug("Skipping layer %s: %d bytes is below minimum", layer.digest, layer.size)
            return None
        if layer.media_type not in media_types.GZIP_LAYERS:
            logger.warning(
                "Skipping layer %s: unsupported media type %s", layer.digest, layer.media_type
            )
            return None

        try:
            with content_store.open(layer.digest) as handle:
                ztoc = build_ztoc(handle, layer.size, options.span_size, cancel)
        except BlobNotFoundError as exc:
            raise BuildError(f"Layer {layer.digest} is missing from the content store") from exc
        except ZtocError as exc:
            logger.warning("Skipping layer %s: %s", layer.digest, exc)
            return None

        ztoc_desc = artifact_store.push_bytes(
            ztoc.to_bytes(),
            media_types.SOCI_ZTOC,
            annotations={
                media_types.ANNOTATION_LAYER_DIGEST: layer.digest,
                media_types.ANNOTATION_LAYER_MEDIA_TYPE: layer.media_type,
            },
        )
        artifact_store.label(ztoc_desc.digest, GC_LABEL_REF, layer.digest)
        logger.debug("Layer %s -> ztoc %s", layer.digest, ztoc_desc.digest)
        return ztoc_desc

    @staticmethod
    def _record(
        artifacts_db: ArtifactsDb,
        descriptor: Descriptor,
        entry_type: ArtifactEntryType,
        image: ImageRef,
        platform: Platform,
        original_digest: str = "",
    ) -> None:
        artifacts_db.record(
            ArtifactEntry(
                digest=descriptor.digest,
                size=descriptor.size,
                media_type=descriptor.media_type,
                artifact_type=descriptor.artifact_type or "",
                entry_type=entry_type,
                image_digest=image.target.digest,
                image_name=image.name,
                platform=platform.format(),
                original_digest=original_digest,
                created_at=datetime.now(timezone.utc),
            )
        )

    def list_descriptors(
        self,
        content_store: ContentStore,
        artifacts_db: ArtifactsDb,
        image: ImageRef,
        platforms: list[Platform],
    ) -> list[IndexDescriptorInfo]:
        infos = artifacts_db.get_index_descriptors(
            image.target.digest, [p.format() for p in platforms]
        )
        present: list[IndexDescriptorInfo] = []
        for info in infos:
            if content_store.exists(info.descriptor.digest):
                present.append(info)
            else:
                logger.warning(
                    "Recorded index %s is missing from the content store",
                    info.descriptor.digest,
                )
        return present
