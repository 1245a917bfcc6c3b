"""OCI image layout store and its garbage-collection aware adapter.

Layout under the store root::

    oci-layout      {"imageLayoutVersion": "1.0.0"}
    index.json      tagged root descriptors
    blobs/...       shared with ContentStore
    labels.json     GC labels (GcArtifactStore only)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from soci_publisher import media_types
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.content_store import BlobNotFoundError, ContentStore
from soci_publisher.models.descriptors import Descriptor

logger = logging.getLogger(__name__)

OCI_LAYOUT_VERSION = "1.0.0"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"


class OciLayoutStore:
    """OCI image layout rooted at a directory.

    Parameters
    ----------
    root:
        Layout directory. ``oci-layout`` and ``index.json`` are created when
        absent and validated when present.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.content = ContentStore(self.root)
        self._layout_file = self.root / "oci-layout"
        self._index_file = self.root / "index.json"
        self._init_layout()

    def _init_layout(self) -> None:
        if self._layout_file.exists():
            layout = json.loads(self._layout_file.read_text(encoding="utf-8"))
            version = layout.get("imageLayoutVersion")
            if version != OCI_LAYOUT_VERSION:
                raise ValueError(f"Unsupported OCI layout version: {version!r}")
        else:
            self._layout_file.write_text(
                json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}), encoding="utf-8"
            )
        if not self._index_file.exists():
            self._write_index([])
        else:
            self._read_index()

    # ------------------------------------------------------------------
    # index.json
    # ------------------------------------------------------------------

    def _read_index(self) -> list[dict[str, Any]]:
        document = json.loads(self._index_file.read_text(encoding="utf-8"))
        manifests = document.get("manifests", [])
        if not isinstance(manifests, list):
            raise ValueError("index.json 'manifests' is not a list")
        return manifests

    def _write_index(self, manifests: list[dict[str, Any]]) -> None:
        document = {
            "schemaVersion": 2,
            "mediaType": media_types.OCI_IMAGE_INDEX,
            "manifests": manifests,
        }
        tmp = self._index_file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
        tmp.replace(self._index_file)

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        """Record *descriptor* in index.json under *reference*."""
        annotations = dict(descriptor.annotations or {})
        annotations[REF_NAME_ANNOTATION] = reference
        entry = descriptor.model_copy(update={"annotations": annotations}).to_oci()
        manifests = [
            m
            for m in self._read_index()
            if (m.get("annotations") or {}).get(REF_NAME_ANNOTATION) != reference
        ]
        manifests.append(entry)
        self._write_index(manifests)

    def resolve(self, reference: str) -> Descriptor:
        """Return the descriptor tagged *reference*, or tagged by digest."""
        for entry in self._read_index():
            ref_name = (entry.get("annotations") or {}).get(REF_NAME_ANNOTATION)
            if ref_name == reference or entry.get("digest") == reference:
                return Descriptor.from_oci(entry)
        raise BlobNotFoundError(f"Reference not found in OCI layout: {reference}")

    def tagged(self) -> list[Descriptor]:
        return [Descriptor.from_oci(entry) for entry in self._read_index()]

    # ------------------------------------------------------------------
    # Blob access
    # ------------------------------------------------------------------

    def push_bytes(self, data: bytes, media_type: str, **fields: Any) -> Descriptor:
        descriptor = self.content.write_bytes(data, media_type)
        if fields:
            descriptor = descriptor.model_copy(update=fields)
        return descriptor

    def push_stream(
        self,
        descriptor: Descriptor,
        chunks: Any,
        cancel: CancellationToken | None = None,
    ) -> None:
        if self.content.exists(descriptor.digest):
            return
        self.content.write_stream(chunks, descriptor.digest, descriptor.size, cancel)

    def fetch(self, digest: str) -> bytes:
        return self.content.read_bytes(digest)

    def fetch_json(self, digest: str) -> dict[str, Any]:
        return json.loads(self.content.read_bytes(digest))

    def exists(self, digest: str) -> bool:
        return self.content.exists(digest)


class GcArtifactStore:
    """Adapter adding GC bookkeeping on top of an ``OciLayoutStore``.

    The index builder expects an artifact store that can label blobs and
    drop the ones nothing references any more. Every other call is passed
    straight to the wrapped layout store.
    """

    def __init__(self, layout: OciLayoutStore) -> None:
        self.layout = layout
        self._labels_file = layout.root / "labels.json"

    @property
    def root(self) -> Path:
        return self.layout.root

    @property
    def content(self) -> ContentStore:
        return self.layout.content

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        self.layout.tag(descriptor, reference)

    def resolve(self, reference: str) -> Descriptor:
        return self.layout.resolve(reference)

    def tagged(self) -> list[Descriptor]:
        return self.layout.tagged()

    def push_bytes(self, data: bytes, media_type: str, **fields: Any) -> Descriptor:
        return self.layout.push_bytes(data, media_type, **fields)

    def push_stream(
        self,
        descriptor: Descriptor,
        chunks: Any,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.layout.push_stream(descriptor, chunks, cancel)

    def fetch(self, digest: str) -> bytes:
        return self.layout.fetch(digest)

    def fetch_json(self, digest: str) -> dict[str, Any]:
        return self.layout.fetch_json(digest)

    def exists(self, digest: str) -> bool:
        return self.layout.exists(digest)

    # ------------------------------------------------------------------
    # GC bookkeeping
    # ------------------------------------------------------------------

    def _read_labels(self) -> dict[str, dict[str, str]]:
        if not self._labels_file.exists():
            return {}
        return json.loads(self._labels_file.read_text(encoding="utf-8"))

    def _write_labels(self, labels: dict[str, dict[str, str]]) -> None:
        self._labels_file.write_text(json.dumps(labels, sort_keys=True), encoding="utf-8")

    def label(self, digest: str, key: str, value: str) -> None:
        labels = self._read_labels()
        labels.setdefault(digest, {})[key] = value
        self._write_labels(labels)

    def labels(self, digest: str) -> dict[str, str]:
        return dict(self._read_labels().get(digest, {}))

    def delete(self, digest: str) -> bool:
        labels = self._read_labels()
        if labels.pop(digest, None) is not None:
            self._write_labels(labels)
        return self.content.delete(digest)

    def garbage_collect(self, extra_roots: list[str] | None = None) -> list[str]:
        """Delete blobs unreachable from tagged manifests and *extra_roots*.

        Returns the removed digests.
        """
        roots = [d.digest for d in self.tagged()] + list(extra_roots or [])
        reachable: set[str] = set()
        pending = list(roots)
        while pending:
            digest = pending.pop()
            if digest in reachable or not self.exists(digest):
                continue
            reachable.add(digest)
            pending.extend(_referenced_digests(self.content, digest))

        removed = [d for d in self.content.iter_digests() if d not in reachable]
        for digest in removed:
            self.delete(digest)
        if removed:
            logger.debug("Garbage collected %d unreferenced blobs", len(removed))
        return removed


def _referenced_digests(content: ContentStore, digest: str) -> list[str]:
    """Children of a manifest or index blob; empty for anything else."""
    if content.size(digest) > 4 * 1024 * 1024:
        return []
    try:
        document = json.loads(content.read_bytes(digest))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return []
    if not isinstance(document, dict):
        return []
    children: list[str] = []
    config = document.get("config")
    if isinstance(config, dict) and config.get("digest"):
        children.append(config["digest"])
    for key in ("layers", "manifests"):
        for entry in document.get(key) or []:
            if isinstance(entry, dict) and entry.get("digest"):
                children.append(entry["digest"])
    return children
