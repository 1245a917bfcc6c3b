"""Content-addressed blob store.

Storage layout: {root}/blobs/{algorithm}/{hex}
The same layout is used by the OCI image layout, so the content store and
the artifact store share blobs when rooted at the same directory.
Writes land in {root}/ingest/ first and are renamed into place only after
the digest has been verified.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.hasher import new_hasher, sha256_digest, split_digest
from soci_publisher.models.descriptors import Descriptor

logger = logging.getLogger(__name__)


class ContentIntegrityError(RuntimeError):
    """Raised when content does not match the digest or size it claims."""


class BlobNotFoundError(FileNotFoundError):
    """Raised when a digest is not present in the store."""


class ContentStore:
    """Digest keyed, write-once blob store.

    Storing the same content twice is a no-op.

    Parameters
    ----------
    root:
        Root directory of the store. Created if missing.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        (self.root / "blobs").mkdir(parents=True, exist_ok=True)
        (self.root / "ingest").mkdir(parents=True, exist_ok=True)

    def blob_path(self, digest: str) -> Path:
        algorithm, hex_part = split_digest(digest)
        return self.root / "blobs" / algorithm / hex_part

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write_bytes(self, data: bytes, media_type: str) -> Descriptor:
        """Store *data* and return its descriptor."""
        digest = sha256_digest(data)
        if not self.exists(digest):
            self.write_stream([data], digest, len(data))
        return Descriptor(media_type=media_type, digest=digest, size=len(data))

    def write_stream(
        self,
        chunks: Iterable[bytes],
        expected_digest: str,
        expected_size: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> int:
        """Write a chunked stream, verifying it against *expected_digest*.

        Returns the number of bytes written.
        """
        target = self.blob_path(expected_digest)
        hasher = new_hasher(expected_digest)
        written = 0
        fd, tmp_name = tempfile.mkstemp(dir=self.root / "ingest")
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in chunks:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    if not chunk:
                        continue
                    handle.write(chunk)
                    hasher.update(chunk)
                    written += len(chunk)

            actual = f"{expected_digest.split(':', 1)[0]}:{hasher.hexdigest()}"
            if actual != expected_digest:
                raise ContentIntegrityError(
                    f"Digest mismatch: expected {expected_digest}, got {actual}"
                )
            if expected_size is not None and written != expected_size:
                raise ContentIntegrityError(
                    f"Size mismatch for {expected_digest}: expected {expected_size}, got {written}"
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp_name, target)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        logger.debug("Stored blob %s (%d bytes)", expected_digest, written)
        return written

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read_bytes(self, digest: str) -> bytes:
        path = self.blob_path(digest)
        if not path.exists():
            raise BlobNotFoundError(f"Blob not found: {digest}")
        return path.read_bytes()

    def open(self, digest: str) -> BinaryIO:
        path = self.blob_path(digest)
        if not path.exists():
            raise BlobNotFoundError(f"Blob not found: {digest}")
        return path.open("rb")

    def exists(self, digest: str) -> bool:
        return self.blob_path(digest).exists()

    def size(self, digest: str) -> int:
        path = self.blob_path(digest)
        if not path.exists():
            raise BlobNotFoundError(f"Blob not found: {digest}")
        return path.stat().st_size

    def verify(self, digest: str) -> bool:
        """Re-hash stored data and compare against *digest*."""
        path = self.blob_path(digest)
        if not path.exists():
            return False
        hasher = new_hasher(digest)
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                hasher.update(chunk)
        return hasher.hexdigest() == digest.split(":", 1)[1]

    def iter_digests(self) -> Iterator[str]:
        blobs = self.root / "blobs"
        for algorithm_dir in sorted(p for p in blobs.iterdir() if p.is_dir()):
            for blob in sorted(algorithm_dir.iterdir()):
                yield f"{algorithm_dir.name}:{blob.name}"

    def delete(self, digest: str) -> bool:
        """Remove a blob. Returns ``False`` if it was not present."""
        path = self.blob_path(digest)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
