"""Per-layer table of contents (zTOC) generation.

A zTOC lists every entry of a gzip-compressed tar layer with its offset in
the uncompressed stream, plus span checkpoints that map uncompressed
offsets back to positions in the compressed blob. The serialised form is
canonical JSON, so the same layer always yields the same zTOC digest.
"""

from __future__ import annotations

import gzip
import tarfile
import zlib
from typing import BinaryIO

from pydantic import BaseModel, ConfigDict

from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.hasher import canonical_json_bytes

ZTOC_VERSION = "0.9"
BUILD_TOOL = "soci-publisher 0.1.0"

_TAR_TYPES = {
    tarfile.REGTYPE: "reg",
    tarfile.AREGTYPE: "reg",
    tarfile.DIRTYPE: "dir",
    tarfile.SYMTYPE: "symlink",
    tarfile.LNKTYPE: "hardlink",
    tarfile.CHRTYPE: "char",
    tarfile.BLKTYPE: "block",
    tarfile.FIFOTYPE: "fifo",
}


class ZtocError(ValueError):
    """Raised when a layer cannot be read as a gzip-compressed tar stream."""


class TocEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    uncompressed_offset: int
    uncompressed_size: int
    mode: int
    uid: int
    gid: int
    mtime: int
    linkname: str = ""


class SpanCheckpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    span_id: int
    uncompressed_offset: int
    compressed_offset: int


class Ztoc(BaseModel):
    """Table of contents of one compressed layer."""

    model_config = ConfigDict(frozen=True)

    version: str = ZTOC_VERSION
    build_tool: str = BUILD_TOOL
    compression_algorithm: str = "gzip"
    compressed_archive_size: int
    uncompressed_archive_size: int
    span_size: int
    spans: list[SpanCheckpoint]
    files: list[TocEntry]

    def to_bytes(self) -> bytes:
        return canonical_json_bytes(self.model_dump(mode="json"))


class _CountingReader:
    """Counts bytes pulled from the compressed blob."""

    def __init__(self, raw: BinaryIO) -> None:
        self._raw = raw
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        data = self._raw.read(size)
        self.count += len(data)
        return data


class _SpanTracker:
    """Tracks the uncompressed position and records span checkpoints."""

    def __init__(
        self,
        decompressed: gzip.GzipFile,
        counter: _CountingReader,
        span_size: int,
        cancel: CancellationToken | None,
    ) -> None:
        self._decompressed = decompressed
        self._counter = counter
        self._span_size = span_size
        self._cancel = cancel
        self.position = 0
        self.spans: list[SpanCheckpoint] = [
            SpanCheckpoint(span_id=0, uncompressed_offset=0, compressed_offset=0)
        ]

    def read(self, size: int = -1) -> bytes:
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()
        data = self._decompressed.read(size)
        self.position += len(data)
        while self.position >= self._span_size * len(self.spans):
            self.spans.append(
                SpanCheckpoint(
                    span_id=len(self.spans),
                    uncompressed_offset=self._span_size * len(self.spans),
                    compressed_offset=self._counter.count,
                )
            )
        return data


def build_ztoc(
    layer: BinaryIO,
    compressed_size: int,
    span_size: int,
    cancel: CancellationToken | None = None,
) -> Ztoc:
    """Read a gzip tar stream and return its zTOC."""
    if span_size <= 0:
        raise ValueError("span_size must be positive")

    counter = _CountingReader(layer)
    files: list[TocEntry] = []
    try:
        with gzip.GzipFile(fileobj=counter, mode="rb") as decompressed:  # type: ignore[arg-type]
            tracker = _SpanTracker(decompressed, counter, span_size, cancel)
            with tarfile.open(fileobj=tracker, mode="r|") as archive:  # type: ignore[call-overload]
                for member in archive:
                    files.append(
                        TocEntry(
                            name=member.name,
                            type=_TAR_TYPES.get(member.type, "other"),
                            uncompressed_offset=member.offset_data,
                            uncompressed_size=member.size,
                            mode=member.mode,
                            uid=member.uid,
                            gid=member.gid,
                            mtime=int(member.mtime),
                            linkname=member.linkname,
                        )
                    )
            # drain trailing padding so the size covers the whole stream
            while tracker.read(1024 * 1024):
                pass
    except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError) as exc:
        raise ZtocError(f"Layer is not a readable gzip tar stream: {exc}") from exc

    return Ztoc(
        compressed_archive_size=compressed_size,
        uncompressed_archive_size=tracker.position,
        span_size=span_size,
        spans=tracker.spans,
        files=files,
    )
