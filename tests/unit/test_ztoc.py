"""Unit tests for zTOC generation."""

from __future__ import annotations

import gzip
import io
import json
import os

import pytest

from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.errors import PipelineCancelledError
from soci_publisher.indexer.ztoc import ZtocError, build_ztoc
from tests.fakes import make_layer


def _ztoc(layer: bytes, span_size: int = 1024 * 1024):
    return build_ztoc(io.BytesIO(layer), len(layer), span_size)


class TestBuildZtoc:
    def test_lists_every_file(self):
        layer = make_layer({"a.txt": b"alpha", "dir/b.bin": b"\x00" * 2048})
        ztoc = _ztoc(layer)
        assert [f.name for f in ztoc.files] == ["a.txt", "dir/b.bin"]
        assert [f.uncompressed_size for f in ztoc.files] == [5, 2048]
        assert all(f.type == "reg" for f in ztoc.files)
        assert ztoc.compressed_archive_size == len(layer)
        assert ztoc.uncompressed_archive_size == len(gzip.decompress(layer))

    def test_offsets_point_at_file_data(self):
        layer = make_layer({"first": b"1" * 700, "second": b"second-data"})
        raw = gzip.decompress(layer)
        for entry in _ztoc(layer).files:
            start = entry.uncompressed_offset
            data = raw[start : start + entry.uncompressed_size]
            assert data == (b"1" * 700 if entry.name == "first" else b"second-data")

    def test_span_checkpoints(self):
        layer = make_layer({"big": os.urandom(64 * 1024)})
        ztoc = _ztoc(layer, span_size=16 * 1024)
        assert ztoc.spans[0].uncompressed_offset == 0
        assert len(ztoc.spans) >= 4
        offsets = [s.uncompressed_offset for s in ztoc.spans]
        assert offsets == sorted(offsets)
        compressed = [s.compressed_offset for s in ztoc.spans]
        assert compressed == sorted(compressed)

    def test_serialisation_is_deterministic(self):
        layer = make_layer({"x": b"same"})
        assert _ztoc(layer).to_bytes() == _ztoc(layer).to_bytes()
        assert json.loads(_ztoc(layer).to_bytes())["compression_algorithm"] == "gzip"

    def test_not_gzip(self):
        with pytest.raises(ZtocError):
            _ztoc(b"plain bytes, not gzip")

    def test_gzip_but_not_tar(self):
        with pytest.raises(ZtocError):
            _ztoc(gzip.compress(b"\x01" * 1024))

    def test_rejects_non_positive_span(self):
        with pytest.raises(ValueError):
            _ztoc(make_layer({"x": b"y"}), span_size=0)

    def test_cancellation(self):
        token = CancellationToken()
        token.cancel("deadline")
        layer = make_layer({"x": b"y"})
        with pytest.raises(PipelineCancelledError):
            build_ztoc(io.BytesIO(layer), len(layer), 1024, token)
