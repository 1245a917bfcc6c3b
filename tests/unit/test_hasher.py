"""Unit tests for digest helpers."""

from __future__ import annotations

import pytest

from soci_publisher.core.hasher import (
    InvalidDigestError,
    canonical_json_bytes,
    is_valid_digest,
    sha256_digest,
    split_digest,
)


def test_canonical_json_is_sorted_and_compact():
    assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'


def test_sha256_digest_of_empty_json():
    assert sha256_digest(b"{}") == (
        "sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a"
    )


def test_is_valid_digest():
    assert is_valid_digest("sha256:" + "a" * 64)
    assert is_valid_digest("sha512:" + "b" * 128)
    assert not is_valid_digest("sha256:" + "a" * 63)
    assert not is_valid_digest("sha1:" + "a" * 40)


def test_split_digest_rejects_garbage():
    assert split_digest("sha256:" + "c" * 64) == ("sha256", "c" * 64)
    with pytest.raises(InvalidDigestError):
        split_digest("../../etc/passwd")
