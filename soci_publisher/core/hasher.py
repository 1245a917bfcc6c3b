"""Digest helpers for content addressing."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

SUPPORTED_ALGORITHMS = ("sha256", "sha512")

DIGEST_RE = re.compile(r"^(?:sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")


class InvalidDigestError(ValueError):
    """Raised for a string that is not a recognised content digest."""


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_digest(data: bytes) -> str:
    """Return the ``sha256:<hex>`` digest of raw bytes."""
    return f"sha256:{sha256_hex(data)}"


def is_valid_digest(value: str) -> bool:
    return bool(DIGEST_RE.match(value))


def split_digest(digest: str) -> tuple[str, str]:
    """Split ``alg:hex`` into its parts, validating the format."""
    if not is_valid_digest(digest):
        raise InvalidDigestError(f"Invalid content digest: {digest!r}")
    algorithm, hex_part = digest.split(":", 1)
    return algorithm, hex_part


def new_hasher(digest: str) -> Any:
    """Return a hashlib object matching the algorithm of *digest*."""
    algorithm, _ = split_digest(digest)
    return hashlib.new(algorithm)
