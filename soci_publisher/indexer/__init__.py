"""Index builder capability and the SOCI implementation."""

from soci_publisher.indexer.base import BuildOptions, IndexBuilder

__all__ = ["BuildOptions", "IndexBuilder"]
