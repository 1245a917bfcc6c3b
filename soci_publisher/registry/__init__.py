"""Registry client capability and its ECR implementation."""

from soci_publisher.registry.base import RegistryClient

__all__ = ["RegistryClient"]
