"""Registry client capability required by the orchestrator.

Defines the ``RegistryClient`` Protocol. ``EcrRegistryClient`` is the
production implementation; tests substitute a fake.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.oci_store import GcArtifactStore
from soci_publisher.models.descriptors import Descriptor


@runtime_checkable
class RegistryClient(Protocol):
    """Protocol for the remote registry the image lives in."""

    registry_url: str

    def validate_manifest(
        self, repo: str, digest: str, cancel: CancellationToken
    ) -> None:
        """Confirm the reference resolves to a manifest that can be indexed.

        Raises
        ------
        ManifestValidationError
            The manifest can never be indexed; the caller skips the image.
        RegistryError
            The manifest could not be fetched.
        """
        ...

    def pull(
        self,
        repo: str,
        digest: str,
        store: GcArtifactStore,
        cancel: CancellationToken,
    ) -> Descriptor:
        """Fetch the manifest and every referenced blob into *store*.

        Returns the descriptor of the manifest addressed by *digest*.
        """
        ...

    def push(
        self,
        store: GcArtifactStore,
        descriptor: Descriptor,
        repo: str,
        cancel: CancellationToken,
    ) -> None:
        """Upload the artifact *descriptor* (resident in *store*) to *repo*."""
        ...
