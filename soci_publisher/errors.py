"""Error taxonomy for the build-and-publish pipeline.

Every terminal fault raised by a pipeline stage derives from
``SociPublisherError``. ``ManifestValidationError`` is the one class the
orchestrator reports as a skip rather than a failure.
"""

from __future__ import annotations


class SociPublisherError(Exception):
    """Base class for all pipeline errors."""


class ManifestValidationError(SociPublisherError):
    """The image manifest can never be indexed (wrong shape or media type)."""


class ResourceError(SociPublisherError):
    """The scratch workspace could not be created or destroyed."""


class StorageInitError(SociPublisherError):
    """A content store, artifact store or artifacts database failed to open."""


class RegistryError(SociPublisherError):
    """A registry call failed (network, auth, not-found, remote 5xx).

    This is the class an external invoker is expected to retry by running
    the whole invocation again.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        registry_url: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.registry_url = registry_url


class BuildError(SociPublisherError):
    """The index builder failed or recorded no usable index."""


class PipelineCancelledError(SociPublisherError):
    """The caller's cancellation signal or deadline fired mid-pipeline."""


class InvalidTransitionError(RuntimeError):
    """Raised when a requested pipeline state transition is not valid."""
