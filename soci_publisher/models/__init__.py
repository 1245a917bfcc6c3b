"""soci-publisher data models: Pydantic v2, frozen."""

from soci_publisher.models.descriptors import (
    ArtifactEntry,
    ArtifactEntryType,
    Descriptor,
    ImageRef,
    IndexDescriptorInfo,
    Platform,
    default_platform,
)
from soci_publisher.models.pipeline import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    PipelineOutcome,
    PipelineResult,
    PipelineState,
)
from soci_publisher.models.request import InvocationRequest, build_ecr_registry_url

__all__ = [
    # request
    "InvocationRequest",
    "build_ecr_registry_url",
    # descriptors
    "ArtifactEntry",
    "ArtifactEntryType",
    "Descriptor",
    "ImageRef",
    "IndexDescriptorInfo",
    "Platform",
    "default_platform",
    # pipeline
    "PipelineOutcome",
    "PipelineResult",
    "PipelineState",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
]
