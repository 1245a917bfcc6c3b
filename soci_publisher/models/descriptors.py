"""Content descriptor, platform and index artifact models."""

from __future__ import annotations

import platform as _host
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Host machine names normalised to OCI architecture/variant pairs.
_ARCH_ALIASES: dict[str, tuple[str, str | None]] = {
    "x86_64": ("amd64", None),
    "amd64": ("amd64", None),
    "i386": ("386", None),
    "i686": ("386", None),
    "aarch64": ("arm64", "v8"),
    "arm64": ("arm64", "v8"),
    "armv7l": ("arm", "v7"),
    "armv6l": ("arm", "v6"),
    "ppc64le": ("ppc64le", None),
    "s390x": ("s390x", None),
}


class Platform(BaseModel):
    """Target platform of an image manifest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    os: str
    architecture: str
    variant: str | None = None

    def format(self) -> str:
        """Return ``os/arch[/variant]``."""
        parts = [self.os, self.architecture]
        if self.variant:
            parts.append(self.variant)
        return "/".join(parts)

    @classmethod
    def parse(cls, value: str) -> Platform:
        parts = value.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"invalid platform specifier: {value!r}")
        return cls(
            os=parts[0],
            architecture=parts[1],
            variant=parts[2] if len(parts) == 3 else None,
        )

    def matches(self, other: Platform) -> bool:
        """Match OS and architecture; a missing variant on either side matches."""
        if self.os != other.os or self.architecture != other.architecture:
            return False
        if self.variant and other.variant:
            return self.variant == other.variant
        return True


def default_platform() -> Platform:
    """The platform of the running process (always a Linux image platform)."""
    machine = _host.machine().lower()
    architecture, variant = _ARCH_ALIASES.get(machine, (machine, None))
    return Platform(os="linux", architecture=architecture, variant=variant)


class Descriptor(BaseModel):
    """OCI content descriptor: digest, size and media type of a blob."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    media_type: str = Field(alias="mediaType")
    digest: str
    size: int
    artifact_type: str | None = Field(default=None, alias="artifactType")
    annotations: dict[str, str] | None = None
    platform: Platform | None = None

    def to_oci(self) -> dict[str, Any]:
        """Serialise with OCI field names, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_oci(cls, payload: dict[str, Any]) -> Descriptor:
        return cls.model_validate(payload)


class ImageRef(BaseModel):
    """A pulled source image: ``repository@digest`` plus its resolved target."""

    model_config = ConfigDict(frozen=True)

    name: str
    target: Descriptor


class IndexDescriptorInfo(BaseModel):
    """An index artifact descriptor plus the time the builder recorded it."""

    model_config = ConfigDict(frozen=True)

    descriptor: Descriptor
    created_at: datetime


class ArtifactEntryType(str, Enum):
    SOCI_INDEX = "soci_index"
    ZTOC = "ztoc"


class ArtifactEntry(BaseModel):
    """One row of the artifacts metadata database."""

    model_config = ConfigDict(frozen=True)

    digest: str
    size: int
    media_type: str
    entry_type: ArtifactEntryType
    image_digest: str
    image_name: str = ""
    platform: str = ""
    original_digest: str = ""  # source layer digest, for ztocs
    artifact_type: str = ""
    created_at: datetime
