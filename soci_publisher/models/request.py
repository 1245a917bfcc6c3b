"""Invocation request model and registry endpoint derivation."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, field_validator

from soci_publisher.core.hasher import is_valid_digest

_REPOSITORY_RE = re.compile(
    r"^(?:[a-z0-9]+(?:[._-][a-z0-9]+)*/)*[a-z0-9]+(?:[._-][a-z0-9]+)*$"
)
_REGION_RE = re.compile(r"^[a-z]{2}(?:-[a-z]+)+-\d+$")
_ACCOUNT_RE = re.compile(r"^\d{12}$")


def build_ecr_registry_url(region: str, account: str) -> str:
    """Return the ECR registry host for an account and region.

    China partition regions (``cn-*``) live under ``amazonaws.com.cn``.
    """
    aws_domain = ".amazonaws.com"
    if region.startswith("cn"):
        aws_domain = ".amazonaws.com.cn"
    return f"{account}.dkr.ecr.{region}{aws_domain}"


class InvocationRequest(BaseModel):
    """Immutable input of one pipeline invocation."""

    model_config = ConfigDict(frozen=True)

    repository: str
    digest: str
    region: str
    account: str

    @field_validator("repository")
    @classmethod
    def _check_repository(cls, value: str) -> str:
        if not value:
            raise ValueError("repository name must not be empty")
        if not _REPOSITORY_RE.match(value):
            raise ValueError(f"invalid repository name: {value!r}")
        return value

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        if not is_valid_digest(value):
            raise ValueError(f"invalid image digest: {value!r}")
        return value

    @field_validator("region")
    @classmethod
    def _check_region(cls, value: str) -> str:
        if not _REGION_RE.match(value):
            raise ValueError(f"invalid AWS region: {value!r}")
        return value

    @field_validator("account")
    @classmethod
    def _check_account(cls, value: str) -> str:
        if not _ACCOUNT_RE.match(value):
            raise ValueError(f"invalid AWS account id: {value!r}")
        return value

    @property
    def registry_url(self) -> str:
        return build_ecr_registry_url(self.region, self.account)

    @property
    def image_name(self) -> str:
        """Image name in ``repository@digest`` form."""
        return f"{self.repository}@{self.digest}"
