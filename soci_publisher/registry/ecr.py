"""ECR registry client built on the OCI distribution API.

Authentication uses an ECR authorization token fetched with boto3; every
registry call is a plain HTTPS request made through a ``requests.Session``.
Calls are attempted once: retrying is left to whoever re-invokes the
pipeline.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any
from urllib.parse import urljoin

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from soci_publisher import media_types
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.content_store import ContentIntegrityError
from soci_publisher.core.oci_store import GcArtifactStore
from soci_publisher.errors import ManifestValidationError, RegistryError
from soci_publisher.models.descriptors import Descriptor, Platform, default_platform

logger = logging.getLogger(__name__)


def ecr_basic_auth(region: str, account: str) -> tuple[str, str]:
    """Return ``(username, password)`` from an ECR authorization token."""
    try:
        client = boto3.client("ecr", region_name=region)
        response = client.get_authorization_token(registryIds=[account])
        token = response["authorizationData"][0]["authorizationToken"]
        username, password = base64.b64decode(token).decode("utf-8").split(":", 1)
    except (BotoCoreError, ClientError) as exc:
        raise RegistryError(f"Unable to obtain ECR authorization token: {exc}") from exc
    except (KeyError, IndexError, ValueError) as exc:
        raise RegistryError(f"Malformed ECR authorization token: {exc}") from exc
    return username, password


class EcrRegistryClient:
    """Validates, pulls and pushes content against one ECR registry.

    Parameters
    ----------
    registry_url:
        Registry host, e.g. ``123456789012.dkr.ecr.us-west-2.amazonaws.com``.
    session:
        Pre-authenticated session. ``from_credentials`` builds one.
    timeout_seconds:
        Per-request timeout; shortened to the cancellation deadline if sooner.
    chunk_size:
        Streaming chunk size for blob downloads.
    platform:
        Platform used to pick an entry out of an image index.
    """

    def __init__(
        self,
        registry_url: str,
        session: requests.Session,
        *,
        timeout_seconds: float = 60.0,
        chunk_size: int = 1024 * 1024,
        platform: Platform | None = None,
    ) -> None:
        self.registry_url = registry_url
        self._session = session
        self._timeout = timeout_seconds
        self._chunk_size = chunk_size
        self.platform = platform or default_platform()
        self._base = f"https://{registry_url}/v2/"

    @classmethod
    def from_credentials(
        cls,
        registry_url: str,
        region: str,
        account: str,
        **kwargs: Any,
    ) -> EcrRegistryClient:
        username, password = ecr_basic_auth(region, account)
        session = requests.Session()
        session.auth = (username, password)
        session.headers["User-Agent"] = "soci-publisher/0.1.0"
        return cls(registry_url, session, **kwargs)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_manifest(self, repo: str, digest: str, cancel: CancellationToken) -> None:
        raw, media_type = self._fetch_manifest(repo, digest, cancel)
        document = _parse_manifest(raw, digest)
        media_type = media_type or document.get("mediaType", "")

        if media_type in media_types.IMAGE_INDEXES:
            entry = self._select_entry(document, digest)
            raw, child_type = self._fetch_manifest(repo, entry.digest, cancel)
            child = _parse_manifest(raw, entry.digest)
            _check_image_manifest(child, child_type or entry.media_type, entry.digest)
        else:
            _check_image_manifest(document, media_type, digest)

    def _select_entry(self, index: dict[str, Any], digest: str) -> Descriptor:
        for entry in index.get("manifests") or []:
            candidate = Descriptor.from_oci(entry)
            if candidate.platform is not None and self.platform.matches(candidate.platform):
                return candidate
        raise ManifestValidationError(
            f"Image index {digest} has no manifest for platform {self.platform.format()}"
        )

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(
        self,
        repo: str,
        digest: str,
        store: GcArtifactStore,
        cancel: CancellationToken,
    ) -> Descriptor:
        logger.info("Pulling %s@%s from %s", repo, digest, self.registry_url)
        raw, media_type = self._fetch_manifest(repo, digest, cancel)
        document = _parse_manifest(raw, digest, error=RegistryError)
        root = Descriptor(
            media_type=media_type or document.get("mediaType", media_types.OCI_IMAGE_MANIFEST),
            digest=digest,
            size=len(raw),
        )
        self._store_bytes(store, root, raw)

        manifest = document
        if root.media_type in media_types.IMAGE_INDEXES:
            entry = self._select_entry(document, digest)
            raw, _ = self._fetch_manifest(repo, entry.digest, cancel)
            self._store_bytes(store, entry, raw)
            manifest = _parse_manifest(raw, entry.digest, error=RegistryError)

        blobs = [manifest.get("config")] + list(manifest.get("layers") or [])
        for raw_blob in blobs:
            if not isinstance(raw_blob, dict):
                continue
            cancel.raise_if_cancelled()
            self._pull_blob(repo, Descriptor.from_oci(raw_blob), store, cancel)

        store.tag(root, digest)
        logger.info("Pulled %s@%s (%d blobs)", repo, digest, len(blobs))
        return root

    def _pull_blob(
        self,
        repo: str,
        blob: Descriptor,
        store: GcArtifactStore,
        cancel: CancellationToken,
    ) -> None:
        if store.exists(blob.digest):
            return
        response = self._request(
            "GET", f"{repo}/blobs/{blob.digest}", cancel, stream=True
        )
        try:
            store.push_stream(
                blob, response.iter_content(chunk_size=self._chunk_size), cancel
            )
        except ContentIntegrityError as exc:
            raise RegistryError(str(exc), registry_url=self.registry_url) from exc
        except requests.RequestException as exc:
            raise RegistryError(
                f"Blob download of {blob.digest} failed: {exc}",
                registry_url=self.registry_url,
            ) from exc
        finally:
            response.close()

    def _store_bytes(self, store: GcArtifactStore, descriptor: Descriptor, raw: bytes) -> None:
        try:
            store.push_stream(descriptor, [raw])
        except ContentIntegrityError as exc:
            raise RegistryError(str(exc), registry_url=self.registry_url) from exc

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        store: GcArtifactStore,
        descriptor: Descriptor,
        repo: str,
        cancel: CancellationToken,
    ) -> None:
        logger.info("Pushing %s to %s/%s", descriptor.digest, self.registry_url, repo)
        manifest = store.fetch_json(descriptor.digest)
        blobs = [manifest.get("config")] + list(manifest.get("layers") or [])
        for raw_blob in blobs:
            if not isinstance(raw_blob, dict):
                continue
            cancel.raise_if_cancelled()
            self._push_blob(repo, Descriptor.from_oci(raw_blob), store, cancel)

        self._request(
            "PUT",
            f"{repo}/manifests/{descriptor.digest}",
            cancel,
            expected=(200, 201),
            data=store.fetch(descriptor.digest),
            headers={"Content-Type": descriptor.media_type},
        )
        logger.info("Pushed %s to %s/%s", descriptor.digest, self.registry_url, repo)

    def _push_blob(
        self,
        repo: str,
        blob: Descriptor,
        store: GcArtifactStore,
        cancel: CancellationToken,
    ) -> None:
        head = self._request(
            "HEAD", f"{repo}/blobs/{blob.digest}", cancel, expected=(200, 404)
        )
        if head.status_code == 200:
            logger.debug("Blob %s already exists in %s", blob.digest, repo)
            return

        started = self._request("POST", f"{repo}/blobs/uploads/", cancel, expected=(202,))
        location = started.headers.get("Location")
        if not location:
            raise RegistryError(
                "Upload session response has no Location header",
                status_code=started.status_code,
                registry_url=self.registry_url,
            )
        upload_url = urljoin(self._base, location)
        separator = "&" if "?" in upload_url else "?"
        with store.content.open(blob.digest) as handle:
            self._request(
                "PUT",
                f"{upload_url}{separator}digest={blob.digest}",
                cancel,
                expected=(201,),
                data=handle,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(blob.size),
                },
            )
        logger.debug("Uploaded blob %s (%d bytes)", blob.digest, blob.size)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _fetch_manifest(
        self, repo: str, reference: str, cancel: CancellationToken
    ) -> tuple[bytes, str]:
        response = self._request(
            "GET",
            f"{repo}/manifests/{reference}",
            cancel,
            headers={"Accept": media_types.MANIFEST_ACCEPT},
        )
        content_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        return response.content, content_type

    def _request(
        self,
        method: str,
        path_or_url: str,
        cancel: CancellationToken,
        *,
        expected: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> requests.Response:
        cancel.raise_if_cancelled()
        url = path_or_url if path_or_url.startswith("https://") else self._base + path_or_url
        timeout = self._timeout
        remaining = cancel.remaining()
        if remaining is not None:
            timeout = max(min(timeout, remaining), 1.0)
        try:
            response = self._session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as exc:
            raise RegistryError(
                f"{method} {url} failed: {exc}", registry_url=self.registry_url
            ) from exc
        if response.status_code not in expected:
            detail = (response.text or "").strip()[:300] if method != "HEAD" else ""
            response.close()
            raise RegistryError(
                f"{method} {url} returned {response.status_code}"
                + (f": {detail}" if detail else ""),
                status_code=response.status_code,
                registry_url=self.registry_url,
            )
        return response


def _parse_manifest(
    raw: bytes,
    digest: str,
    error: type[Exception] = ManifestValidationError,
) -> dict[str, Any]:
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise error(f"Manifest {digest} is not valid JSON") from exc
    if not isinstance(document, dict):
        raise error(f"Manifest {digest} is not a JSON object")
    return document


def _check_image_manifest(document: dict[str, Any], media_type: str, digest: str) -> None:
    """Reject manifests that are not container images.

    SOCI indexes and other artifacts pushed to the same repository are
    rejected here, so publishing an index never re-triggers a build for it.
    """
    if media_type not in media_types.IMAGE_MANIFESTS:
        raise ManifestValidationError(
            f"Manifest {digest} has unsupported media type {media_type!r}"
        )
    if document.get("artifactType"):
        raise ManifestValidationError(
            f"Manifest {digest} is an artifact of type {document['artifactType']!r}"
        )
    config = document.get("config")
    config_type = config.get("mediaType") if isinstance(config, dict) else None
    if config_type not in media_types.IMAGE_CONFIGS:
        raise ManifestValidationError(
            f"Manifest {digest} config media type {config_type!r} is not an image config"
        )
    if not document.get("layers"):
        raise ManifestValidationError(f"Manifest {digest} has no layers")
