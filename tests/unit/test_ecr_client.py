"""Unit tests for the ECR registry client against an in-process fake registry."""

from __future__ import annotations

import base64
import json
import re
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from botocore.exceptions import ClientError

from soci_publisher import media_types
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.hasher import sha256_digest
from soci_publisher.core.oci_store import GcArtifactStore
from soci_publisher.errors import ManifestValidationError, PipelineCancelledError, RegistryError
from soci_publisher.models.descriptors import Descriptor, Platform
from soci_publisher.registry import RegistryClient
from soci_publisher.registry import ecr
from soci_publisher.registry.ecr import EcrRegistryClient, ecr_basic_auth
from tests.fakes import FakeImage, make_image

REGISTRY = "123456789012.dkr.ecr.us-west-2.amazonaws.com"
REPO = "team/app"

_UPLOAD_RE = re.compile(r"^(?P<repo>.+)/blobs/uploads/(?P<session>[^/]*)$")
_BLOB_RE = re.compile(r"^(?P<repo>.+)/blobs/(?P<digest>[^/]+)$")
_MANIFEST_RE = re.compile(r"^(?P<repo>.+)/manifests/(?P<ref>[^/]+)$")


class StubResponse:
    def __init__(
        self, status_code: int = 200, content: bytes = b"", headers: dict[str, str] | None = None
    ) -> None:
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.text = content.decode("utf-8", errors="replace")
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeRegistrySession:
    """Minimal OCI distribution API served from dictionaries."""

    def __init__(self) -> None:
        self.manifests: dict[str, tuple[str, bytes]] = {}
        self.blobs: dict[str, bytes] = {}
        self.requests: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_with: Exception | None = None
        self.status_override: dict[str, int] = {}
        self.omit_location = False

    def add_image(self, image: FakeImage) -> None:
        self.blobs.update(image.blobs)
        self.manifests[image.digest] = (image.media_type, image.manifest)

    def add_manifest(self, media_type: str, body: bytes) -> str:
        digest = sha256_digest(body)
        self.manifests[digest] = (media_type, body)
        return digest

    def request(self, method: str, url: str, timeout: float | None = None, **kwargs: Any):
        self.requests.append((method, url, dict(kwargs, timeout=timeout)))
        if self.fail_with is not None:
            raise self.fail_with
        if method in self.status_override:
            return StubResponse(self.status_override[method], b"injected failure")

        parts = urlsplit(url)
        path = parts.path[len("/v2/"):]
        upload = _UPLOAD_RE.match(path)
        blob = _BLOB_RE.match(path)
        manifest = _MANIFEST_RE.match(path)

        if upload and method == "POST":
            headers = {} if self.omit_location else {"Location": f"/v2/{upload['repo']}/blobs/uploads/abc"}
            return StubResponse(202, headers=headers)
        if upload and method == "PUT":
            digest = parse_qs(parts.query)["digest"][0]
            data = kwargs["data"]
            self.blobs[digest] = data.read() if hasattr(data, "read") else data
            return StubResponse(201)
        if manifest and method == "GET":
            if manifest["ref"] not in self.manifests:
                return StubResponse(404, b'{"errors":[{"code":"MANIFEST_UNKNOWN"}]}')
            media_type, body = self.manifests[manifest["ref"]]
            return StubResponse(200, body, {"Content-Type": media_type})
        if manifest and method == "PUT":
            content_type = kwargs["headers"]["Content-Type"]
            self.manifests[manifest["ref"]] = (content_type, kwargs["data"])
            return StubResponse(201)
        if blob and method in ("GET", "HEAD"):
            if blob["digest"] not in self.blobs:
                return StubResponse(404)
            body = self.blobs[blob["digest"]] if method == "GET" else b""
            return StubResponse(200, body)
        return StubResponse(405)


@pytest.fixture
def session() -> FakeRegistrySession:
    return FakeRegistrySession()


@pytest.fixture
def client(session: FakeRegistrySession) -> EcrRegistryClient:
    return EcrRegistryClient(
        REGISTRY,
        session,  # type: ignore[arg-type]
        chunk_size=64,
        platform=Platform(os="linux", architecture="amd64"),
    )


def test_satisfies_protocol(client: EcrRegistryClient):
    assert isinstance(client, RegistryClient)


class TestValidateManifest:
    def test_image_manifest_passes(self, client, session, image, cancel):
        session.add_image(image)
        client.validate_manifest(REPO, image.digest, cancel)
        method, url, kwargs = session.requests[0]
        assert url == f"https://{REGISTRY}/v2/{REPO}/manifests/{image.digest}"
        assert media_types.OCI_IMAGE_MANIFEST in kwargs["headers"]["Accept"]

    def test_soci_index_is_rejected(self, client, session, cancel):
        index = make_image(
            manifest_overrides={"artifactType": media_types.SOCI_INDEX_ARTIFACT_TYPE}
        )
        session.add_image(index)
        with pytest.raises(ManifestValidationError, match="artifact"):
            client.validate_manifest(REPO, index.digest, cancel)

    def test_non_image_config_is_rejected(self, client, session, cancel):
        other = make_image(
            manifest_overrides={
                "config": {
                    "mediaType": "application/vnd.cncf.helm.config.v1+json",
                    "digest": "sha256:" + "0" * 64,
                    "size": 2,
                }
            }
        )
        session.add_image(other)
        with pytest.raises(ManifestValidationError, match="config media type"):
            client.validate_manifest(REPO, other.digest, cancel)

    def test_manifest_without_layers_is_rejected(self, client, session, cancel):
        empty = make_image(layers=[])
        session.add_image(empty)
        with pytest.raises(ManifestValidationError, match="no layers"):
            client.validate_manifest(REPO, empty.digest, cancel)

    def test_unsupported_media_type_is_rejected(self, client, session, cancel):
        digest = session.add_manifest("application/vnd.example+json", b"{}")
        with pytest.raises(ManifestValidationError, match="unsupported media type"):
            client.validate_manifest(REPO, digest, cancel)

    def test_invalid_json_is_rejected(self, client, session, cancel):
        digest = session.add_manifest(media_types.OCI_IMAGE_MANIFEST, b"not json")
        with pytest.raises(ManifestValidationError, match="not valid JSON"):
            client.validate_manifest(REPO, digest, cancel)

    def test_image_index_resolves_platform_child(self, client, session, image, cancel):
        session.add_image(image)
        index_digest = session.add_manifest(
            media_types.OCI_IMAGE_INDEX,
            json.dumps(
                {
                    "schemaVersion": 2,
                    "manifests": [
                        {
                            "mediaType": media_types.OCI_IMAGE_MANIFEST,
                            "digest": image.digest,
                            "size": len(image.manifest),
                            "platform": {"os": "linux", "architecture": "amd64"},
                        }
                    ],
                }
            ).encode(),
        )
        client.validate_manifest(REPO, index_digest, cancel)

    def test_image_index_without_platform_is_rejected(self, client, session, cancel):
        index_digest = session.add_manifest(
            media_types.OCI_IMAGE_INDEX,
            json.dumps(
                {
                    "manifests": [
                        {
                            "mediaType": media_types.OCI_IMAGE_MANIFEST,
                            "digest": "sha256:" + "e" * 64,
                            "size": 10,
                            "platform": {"os": "windows", "architecture": "amd64"},
                        }
                    ]
                }
            ).encode(),
        )
        with pytest.raises(ManifestValidationError, match="no manifest for platform"):
            client.validate_manifest(REPO, index_digest, cancel)

    def test_unknown_manifest_is_registry_error(self, client, cancel):
        with pytest.raises(RegistryError) as info:
            client.validate_manifest(REPO, "sha256:" + "f" * 64, cancel)
        assert info.value.status_code == 404
        assert info.value.registry_url == REGISTRY

    def test_network_failure_is_registry_error(self, client, session, image, cancel):
        session.fail_with = requests.ConnectionError("connection refused")
        with pytest.raises(RegistryError, match="connection refused"):
            client.validate_manifest(REPO, image.digest, cancel)

    def test_cancelled_before_request(self, client, session, image):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(PipelineCancelledError):
            client.validate_manifest(REPO, image.digest, token)
        assert session.requests == []


class TestPull:
    def test_pull_stores_manifest_and_blobs(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        session.add_image(image)
        root = client.pull(REPO, image.digest, artifact_store, cancel)

        assert root.digest == image.digest
        assert root.media_type == media_types.OCI_IMAGE_MANIFEST
        assert artifact_store.fetch(image.digest) == image.manifest
        for digest, data in image.blobs.items():
            assert artifact_store.fetch(digest) == data
        assert artifact_store.resolve(image.digest).digest == image.digest

    def test_pull_skips_blobs_already_present(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        session.add_image(image)
        client.pull(REPO, image.digest, artifact_store, cancel)
        count = len(session.requests)
        client.pull(REPO, image.digest, artifact_store, cancel)
        assert len(session.requests) - count == 1  # manifest only

    def test_corrupt_blob_is_registry_error(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        session.add_image(image)
        layer = next(d for d, b in image.blobs.items() if b[:2] == b"\x1f\x8b")
        session.blobs[layer] = b"tampered"
        with pytest.raises(RegistryError, match="mismatch"):
            client.pull(REPO, image.digest, artifact_store, cancel)
        assert not artifact_store.exists(layer)

    def test_server_error_is_registry_error(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        session.add_image(image)
        session.status_override["GET"] = 503
        with pytest.raises(RegistryError) as info:
            client.pull(REPO, image.digest, artifact_store, cancel)
        assert info.value.status_code == 503


class TestPush:
    def _index(self, store: GcArtifactStore, image: FakeImage) -> Descriptor:
        config = store.push_bytes(media_types.EMPTY_JSON_DATA, media_types.OCI_EMPTY_JSON)
        ztoc = store.push_bytes(b'{"files":[]}', media_types.SOCI_ZTOC)
        body = json.dumps(
            {
                "schemaVersion": 2,
                "mediaType": media_types.OCI_IMAGE_MANIFEST,
                "artifactType": media_types.SOCI_INDEX_ARTIFACT_TYPE,
                "config": config.to_oci(),
                "layers": [ztoc.to_oci()],
                "subject": image.descriptor.to_oci(),
            }
        ).encode()
        return store.push_bytes(body, media_types.OCI_IMAGE_MANIFEST)

    def test_push_uploads_blobs_and_manifest(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        index = self._index(artifact_store, image)
        client.push(artifact_store, index, REPO, cancel)

        assert session.blobs[media_types.EMPTY_JSON_DIGEST] == b"{}"
        media_type, body = session.manifests[index.digest]
        assert media_type == media_types.OCI_IMAGE_MANIFEST
        assert body == artifact_store.fetch(index.digest)
        put_urls = [url for method, url, _ in session.requests if method == "PUT"]
        assert any("digest=" in url for url in put_urls)

    def test_push_skips_existing_blobs(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        index = self._index(artifact_store, image)
        session.blobs[media_types.EMPTY_JSON_DIGEST] = b"{}"
        client.push(artifact_store, index, REPO, cancel)
        posts = [r for r in session.requests if r[0] == "POST"]
        assert len(posts) == 1  # the ztoc only

    def test_missing_location_is_registry_error(
        self, client, session, image, artifact_store: GcArtifactStore, cancel
    ):
        index = self._index(artifact_store, image)
        session.omit_location = True
        with pytest.raises(RegistryError, match="Location"):
            client.push(artifact_store, index, REPO, cancel)


class TestTransport:
    def test_timeout_capped_by_deadline(self, client, session, image):
        session.add_image(image)
        client.validate_manifest(REPO, image.digest, CancellationToken.with_timeout(5))
        timeout = session.requests[0][2]["timeout"]
        assert 1.0 <= timeout <= 5

    def test_default_timeout(self, client, session, image, cancel):
        session.add_image(image)
        client.validate_manifest(REPO, image.digest, cancel)
        assert session.requests[0][2]["timeout"] == 60.0


class _StubEcr:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.registry_ids: list[str] = []

    def get_authorization_token(self, registryIds: list[str]):
        self.registry_ids = registryIds
        if self.error is not None:
            raise self.error
        return self.response


class TestEcrBasicAuth:
    def test_decodes_token(self, monkeypatch):
        token = base64.b64encode(b"AWS:secret-password").decode()
        stub = _StubEcr({"authorizationData": [{"authorizationToken": token}]})
        monkeypatch.setattr(ecr.boto3, "client", lambda service, region_name: stub)
        assert ecr_basic_auth("us-west-2", "123456789012") == ("AWS", "secret-password")
        assert stub.registry_ids == ["123456789012"]

    def test_client_error(self, monkeypatch):
        error = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}},
            "GetAuthorizationToken",
        )
        monkeypatch.setattr(ecr.boto3, "client", lambda service, region_name: _StubEcr(error=error))
        with pytest.raises(RegistryError, match="authorization token"):
            ecr_basic_auth("us-west-2", "123456789012")

    def test_malformed_token(self, monkeypatch):
        stub = _StubEcr({"authorizationData": []})
        monkeypatch.setattr(ecr.boto3, "client", lambda service, region_name: stub)
        with pytest.raises(RegistryError, match="Malformed"):
            ecr_basic_auth("us-west-2", "123456789012")

    def test_from_credentials_builds_authenticated_session(self, monkeypatch):
        monkeypatch.setattr(ecr, "ecr_basic_auth", lambda region, account: ("AWS", "pw"))
        client = EcrRegistryClient.from_credentials(REGISTRY, "us-west-2", "123456789012")
        assert client.registry_url == REGISTRY
        assert client._session.auth == ("AWS", "pw")
