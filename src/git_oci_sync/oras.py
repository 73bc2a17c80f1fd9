"""ORAS adapter for OCI registry operations.

One adapter is bound to one repository on one registry. It exposes the
content-addressable primitives the sync engines need (blob existence,
blob/manifest transfer, referrers) and maps HTTP failures onto the
RegistryError hierarchy.
"""

from pathlib import Path
from typing import List, Optional, Tuple
import logging
import os
import tempfile
import time

import oras.client
import requests
from oras.container import Container

from .constants import (
    ENV_INSECURE,
    ENV_REGISTRY_PASSWORD,
    ENV_REGISTRY_USERNAME,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    USER_AGENT,
)
from .errors import AuthError, NetworkError, NotFoundError, RegistryError
from .models import Descriptor, digest_bytes

logger = logging.getLogger(__name__)

# OCI media types for manifest accept headers
OCI_ACCEPT = ",".join([
    MEDIA_TYPE_IMAGE_MANIFEST,
    "application/vnd.docker.distribution.manifest.v2+json",
])


def _env_insecure() -> bool:
    return os.environ.get(ENV_INSECURE, "false").lower() in ("true", "1", "yes")


def _is_localhost(registry_host: str) -> bool:
    return registry_host.startswith("localhost") or registry_host.startswith("127.0.0.1")


def parse_reference(reference: str) -> Tuple[str, str]:
    """Split "registry/namespace/repo:tag" into (repository, tag-or-digest).

    A missing tag defaults to "latest".
    """
    try:
        container = Container(reference)
    except ValueError as e:
        raise RegistryError(f"Invalid OCI reference {reference!r}: {e}")
    repository = f"{container.registry}/{container.api_prefix}"
    return repository, container.digest or container.tag


class OrasAdapter:
    """Adapter for one OCI repository using oras-py."""

    def __init__(
        self,
        repository: str,
        insecure: Optional[bool] = None,
        retries: int = 3,
    ):
        """Initialize ORAS Registry client.

        Args:
            repository: Repository without tag (e.g. "localhost:5000/org/repo")
            insecure: Whether to use plain HTTP. If None, auto-detects based on registry
            retries: Attempts for manifest reads (eventual consistency after push)
        """
        self.container = Container(repository)
        self.repository = repository
        self.registry = self.container.registry
        self.retries = retries

        if insecure is None:
            insecure = _is_localhost(self.registry) or _env_insecure()
        self.insecure = insecure

        self.client = oras.client.OrasClient(insecure=insecure)
        self.client.session.headers.update({"User-Agent": USER_AGENT})

        username = os.environ.get(ENV_REGISTRY_USERNAME)
        password = os.environ.get(ENV_REGISTRY_PASSWORD)
        if username and password:
            self.client.auth.set_basic_auth(username, password)
            logger.debug(f"Using basic authentication for {self.registry}")

    @classmethod
    def from_reference(cls, reference: str, insecure: Optional[bool] = None) -> Tuple["OrasAdapter", str]:
        """Build an adapter for the repository in reference; returns (adapter, tag)."""
        repository, tag = parse_reference(reference)
        return cls(repository, insecure=insecure), tag

    def __repr__(self) -> str:
        return f"OrasAdapter({self.repository!r})"

    # ============= HTTP plumbing =============

    def _url(self, path: str) -> str:
        return f"{self.client.prefix}://{self.registry}/v2/{self.container.api_prefix}/{path}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.client.do_request(url, method, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Cannot connect to registry: {e}")
        except ValueError as e:
            # oras-py raises ValueError when it cannot answer an auth challenge
            raise AuthError(f"Authentication failed for {url}: {e}")

    @staticmethod
    def _check(resp: requests.Response, what: str) -> None:
        if resp.status_code in (200, 201, 202):
            return
        if resp.status_code == 404:
            raise NotFoundError(f"Not found: {what}")
        if resp.status_code in (401, 403):
            raise AuthError(f"Authentication failed for {what}")
        if resp.status_code >= 500:
            raise NetworkError(f"Registry error {resp.status_code}: {what}")
        raise RegistryError(f"Registry returned {resp.status_code} for {what}: {resp.text[:200]}")

    # ============= Manifests =============

    def resolve(self, reference: str) -> Descriptor:
        """Resolve a tag or digest to a manifest descriptor."""
        _, desc = self.fetch_manifest(reference)
        return desc

    def fetch_manifest(self, reference: str) -> Tuple[bytes, Descriptor]:
        """
        Return (raw_bytes, descriptor) for a manifest.

        Reference can be a tag or a digest. The descriptor digest is computed
        from the exact bytes served. Includes retry logic for eventual
        consistency after push.
        """
        url = self._url(f"manifests/{reference}")
        what = f"{self.repository}:{reference}"

        for attempt in range(self.retries):
            resp = self._request("GET", url, headers={"Accept": OCI_ACCEPT})
            if resp.status_code == 404 and attempt < self.retries - 1:
                # Registry might have eventual consistency delay after push
                time.sleep(0.2 * (attempt + 1))
                continue
            self._check(resp, what)
            raw = resp.content or b""
            media_type = resp.headers.get("Content-Type", MEDIA_TYPE_IMAGE_MANIFEST).split(";")[0]
            digest = digest_bytes(raw)
            header_digest = resp.headers.get("Docker-Content-Digest")
            if header_digest and header_digest != digest:
                logger.warning(
                    f"Registry digest {header_digest} differs from served bytes for {what}; "
                    "using digest computed from raw manifest bytes."
                )
            return raw, Descriptor(mediaType=media_type, digest=digest, size=len(raw))

        raise NotFoundError(f"Not found: {what}")

    def push_manifest(self, data: bytes, media_type: str, reference: str) -> None:
        """PUT a manifest by digest or tag."""
        url = self._url(f"manifests/{reference}")
        resp = self._request("PUT", url, data=data, headers={"Content-Type": media_type})
        self._check(resp, f"{self.repository}:{reference}")

    def referrers(self, digest: str, artifact_type: Optional[str] = None) -> List[Descriptor]:
        """List manifests whose subject is digest (OCI referrers API).

        Registries that return 404 are treated as having no referrers.
        """
        url = self._url(f"referrers/{digest}")
        if artifact_type:
            url += f"?artifactType={artifact_type}"
        resp = self._request("GET", url, headers={"Accept": MEDIA_TYPE_IMAGE_INDEX})
        if resp.status_code == 404:
            return []
        self._check(resp, f"referrers of {self.repository}@{digest}")
        found = [Descriptor.model_validate(m) for m in resp.json().get("manifests") or []]
        if artifact_type:
            # The filter is optional for registries, so apply it again
            found = [d for d in found if d.artifactType == artifact_type]
        return found

    # ============= Blobs =============

    def blob_exists(self, digest: str) -> bool:
        resp = self._request("HEAD", self._url(f"blobs/{digest}"))
        if resp.status_code == 404:
            return False
        self._check(resp, f"{self.repository}@{digest}")
        return True

    def fetch_blob(self, digest: str) -> bytes:
        resp = self._request("GET", self._url(f"blobs/{digest}"))
        self._check(resp, f"{self.repository}@{digest}")
        return resp.content

    def download_blob(self, digest: str, path: Path) -> None:
        """Stream a blob into path."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        resp = self._request("GET", self._url(f"blobs/{digest}"), stream=True)
        self._check(resp, f"{self.repository}@{digest}")
        with resp, open(path, "wb") as f:
            for chunk in resp.iter_content(chunk_size=8192):
                if chunk:
                    f.write(chunk)

    def push_blob(self, path: Path, descriptor: Descriptor) -> None:
        """Upload a file as a blob (no-op if the registry already has it)."""
        layer = {
            "mediaType": descriptor.mediaType,
            "digest": descriptor.digest,
            "size": descriptor.size,
        }
        try:
            resp = self.client.upload_blob(str(path), self.container, layer)
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Cannot connect to registry: {e}")
        except ValueError as e:
            raise AuthError(f"Authentication failed for {self.repository}: {e}")
        self._check(resp, f"{self.repository}@{descriptor.digest}")

    def push_blob_bytes(self, data: bytes, descriptor: Descriptor) -> None:
        """Upload in-memory content (configs) as a blob."""
        with tempfile.NamedTemporaryFile(suffix=".json", mode="wb", delete=False) as tmp:
            tmp.write(data)
            tmp_path = tmp.name
        try:
            self.push_blob(Path(tmp_path), descriptor)
        finally:
            Path(tmp_path).unlink(missing_ok=True)
