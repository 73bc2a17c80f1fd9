"""Registry I/O helper.

Owns the three things every sync needs from the registry side: the target
repository, a scratch blob store on disk (the staging area), and the tag
being synchronized.

Publishing is explicitly two-phase:

1. Push the content graph (layers, config, manifest by digest)
2. Tag the manifest

so a reader resolving the tag never sees a manifest whose blobs are missing.
Nothing guards the tag itself: two writers racing on the same tag can lose
an update (last writer wins).
"""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from .constants import MEDIA_TYPE_SYNC_CONFIG
from .errors import DigestMismatchError, ManifestNotFoundError, NotFoundError, RegistryError
from .models import Descriptor, Manifest, SyncConfig
from .utils import compute_digest, humanize_size, short_digest

logger = logging.getLogger(__name__)


class StagingStore:
    """
    Local scratch blob store for one sync.

    Blobs are stored under their title annotation (e.g. changes3.bundle) so
    git can address them by a stable file name.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, desc: Descriptor) -> Path:
        name = desc.title or desc.digest.replace(":", "-")
        if "/" in name or "\\" in name or name in ("", ".", ".."):
            raise ValueError(f"Unsafe blob name in descriptor: {name!r}")
        return self.root / name

    def add(self, path: Path, media_type: str, annotations: Optional[Dict[str, str]] = None) -> Descriptor:
        """Describe a file already written into the store."""
        path = Path(path)
        return Descriptor(
            mediaType=media_type,
            digest=compute_digest(path),
            size=path.stat().st_size,
            annotations=annotations,
        )


class RegistryHelper:
    """Target repository + staging store + tag for a single sync."""

    def __init__(self, target, staging_dir: Path, tag: str, concurrency: int = 4):
        """
        Args:
            target: Repository adapter (see OrasAdapter)
            staging_dir: Directory for the scratch blob store
            tag: Tag being synchronized
            concurrency: Parallel blob transfers in graph copies
        """
        self.target = target
        self.staging = StagingStore(staging_dir)
        self.tag = tag
        self.concurrency = max(1, concurrency)

    def __repr__(self) -> str:
        return f"RegistryHelper({self.target!r}, tag={self.tag!r})"

    # ============= Reads =============

    def fetch_manifest(self, reference: Optional[str] = None) -> Tuple[Manifest, Descriptor]:
        """Fetch and parse a manifest; ManifestNotFoundError if absent."""
        reference = reference or self.tag
        try:
            raw, desc = self.target.fetch_manifest(reference)
        except NotFoundError:
            raise ManifestNotFoundError(f"{self.target.repository}:{reference}")
        manifest = Manifest.model_validate_json(raw)
        desc.artifactType = manifest.artifactType
        return manifest, desc

    def fetch_sync_config(self, manifest: Manifest) -> SyncConfig:
        if manifest.config.mediaType != MEDIA_TYPE_SYNC_CONFIG:
            raise RegistryError(
                f"Manifest config has media type {manifest.config.mediaType}, "
                f"expected {MEDIA_TYPE_SYNC_CONFIG}"
            )
        raw = self.target.fetch_blob(manifest.config.digest)
        return SyncConfig.model_validate_json(raw)

    def find_referrer(self, subject: Descriptor, artifact_type: str) -> Optional[Descriptor]:
        """The single manifest of artifact_type referring to subject, if any."""
        found = self.target.referrers(subject.digest, artifact_type)
        if not found:
            return None
        if len(found) > 1:
            raise RegistryError(
                f"Expected one {artifact_type} referrer of {subject.digest}, found {len(found)}"
            )
        return found[0]

    # ============= Graph copy =============

    def _run_parallel(self, fn, items: Sequence) -> None:
        if not items:
            return
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = [executor.submit(fn, item) for item in items]
            for future in futures:
                future.result()

    def copy_to_local(self, items: Sequence[Tuple[Descriptor, Path]]) -> int:
        """Download blobs to local paths, skipping ones already present.

        Returns the number of blobs transferred.
        """
        pending = [
            (desc, path) for desc, path in items
            if not (path.exists() and path.stat().st_size == desc.size)
        ]

        def fetch(item: Tuple[Descriptor, Path]) -> None:
            desc, path = item
            logger.info(
                "Retrieving %s (%s)", desc.title or short_digest(desc.digest), humanize_size(desc.size)
            )
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.partial")
            self.target.download_blob(desc.digest, tmp)
            actual = compute_digest(tmp)
            if actual != desc.digest:
                tmp.unlink(missing_ok=True)
                raise DigestMismatchError(desc.title or desc.digest, desc.digest, actual)
            tmp.replace(path)

        self._run_parallel(fetch, pending)
        return len(pending)

    def copy_to_staging(self, descs: Sequence[Descriptor]) -> List[Path]:
        """Copy blobs from the target into the staging store by title."""
        items = [(desc, self.staging.path_for(desc)) for desc in descs]
        self.copy_to_local(items)
        return [path for _, path in items]

    def copy_to_target(self, items: Sequence[Tuple[Descriptor, Path]]) -> int:
        """Upload local blobs the target does not already have.

        Returns the number of blobs transferred.
        """
        pending = [(desc, path) for desc, path in items if not self.target.blob_exists(desc.digest)]

        def push(item: Tuple[Descriptor, Path]) -> None:
            desc, path = item
            logger.info(
                "Pushing %s (%s)", desc.title or short_digest(desc.digest), humanize_size(desc.size)
            )
            self.target.push_blob(path, desc)

        self._run_parallel(push, pending)
        return len(pending)

    # ============= Publish =============

    def publish(
        self,
        manifest: Manifest,
        blobs: Sequence[Tuple[Descriptor, Path]] = (),
        config_data: Optional[bytes] = None,
        tag: Optional[str] = None,
    ) -> Descriptor:
        """Two-phase publish: content graph first, tag last.

        Args:
            manifest: Manifest to publish
            blobs: Local files for layers that may be new
            config_data: Raw config blob, if the target may not have it
            tag: Tag to point at the manifest; None publishes by digest only

        Returns:
            Descriptor of the published manifest
        """
        self.copy_to_target(blobs)
        if config_data is not None and not self.target.blob_exists(manifest.config.digest):
            self.target.push_blob_bytes(config_data, manifest.config)

        data = manifest.to_bytes()
        desc = manifest.descriptor()
        self.target.push_manifest(data, manifest.mediaType, desc.digest)

        if tag:
            self.target.push_manifest(data, manifest.mediaType, tag)
            logger.info("Tagged %s:%s -> %s", self.target.repository, tag, desc.digest)
        return desc
