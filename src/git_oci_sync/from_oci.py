"""Import engine: OCI registry -> git repository.

The destination is cloned into a bare staging repository, the minimal
suffix of bundle layers is fetched into it, every indexed reference is
re-applied, and the result is pushed back. LFS content is pushed before
the git refs that point at it.
"""

from typing import Dict, List
import logging

from .constants import MEDIA_TYPE_BUNDLE_LAYER
from .errors import (
    LFSManifestNotFoundError,
    MissingCommitError,
    RepoNotExistOrPermDeniedError,
    SyncError,
)
from .lfs import import_lfs
from .models import Descriptor, Manifest, RefUpdate, SyncConfig
from .sync import SyncEngine, fetch_from_bundles, resolve_layer_cutoff

logger = logging.getLogger(__name__)


class FromOCI(SyncEngine):
    """Rebuild references from an OCI sync artifact into a git remote."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fetched_layers: List[Descriptor] = []

    def run(self, dst: str) -> List[RefUpdate]:
        """Import the synchronized tag into dst.

        Returns:
            References whose value at dst changed

        Raises:
            ManifestNotFoundError: Nothing has been published at the tag
        """
        self.cmd.validate_versions()

        manifest, desc, config = self.fetch_base_manifest_config()
        if not manifest.layers:
            raise SyncError(f"Sync manifest {desc.digest} has no layers")
        self.check_cancelled()

        self._clone_destination(dst)

        remote_oids: List[str] = []
        if self.lfs_enabled:
            existing = list(self.cmd.local_commits_refs())
            remote_oids = self.cmd.list_reachable_lfs_files(existing)

        if not self._update_from_cache(manifest, config):
            self._fetch_bundles(manifest, config)
        self.check_cancelled()

        self._verify_commits(config)
        updated = self._update_all_refs(dst, config)
        refs = [ref for ref, _ in config.items()]

        if self.lfs_enabled:
            try:
                import_lfs(self, dst, desc, remote_oids, refs)
            except LFSManifestNotFoundError as e:
                logger.warning("Skipping git-lfs: %s", e)
        self.check_cancelled()

        if self.options.force:
            logger.info("Mirror pushing to %s", dst)
            self.cmd.git.push("--mirror", dst)
        else:
            logger.info("Pushing %d reference(s) to %s", len(refs), dst)
            self.cmd.git.push(dst, *refs)
        return updated

    # ============= Steps =============

    def _clone_destination(self, dst: str) -> None:
        """Clone dst, or start an empty repository if it does not exist yet."""
        reference = str(self.cache.root) if self.cache else None
        try:
            self.cmd.git.clone(dst, reference=reference)
        except RepoNotExistOrPermDeniedError as e:
            logger.warning("Cannot clone %s, starting from an empty repository: %s", dst, e)
            self.cmd.git.init_bare()

    def _update_from_cache(self, manifest: Manifest, config: SyncConfig) -> bool:
        """Populate the cache and borrow its objects; False if unusable."""
        if self.cache is None:
            return False
        try:
            self.fetched_layers = self.cache.update_from_registry(self.helper, manifest, config)
            self.cmd.add_alternate(self.cache.objects_dir)
        except Exception as e:
            logger.warning("Continuing without object cache: %s", e)
            return False
        return True

    def _fetch_bundles(self, manifest: Manifest, config: SyncConfig) -> None:
        """Fetch only the layers the staging repository is missing."""
        local = self.cmd.local_commits_refs()
        cutoff = resolve_layer_cutoff(
            manifest, config, lambda ref, info: local.get(ref) == info.commit
        )
        layers = [d for d in manifest.layers[cutoff:] if d.mediaType == MEDIA_TYPE_BUNDLE_LAYER]
        if not layers:
            logger.info("Destination already has every layer")
            return
        logger.info("Fetching %d of %d layer(s)", len(layers), len(manifest.layers))
        paths = self.helper.copy_to_staging(layers)
        fetch_from_bundles(self.cmd, paths)
        self.fetched_layers = layers

    def _verify_commits(self, config: SyncConfig) -> None:
        for ref, info in config.items():
            if not self.cmd.git.cat_file_exists(info.commit):
                raise MissingCommitError(ref, info.commit)

    def _update_all_refs(self, dst: str, config: SyncConfig) -> List[RefUpdate]:
        """Point every indexed reference at its recorded commit.

        Bundles do not carry ref-only updates, so this always runs.
        """
        remote = self._destination_refs(dst)
        updated = []
        for ref, info in config.items():
            self.cmd.git.update_ref(ref, info.commit)
            if remote.get(ref) != info.commit:
                updated.append(RefUpdate(commit=info.commit, ref=ref))
        logger.info("%d reference(s) differ at %s", len(updated), dst)
        return updated

    def _destination_refs(self, dst: str) -> Dict[str, str]:
        try:
            return self.cmd.remote_commits_refs(dst, "--tags", "--heads")
        except RepoNotExistOrPermDeniedError:
            return {}
