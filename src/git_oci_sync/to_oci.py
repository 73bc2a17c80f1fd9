"""Export engine: git repository -> OCI registry.

Each export appends at most one bundle layer to the commit manifest. The
bundle excludes every commit already recorded in the reference index, so it
only carries objects that earlier layers do not.

After bundling, every requested reference whose tip moved is assigned the
*oldest* layer that already contains its commit (a greedy scan using
ancestor tests). Imports rely on this to fetch as few layers as possible.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple
import logging

from .cmd import short_ref_names
from .constants import (
    ANNOTATION_TITLE,
    ARTIFACT_TYPE_SYNC_MANIFEST,
    BUNDLE_PREFIX,
    BUNDLE_SUFFIX,
    MEDIA_TYPE_BUNDLE_LAYER,
    MEDIA_TYPE_SYNC_CONFIG,
)
from .errors import (
    BadObjectError,
    EmptyBundleError,
    LFSManifestNotFoundError,
    LFSNotEnabledError,
    ManifestNotFoundError,
    SyncError,
    UnnecessarySyncError,
)
from .lfs import export_lfs
from .models import Descriptor, Manifest, ReferenceInfo, manifest_annotations
from .sync import SyncEngine

logger = logging.getLogger(__name__)


class ToOCI(SyncEngine):
    """Publish git references to a tag in an OCI repository."""

    def __init__(self, *args, clean: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.clean = clean
        self.src: Optional[str] = None
        self.layers: List[Descriptor] = []
        self.new_layer: Optional[Tuple[Descriptor, Path]] = None
        # Recorded commits that no longer exist in the source (rewritten history)
        self.missing_commits: Set[str] = set()
        self._ancestor_cache: Dict[Tuple[str, str], bool] = {}

    def run(self, src: str, revs: Sequence[str] = ()) -> Descriptor:
        """Export revs (all tags and heads if empty) from src.

        Returns:
            Descriptor of the published commit manifest

        Raises:
            UnnecessarySyncError: Nothing changed since the last export
        """
        self.src = src
        self.cmd.validate_versions()

        revs = list(revs) or self._all_source_refs()
        if not revs:
            raise SyncError(f"{src} has no tags or heads to export")
        logger.info("Exporting %s from %s", ", ".join(revs), src)

        old_desc = self._load_existing()
        self.check_cancelled()

        if self.cache is not None:
            try:
                self.cache.update_from_git(src, revs)
            except Exception as e:
                logger.warning("Continuing without object cache: %s", e)

        self.cmd.git.clone(src, reference=str(self.cache.root) if self.cache else None)
        self.check_cancelled()

        local = self.cmd.local_commits_refs(*revs)
        changed = {
            ref: commit for ref, commit in local.items()
            if (info := self.base_config.get(ref)) is None or info.commit != commit
        }

        resolver = self._commits_by_layer()
        self.new_layer = self._create_bundle(revs)
        if self.new_layer is None and not changed:
            raise UnnecessarySyncError(f"{self.helper.target.repository}:{self.helper.tag}")
        if self.new_layer is not None:
            self.layers.append(self.new_layer[0])

        for ref, commit in changed.items():
            layer = self.resolve_layer(commit, resolver)
            self.base_config.set(ref, ReferenceInfo(commit=commit, layer=layer))
            logger.info("%s -> %s", ref, commit)
        self.check_cancelled()

        new_desc = self._publish()

        if self.lfs_enabled:
            try:
                export_lfs(self, revs, old_desc, new_desc)
            except LFSNotEnabledError:
                logger.warning("No git-lfs files reachable from %s", ", ".join(revs))
        else:
            self._update_lfs_manifest_subject(old_desc, new_desc)

        return new_desc

    # ============= Steps =============

    def _all_source_refs(self) -> List[str]:
        refs = self.cmd.remote_commits_refs(self.src, "--tags", "--heads", "--refs")
        return short_ref_names(sorted(refs))

    def _load_existing(self) -> Optional[Descriptor]:
        """Load the current manifest and index; returns its descriptor if any."""
        if self.clean:
            logger.info("Clean export requested; ignoring existing sync")
            return None
        try:
            manifest, desc, _ = self.fetch_base_manifest_config()
        except ManifestNotFoundError:
            logger.info("No existing sync at %s; starting fresh", self.helper.tag)
            return None
        self.layers = list(manifest.layers)
        return desc

    def _commits_by_layer(self) -> Dict[str, List[str]]:
        """Recorded commits grouped by layer digest, before this export."""
        resolver: Dict[str, List[str]] = {}
        for _, info in self.base_config.items():
            resolver.setdefault(info.layer, []).append(info.commit)
        return resolver

    def _create_bundle(self, revs: Sequence[str]) -> Optional[Tuple[Descriptor, Path]]:
        """Bundle revs minus everything already published.

        Returns None when nothing new needs bundling.
        """
        name = f"{BUNDLE_PREFIX}{len(self.layers) + 1}{BUNDLE_SUFFIX}"
        path = self.helper.staging.root / name
        exclusions = [c for c in self.base_config.commits() if c not in self.missing_commits]

        while True:
            try:
                self.cmd.git.bundle_create(path, *revs, *[f"^{c}" for c in exclusions])
                break
            except EmptyBundleError:
                logger.info("No new objects to bundle; updating references only")
                return None
            except BadObjectError as e:
                if not e.object_id or e.object_id not in exclusions:
                    raise
                logger.warning(
                    "Recorded commit %s no longer exists in %s (history rewritten?); "
                    "bundling without it", e.object_id, self.src
                )
                exclusions.remove(e.object_id)
                self.missing_commits.add(e.object_id)

        desc = self.helper.staging.add(path, MEDIA_TYPE_BUNDLE_LAYER, {ANNOTATION_TITLE: name})
        logger.info("Created %s", name)
        return desc, path

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        key = (ancestor, descendant)
        if key not in self._ancestor_cache:
            self._ancestor_cache[key] = self.cmd.is_ancestor(ancestor, descendant)
        return self._ancestor_cache[key]

    def resolve_layer(self, commit: str, resolver: Dict[str, List[str]]) -> str:
        """Digest of the oldest layer containing commit.

        A layer contains commit if commit is an ancestor of any commit
        recorded against that layer; the newest layer is the fallback.
        """
        if not self.layers:
            raise SyncError(f"No bundle layers to place {commit} in")
        last = len(self.layers) - 1
        for i, layer in enumerate(self.layers):
            if i == last:
                return layer.digest
            for known in resolver.get(layer.digest, []):
                if known in self.missing_commits:
                    continue
                if self.is_ancestor(commit, known):
                    return layer.digest
        return self.layers[last].digest

    def _publish(self) -> Descriptor:
        config_data = self.base_config.to_json_deterministic().encode("utf-8")
        manifest = Manifest(
            artifactType=ARTIFACT_TYPE_SYNC_MANIFEST,
            config=Descriptor.from_bytes(MEDIA_TYPE_SYNC_CONFIG, config_data),
            layers=self.layers,
            annotations=manifest_annotations(),
        )
        blobs = [self.new_layer] if self.new_layer else []
        desc = self.helper.publish(manifest, blobs, config_data, tag=self.helper.tag)
        desc.artifactType = ARTIFACT_TYPE_SYNC_MANIFEST
        self.base_manifest, self.base_desc = manifest, desc
        return desc

    def _update_lfs_manifest_subject(self, old_desc: Optional[Descriptor], new_desc: Descriptor) -> None:
        """Keep an existing LFS manifest discoverable from the new commit manifest."""
        if old_desc is None:
            return
        try:
            lfs_manifest, _ = self.fetch_lfs_manifest(old_desc)
        except LFSManifestNotFoundError:
            return
        lfs_manifest.subject = Descriptor(
            mediaType=new_desc.mediaType, digest=new_desc.digest, size=new_desc.size
        )
        desc = self.helper.publish(lfs_manifest)
        logger.warning(
            "git-lfs is disabled: LFS manifest %s now refers to %s but LFS content was not refreshed",
            desc.digest, new_desc.digest,
        )

