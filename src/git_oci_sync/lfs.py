"""Git LFS support for both sync directions.

LFS objects live in a second manifest whose ``subject`` is the commit
manifest. Each layer is one LFS object: the title annotation is its OID and
the layer digest is ``sha256:<oid>``. Layers only accumulate, so an OID is
published once for the lifetime of the artifact.

Where we know the other side already has an object, we create a placeholder
of the right size in the local LFS store (see create_fake_lfs_files) so
git-lfs skips transferring it.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple, TYPE_CHECKING
import logging

from .cmd import create_fake_lfs_files, resolve_lfs_oid_path
from .constants import (
    ANNOTATION_TITLE,
    ARTIFACT_TYPE_LFS_MANIFEST,
    EMPTY_CONFIG_DATA,
    EMPTY_CONFIG_DIGEST,
    MEDIA_TYPE_EMPTY,
    MEDIA_TYPE_LFS_LAYER,
)
from .errors import LFSManifestNotFoundError, LFSNotEnabledError, SyncError
from .models import Descriptor, Manifest, manifest_annotations

if TYPE_CHECKING:
    from .from_oci import FromOCI
    from .to_oci import ToOCI

logger = logging.getLogger(__name__)

EMPTY_CONFIG = Descriptor(mediaType=MEDIA_TYPE_EMPTY, digest=EMPTY_CONFIG_DIGEST, size=len(EMPTY_CONFIG_DATA))


def lfs_layer(oid: str, path: Path) -> Descriptor:
    """Layer descriptor for an LFS object file."""
    return Descriptor(
        mediaType=MEDIA_TYPE_LFS_LAYER,
        digest=f"sha256:{oid}",
        size=Path(path).stat().st_size,
        annotations={ANNOTATION_TITLE: oid},
    )


def published_oids(manifest: Optional[Manifest]) -> dict:
    """{oid: size} for the LFS layers of a manifest."""
    if manifest is None:
        return {}
    return {
        layer.title: layer.size
        for layer in manifest.layers
        if layer.mediaType == MEDIA_TYPE_LFS_LAYER and layer.title
    }


def export_lfs(
    engine: "ToOCI",
    revs: Sequence[str],
    old_desc: Optional[Descriptor],
    new_desc: Descriptor,
) -> Descriptor:
    """Publish LFS objects reachable from revs that are not yet published.

    Returns:
        Descriptor of the new LFS manifest

    Raises:
        LFSNotEnabledError: No LFS files are reachable from revs
    """
    cmd, helper = engine.cmd, engine.helper
    cmd.configure_lfs()

    reachable = cmd.list_reachable_lfs_files(revs)
    if not reachable:
        raise LFSNotEnabledError()

    old_manifest = None
    if old_desc is not None and not engine.clean:
        try:
            old_manifest, _ = engine.fetch_lfs_manifest(old_desc)
        except LFSManifestNotFoundError:
            logger.warning("No LFS manifest for %s; publishing all LFS objects", old_desc.digest)
    published = published_oids(old_manifest)
    new_oids = [oid for oid in reachable if oid not in published]
    logger.info("%d LFS object(s) reachable, %d new", len(reachable), len(new_oids))

    root = cmd.lfs_dir
    if new_oids and engine.cache is not None:
        try:
            # The cache holds objects but no refs, so hand git-lfs commits
            commits = sorted(set(cmd.local_commits_refs(*revs).values()))
            engine.cache.update_lfs_from_git(engine.src, commits)
            missing = [oid for oid in new_oids if not engine.cache.has_lfs_object(oid)]
            if missing:
                raise SyncError(f"{len(missing)} LFS object(s) missing from cache after fetch")
            cmd.git.config("lfs.storage", str(engine.cache.lfs_storage))
            root = engine.cache.root
        except Exception as e:
            logger.warning("Fetching LFS objects without object cache: %s", e)
            root = cmd.lfs_dir

    if new_oids and root == cmd.lfs_dir:
        create_fake_lfs_files(cmd.lfs_dir, published)
        cmd.lfs.fetch(engine.src, "--all", *revs)

    layers: List[Descriptor] = []
    blobs: List[Tuple[Descriptor, Path]] = []
    for oid in new_oids:
        path = root / resolve_lfs_oid_path(oid)
        if not path.exists():
            raise SyncError(f"LFS object {oid} was not fetched from {engine.src}")
        desc = lfs_layer(oid, path)
        layers.append(desc)
        blobs.append((desc, path))

    manifest = Manifest(
        artifactType=ARTIFACT_TYPE_LFS_MANIFEST,
        config=EMPTY_CONFIG,
        layers=(old_manifest.layers if old_manifest else []) + layers,
        subject=Descriptor(mediaType=new_desc.mediaType, digest=new_desc.digest, size=new_desc.size),
        annotations=manifest_annotations(),
    )
    desc = helper.publish(manifest, blobs, EMPTY_CONFIG_DATA)
    logger.info("Published LFS manifest %s with %d object(s)", desc.digest, len(manifest.layers))
    return desc


def import_lfs(
    engine: "FromOCI",
    dst: str,
    commit_desc: Descriptor,
    remote_oids: Sequence[str],
    refs: Sequence[str],
) -> int:
    """Make the LFS objects of a sync available and push them to dst.

    remote_oids are the LFS objects reachable in dst before the import; we
    assume its LFS server already has them. Returns the number of objects
    downloaded from the registry.

    Raises:
        LFSManifestNotFoundError: No LFS manifest refers to commit_desc
    """
    cmd, helper = engine.cmd, engine.helper
    cmd.configure_lfs()

    manifest, lfs_desc = engine.fetch_lfs_manifest(commit_desc)
    if not manifest.layers:
        raise SyncError(f"LFS manifest {lfs_desc.digest} has no layers")

    fetched = None
    if engine.cache is not None:
        try:
            fetched = len(engine.cache.update_lfs_from_registry(helper, manifest))
            cmd.git.config("lfs.storage", str(engine.cache.lfs_storage))
        except Exception as e:
            logger.warning("Fetching LFS objects without object cache: %s", e)
            fetched = None

    if fetched is None:
        known = set(remote_oids)
        sizes = published_oids(manifest)
        create_fake_lfs_files(cmd.lfs_dir, {oid: size for oid, size in sizes.items() if oid in known})
        items = [
            (layer, cmd.lfs_dir / resolve_lfs_oid_path(layer.title))
            for layer in manifest.layers
            if layer.mediaType == MEDIA_TYPE_LFS_LAYER and layer.title and layer.title not in known
        ]
        fetched = helper.copy_to_local(items)

    logger.info("Pushing LFS objects to %s", dst)
    cmd.lfs.push(dst, *refs)
    return fetched
