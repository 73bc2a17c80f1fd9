"""Object cache shared by many sync operations.

The cache is a bare git repository plus the LFS object directory inside it:

    <cache_root>/objects/...                 git objects
    <cache_root>/lfs/objects/ab/cd/<oid>     LFS objects

Staging repositories borrow git objects from it (``--shared`` clones or
``objects/info/alternates``) and point ``lfs.storage`` at ``<cache_root>/lfs``.

Every update is best-effort from the caller's point of view: any exception
means "continue without the cache". Updates are serialized across processes
with a portalocker file lock, since bundle remotes use fixed names.
"""

from __future__ import annotations
import contextlib
import logging
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import portalocker

from .cmd import CommandHelper, CommandOptions, resolve_lfs_oid_path
from .constants import CACHE_LOCK_FILE, MEDIA_TYPE_BUNDLE_LAYER, MEDIA_TYPE_LFS_LAYER
from .errors import CacheError
from .models import Descriptor, Manifest, SyncConfig
from .registry import RegistryHelper
from .sync import fetch_from_bundles, resolve_layer_cutoff

logger = logging.getLogger(__name__)


class ObjectCache:
    """Persistent git + LFS object store.

    Attributes:
        root: Cache root directory (a bare git repository)
        cmd: Command helper bound to the cache repository
    """

    def __init__(self, root: Path, options: Optional[CommandOptions] = None, lock_timeout: float = 300):
        """Open (creating on first use) the cache at root."""
        self.root = Path(root)
        self.cmd = CommandHelper(self.root, options or CommandOptions())
        self.lock_timeout = lock_timeout
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Cannot create object cache at {self.root}: {e}")
        with self._locked():
            pass

    def __repr__(self) -> str:
        return f"ObjectCache({str(self.root)!r})"

    @property
    def objects_dir(self) -> Path:
        return self.root / "objects"

    @property
    def lfs_storage(self) -> Path:
        """Value for lfs.storage; git-lfs appends objects/ itself."""
        return self.root / "lfs"

    def lfs_object_path(self, oid: str) -> Path:
        return self.root / resolve_lfs_oid_path(oid)

    def has_lfs_object(self, oid: str) -> bool:
        return self.lfs_object_path(oid).exists()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        lock_path = self.root / CACHE_LOCK_FILE
        with portalocker.Lock(str(lock_path), "w", timeout=self.lock_timeout):
            # Lazily initialize; re-running init on an existing repo is harmless
            # but skipping it avoids a process spawn
            if not (self.root / "HEAD").exists():
                logger.info("Initializing object cache at %s", self.root)
                self.cmd.git.init_bare()
            yield

    # ============= git objects =============

    def update_from_git(self, remote: str, revs: Sequence[str]) -> None:
        """Fetch objects reachable from revs (or every tag/head) into the cache."""
        with self._locked():
            if revs:
                self.cmd.git.fetch(remote, *revs)
            else:
                self.cmd.git.fetch(remote, "--tags", "+refs/heads/*:refs/heads/*")
        logger.info("Updated object cache from %s", remote)

    def update_from_registry(self, helper: RegistryHelper, manifest: Manifest, config: SyncConfig) -> List[Descriptor]:
        """Fetch the bundle layers whose commits the cache does not have yet.

        Returns the layers that were applied.
        """
        with self._locked():
            cutoff = resolve_layer_cutoff(
                manifest, config, lambda _ref, info: self.cmd.git.cat_file_exists(info.commit)
            )
            layers = [d for d in manifest.layers[cutoff:] if d.mediaType == MEDIA_TYPE_BUNDLE_LAYER]
            if not layers:
                logger.info("Object cache already has every layer")
                return []
            paths = helper.copy_to_staging(layers)
            fetch_from_bundles(self.cmd, paths)
        logger.info("Updated object cache with %d layer(s)", len(layers))
        return layers

    # ============= LFS objects =============

    def update_lfs_from_git(self, remote: str, revs: Sequence[str]) -> None:
        """Fetch LFS objects reachable from revs into the cache."""
        with self._locked():
            self.cmd.lfs.fetch(remote, "--all", *revs)

    def update_lfs_from_registry(self, helper: RegistryHelper, lfs_manifest: Manifest) -> List[Descriptor]:
        """Download LFS layers missing from the cache; returns those fetched."""
        missing = []
        for layer in lfs_manifest.layers:
            if layer.mediaType != MEDIA_TYPE_LFS_LAYER or not layer.title:
                continue
            if not self.has_lfs_object(layer.title):
                missing.append(layer)

        with self._locked():
            helper.copy_to_local([(layer, self.lfs_object_path(layer.title)) for layer in missing])
        logger.info("Cached %d LFS object(s)", len(missing))
        return missing
