"""Shared machinery for the export and import engines.

Each engine works inside a private work directory:

    <work_dir>/repo    bare staging repository
    <work_dir>/blobs   staging blob store (RegistryHelper)

The work directory is removed by cleanup() on every exit path; use the
engine as a context manager.
"""

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TYPE_CHECKING
import logging
import shutil
import threading

from .cmd import CommandHelper, CommandOptions
from .constants import ARTIFACT_TYPE_LFS_MANIFEST, ARTIFACT_TYPE_SYNC_MANIFEST
from .errors import (
    CleanupError,
    GitCommandError,
    LFSManifestNotFoundError,
    RegistryError,
    SyncCancelledError,
)
from .models import Descriptor, Manifest, ReferenceInfo, SyncConfig
from .registry import RegistryHelper

if TYPE_CHECKING:
    from .cache import ObjectCache

logger = logging.getLogger(__name__)


def resolve_layer_cutoff(
    manifest: Manifest,
    config: SyncConfig,
    is_current: Callable[[str, ReferenceInfo], bool],
) -> int:
    """Index of the first layer that must be fetched.

    Starts from len(layers) (nothing needed) and lowers the cutoff to the
    recorded layer of every reference the receiving repository does not
    already have at the recorded commit. A reference whose layer is no
    longer in the manifest forces a full fetch.
    """
    cutoff = len(manifest.layers)
    for full_ref, info in config.items():
        index = manifest.layer_index(info.layer)
        if index is None:
            index = 0
        if index < cutoff and not is_current(full_ref, info):
            logger.debug("%s needs layer %d", full_ref, index)
            cutoff = index
    return cutoff


def fetch_from_bundles(cmd: CommandHelper, paths: Sequence[Path]) -> None:
    """Fetch every bundle at once through temporary remotes."""
    names: List[str] = []
    try:
        for path in paths:
            name = Path(path).stem
            cmd.git.remote_add(name, str(path))
            names.append(name)

        args = ["--tags", "--multiple"]
        if cmd.force:
            args.append("--force")
            logger.info("Force fetching from %d bundle(s)", len(names))
        else:
            logger.info("Fetching from %d bundle(s)", len(names))
        cmd.git.fetch(*args, *names)
    finally:
        for name in names:
            try:
                cmd.git.remote_remove(name)
            except GitCommandError as e:
                logger.warning("Could not remove bundle remote %s: %s", name, e)


class SyncEngine:
    """Base class for ToOCI and FromOCI."""

    def __init__(
        self,
        helper: RegistryHelper,
        work_dir: Path,
        options: Optional[CommandOptions] = None,
        cache: Optional["ObjectCache"] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.helper = helper
        self.work_dir = Path(work_dir)
        self.options = options or CommandOptions()
        self.cmd = CommandHelper(self.work_dir / "repo", self.options)
        self.cache = cache
        self.cancel = cancel

        self.base_manifest: Optional[Manifest] = None
        self.base_desc: Optional[Descriptor] = None
        self.base_config = SyncConfig()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.cleanup()
        except CleanupError as e:
            if exc_type is None:
                raise
            logger.error("%s", e)
        return False

    def cleanup(self) -> None:
        """Remove the staging repository and blob store."""
        try:
            shutil.rmtree(self.work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CleanupError(f"Removing {self.work_dir}: {e}")

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise SyncCancelledError("Sync cancelled")

    @property
    def lfs_enabled(self) -> bool:
        return self.options.lfs

    def fetch_base_manifest_config(self) -> Tuple[Manifest, Descriptor, SyncConfig]:
        """Fetch the commit manifest and reference index at the tag.

        Raises ManifestNotFoundError if nothing has been published yet.
        """
        manifest, desc = self.helper.fetch_manifest()
        if manifest.artifactType != ARTIFACT_TYPE_SYNC_MANIFEST:
            raise RegistryError(
                f"{self.helper.target.repository}:{self.helper.tag} is not a git sync artifact "
                f"(artifact type {manifest.artifactType!r})"
            )
        config = self.helper.fetch_sync_config(manifest)
        self.base_manifest, self.base_desc, self.base_config = manifest, desc, config
        return manifest, desc, config

    def fetch_lfs_manifest(self, subject: Descriptor) -> Tuple[Manifest, Descriptor]:
        """Find the LFS manifest referring to a commit manifest."""
        desc = self.helper.find_referrer(subject, ARTIFACT_TYPE_LFS_MANIFEST)
        if desc is None:
            raise LFSManifestNotFoundError(subject.digest)
        manifest, _ = self.helper.fetch_manifest(desc.digest)
        return manifest, desc
