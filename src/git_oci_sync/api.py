"""Stable API for git-oci-sync operations.

The CLI is a thin layer over these three functions; other tools can call
them directly to mirror repositories without shelling out.

Each call gets a private work directory (removed on every exit path) and,
when a cache path is configured, a shared ObjectCache. A cache that cannot
be opened is reported and skipped; it never fails a sync.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple
import logging
import os
import tempfile
import threading

from .cache import ObjectCache
from .cmd import CommandOptions
from .config import SyncSettings
from .from_oci import FromOCI
from .models import Descriptor, RefUpdate
from .oras import OrasAdapter, parse_reference
from .registry import RegistryHelper
from .to_oci import ToOCI

logger = logging.getLogger(__name__)


def _command_options(settings: SyncSettings, lfs: bool = True, force: bool = False) -> CommandOptions:
    return CommandOptions(
        git_executable=settings.git_executable,
        git_lfs_executable=settings.git_lfs_executable,
        lfs=lfs,
        lfs_server_url=settings.lfs_server_url,
        force=force,
    )


def _make_cache(settings: SyncSettings, options: CommandOptions) -> Optional[ObjectCache]:
    path = settings.resolved_cache_path()
    if path is None:
        return None
    try:
        return ObjectCache(path, options)
    except Exception as e:
        logger.warning("Object cache at %s is unavailable: %s", path, e)
        return None


def _local_path(remote: str) -> str:
    """Make local repository paths absolute; git runs in other directories."""
    if os.path.exists(remote):
        return str(Path(remote).resolve())
    return remote


def _target(reference: str, settings: SyncSettings, target=None) -> Tuple[object, str]:
    """(adapter, tag) for reference, or for tag `reference` in target."""
    if target is not None:
        return target, reference
    repository, tag = parse_reference(reference)
    return OrasAdapter(repository, insecure=settings.insecure), tag


def _helper(reference: str, settings: SyncSettings, target=None) -> Tuple[RegistryHelper, Path]:
    """RegistryHelper with a fresh private work directory."""
    target, tag = _target(reference, settings, target)
    work_dir = Path(tempfile.mkdtemp(prefix="git-oci-"))
    return RegistryHelper(target, work_dir / "blobs", tag, settings.concurrency), work_dir


def to_oci(
    src: str,
    reference: str,
    revs: Sequence[str] = (),
    *,
    clean: bool = False,
    lfs: bool = True,
    settings: Optional[SyncSettings] = None,
    target=None,
    cancel: Optional[threading.Event] = None,
) -> Descriptor:
    """Export git references from src to an OCI tag.

    Args:
        src: Git remote (URL or local path) to read from
        reference: "registry/repo:tag", or just the tag when target is given
        revs: Tags/heads to export; every tag and head when empty
        clean: Ignore any existing sync and start a new layer history
        lfs: Also publish git-lfs objects
        settings: Settings (defaults when None)
        target: Repository adapter to use instead of one built from reference
        cancel: Event checked between steps

    Returns:
        Descriptor of the published commit manifest

    Raises:
        UnnecessarySyncError: Every requested reference is already published
    """
    settings = settings or SyncSettings()
    options = _command_options(settings, lfs=lfs)
    helper, work_dir = _helper(reference, settings, target)

    with ToOCI(helper, work_dir, options, _make_cache(settings, options), cancel, clean=clean) as engine:
        return engine.run(_local_path(src), revs)


def from_oci(
    reference: str,
    dst: str,
    *,
    force: bool = False,
    lfs: bool = True,
    settings: Optional[SyncSettings] = None,
    target=None,
    cancel: Optional[threading.Event] = None,
) -> List[RefUpdate]:
    """Import the sync at an OCI tag into the git remote dst.

    Args:
        reference: "registry/repo:tag", or just the tag when target is given
        dst: Git remote (URL or local path) to update
        force: Allow non-fast-forward updates and mirror-push
        lfs: Also restore git-lfs objects
        settings: Settings (defaults when None)
        target: Repository adapter to use instead of one built from reference
        cancel: Event checked between steps

    Returns:
        References whose value at dst changed
    """
    settings = settings or SyncSettings()
    options = _command_options(settings, lfs=lfs, force=force)
    helper, work_dir = _helper(reference, settings, target)

    with FromOCI(helper, work_dir, options, _make_cache(settings, options), cancel) as engine:
        return engine.run(_local_path(dst))


def list_refs(
    reference: str,
    *,
    settings: Optional[SyncSettings] = None,
    target=None,
) -> Tuple[Descriptor, List[RefUpdate]]:
    """Return the commit manifest descriptor and every reference it records."""
    settings = settings or SyncSettings()
    helper, work_dir = _helper(reference, settings, target)

    with FromOCI(helper, work_dir, _command_options(settings, lfs=False)) as engine:
        _, desc, config = engine.fetch_base_manifest_config()
    return desc, [RefUpdate(commit=info.commit, ref=ref) for ref, info in config.items()]
