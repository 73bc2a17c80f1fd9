"""Minimum version checks for git and git-lfs."""

import logging
import re

from packaging.version import InvalidVersion, Version

from .constants import MIN_GIT_LFS_VERSION, MIN_GIT_VERSION
from .errors import InsufficientVersionError, SyncError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


def parse_tool_version(output: str) -> Version:
    """Extract a version from `git version` / `git lfs version` output.

    Examples:
        "git version 2.39.2" -> 2.39.2
        "git version 2.37.1 (Apple Git-137.1)" -> 2.37.1
        "git-lfs/3.3.0 (GitHub; linux amd64; go 1.19.8)" -> 3.3.0
    """
    match = _VERSION_RE.search(output)
    if not match:
        raise SyncError(f"Could not parse version from '{output.strip()}'")
    try:
        return Version(match.group(1))
    except InvalidVersion as e:
        raise SyncError(f"Could not parse version from '{output.strip()}': {e}")


def _check(tool: str, output: str, minimum: str) -> str:
    found = parse_tool_version(output)
    if found < Version(minimum):
        raise InsufficientVersionError(tool, str(found), minimum)
    logger.info("%s version resolved: %s", tool, found)
    return str(found)


def check_git_version(git) -> str:
    """Validate the git executable; returns its version."""
    if git.executable != "git":
        logger.info("Using alternate git executable: %s", git.executable)
    try:
        output = git.version()
    except FileNotFoundError:
        raise SyncError(f"git executable not found: {git.executable}")
    return _check("git", output, MIN_GIT_VERSION)


def check_lfs_version(lfs) -> str:
    """Validate git-lfs; raises LFSCommandNotFoundError if it is not installed."""
    if lfs.executable:
        logger.info("Using alternate git-lfs executable: %s", lfs.executable)
    return _check("git-lfs", lfs.version(), MIN_GIT_LFS_VERSION)
