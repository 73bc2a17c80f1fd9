"""Utility functions for git-oci-sync."""

from pathlib import Path
import hashlib


def compute_digest(path: Path) -> str:
    """Compute SHA256 digest of a file."""
    sha256 = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return f"sha256:{sha256.hexdigest()}"


def humanize_size(size: float) -> str:
    """Convert bytes to human-readable format."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def short_digest(digest: str) -> str:
    """sha256:abcdef... -> abcdef123456"""
    return digest.split(":", 1)[-1][:12]
