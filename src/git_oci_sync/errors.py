"""Custom exceptions for git-oci-sync.

This module defines typed exceptions so that callers can tell degrading
conditions (missing cache, missing LFS tooling) apart from fatal ones.
"""

from typing import Optional, Sequence


class SyncError(RuntimeError):
    """Base class for all sync errors."""
    pass


# Registry Errors
class RegistryError(SyncError):
    """Base class for registry communication errors."""
    pass


class NetworkError(RegistryError):
    """Network connectivity issue with registry."""
    pass


class AuthError(RegistryError):
    """Authentication or authorization failed (401/403)."""
    pass


class NotFoundError(RegistryError):
    """Resource not found in registry (404)."""
    pass


class ManifestNotFoundError(NotFoundError):
    """No commit manifest exists at the reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"No sync manifest found at '{reference}'")


class LFSManifestNotFoundError(NotFoundError):
    """No LFS manifest refers to the commit manifest."""

    def __init__(self, subject: str):
        self.subject = subject
        super().__init__(f"No LFS manifest refers to {subject}")


# Git command errors
class GitCommandError(SyncError):
    """A git or git-lfs command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        message = f"'{' '.join(self.argv)}' exited with status {returncode}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class EmptyBundleError(GitCommandError):
    """Bundle creation resolved no new objects."""
    pass


class RepoNotExistOrPermDeniedError(GitCommandError):
    """The remote repository does not exist or access was denied."""
    pass


class BadObjectError(GitCommandError):
    """A referenced object does not exist in the repository."""

    object_id = None  # set by the classifier when git names the object


class TagUpdateRejectedError(GitCommandError):
    """Push rejected because the tag already exists in the remote."""
    pass


class PushRejectedError(GitCommandError):
    """Push rejected by the remote (e.g. non-fast-forward)."""
    pass


class LFSCommandNotFoundError(SyncError):
    """The git-lfs executable is not installed."""

    def __init__(self, executable: str = "git-lfs"):
        super().__init__(f"git-lfs command not found ({executable})")


class LFSNotEnabledError(SyncError):
    """The repository does not contain git LFS files."""

    def __init__(self):
        super().__init__("repository does not contain git LFS files")


class InsufficientVersionError(SyncError):
    """A required tool is older than the supported minimum."""

    def __init__(self, tool: str, found: str, minimum: str):
        self.tool = tool
        self.found = found
        self.minimum = minimum
        super().__init__(
            f"{tool} version {found} does not meet the minimum requirement {minimum}"
        )


# Sync semantics
class UnnecessarySyncError(SyncError):
    """Nothing changed since the last sync."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(
            f"Unnecessary sync: '{reference}' already contains every requested reference"
        )


class SyncCancelledError(SyncError):
    """The sync was cancelled between steps."""
    pass


# Integrity Errors
class IntegrityError(SyncError):
    """Base class for data integrity errors."""
    pass


class AncestorCheckError(IntegrityError):
    """Ancestor test failed for a reason other than 'not an ancestor'."""

    def __init__(self, ancestor: str, descendant: str, cause: Optional[Exception] = None):
        self.ancestor = ancestor
        self.descendant = descendant
        detail = f": {cause}" if cause else ""
        super().__init__(f"Could not test whether {ancestor} is an ancestor of {descendant}{detail}")


class MissingCommitError(IntegrityError):
    """A referenced commit is absent after rebuilding history."""

    def __init__(self, ref: str, commit: str):
        self.ref = ref
        self.commit = commit
        super().__init__(f"Commit {commit} for {ref} is missing after applying bundles")


class DigestMismatchError(IntegrityError):
    """Content digest doesn't match expected value."""

    def __init__(self, name: str, expected: str, actual: str):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Digest verification failed for {name}\n"
            f"  Expected: {expected}\n"
            f"  Got:      {actual}"
        )


# Local resources
class CacheError(SyncError):
    """The object cache could not be used."""
    pass


class CleanupError(SyncError):
    """Removing the staging area failed."""
    pass


class ConfigError(SyncError):
    """Invalid configuration."""
    pass
