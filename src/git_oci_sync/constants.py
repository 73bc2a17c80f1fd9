"""Constants for git-oci-sync."""

from . import __version__

# Artifact types
ARTIFACT_TYPE_SYNC_MANIFEST = "application/vnd.act3-ace.git.repo.v1+json"
ARTIFACT_TYPE_LFS_MANIFEST = "application/vnd.act3-ace.git-lfs.repo.v1+json"

# Media types
MEDIA_TYPE_SYNC_CONFIG = "application/vnd.act3-ace.git.config.v1+json"
MEDIA_TYPE_BUNDLE_LAYER = "application/vnd.act3-ace.git.bundle.v1"
MEDIA_TYPE_LFS_LAYER = "application/vnd.act3-ace.git-lfs.object.v1"
MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_EMPTY = "application/vnd.oci.empty.v1+json"

# The OCI empty descriptor ("{}")
EMPTY_CONFIG_DATA = b"{}"
EMPTY_CONFIG_DIGEST = "sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a"

# Annotations
ANNOTATION_TITLE = "org.opencontainers.image.title"
ANNOTATION_CREATED = "org.opencontainers.image.created"
ANNOTATION_VERSION = "vnd.act3-ace.data.version"

# Fixed creation time keeps manifests reproducible
EPOCH_CREATED = "1970-01-01T00:00:00Z"

USER_AGENT = f"git-oci-sync/{__version__}"

# Reference namespaces
TAG_REF_PREFIX = "refs/tags/"
HEAD_REF_PREFIX = "refs/heads/"

# Bundle naming: changes<N>.bundle
BUNDLE_PREFIX = "changes"
BUNDLE_SUFFIX = ".bundle"

# Relative path to LFS objects; we always work in bare repositories
LFS_OBJECTS_PATH = "lfs/objects"

# Minimum tool versions
# 2.29.0 is the first release with the bundle features we rely on
MIN_GIT_VERSION = "2.29.0"
# 2.11.0 can fetch lfs files without a worktree
MIN_GIT_LFS_VERSION = "2.11.0"

# Environment variables
ENV_CONFIG = "GIT_OCI_CONFIG"
ENV_CACHE_PATH = "GIT_OCI_CACHE_PATH"
ENV_GIT_EXECUTABLE = "GIT_OCI_GIT_EXECUTABLE"
ENV_GIT_LFS_EXECUTABLE = "GIT_OCI_GIT_LFS_EXECUTABLE"
ENV_LFS_SERVER = "GIT_OCI_LFS_SERVER"
ENV_INSECURE = "GIT_OCI_INSECURE"
ENV_REGISTRY_USERNAME = "GIT_OCI_REGISTRY_USERNAME"
ENV_REGISTRY_PASSWORD = "GIT_OCI_REGISTRY_PASSWORD"

# Cache
CACHE_LOCK_FILE = ".git-oci.lock"
DEFAULT_CACHE_SENTINEL = "default"
