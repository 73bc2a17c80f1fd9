"""Data models for sync artifacts.

A sync is stored as two OCI manifests:

1. Commit manifest: an append-only list of git bundle layers, with a
   reference index (tag/head -> commit + layer) as its config.
2. LFS manifest: one layer per LFS object, attached to a commit manifest
   via the ``subject`` field and discovered through the referrers API.
"""

import hashlib
import json
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    ANNOTATION_CREATED,
    ANNOTATION_TITLE,
    ANNOTATION_VERSION,
    EPOCH_CREATED,
    HEAD_REF_PREFIX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    TAG_REF_PREFIX,
    USER_AGENT,
)


def digest_bytes(data: bytes) -> str:
    """Compute the sha256 digest of raw bytes."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def manifest_annotations() -> Dict[str, str]:
    """Annotations shared by every manifest we publish."""
    return {ANNOTATION_CREATED: EPOCH_CREATED, ANNOTATION_VERSION: USER_AGENT}


def split_ref(full_ref: str) -> Tuple[Optional[str], str]:
    """Split a full reference into its kind ("tags"/"heads") and short name.

    References outside the tag and head namespaces return (None, full_ref).
    """
    if full_ref.startswith(TAG_REF_PREFIX):
        return "tags", full_ref[len(TAG_REF_PREFIX):]
    if full_ref.startswith(HEAD_REF_PREFIX):
        return "heads", full_ref[len(HEAD_REF_PREFIX):]
    return None, full_ref


# ============= OCI =============

class Descriptor(BaseModel):
    """OCI content descriptor."""

    model_config = ConfigDict(extra="ignore")

    mediaType: str
    digest: str
    size: int
    artifactType: Optional[str] = None
    annotations: Optional[Dict[str, str]] = None

    @property
    def title(self) -> Optional[str]:
        """Value of the org.opencontainers.image.title annotation."""
        if not self.annotations:
            return None
        return self.annotations.get(ANNOTATION_TITLE)

    @classmethod
    def from_bytes(cls, media_type: str, data: bytes, **kwargs) -> "Descriptor":
        return cls(mediaType=media_type, digest=digest_bytes(data), size=len(data), **kwargs)


class Manifest(BaseModel):
    """OCI image manifest carrying an artifact type."""

    model_config = ConfigDict(extra="ignore")

    schemaVersion: int = 2
    mediaType: str = MEDIA_TYPE_IMAGE_MANIFEST
    artifactType: Optional[str] = None
    config: Descriptor
    layers: List[Descriptor] = Field(default_factory=list)
    subject: Optional[Descriptor] = None
    annotations: Optional[Dict[str, str]] = None

    def to_bytes(self) -> bytes:
        """Deterministic serialization so equal manifests have equal digests."""
        return json.dumps(
            self.model_dump(exclude_none=True), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")

    def descriptor(self) -> Descriptor:
        """Descriptor for this manifest as it would be pushed."""
        return Descriptor.from_bytes(
            self.mediaType, self.to_bytes(), artifactType=self.artifactType
        )

    def layer_index(self, digest: str) -> Optional[int]:
        """Position of the layer with the given digest, or None."""
        for i, layer in enumerate(self.layers):
            if layer.digest == digest:
                return i
        return None


# ============= Reference Index =============

class ReferenceInfo(BaseModel):
    """Where a reference points and the oldest layer that contains it."""
    commit: str
    layer: str  # digest of a bundle layer


class References(BaseModel):
    """Tag and head namespaces of the reference index."""
    tags: Dict[str, ReferenceInfo] = Field(default_factory=dict)
    heads: Dict[str, ReferenceInfo] = Field(default_factory=dict)


class SyncConfig(BaseModel):
    """Reference index stored as the commit manifest config."""

    refs: References = Field(default_factory=References)

    def to_json_deterministic(self) -> str:
        """
        Deterministic serialization for reproducible manifests.

        Pydantic v2 doesn't accept sort_keys in model_dump_json,
        so we use json.dumps with sort_keys=True.
        """
        return json.dumps(self.model_dump(), sort_keys=True, separators=(",", ":"))

    def items(self) -> Iterator[Tuple[str, ReferenceInfo]]:
        """Iterate (full_ref, info) pairs, tags first, names sorted."""
        for name in sorted(self.refs.tags):
            yield f"{TAG_REF_PREFIX}{name}", self.refs.tags[name]
        for name in sorted(self.refs.heads):
            yield f"{HEAD_REF_PREFIX}{name}", self.refs.heads[name]

    def get(self, full_ref: str) -> Optional[ReferenceInfo]:
        kind, name = split_ref(full_ref)
        if kind is None:
            return None
        return getattr(self.refs, kind).get(name)

    def set(self, full_ref: str, info: ReferenceInfo) -> None:
        """Record a reference; refs outside tags/heads are ignored."""
        kind, name = split_ref(full_ref)
        if kind is None:
            return
        getattr(self.refs, kind)[name] = info

    def commits(self) -> List[str]:
        """Unique commits recorded in the index, in iteration order."""
        seen: Dict[str, None] = {}
        for _, info in self.items():
            seen.setdefault(info.commit, None)
        return list(seen)


class RefUpdate(BaseModel):
    """A reference that changed at the destination."""
    commit: str
    ref: str

    def __str__(self) -> str:
        return f"{self.commit} {self.ref}"
