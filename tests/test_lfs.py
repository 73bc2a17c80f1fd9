"""Tests for Git LFS export and import."""

import hashlib
import logging
from unittest.mock import Mock

import pytest

from git_oci_sync.cmd import resolve_lfs_oid_path
from git_oci_sync.constants import (
    ANNOTATION_TITLE,
    ARTIFACT_TYPE_LFS_MANIFEST,
    EMPTY_CONFIG_DIGEST,
    MEDIA_TYPE_BUNDLE_LAYER,
    MEDIA_TYPE_IMAGE_MANIFEST,
    MEDIA_TYPE_LFS_LAYER,
)
from git_oci_sync.errors import LFSManifestNotFoundError, LFSNotEnabledError, SyncError
from git_oci_sync.lfs import EMPTY_CONFIG, export_lfs, import_lfs, lfs_layer, published_oids
from git_oci_sync.models import Descriptor, Manifest

from tests.fixtures.git_repos import bare_repo, create_lfs_repo, lfs_oids, requires_git_lfs


def _oid(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _layer(payload: bytes) -> Descriptor:
    oid = _oid(payload)
    return Descriptor(
        mediaType=MEDIA_TYPE_LFS_LAYER,
        digest=f"sha256:{oid}",
        size=len(payload),
        annotations={ANNOTATION_TITLE: oid},
    )


def _lfs_manifest(*layers: Descriptor) -> Manifest:
    return Manifest(artifactType=ARTIFACT_TYPE_LFS_MANIFEST, config=EMPTY_CONFIG, layers=list(layers))


def _commit_desc(digest: str = "sha256:" + "c" * 64) -> Descriptor:
    return Descriptor(mediaType=MEDIA_TYPE_IMAGE_MANIFEST, digest=digest, size=100)


def _engine(tmp_path, lfs_manifest=None):
    """Mock engine whose staging repository lives at tmp_path."""
    engine = Mock()
    engine.cmd.lfs_dir = tmp_path
    engine.cache = None
    engine.clean = False
    engine.src = "/src"
    if lfs_manifest is None:
        engine.fetch_lfs_manifest.side_effect = LFSManifestNotFoundError("sha256:old")
    else:
        engine.fetch_lfs_manifest.return_value = (lfs_manifest, Mock(digest="sha256:lfs"))
    return engine


class TestLayers:

    def test_lfs_layer(self, tmp_path):
        """The layer digest is the OID and the title carries it too."""
        payload = b"large file contents"
        path = tmp_path / "obj"
        path.write_bytes(payload)
        desc = lfs_layer(_oid(payload), path)
        assert desc.mediaType == MEDIA_TYPE_LFS_LAYER
        assert desc.digest == f"sha256:{_oid(payload)}"
        assert desc.size == len(payload)
        assert desc.title == _oid(payload)

    def test_published_oids(self):
        one, two = _layer(b"one"), _layer(b"two")
        bundle = Descriptor(mediaType=MEDIA_TYPE_BUNDLE_LAYER, digest="sha256:b", size=1)
        assert published_oids(_lfs_manifest(one, two, bundle)) == {
            one.title: 3,
            two.title: 3,
        }
        assert published_oids(None) == {}

    def test_empty_config(self):
        assert EMPTY_CONFIG.digest == EMPTY_CONFIG_DIGEST
        assert EMPTY_CONFIG.size == 2


class TestExportLFS:
    """Publishing LFS objects from a source repository."""

    def test_no_lfs_files(self, tmp_path):
        engine = _engine(tmp_path)
        engine.cmd.list_reachable_lfs_files.return_value = []
        with pytest.raises(LFSNotEnabledError):
            export_lfs(engine, ["main"], None, _commit_desc())
        engine.helper.publish.assert_not_called()

    def test_publishes_only_new_objects(self, tmp_path):
        """Objects already in the LFS manifest are neither fetched nor pushed again."""
        old, new = b"old object", b"new object"
        old_layer = _layer(old)
        engine = _engine(tmp_path, _lfs_manifest(old_layer))
        engine.cmd.list_reachable_lfs_files.return_value = [_oid(old), _oid(new)]

        def fake_fetch(remote, *args):
            path = tmp_path / resolve_lfs_oid_path(_oid(new))
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(new)
        engine.cmd.lfs.fetch.side_effect = fake_fetch

        new_commit = _commit_desc("sha256:" + "d" * 64)
        export_lfs(engine, ["main"], _commit_desc(), new_commit)

        # The known object gets a same-sized placeholder so git-lfs skips it
        placeholder = tmp_path / resolve_lfs_oid_path(_oid(old))
        assert placeholder.stat().st_size == len(old)
        engine.cmd.lfs.fetch.assert_called_once_with("/src", "--all", "main")

        manifest, blobs, config_data = engine.helper.publish.call_args.args
        assert [l.title for l in manifest.layers] == [_oid(old), _oid(new)]
        assert [d.title for d, _ in blobs] == [_oid(new)]
        assert manifest.artifactType == ARTIFACT_TYPE_LFS_MANIFEST
        assert manifest.subject.digest == new_commit.digest
        assert config_data == b"{}"

    def test_missing_object_after_fetch(self, tmp_path):
        engine = _engine(tmp_path)
        engine.cmd.list_reachable_lfs_files.return_value = [_oid(b"never fetched")]
        with pytest.raises(SyncError, match="was not fetched"):
            export_lfs(engine, ["main"], None, _commit_desc())

    def test_clean_ignores_old_manifest(self, tmp_path):
        payload = b"object"
        engine = _engine(tmp_path, _lfs_manifest(_layer(payload)))
        engine.clean = True
        engine.cmd.list_reachable_lfs_files.return_value = [_oid(payload)]
        path = tmp_path / resolve_lfs_oid_path(_oid(payload))
        path.parent.mkdir(parents=True)
        path.write_bytes(payload)

        export_lfs(engine, ["main"], _commit_desc(), _commit_desc())
        engine.fetch_lfs_manifest.assert_not_called()
        _, blobs, _ = engine.helper.publish.call_args.args
        assert len(blobs) == 1

    def test_missing_lfs_manifest_warns(self, tmp_path, caplog):
        """An earlier sync without an LFS manifest republishes everything."""
        payload = b"object"
        engine = _engine(tmp_path)
        engine.cmd.list_reachable_lfs_files.return_value = [_oid(payload)]
        path = tmp_path / resolve_lfs_oid_path(_oid(payload))
        path.parent.mkdir(parents=True)
        path.write_bytes(payload)

        with caplog.at_level(logging.WARNING, logger="git_oci_sync"):
            export_lfs(engine, ["main"], _commit_desc(), _commit_desc("sha256:" + "d" * 64))
        assert any(
            r.levelno == logging.WARNING and "No LFS manifest" in r.getMessage() for r in caplog.records
        )
        _, blobs, _ = engine.helper.publish.call_args.args
        assert len(blobs) == 1

    def test_fetches_into_cache_by_commit(self, tmp_path):
        """The cache has no refs, so git-lfs is given the commits behind revs."""
        payload = b"cached object"
        engine = _engine(tmp_path)
        engine.cmd.list_reachable_lfs_files.return_value = [_oid(payload)]
        engine.cmd.local_commits_refs.return_value = {
            "refs/heads/main": "2" * 40,
            "refs/tags/v1.0.1": "1" * 40,
            "refs/heads/dev": "2" * 40,
        }
        engine.cache = Mock()
        engine.cache.root = tmp_path / "cache"
        engine.cache.lfs_storage = tmp_path / "cache" / "lfs"
        engine.cache.has_lfs_object.return_value = True
        path = engine.cache.root / resolve_lfs_oid_path(_oid(payload))
        path.parent.mkdir(parents=True)
        path.write_bytes(payload)

        export_lfs(engine, ["main", "v1.0.1", "dev"], None, _commit_desc())

        engine.cmd.local_commits_refs.assert_called_once_with("main", "v1.0.1", "dev")
        engine.cache.update_lfs_from_git.assert_called_once_with("/src", ["1" * 40, "2" * 40])
        engine.cmd.git.config.assert_called_once_with("lfs.storage", str(tmp_path / "cache" / "lfs"))
        engine.cmd.lfs.fetch.assert_not_called()
        _, blobs, _ = engine.helper.publish.call_args.args
        assert [p for _, p in blobs] == [path]

    def test_lfs_server_configured(self, tmp_path):
        engine = _engine(tmp_path)
        engine.cmd.list_reachable_lfs_files.return_value = []
        with pytest.raises(LFSNotEnabledError):
            export_lfs(engine, ["main"], None, _commit_desc())
        engine.cmd.configure_lfs.assert_called_once()


class TestImportLFS:
    """Making LFS objects available to the destination."""

    def test_downloads_only_unknown_objects(self, tmp_path):
        """Objects the destination already references get placeholders instead."""
        known, unknown = _layer(b"known"), _layer(b"unknown")
        engine = _engine(tmp_path, _lfs_manifest(known, unknown))
        engine.helper.copy_to_local.return_value = 1

        fetched = import_lfs(engine, "/dst", _commit_desc(), [known.title], ["refs/heads/main"])

        assert fetched == 1
        assert (tmp_path / resolve_lfs_oid_path(known.title)).stat().st_size == known.size
        items = engine.helper.copy_to_local.call_args.args[0]
        assert items == [(unknown, tmp_path / resolve_lfs_oid_path(unknown.title))]
        engine.cmd.lfs.push.assert_called_once_with("/dst", "refs/heads/main")

    def test_uses_cache(self, tmp_path):
        layer = _layer(b"cached")
        engine = _engine(tmp_path, _lfs_manifest(layer))
        engine.cache = Mock()
        engine.cache.update_lfs_from_registry.return_value = [layer]
        engine.cache.lfs_storage = tmp_path / "cache" / "lfs"

        assert import_lfs(engine, "/dst", _commit_desc(), [], ["refs/tags/v1"]) == 1
        engine.cmd.git.config.assert_called_once_with("lfs.storage", str(tmp_path / "cache" / "lfs"))
        engine.helper.copy_to_local.assert_not_called()

    def test_broken_cache_falls_back(self, tmp_path, caplog):
        layer = _layer(b"object")
        engine = _engine(tmp_path, _lfs_manifest(layer))
        engine.cache = Mock()
        engine.cache.update_lfs_from_registry.side_effect = OSError("disk full")
        engine.helper.copy_to_local.return_value = 1

        assert import_lfs(engine, "/dst", _commit_desc(), [], ["refs/tags/v1"]) == 1
        assert "without object cache" in caplog.text

    def test_empty_lfs_manifest(self, tmp_path):
        engine = _engine(tmp_path, _lfs_manifest())
        with pytest.raises(SyncError, match="no layers"):
            import_lfs(engine, "/dst", _commit_desc(), [], [])

    def test_no_lfs_manifest(self, tmp_path):
        engine = _engine(tmp_path)
        with pytest.raises(LFSManifestNotFoundError):
            import_lfs(engine, "/dst", _commit_desc(), [], [])


@pytest.mark.integration
@requires_git_lfs
class TestLFSRoundTrip:
    """Real git-lfs against the in-memory registry."""

    def test_objects_published_once(self, sync, registry, tmp_path):
        repo = create_lfs_repo(tmp_path / "lfs-source")
        sync.to_oci(repo.path, ["main"], lfs=True)
        _, desc = sync.to_oci(repo.path, ["main", "Feature1"], lfs=True)

        referrers = registry.referrers(desc.digest, ARTIFACT_TYPE_LFS_MANIFEST)
        assert len(referrers) == 1
        manifest = registry.manifest_json(referrers[0].digest)
        assert manifest["subject"]["digest"] == desc.digest
        titles = [l["annotations"][ANNOTATION_TITLE] for l in manifest["layers"]]
        assert sorted(titles) == sorted(lfs_oids(repo, "main", "Feature1"))
        for oid in titles:
            assert registry.blob_uploads[f"sha256:{oid}"] == 1

    def test_import_into_bare_repository(self, sync, registry, tmp_path):
        repo = create_lfs_repo(tmp_path / "lfs-source")
        sync.to_oci(repo.path, lfs=True)
        dst = bare_repo(tmp_path / "dst.git")

        sync.from_oci(dst, lfs=True)
        for oid in lfs_oids(repo, "main", "Feature1"):
            assert (dst / resolve_lfs_oid_path(oid)).exists()

    def test_export_stores_objects_in_cache(self, sync, tmp_path, caplog):
        repo = create_lfs_repo(tmp_path / "lfs-source")
        cache = sync.cache(lfs=True)
        sync.to_oci(repo.path, ["main", "Feature1"], cache=cache, lfs=True)

        assert "without object cache" not in caplog.text
        for oid in lfs_oids(repo, "main", "Feature1"):
            assert cache.has_lfs_object(oid)

    def test_no_lfs_content_warns(self, sync, registry, source_repo, caplog):
        _, desc = sync.to_oci(source_repo.path, lfs=True)
        assert "No git-lfs files reachable" in caplog.text
        assert registry.referrers(desc.digest, ARTIFACT_TYPE_LFS_MANIFEST) == []
