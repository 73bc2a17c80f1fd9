"""Tests for shared engine machinery: layer cutoff, bundle fetch, lifecycle."""

import threading
from unittest.mock import Mock

import pytest

from git_oci_sync.constants import (
    ANNOTATION_TITLE,
    ARTIFACT_TYPE_SYNC_MANIFEST,
    MEDIA_TYPE_BUNDLE_LAYER,
    MEDIA_TYPE_SYNC_CONFIG,
)
from git_oci_sync.errors import CleanupError, GitCommandError, RegistryError, SyncCancelledError
from git_oci_sync.models import Descriptor, Manifest, ReferenceInfo, SyncConfig
from git_oci_sync.registry import RegistryHelper
from git_oci_sync.sync import SyncEngine, fetch_from_bundles, resolve_layer_cutoff


def _layers(n: int):
    return [
        Descriptor.from_bytes(MEDIA_TYPE_BUNDLE_LAYER, f"layer{i}".encode(),
                              annotations={ANNOTATION_TITLE: f"changes{i + 1}.bundle"})
        for i in range(n)
    ]


def _manifest_and_config(layer_of: dict, n_layers: int = 3):
    """Manifest with n layers and a config placing {ref: (commit, layer index)}."""
    layers = _layers(n_layers)
    config = SyncConfig()
    for ref, (commit, index) in layer_of.items():
        layer = layers[index].digest if index is not None else "sha256:gone"
        config.set(ref, ReferenceInfo(commit=commit, layer=layer))
    manifest = Manifest(
        artifactType=ARTIFACT_TYPE_SYNC_MANIFEST,
        config=Descriptor(mediaType=MEDIA_TYPE_SYNC_CONFIG, digest="sha256:c", size=1),
        layers=layers,
    )
    return manifest, config


class TestResolveLayerCutoff:
    """Minimal suffix of layers an import must fetch."""

    def test_everything_current(self):
        """A receiver with every ref at its recorded commit needs no layers."""
        manifest, config = _manifest_and_config({
            "refs/heads/main": ("a", 0),
            "refs/tags/v2": ("b", 2),
        })
        assert resolve_layer_cutoff(manifest, config, lambda ref, info: True) == 3

    def test_empty_receiver(self):
        """An empty receiver needs everything from the lowest recorded layer."""
        manifest, config = _manifest_and_config({
            "refs/heads/main": ("a", 1),
            "refs/tags/v2": ("b", 2),
        })
        assert resolve_layer_cutoff(manifest, config, lambda ref, info: False) == 1

    def test_only_stale_refs_count(self):
        manifest, config = _manifest_and_config({
            "refs/heads/main": ("a", 0),
            "refs/heads/dev": ("b", 2),
        })
        have = {"refs/heads/main": "a"}
        cutoff = resolve_layer_cutoff(manifest, config, lambda ref, info: have.get(ref) == info.commit)
        assert cutoff == 2

    def test_unknown_layer_forces_full_fetch(self):
        manifest, config = _manifest_and_config({"refs/heads/main": ("a", None)})
        assert resolve_layer_cutoff(manifest, config, lambda ref, info: False) == 0

    def test_probe_skipped_when_cutoff_already_lower(self):
        """Refs recorded at or above the cutoff are not probed."""
        manifest, config = _manifest_and_config({
            "refs/tags/v1": ("a", 0),
            "refs/heads/main": ("b", 2),
        })
        probe = Mock(return_value=False)
        resolve_layer_cutoff(manifest, config, probe)
        assert probe.call_count == 1


class TestFetchFromBundles:
    """Bundles are fetched through temporary remotes."""

    def _cmd(self, force=False, fail_fetch=False):
        cmd = Mock()
        cmd.force = force
        if fail_fetch:
            cmd.git.fetch.side_effect = GitCommandError(["git", "fetch"], 1, "boom")
        return cmd

    def test_fetch_all_at_once(self, tmp_path):
        cmd = self._cmd()
        fetch_from_bundles(cmd, [tmp_path / "changes2.bundle", tmp_path / "changes3.bundle"])
        cmd.git.remote_add.assert_any_call("changes2", str(tmp_path / "changes2.bundle"))
        cmd.git.fetch.assert_called_once_with("--tags", "--multiple", "changes2", "changes3")
        assert cmd.git.remote_remove.call_count == 2

    def test_force(self, tmp_path):
        cmd = self._cmd(force=True)
        fetch_from_bundles(cmd, [tmp_path / "changes1.bundle"])
        cmd.git.fetch.assert_called_once_with("--tags", "--multiple", "--force", "changes1")

    def test_remotes_removed_on_failure(self, tmp_path):
        cmd = self._cmd(fail_fetch=True)
        with pytest.raises(GitCommandError):
            fetch_from_bundles(cmd, [tmp_path / "changes1.bundle"])
        cmd.git.remote_remove.assert_called_once_with("changes1")


class TestSyncEngine:
    """Engine lifecycle."""

    def _engine(self, registry, tmp_path, **kwargs):
        work_dir = tmp_path / "work"
        helper = RegistryHelper(registry, work_dir / "blobs", "sync")
        return SyncEngine(helper, work_dir, **kwargs)

    def test_work_dir_removed(self, registry, tmp_path):
        """The staging area is gone after the engine exits, even on error."""
        with pytest.raises(RuntimeError):
            with self._engine(registry, tmp_path) as engine:
                (engine.work_dir / "repo").mkdir()
                raise RuntimeError("boom")
        assert not (tmp_path / "work").exists()

    def test_cleanup_failure_reported(self, registry, tmp_path, monkeypatch):
        def fail(path):
            raise PermissionError("denied")
        monkeypatch.setattr("git_oci_sync.sync.shutil.rmtree", fail)
        with pytest.raises(CleanupError):
            with self._engine(registry, tmp_path):
                pass

    def test_cleanup_failure_does_not_mask_error(self, registry, tmp_path, monkeypatch, caplog):
        def fail(path):
            raise PermissionError("denied")
        monkeypatch.setattr("git_oci_sync.sync.shutil.rmtree", fail)
        with pytest.raises(ValueError, match="original"):
            with self._engine(registry, tmp_path):
                raise ValueError("original")
        assert "denied" in caplog.text

    def test_cancellation(self, registry, tmp_path):
        cancel = threading.Event()
        engine = self._engine(registry, tmp_path, cancel=cancel)
        engine.check_cancelled()
        cancel.set()
        with pytest.raises(SyncCancelledError):
            engine.check_cancelled()

    def test_rejects_foreign_artifact(self, registry, tmp_path):
        """A manifest that is not a git sync artifact is refused."""
        helper = RegistryHelper(registry, tmp_path / "blobs", "sync")
        config_data = b"{}"
        manifest = Manifest(
            artifactType="application/vnd.example.other",
            config=Descriptor.from_bytes(MEDIA_TYPE_SYNC_CONFIG, config_data),
        )
        helper.publish(manifest, [], config_data, tag="sync")
        engine = self._engine(registry, tmp_path)
        with pytest.raises(RegistryError, match="not a git sync artifact"):
            engine.fetch_base_manifest_config()
