"""Shared test fixtures and utilities."""

import pytest

from tests.fixtures.git_repos import create_test_repo, has_git
from tests.fixtures.memory_registry import MemoryRegistry
from tests.fixtures.sync_runner import SyncRunner


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep user configuration and credentials out of every test."""
    for name in (
        "GIT_OCI_CACHE_PATH",
        "GIT_OCI_GIT_EXECUTABLE",
        "GIT_OCI_GIT_LFS_EXECUTABLE",
        "GIT_OCI_LFS_SERVER",
        "GIT_OCI_INSECURE",
        "GIT_OCI_REGISTRY_USERNAME",
        "GIT_OCI_REGISTRY_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GIT_OCI_CONFIG", str(tmp_path / "no-config.yaml"))


@pytest.fixture
def registry():
    """Empty in-memory OCI repository."""
    return MemoryRegistry()


@pytest.fixture
def source_repo(tmp_path):
    """The scripted three-branch source repository."""
    if not has_git():
        pytest.skip("git is not installed")
    return create_test_repo(tmp_path / "source")


@pytest.fixture
def sync(registry, tmp_path):
    """SyncRunner bound to the registry fixture."""
    return SyncRunner(registry, tmp_path / "sync")
