"""Synchronize git repositories with OCI registries."""

__version__ = "0.1.0"
