"""CLI for git-oci-sync."""

from pathlib import Path
from typing import List, Optional
import logging
import sys

import typer
from rich.console import Console

from .api import from_oci as api_from_oci
from .api import list_refs as api_list_refs
from .api import to_oci as api_to_oci
from .config import SyncSettings, load_settings
from .errors import (
    AuthError,
    ManifestNotFoundError,
    NetworkError,
    SyncError,
    TagUpdateRejectedError,
    UnnecessarySyncError,
)


app = typer.Typer(help="""\
Synchronize git repositories (including git-lfs content) with OCI
registries. History is stored as append-only git bundle layers so each
sync only moves what changed.""")

console = Console(highlight=False, soft_wrap=True)


def _setup_logging(verbose: int) -> None:
    """WARNING by default, INFO with -v, DEBUG with -vv."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG

    logger = logging.getLogger("git_oci_sync")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)


def _settings(
    config: Optional[Path],
    cache_path: Optional[str] = None,
    lfs_server: Optional[str] = None,
    git_executable: Optional[str] = None,
    git_lfs_executable: Optional[str] = None,
    insecure: bool = False,
) -> SyncSettings:
    """Load settings, then apply CLI flags on top."""
    try:
        settings = load_settings(config)
    except SyncError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)
    return settings.merged(
        cache_path=cache_path,
        lfs_server_url=lfs_server,
        git_executable=git_executable,
        git_lfs_executable=git_lfs_executable,
        insecure=True if insecure else None,
    )


def _handle_error(e: SyncError) -> None:
    """Print a sync failure and exit non-zero."""
    if isinstance(e, ManifestNotFoundError):
        console.print(f"[yellow]No sync found at {e.reference}[/yellow]")
    elif isinstance(e, UnnecessarySyncError):
        console.print(f"[yellow]Nothing to sync: {e.reference} is up to date[/yellow]")
    elif isinstance(e, NetworkError):
        console.print(f"[red]✗[/red] {e}")
        console.print("[dim]Check your network connection and registry URL[/dim]")
    elif isinstance(e, AuthError):
        console.print(f"[red]✗[/red] {e}")
        console.print("[dim]Set GIT_OCI_REGISTRY_USERNAME and GIT_OCI_REGISTRY_PASSWORD[/dim]")
    elif isinstance(e, TagUpdateRejectedError):
        console.print(f"[red]✗[/red] {e}")
        console.print("[dim]Hint: a tag already exists at the destination; use --force to overwrite it[/dim]")
    else:
        console.print(f"[red]✗[/red] {e}")
    raise typer.Exit(1)


@app.command("to-oci")
def to_oci(
    src: str = typer.Argument(..., help="Git repository to read from (URL or path)"),
    dest: str = typer.Argument(..., help="OCI reference to publish to (registry/repo:tag)"),
    refs: Optional[List[str]] = typer.Argument(None, help="Tags/heads to export (default: all)"),
    clean: bool = typer.Option(False, "--clean", help="Ignore the existing sync and start over"),
    lfs: bool = typer.Option(True, "--lfs/--no-lfs", help="Include git-lfs objects"),
    lfs_server: Optional[str] = typer.Option(None, "--lfs-server", help="git-lfs server URL"),
    cache_path: Optional[str] = typer.Option(None, "--cache-path", help="Object cache directory ('default' for the user cache)"),
    git_executable: Optional[str] = typer.Option(None, "--git-executable", help="Alternate git binary"),
    git_lfs_executable: Optional[str] = typer.Option(None, "--git-lfs-executable", help="Alternate git-lfs binary"),
    insecure: bool = typer.Option(False, "--insecure", help="Use plain HTTP for the registry"),
    config: Optional[Path] = typer.Option(None, "--config", help="Configuration file"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More output (-vv for debug)"),
):
    """Export a git repository to an OCI registry.

    Examples:
        git-oci to-oci https://github.com/org/repo.git localhost:5000/org/repo:sync
        git-oci to-oci ./repo localhost:5000/repo:sync main v1.0.0
        git-oci to-oci ./repo localhost:5000/repo:sync --clean
    """
    _setup_logging(verbose)
    settings = _settings(config, cache_path, lfs_server, git_executable, git_lfs_executable, insecure)

    try:
        desc = api_to_oci(src, dest, refs or (), clean=clean, lfs=lfs, settings=settings)
    except SyncError as e:
        _handle_error(e)
    console.print(f"[green]✓[/green] Published {desc.digest}")


@app.command("from-oci")
def from_oci(
    src: str = typer.Argument(..., help="OCI reference to read from (registry/repo:tag)"),
    dest: str = typer.Argument(..., help="Git repository to update (URL or path)"),
    force: bool = typer.Option(False, "--force", help="Allow non-fast-forward updates (mirror push)"),
    lfs: bool = typer.Option(True, "--lfs/--no-lfs", help="Include git-lfs objects"),
    lfs_server: Optional[str] = typer.Option(None, "--lfs-server", help="git-lfs server URL"),
    cache_path: Optional[str] = typer.Option(None, "--cache-path", help="Object cache directory ('default' for the user cache)"),
    git_executable: Optional[str] = typer.Option(None, "--git-executable", help="Alternate git binary"),
    git_lfs_executable: Optional[str] = typer.Option(None, "--git-lfs-executable", help="Alternate git-lfs binary"),
    insecure: bool = typer.Option(False, "--insecure", help="Use plain HTTP for the registry"),
    config: Optional[Path] = typer.Option(None, "--config", help="Configuration file"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More output (-vv for debug)"),
):
    """Import a sync from an OCI registry into a git repository.

    Examples:
        git-oci from-oci localhost:5000/org/repo:sync ./mirror.git
        git-oci from-oci localhost:5000/org/repo:sync git@host:org/repo.git --force
    """
    _setup_logging(verbose)
    settings = _settings(config, cache_path, lfs_server, git_executable, git_lfs_executable, insecure)

    try:
        updated = api_from_oci(src, dest, force=force, lfs=lfs, settings=settings)
    except SyncError as e:
        _handle_error(e)

    for update in updated:
        console.print(str(update))
    if updated:
        console.print(f"[green]✓[/green] Updated {len(updated)} reference(s) in {dest}")
    else:
        console.print(f"[green]✓[/green] {dest} is up to date")


@app.command("list-refs")
def list_refs(
    src: str = typer.Argument(..., help="OCI reference to inspect (registry/repo:tag)"),
    insecure: bool = typer.Option(False, "--insecure", help="Use plain HTTP for the registry"),
    config: Optional[Path] = typer.Option(None, "--config", help="Configuration file"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More output (-vv for debug)"),
):
    """List the references recorded in a sync.

    Prints the manifest digest, then one "<commit> <ref>" line per reference.
    """
    _setup_logging(verbose)
    settings = _settings(config, insecure=insecure)

    try:
        desc, refs = api_list_refs(src, settings=settings)
    except SyncError as e:
        _handle_error(e)

    console.print(desc.digest)
    for ref in refs:
        console.print(str(ref))


if __name__ == "__main__":
    app()
