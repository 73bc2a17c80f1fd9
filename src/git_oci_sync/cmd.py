"""Command executor for git and git-lfs.

The engines never spawn processes directly. They go through a
``CommandRunner`` so tests (or an embedded git implementation) can stand in
for the real binaries. Known failure text from git is classified into typed
errors here; callers rely on that classification for control flow (an empty
bundle is not a failure, an unreachable destination means "initialize").
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .constants import (
    HEAD_REF_PREFIX,
    LFS_OBJECTS_PATH,
    TAG_REF_PREFIX,
)
from .errors import (
    AncestorCheckError,
    BadObjectError,
    EmptyBundleError,
    GitCommandError,
    LFSCommandNotFoundError,
    PushRejectedError,
    RepoNotExistOrPermDeniedError,
    SyncError,
    TagUpdateRejectedError,
)
from .version import check_git_version, check_lfs_version

logger = logging.getLogger(__name__)


# ============= Process capability =============

@dataclass
class CommandResult:
    """Outcome of one process invocation."""
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner(Protocol):
    """Runs a command line and reports its outcome.

    Must raise FileNotFoundError when the executable does not exist.
    """

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


class SubprocessRunner:
    """Runs commands with subprocess."""

    def run(self, argv, cwd=None, env=None, timeout=None) -> CommandResult:
        completed = subprocess.run(
            list(argv),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)


# ============= Error classification =============

# Order matters: the tag rejection text also contains "[rejected]".
_ERROR_PATTERNS = [
    (re.compile(r"refusing to create empty bundle", re.I), EmptyBundleError),
    (re.compile(r"could not read from remote repository", re.I), RepoNotExistOrPermDeniedError),
    (re.compile(r"does not appear to be a git repository", re.I), RepoNotExistOrPermDeniedError),
    (re.compile(r"repository '.*' not found", re.I), RepoNotExistOrPermDeniedError),
    (re.compile(r"repository '.*' does not exist", re.I), RepoNotExistOrPermDeniedError),
    (re.compile(r"bad object", re.I), BadObjectError),
    (re.compile(r"updates were rejected because the tag already exists", re.I), TagUpdateRejectedError),
    (re.compile(r"\[rejected\]|failed to push some refs", re.I), PushRejectedError),
]

_BAD_OBJECT_RE = re.compile(r"bad object ([0-9a-f]{40,64})", re.I)


def classify_error(argv: Sequence[str], returncode: int, stderr: str) -> GitCommandError:
    """Map git's stderr to the most specific GitCommandError subclass."""
    for pattern, error_cls in _ERROR_PATTERNS:
        if pattern.search(stderr):
            error = error_cls(argv, returncode, stderr)
            break
    else:
        error = GitCommandError(argv, returncode, stderr)
    if isinstance(error, BadObjectError):
        match = _BAD_OBJECT_RE.search(stderr)
        error.object_id = match.group(1).lower() if match else None
    return error


# ============= Output parsing =============

def parse_oid_refs(lines: Iterable[str]) -> Dict[str, str]:
    """Parse "<commit> <ref>" lines (show-ref or ls-remote) into {ref: commit}.

    Only tag and head references are kept; peeled tag entries ("^{}") are
    skipped.
    """
    refs: Dict[str, str] = {}
    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        commit, ref = parts[0], parts[1]
        if ref.endswith("^{}"):
            continue
        if ref.startswith(TAG_REF_PREFIX) or ref.startswith(HEAD_REF_PREFIX):
            refs[ref] = commit
    return refs


def short_ref_names(refs: Iterable[str]) -> List[str]:
    """Strip the refs/tags/ or refs/heads/ prefix from references."""
    names = []
    for ref in refs:
        for prefix in (TAG_REF_PREFIX, HEAD_REF_PREFIX):
            if ref.startswith(prefix):
                ref = ref[len(prefix):]
                break
        names.append(ref)
    return names


# ============= LFS object paths =============

def resolve_lfs_oid_path(oid: str) -> str:
    """Relative path to an LFS object: lfs/objects/ab/cd/abcd..."""
    return f"{LFS_OBJECTS_PATH}/{oid[0:2]}/{oid[2:4]}/{oid}"


def create_fake_lfs_files(root: Path, oids: Mapping[str, int]) -> None:
    """Create placeholder LFS objects with the same size as the originals.

    git-lfs treats an object file of the right size as already present, so
    placeholders make it skip transfers of objects we know the other side has.
    """
    for oid, size in oids.items():
        path = Path(root) / resolve_lfs_oid_path(oid)
        if path.exists():
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            if size > 0:
                f.seek(size - 1)
                f.write(b"\x01")


# ============= git / git-lfs =============

class Git:
    """Thin wrapper around the git executable, bound to one repository."""

    def __init__(
        self,
        git_dir: Path,
        runner: Optional[CommandRunner] = None,
        executable: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.git_dir = Path(git_dir)
        self.runner = runner or SubprocessRunner()
        self.executable = executable or "git"
        self.timeout = timeout

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        # Fail instead of prompting for credentials
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    def execute(self, argv: Sequence[str], cwd: Optional[Path] = None) -> CommandResult:
        """Run a command line without interpreting its exit status."""
        logger.debug("Running %s", " ".join(argv))
        try:
            return self.runner.run(argv, cwd=cwd, env=self._env(), timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise GitCommandError(argv, -1, f"timed out after {self.timeout}s")

    def _exec(self, *args: str) -> CommandResult:
        cwd = self.git_dir if self.git_dir.exists() else None
        return self.execute([self.executable, *args], cwd=cwd)

    def run(self, *args: str) -> str:
        """Run a git subcommand in the repository, returning stdout."""
        result = self._exec(*args)
        if result.returncode != 0:
            raise classify_error([self.executable, *args], result.returncode, result.stderr)
        return result.stdout

    def lines(self, *args: str) -> List[str]:
        return [line for line in self.run(*args).splitlines() if line.strip()]

    def version(self) -> str:
        return self.run("version").strip()

    def init_bare(self) -> None:
        self.git_dir.mkdir(parents=True, exist_ok=True)
        self.run("init", "--bare")

    def clone(self, remote: str, reference: Optional[str] = None) -> None:
        """Bare clone into git_dir, borrowing objects from reference if usable."""
        args = ["clone"]
        if reference:
            args += ["--shared", "--reference-if-able", str(reference)]
        args += ["--bare", remote, str(self.git_dir)]
        argv = [self.executable, *args]
        result = self.execute(argv)
        if result.returncode != 0:
            raise classify_error(argv, result.returncode, result.stderr)

    def fetch(self, *args: str) -> None:
        self.run("fetch", *args)

    def push(self, *args: str) -> None:
        self.run("push", *args)

    def show_ref(self, *patterns: str) -> List[str]:
        """List local references. An empty match is an empty list."""
        result = self._exec("show-ref", *patterns)
        if result.returncode == 1 and not result.stdout.strip() and not result.stderr.strip():
            return []
        if result.returncode != 0:
            raise classify_error(
                [self.executable, "show-ref", *patterns], result.returncode, result.stderr
            )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def update_ref(self, ref: str, commit: str) -> None:
        self.run("update-ref", ref, commit)

    def remote_add(self, name: str, url: str) -> None:
        self.run("remote", "add", name, url)

    def remote_remove(self, name: str) -> None:
        self.run("remote", "remove", name)

    def ls_remote(self, *args: str) -> List[str]:
        return self.lines("ls-remote", *args)

    def merge_base_is_ancestor(self, ancestor: str, descendant: str) -> CommandResult:
        return self._exec("merge-base", "--is-ancestor", ancestor, descendant)

    def bundle_create(self, path: Path, *revs: str) -> None:
        self.run("bundle", "create", str(path), *revs)

    def bundle_list_heads(self, path: Path) -> List[str]:
        return self.lines("bundle", "list-heads", str(path))

    def config(self, key: str, value: str, add: bool = False) -> None:
        if add:
            self.run("config", "--add", key, value)
        else:
            self.run("config", key, value)

    def cat_file_exists(self, obj: str) -> bool:
        return self._exec("cat-file", "-e", obj).returncode == 0


class LFS:
    """Thin wrapper around git-lfs, sharing a Git's repository and runner."""

    def __init__(self, git: Git, executable: Optional[str] = None):
        self.git = git
        self.executable = executable

    def _argv(self, *args: str) -> List[str]:
        if self.executable:
            return [self.executable, *args]
        return [self.git.executable, "lfs", *args]

    def run(self, *args: str) -> str:
        argv = self._argv(*args)
        cwd = self.git.git_dir if self.git.git_dir.exists() else None
        try:
            result = self.git.execute(argv, cwd=cwd)
        except FileNotFoundError:
            raise LFSCommandNotFoundError(argv[0])
        if result.returncode != 0:
            if "is not a git command" in result.stderr:
                raise LFSCommandNotFoundError(" ".join(argv[:2]))
            raise classify_error(argv, result.returncode, result.stderr)
        return result.stdout

    def version(self) -> str:
        return self.run("version").strip()

    def fetch(self, remote: str, *args: str) -> None:
        self.run("fetch", remote, *args)

    def push(self, remote: str, *refs: str) -> None:
        self.run("push", remote, *refs)

    def ls_files(self, ref: str, *args: str) -> List[str]:
        return [line for line in self.run("ls-files", ref, *args).splitlines() if line.strip()]


# ============= Helper =============

@dataclass
class CommandOptions:
    """Options shared by every command helper of a sync."""
    git_executable: Optional[str] = None
    git_lfs_executable: Optional[str] = None
    lfs: bool = True
    lfs_server_url: Optional[str] = None
    force: bool = False
    timeout: Optional[float] = None
    runner: CommandRunner = field(default_factory=SubprocessRunner)


class CommandHelper:
    """git and git-lfs operations on one (usually bare) repository."""

    def __init__(self, git_dir: Path, options: Optional[CommandOptions] = None):
        self.options = options or CommandOptions()
        self.dir = Path(git_dir)
        self.git = Git(
            self.dir,
            runner=self.options.runner,
            executable=self.options.git_executable,
            timeout=self.options.timeout,
        )
        self.lfs = LFS(self.git, executable=self.options.git_lfs_executable)

    @property
    def force(self) -> bool:
        return self.options.force

    @property
    def lfs_dir(self) -> Path:
        """Root under which lfs/objects/... lives (the bare repository itself)."""
        return self.dir

    def validate_versions(self) -> None:
        """Check tool versions; disable LFS (with a warning) if it is unusable."""
        check_git_version(self.git)
        if self.options.lfs:
            try:
                check_lfs_version(self.lfs)
            except SyncError as e:
                logger.warning("Disabling git-lfs support: %s", e)
                self.options.lfs = False

    def local_commits_refs(self, *patterns: str) -> Dict[str, str]:
        """{full_ref: commit} for local tags/heads matching patterns."""
        return parse_oid_refs(self.git.show_ref(*patterns))

    def remote_commits_refs(self, remote: str, *args: str) -> Dict[str, str]:
        """{full_ref: commit} for a remote's tags/heads."""
        return parse_oid_refs(self.git.ls_remote(*args, remote))

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Whether ancestor is reachable from descendant.

        Exit status 1 is the normal "no" answer; anything else is an error.
        """
        result = self.git.merge_base_is_ancestor(ancestor, descendant)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        cause = classify_error(
            ["merge-base", "--is-ancestor", ancestor, descendant],
            result.returncode,
            result.stderr,
        )
        raise AncestorCheckError(ancestor, descendant, cause)

    def add_alternate(self, objects_dir: Path) -> None:
        """Borrow objects from another repository's object store."""
        info = self.dir / "objects" / "info"
        info.mkdir(parents=True, exist_ok=True)
        alternates = info / "alternates"
        existing = alternates.read_text().splitlines() if alternates.exists() else []
        target = str(Path(objects_dir).resolve())
        if target not in existing:
            with open(alternates, "a") as f:
                f.write(target + "\n")

    def configure_lfs(self) -> None:
        if self.options.lfs_server_url:
            self.git.config("lfs.url", self.options.lfs_server_url)

    def list_reachable_lfs_files(self, revs: Sequence[str]) -> List[str]:
        """OIDs of LFS files reachable from revs, including deleted ones.

        This is expensive: ls-files walks full history, one rev at a time.
        """
        if not self.git.show_ref():
            return []

        seen: Dict[str, None] = {}
        for rev in revs:
            for line in self.lfs.ls_files(rev, "--long", "--deleted"):
                # "<oid> <-|*> <path>"
                seen.setdefault(line.split()[0], None)
        return list(seen)
