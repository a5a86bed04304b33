"""Git helpers used by the validators and the commit flow.

Every mutating operation (stash, checkout, worktree add/remove, commit) holds a
re-entrant lock keyed by the repository root, so concurrent runs against the
same project never interleave working-tree changes.  Read-only commands run
without the lock.  All commands are bounded by a timeout.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Sequence

LOGGER = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 60.0
MIN_COMMIT_MESSAGE_LENGTH = 10

_LOCKS: Dict[Path, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def project_lock(root: Path | str) -> threading.RLock:
    """Return the process-wide lock guarding mutations of the repository at ``root``."""

    key = Path(root).resolve()
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _LOCKS[key] = lock
        return lock


def ensure_ignored_directory(path: Path) -> Path:
    """Create ``path`` with a catch-all ``.gitignore`` so git never reports its contents."""

    path.mkdir(parents=True, exist_ok=True)
    marker = path / ".gitignore"
    if not marker.exists():
        marker.write_text("*\n", encoding="utf-8")
    return path


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class CommitError(GitError):
    """Raised when a commit cannot be created."""

    NO_CHANGES = "NO_CHANGES"
    GIT_IDENTITY_MISSING = "GIT_IDENTITY_MISSING"
    COMMIT_FAILED = "COMMIT_FAILED"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class PushError(GitError):
    """Raised when a push is rejected; ``kind`` tells callers how to recover."""

    REMOTE_AHEAD = "REMOTE_AHEAD"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PUSH_FAILED = "PUSH_FAILED"

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


_REMOTE_AHEAD_MARKERS = ("fetch first", "non-fast-forward", "[rejected]", "tip of your current branch is behind")
_PERMISSION_MARKERS = (
    "permission denied",
    "authentication failed",
    "could not read username",
    "403",
    "access denied",
    "not allowed to push",
    "denied to",
)


def classify_push_failure(output: str) -> str:
    """Map git push output to a :class:`PushError` kind."""

    lowered = output.lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return PushError.PERMISSION_DENIED
    if any(marker in lowered for marker in _REMOTE_AHEAD_MARKERS):
        return PushError.REMOTE_AHEAD
    return PushError.PUSH_FAILED


@dataclass(slots=True)
class WorktreeHandle:
    """A detached worktree checked out at ``ref``."""

    path: Path
    ref: str


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(
        self,
        root: Path | str,
        *,
        timeout: float = DEFAULT_GIT_TIMEOUT,
        worktrees_root: Path | str | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        self.timeout = float(timeout)
        self.worktrees_root = (
            Path(worktrees_root).resolve()
            if worktrees_root is not None
            else self.root / ".gatekeeper" / "worktrees"
        )

    @classmethod
    def discover(cls, start: Path | str | None = None, **kwargs) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate, **kwargs)
        raise GitError(f"Unable to locate a git repository from {path}")

    @property
    def lock(self) -> threading.RLock:
        return project_lock(self.root)

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", *args]
        LOGGER.debug("Running %s", " ".join(command))
        try:
            process = subprocess.run(
                command,
                cwd=cwd or self.root,
                capture_output=True,
                text=False,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitError(f"git {' '.join(args)} timed out after {self.timeout:g}s") from error
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- refs
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head_sha(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def current_ref(self) -> str:
        """Return the checked-out branch, or the commit sha when detached."""

        branch = self.current_branch()
        if branch:
            return branch
        sha = self.head_sha()
        if sha is None:
            raise GitError("Repository has no commits.")
        return sha

    def resolve_ref(self, ref: str) -> str:
        return self._run_git(["rev-parse", "--verify", f"{ref}^{{commit}}"]).stdout.strip()

    def checkout(self, ref: str) -> None:
        with self.lock:
            self._run_git(["checkout", "--quiet", ref])

    # ------------------------------------------------------------------- stash
    def stash(self, message: str | None = None) -> bool:
        """Stash pending changes including untracked files.

        Returns ``True`` when a stash entry was created.
        """

        args: List[str] = ["stash", "push", "-u"]
        if message:
            args.extend(["-m", message])
        with self.lock:
            result = self._run_git(args, check=False)
        combined = f"{result.stdout}\n{result.stderr}".strip()
        if "No local changes to save" in combined:
            return False
        if result.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {combined or 'unknown git error'}")
        return True

    def stash_pop(self) -> bool:
        """Pop the latest stash entry; failures are logged, never raised."""

        try:
            with self.lock:
                result = self._run_git(["stash", "pop"], check=False)
        except GitError as error:
            LOGGER.warning("git stash pop failed in %s: %s", self.root, error)
            return False
        if result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            LOGGER.warning("git stash pop failed in %s: %s", self.root, message)
            return False
        return True

    @contextmanager
    def baseline(self, ref: str) -> Iterator[Path]:
        """Temporarily check out ``ref`` in the main working tree.

        Pending changes are stashed first and restored afterwards.  The lock is
        held for the whole block so no other run observes the baseline state.
        """

        with self.lock:
            original = self.current_ref()
            stashed = self.stash(message=f"gatekeeper-baseline-{uuid.uuid4().hex[:8]}")
            try:
                self.checkout(ref)
                yield self.root
            finally:
                try:
                    self.checkout(original)
                except GitError as error:
                    LOGGER.warning("Unable to return %s to %s: %s", self.root, original, error)
                if stashed:
                    self.stash_pop()

    # ----------------------------------------------------------- diff helpers
    def diff(self, *paths: str) -> str:
        """Return the unified diff for ``paths`` (defaults to the whole repo)."""

        args: List[str] = ["diff"]
        args.extend(paths)
        result = self._run_git(args, check=True)
        return result.stdout

    @staticmethod
    def _lines(payload: str) -> List[str]:
        return [line.strip() for line in payload.splitlines() if line.strip()]

    def diff_files(self, base_ref: str, target_ref: str) -> List[str]:
        """Return paths changed between ``base_ref`` and ``target_ref``."""

        result = self._run_git(["diff", "--name-only", f"{base_ref}..{target_ref}"])
        return sorted(set(self._lines(result.stdout)))

    def untracked_files(self) -> List[str]:
        result = self._run_git(["ls-files", "--others", "--exclude-standard"])
        return self._lines(result.stdout)

    def diff_files_with_working_tree(self, base_ref: str) -> List[str]:
        """Return paths that differ between ``base_ref`` and the working tree.

        Untracked files are included since a newly created file is part of the
        actual change even before it is staged.
        """

        result = self._run_git(["diff", "--name-only", base_ref])
        return sorted(set(self._lines(result.stdout)) | set(self.untracked_files()))

    def read_file(self, path: str, ref: str | None = None) -> str | None:
        """Return the content of ``path`` at ``ref`` (or on disk when ``ref`` is None)."""

        if ref is None:
            candidate = self.root / path
            if not candidate.is_file():
                return None
            return candidate.read_text(encoding="utf-8", errors="replace")
        result = self._run_git(["show", f"{ref}:{path}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def file_exists_at(self, path: str, ref: str | None = None) -> bool:
        if ref is None:
            return (self.root / path).exists()
        result = self._run_git(["cat-file", "-e", f"{ref}:{path}"], check=False)
        return result.returncode == 0

    def list_tracked_paths(self) -> List[str]:
        result = self._run_git(["ls-files", "-z"])
        return [entry for entry in result.stdout.split("\0") if entry]

    # --------------------------------------------------------------- worktrees
    def create_worktree(self, ref: str, *, name: str | None = None) -> WorktreeHandle:
        """Check ``ref`` out into a new detached worktree."""

        ensure_ignored_directory(self.worktrees_root)
        label = name or f"wt-{uuid.uuid4().hex[:12]}"
        path = self.worktrees_root / label
        with self.lock:
            self._run_git(["worktree", "add", "--detach", "--force", str(path), ref])
        LOGGER.debug("Created worktree %s at %s", path, ref)
        return WorktreeHandle(path=path, ref=ref)

    def cleanup_worktree(self, path: Path | str) -> None:
        """Remove a worktree; failures are logged, never raised."""

        target = Path(path)
        with self.lock:
            try:
                result = self._run_git(["worktree", "remove", "--force", str(target)], check=False)
                if result.returncode != 0:
                    LOGGER.warning(
                        "git worktree remove failed for %s: %s",
                        target,
                        result.stderr.strip() or result.stdout.strip(),
                    )
            except GitError as error:
                LOGGER.warning("git worktree remove failed for %s: %s", target, error)
            if target.exists():
                shutil.rmtree(target, ignore_errors=True)
            try:
                self._run_git(["worktree", "prune"], check=False)
            except GitError as error:
                LOGGER.warning("git worktree prune failed: %s", error)

    @contextmanager
    def worktree(self, ref: str) -> Iterator[WorktreeHandle]:
        """Yield a temporary worktree at ``ref`` that is removed on exit."""

        handle = self.create_worktree(ref)
        try:
            yield handle
        finally:
            self.cleanup_worktree(handle.path)

    def list_worktrees(self) -> List[Path]:
        result = self._run_git(["worktree", "list", "--porcelain"])
        return [
            Path(line.split(" ", 1)[1])
            for line in result.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    # -------------------------------------------------------------- commits
    def commit_all(self, message: str) -> str:
        """Stage every change and commit it, returning the new commit sha."""

        cleaned = (message or "").strip()
        if len(cleaned) < MIN_COMMIT_MESSAGE_LENGTH:
            raise ValueError(
                f"Commit message must be at least {MIN_COMMIT_MESSAGE_LENGTH} characters."
            )
        with self.lock:
            self._run_git(["add", "--all"])
            commit = self._run_git(["commit", "-m", cleaned], check=False)
            if commit.returncode != 0:
                output = commit.stderr.strip() or commit.stdout.strip() or ""
                lowered = output.lower()
                if "nothing to commit" in lowered or "no changes added" in lowered:
                    raise CommitError(CommitError.NO_CHANGES, "Nothing to commit.")
                if "please tell me who you are" in lowered or "empty ident" in lowered:
                    raise CommitError(
                        CommitError.GIT_IDENTITY_MISSING,
                        "Git user.name/user.email are not configured.",
                    )
                raise CommitError(CommitError.COMMIT_FAILED, f"git commit failed: {output}")
            return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    # -------------------------------------------------------------- remotes
    def has_remote(self, remote: str) -> bool:
        result = self._run_git(["remote"], check=False)
        return remote in self._lines(result.stdout)

    def push(self, remote: str = "origin", branch: str | None = None, *, set_upstream: bool = False) -> None:
        """Push ``branch`` (default: current branch) to ``remote``."""

        target = branch or self.current_branch()
        if not target:
            raise PushError(PushError.PUSH_FAILED, "Cannot push from a detached HEAD.")
        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend([remote, target])
        result = self._run_git(args, check=False)
        if result.returncode != 0:
            output = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise PushError(classify_push_failure(output), f"git push failed: {output}")

    def pull(self, remote: str = "origin", branch: str | None = None) -> None:
        """Rebase the current branch onto ``remote``, stashing local edits around it."""

        target = branch or self.current_branch()
        if not target:
            raise GitError("Cannot pull into a detached HEAD.")
        with self.lock:
            stashed = self.stash(message="gatekeeper-pull")
            try:
                self._run_git(["pull", "--rebase", remote, target])
            finally:
                if stashed:
                    self.stash_pop()


__all__ = [
    "CommitError",
    "GitError",
    "GitRepository",
    "PushError",
    "WorktreeHandle",
    "classify_push_failure",
    "ensure_ignored_directory",
    "project_lock",
]
