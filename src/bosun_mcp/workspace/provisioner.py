"""Per-session git workspaces backed by a shared clone cache."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Callable

from git import Git, Repo
from git.exc import BadName, BadObject, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from ..errors import ErrorCode, BosunError, RepoAccessError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}
_REMOTE_URL = re.compile(r"^(?:(?:https?|ssh|git|file)://\S+|[\w.-]+@[\w.-]+:\S+)$")


class WorkspaceError(BosunError):
    """Base class for failures while preparing or tearing down a workspace."""

    code = ErrorCode.REPO_ACCESS

    def __init__(self, message: str, *, step: str, cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause)
        self.step = step


class CloneError(WorkspaceError):
    pass


class FetchError(WorkspaceError):
    pass


class BranchExistsError(WorkspaceError):
    code = ErrorCode.SESSION_EXISTS


class WorkspaceExistsError(WorkspaceError):
    code = ErrorCode.SESSION_EXISTS


class CommitishNotFoundError(WorkspaceError):
    code = ErrorCode.INVALID_COMMAND


class CheckoutError(WorkspaceError):
    pass


class CommitError(WorkspaceError):
    pass


class PushError(WorkspaceError):
    pass


def _log_git_failure(step: str, exc: BaseException, **context: Any) -> None:
    logger.warning(
        "git %s failed: %s",
        step,
        getattr(exc, "stderr", None) or exc,
        extra={"step": step, **context},
    )


class WorkspaceProvisioner:
    """Create, commit, push and remove isolated session directories.

    ``<root>/repos`` holds one clone per repository, refreshed with a fetch
    before each use. ``<root>/worktrees/<feature>`` holds the session copy, a
    clone of the cache on its own branch with ``origin`` pointing back at the
    real remote. GitPython is blocking, so every git step runs in a thread.

    The session copy deliberately keeps its own ``.git`` instead of being a
    plain file copy without version-control metadata, so the assistant can
    inspect history and teardown can commit and push from the directory itself.
    """

    def __init__(
        self,
        root: Path,
        *,
        author_name: str = "Bosun Bot",
        author_email: str = "bosun-bot@example.com",
    ) -> None:
        self._root = Path(root)
        self._repos_dir = self._root / "repos"
        self._worktrees_dir = self._root / "worktrees"
        self._author_name = author_name
        self._author_email = author_email
        self._repo_locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def worktree_path(self, feature_name: str) -> Path:
        return self._worktrees_dir / feature_name

    def cache_path(self, repo_url: str) -> Path:
        name = repo_url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        if name.endswith(".git"):
            name = name[: -len(".git")]
        slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-.") or "repo"
        digest = hashlib.sha1(repo_url.encode("utf-8")).hexdigest()[:8]
        return self._repos_dir / f"{slug}-{digest}"

    def _repo_lock(self, repo_url: str) -> asyncio.Lock:
        key = str(self.cache_path(repo_url))
        lock = self._repo_locks.get(key)
        if lock is None:
            lock = self._repo_locks[key] = asyncio.Lock()
        return lock

    async def setup(
        self,
        repo_url: str,
        from_commitish: str,
        feature_name: str,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Prepare ``worktrees/<feature_name>`` on a new branch cut from ``from_commitish``."""

        target = self.worktree_path(feature_name)
        if target.exists():
            raise WorkspaceExistsError(f"workspace for '{feature_name}' already exists", step="prepare")

        loop = asyncio.get_running_loop()
        callback = progress or (lambda message: None)

        def report(message: str) -> None:
            loop.call_soon_threadsafe(callback, message)

        async with self._repo_lock(repo_url):
            await asyncio.to_thread(
                self._setup_sync, repo_url, from_commitish, feature_name, target, report
            )
        callback(f"Workspace ready on branch {feature_name}")
        return target

    def _setup_sync(
        self,
        repo_url: str,
        from_commitish: str,
        feature_name: str,
        target: Path,
        report: ProgressCallback,
    ) -> None:
        cache = self._refresh_cache(repo_url, report)
        self._check_branch_free(cache, feature_name)
        report(f"Resolving {from_commitish}")
        sha = self._resolve(cache, from_commitish)

        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            target.mkdir()
        except FileExistsError as exc:
            raise WorkspaceExistsError(
                f"workspace for '{feature_name}' already exists", step="prepare", cause=exc
            ) from exc

        try:
            report(f"Creating branch {feature_name} at {sha[:12]}")
            try:
                worktree = Repo.clone_from(str(cache), str(target), no_checkout=True, env=_GIT_ENV)
                worktree.git.checkout("-b", feature_name, sha)
                worktree.remotes.origin.set_url(repo_url)
                with worktree.config_writer() as writer:
                    writer.set_value("bosun", "base", sha)
            except GitCommandError as exc:
                _log_git_failure("checkout", exc, feature=feature_name)
                raise CheckoutError(
                    f"could not check out {from_commitish} into the workspace", step="checkout", cause=exc
                ) from exc
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            raise

    def _refresh_cache(self, repo_url: str, report: ProgressCallback) -> Path:
        cache = self.cache_path(repo_url)
        if (cache / ".git").exists():
            report(f"Fetching latest changes from {repo_url}")
            try:
                Repo(cache).git.fetch("origin", "--prune", "--tags", env=_GIT_ENV)
            except GitCommandError as exc:
                _log_git_failure("fetch", exc, repo_url=repo_url)
                raise FetchError(f"could not fetch {repo_url}", step="fetch", cause=exc) from exc
            return cache

        report(f"Cloning {repo_url}")
        self._repos_dir.mkdir(parents=True, exist_ok=True)
        try:
            Repo.clone_from(repo_url, str(cache), env=_GIT_ENV)
        except GitCommandError as exc:
            shutil.rmtree(cache, ignore_errors=True)
            _log_git_failure("clone", exc, repo_url=repo_url)
            raise CloneError(f"could not clone {repo_url}", step="clone", cause=exc) from exc
        return cache

    @staticmethod
    def _check_branch_free(cache: Path, feature_name: str) -> None:
        repo = Repo(cache)
        local = {head.name for head in repo.heads}
        remote = {ref.remote_head for ref in repo.remotes.origin.refs}
        if feature_name in local or feature_name in remote:
            raise BranchExistsError(f"branch '{feature_name}' already exists", step="branch")

    @staticmethod
    def _resolve(cache: Path, commitish: str) -> str:
        repo = Repo(cache)
        # Remote-tracking refs first: local branches in the cache never advance.
        for candidate in (f"origin/{commitish}", commitish):
            try:
                return repo.commit(candidate).hexsha
            except (BadName, BadObject, ValueError, GitCommandError):
                continue
        raise CommitishNotFoundError(f"'{commitish}' is not a branch, tag or commit", step="resolve")

    async def commit_and_push(self, working_dir: Path, branch: str, message: str) -> bool:
        """Commit everything pending and push ``branch``. Returns ``False`` when there was nothing to push."""

        return await asyncio.to_thread(self._commit_and_push_sync, Path(working_dir), branch, message)

    def _commit_and_push_sync(self, working_dir: Path, branch: str, message: str) -> bool:
        try:
            repo = Repo(working_dir)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise CommitError(f"{working_dir} is not a git workspace", step="commit", cause=exc) from exc

        if repo.is_dirty(index=True, working_tree=True, untracked_files=True):
            try:
                repo.git.add("-A")
                self._ensure_identity(repo)
                repo.git.commit("-m", message)
            except GitCommandError as exc:
                _log_git_failure("commit", exc, branch=branch)
                raise CommitError("could not commit session changes", step="commit", cause=exc) from exc
        elif not self._has_unpushed_commits(repo, branch):
            return False

        try:
            repo.git.push("--set-upstream", "origin", branch, env=_GIT_ENV)
        except GitCommandError as exc:
            _log_git_failure("push", exc, branch=branch)
            raise PushError(f"could not push branch {branch}", step="push", cause=exc) from exc
        logger.info("Pushed session branch", extra={"branch": branch, "working_dir": str(working_dir)})
        return True

    @staticmethod
    def _has_unpushed_commits(repo: Repo, branch: str) -> bool:
        with repo.config_reader("repository") as reader:
            base = reader.get_value("bosun", "base", default="")
        upstream = f"origin/{branch}"
        boundary = upstream if upstream in {ref.name for ref in repo.remotes.origin.refs} else base
        if not boundary:
            return False
        try:
            count = repo.git.rev_list("--count", f"{boundary}..{branch}")
        except GitCommandError:
            return False
        return int(count.strip() or 0) > 0

    def _ensure_identity(self, repo: Repo) -> None:
        with repo.config_reader() as reader:
            name = reader.get_value("user", "name", default="")
            email = reader.get_value("user", "email", default="")
        if name and email:
            return
        with repo.config_writer() as writer:
            if not name:
                writer.set_value("user", "name", self._author_name)
            if not email:
                writer.set_value("user", "email", self._author_email)

    async def cleanup(self, working_dir: Path) -> None:
        """Remove a session directory. A missing directory is not an error."""

        path = Path(working_dir)
        if not path.exists():
            return
        await asyncio.to_thread(shutil.rmtree, path)
        logger.info("Removed workspace", extra={"working_dir": str(path)})

    async def validate_repo_url(self, url: str, *, check_remote: bool = True) -> None:
        url = url.strip()
        is_local = not _REMOTE_URL.match(url) and Path(url).expanduser().exists()
        if not _REMOTE_URL.match(url) and not is_local:
            raise RepoAccessError(f"'{url}' is not a git repository URL")
        if not check_remote:
            return
        try:
            await asyncio.to_thread(Git().ls_remote, "--heads", url, env=_GIT_ENV)
        except GitCommandError as exc:
            _log_git_failure("ls-remote", exc, repo_url=url)
            raise RepoAccessError(f"cannot access repository {url}", cause=exc) from exc

    async def repo_info(self, working_dir: Path) -> dict[str, Any]:
        return await asyncio.to_thread(self._repo_info_sync, Path(working_dir))

    @staticmethod
    def _repo_info_sync(working_dir: Path) -> dict[str, Any]:
        try:
            repo = Repo(working_dir)
        except (InvalidGitRepositoryError, NoSuchPathError):
            return {"available": False}
        branch = None if repo.head.is_detached else repo.active_branch.name
        try:
            remote = repo.remotes.origin.url
        except (AttributeError, IndexError):
            remote = None
        return {
            "available": True,
            "branch": branch,
            "commit": repo.head.commit.hexsha if repo.head.is_valid() else None,
            "remote": remote,
            "dirty": repo.is_dirty(untracked_files=True),
        }


__all__ = [
    "BranchExistsError",
    "CheckoutError",
    "CloneError",
    "CommitError",
    "CommitishNotFoundError",
    "FetchError",
    "ProgressCallback",
    "PushError",
    "WorkspaceError",
    "WorkspaceExistsError",
    "WorkspaceProvisioner",
]
