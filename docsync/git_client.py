from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Iterable, Literal

import git

from .config import Options
from .errors import (
    DocumentNotFound,
    GitOperationFailed,
    NotInitialized,
    classify_git_error,
)
from .models import CommitInfo, FileChange, RemoteInfo, RepositoryStatus

_LOGGER = logging.getLogger(__name__)

_CONFLICT_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}
# commands that rewrite the index or working tree
_INDEX_WRITERS = {"add", "commit", "pull", "merge", "stash", "reset", "checkout"}
# T is a type change (file <-> symlink), which keeps the path
_DIFF_STATUS = {"A": "added", "M": "modified", "T": "modified", "D": "deleted"}
# well-known id of the tree with no entries, the base of a root commit
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


def parse_name_status(output: str) -> list[FileChange]:
    """Parse ``git diff --name-status -z`` output.

    Renames and copies carry two paths. A copy leaves its source untouched,
    so only the new path is reported, as an addition.
    """
    fields = iter(output.split("\0"))
    changes: list[FileChange] = []
    for status in fields:
        if not status:
            continue
        path = next(fields, "")
        code = status[0]
        if code in "RC":
            target = next(fields, path)
            if code == "R":
                changes.append(FileChange(path=target, change_type="renamed", previous_path=path))
            else:
                changes.append(FileChange(path=target, change_type="added"))
            continue
        change_type = _DIFF_STATUS.get(code)
        if change_type is None:
            _LOGGER.debug("Treating diff status %s of %s as a modification", status, path)
            change_type = "modified"
        changes.append(FileChange(path=path, change_type=change_type))
    return changes


def authenticated_url(url: str, token: str | None) -> str:
    if token and url.startswith("https://"):
        parts = url.split("https://", maxsplit=1)[1]
        if "@" not in parts.split("/", 1)[0]:
            return f"https://{token}@{parts}"
    return url


class GitRepository:
    """Owned session over one working tree and its object store.

    Pure mechanism: every method maps onto one or two git invocations and
    translates failures into the workspace error taxonomy. Nothing here
    touches document metadata or the search index.
    """

    def __init__(self, root: Path, options: Options) -> None:
        self._root = Path(root)
        self._options = options
        self._repo: git.Repo | None = None
        self._index_lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def initialized(self) -> bool:
        return self._repo is not None

    def is_repository(self) -> bool:
        return (self._root / ".git").exists()

    def initialize(self, initial_branch: str) -> git.Repo:
        self._root.mkdir(parents=True, exist_ok=True)
        _LOGGER.info("Initializing repository at %s", self._root)
        self._repo = git.Repo.init(self._root, initial_branch=initial_branch)
        self._configure_environment()
        return self._repo

    def open(self) -> git.Repo:
        if self._repo is not None:
            return self._repo
        if not self.is_repository():
            raise NotInitialized(f"{self._root} is not a git repository")
        self._repo = git.Repo(self._root)
        self._configure_environment()
        return self._repo

    def close(self) -> None:
        if self._repo is not None:
            self._repo.close()
            self._repo = None

    def _configure_environment(self) -> None:
        if self._repo is None:
            return
        # status must not take the index lock while a commit runs in another thread
        self._repo.git.update_environment(GIT_OPTIONAL_LOCKS="0", GIT_TERMINAL_PROMPT="0")
        if not self._options.verify_ssl:
            self._repo.git.update_environment(GIT_SSL_NO_VERIFY="true")

    def _require(self) -> git.Repo:
        if self._repo is None:
            raise NotInitialized("Repository has not been bootstrapped")
        return self._repo

    def _git(self, operation: str, *args: str, timeout: float | None = None, **kwargs) -> str:
        repo = self._require()
        if timeout is not None:
            kwargs["kill_after_timeout"] = timeout
        lock = self._index_lock if operation in _INDEX_WRITERS else contextlib.nullcontext()
        try:
            with lock:
                return getattr(repo.git, operation)(*args, **kwargs)
        except git.GitCommandError as exc:
            raise classify_git_error(exc, operation) from exc

    # -- identity -----------------------------------------------------------

    def identity(self) -> tuple[str | None, str | None]:
        reader = self._require().config_reader(config_level="repository")
        name = reader.get_value("user", "name", default="")
        email = reader.get_value("user", "email", default="")
        return (str(name) or None), (str(email) or None)

    def set_identity(self, name: str, email: str, *, overwrite: bool = True) -> None:
        current_name, current_email = self.identity()
        with self._require().config_writer(config_level="repository") as writer:
            if overwrite or not current_name:
                writer.set_value("user", "name", name)
            if overwrite or not current_email:
                writer.set_value("user", "email", email)

    # -- working tree -------------------------------------------------------

    def current_branch(self) -> str:
        repo = self._require()
        try:
            return repo.active_branch.name
        except TypeError:
            return "HEAD"

    def head(self) -> str | None:
        try:
            return self._require().head.commit.hexsha
        except ValueError:
            return None

    def root_commit(self) -> str | None:
        if self.head() is None:
            return None
        output = self._git("rev_list", "--max-parents=0", "HEAD")
        lines = output.split()
        return lines[-1] if lines else None

    def status(self) -> RepositoryStatus:
        output = self._git("status", "--porcelain=v1", "-z", "--untracked-files=all")
        modified: list[str] = []
        staged: list[str] = []
        untracked: list[str] = []
        conflicted: list[str] = []
        entries = iter(output.split("\0"))
        for entry in entries:
            if len(entry) < 4:
                continue
            code, path = entry[:2], entry[3:]
            if code[0] in "RC":
                # renames carry the original path as the next NUL-separated field
                next(entries, None)
            if code == "??":
                untracked.append(path)
            elif code in _CONFLICT_CODES:
                conflicted.append(path)
            else:
                if code[0] not in " ?":
                    staged.append(path)
                if code[1] not in " ?":
                    modified.append(path)
        branch = self.current_branch()
        ahead, behind = self._tracking_counts(branch)
        return RepositoryStatus(
            branch=branch,
            ahead=ahead,
            behind=behind,
            modified=sorted(modified),
            staged=sorted(staged),
            untracked=sorted(untracked),
            conflicted=sorted(conflicted),
        )

    def _tracking_counts(self, branch: str) -> tuple[int, int]:
        if branch == "HEAD":
            return 0, 0
        remote = self._options.remote_name
        tracking = self._require().git.config(
            f"branch.{branch}.remote", with_exceptions=False
        )
        if tracking:
            remote = tracking.strip()
        return self.ahead_behind(remote, branch)

    def stage(self, paths: Iterable[str]) -> None:
        paths = [str(p) for p in paths]
        if not paths:
            return
        # a path that is neither on disk nor in the index has nothing to stage
        tracked = set(self._git("ls_files", "-z", "--", *paths).split("\0"))
        present = [p for p in paths if p in tracked or (self._root / p).exists()]
        if present:
            # -A so deletions of the named paths are staged too
            self._git("add", "-A", "--", *present)

    def stage_all(self) -> None:
        self._git("add", "-A")

    def commit(self, message: str, *, allow_empty: bool = False) -> str:
        args = ["-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self._git("commit", *args)
        sha = self.head()
        _LOGGER.info("Committed %s: %s", sha[:7] if sha else "?", message)
        return sha or ""

    def conclude_merge(self) -> str:
        self._git("commit", "--no-edit")
        return self.head() or ""

    def has_staged_changes(self) -> bool:
        if self.head() is None:
            return bool(self._git("ls_files"))
        try:
            self._require().git.diff("--cached", "--quiet")
        except git.GitCommandError:
            return True
        return False

    def reset_hard(self, revision: str = "HEAD") -> None:
        self._git("reset", "--hard", revision)

    # -- remotes ------------------------------------------------------------

    def list_remotes(self) -> list[RemoteInfo]:
        remotes = []
        for remote in self._require().remotes:
            urls = list(remote.urls)
            remotes.append(RemoteInfo(name=remote.name, url=urls[0] if urls else ""))
        return remotes

    def has_remote(self, name: str) -> bool:
        return any(remote.name == name for remote in self._require().remotes)

    def add_remote(self, name: str, url: str) -> None:
        self._git("remote", "add", name, url)

    def set_remote_url(self, name: str, url: str) -> None:
        self._git("remote", "set-url", name, url)

    def fetch(self, remote: str, *, timeout: float | None = None) -> None:
        self._git("fetch", remote, "--prune", timeout=timeout)

    def push(
        self,
        remote: str,
        branch: str,
        *,
        timeout: float | None = None,
        set_upstream: bool = False,
    ) -> None:
        args = ["-u"] if set_upstream else []
        self._git("push", *args, remote, branch, timeout=timeout)

    def pull(
        self,
        remote: str,
        branch: str,
        *,
        strategy: Literal["ff-only", "merge"] = "ff-only",
        timeout: float | None = None,
    ) -> None:
        if strategy == "ff-only":
            args = ["--ff-only"]
        else:
            args = ["--no-rebase", "--no-edit"]
        self._git("pull", *args, remote, branch, timeout=timeout)

    def merge(self, ref: str, *, allow_unrelated: bool = False) -> None:
        args = ["--no-edit"]
        if allow_unrelated:
            args.append("--allow-unrelated-histories")
        self._git("merge", *args, ref)

    def set_upstream(self, remote: str, branch: str) -> None:
        self._git("branch", f"--set-upstream-to={remote}/{branch}", branch)

    def has_ref(self, ref: str) -> bool:
        try:
            self._require().git.rev_parse("--verify", "--quiet", ref)
        except git.GitCommandError:
            return False
        return True

    def ahead_behind(self, remote: str, branch: str) -> tuple[int, int]:
        if not self.has_ref(f"refs/heads/{branch}"):
            return 0, 0
        if not self.has_ref(f"refs/remotes/{remote}/{branch}"):
            return 0, 0
        output = self._git(
            "rev_list", "--left-right", "--count", f"{branch}...{remote}/{branch}"
        )
        ahead, behind = (int(part) for part in output.split())
        return ahead, behind

    # -- history ------------------------------------------------------------

    def log(self, path: str | None = None, max_count: int = 50) -> list[CommitInfo]:
        repo = self._require()
        if self.head() is None:
            return []
        kwargs: dict[str, object] = {"max_count": max_count}
        if path:
            kwargs["paths"] = path
        return [
            CommitInfo(
                hash=commit.hexsha,
                message=str(commit.message).strip(),
                author=commit.author.name or "",
                email=commit.author.email or "",
                date=commit.committed_datetime,
                parents=[parent.hexsha for parent in commit.parents],
            )
            for commit in repo.iter_commits("HEAD", **kwargs)
        ]

    def read_file_at_revision(self, revision: str, path: str) -> str:
        try:
            return self._require().git.show(
                f"{revision}:{path}", strip_newline_in_stdout=False
            )
        except git.GitCommandError as exc:
            stderr = str(exc.stderr or "")
            if "does not exist" in stderr or "exists on disk, but not in" in stderr:
                raise DocumentNotFound(f"{path} not present at {revision}", [path]) from exc
            raise classify_git_error(exc, "show") from exc

    def changes_between(self, before: str | None, after: str | None) -> list[FileChange]:
        """Files that differ between two tree-ish revisions.

        Pass ``EMPTY_TREE`` as ``before`` to list everything a root commit adds.
        """
        if not before or not after or before == after:
            return []
        output = self._git(
            "diff", "--name-status", "-z", "--find-renames", "--find-copies", before, after
        )
        return parse_name_status(output)

    # -- stash & conflicts --------------------------------------------------

    def stash_save(self, message: str) -> str | None:
        before = self.stash_list()
        self._git("stash", "push", "--include-untracked", "-m", message)
        after = self.stash_list()
        if not after or after[:1] == before[:1]:
            return None
        return after[0]

    def stash_apply(self, sha: str) -> None:
        self._git("stash", "apply", sha)

    def stash_list(self) -> list[str]:
        output = self._git("stash", "list", "--format=%H")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def stash_drop(self, sha: str) -> None:
        stashes = self.stash_list()
        if sha not in stashes:
            raise GitOperationFailed(f"stash {sha[:7]} not found")
        self._git("stash", "drop", f"stash@{{{stashes.index(sha)}}}")

    def merge_in_progress(self) -> bool:
        return self.has_ref("MERGE_HEAD")

    def abort_merge(self) -> None:
        self._git("merge", "--abort")

    def conflicted_paths(self) -> list[str]:
        output = self._git("diff", "--name-only", "--diff-filter=U")
        return sorted({line.strip() for line in output.splitlines() if line.strip()})

    def read_stage(self, stage: int, path: str) -> str | None:
        try:
            return self._require().git.show(
                f":{stage}:{path}", strip_newline_in_stdout=False
            )
        except git.GitCommandError:
            return None

    @staticmethod
    def clone(url: str, target: Path, *, timeout: float | None = None) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        _LOGGER.info("Cloning %s", url.split("@")[-1])
        try:
            git.Git().clone(url, str(target), kill_after_timeout=timeout)
        except git.GitCommandError as exc:
            raise classify_git_error(exc, "clone") from exc
