"""
Pull/push policy for one workspace.

Pull recovery is an explicit state machine so every transition can be
exercised on its own::

    Idle -> Pulling -> {Succeeded, NeedsStash, NeedsMerge, Failed}
    NeedsStash -> StashSaved -> PullRetry -> {Succeeded, StashRestoreFailed, Failed}
    NeedsMerge -> MergeAttempt -> {Succeeded, NeedsStash, Failed}
    StashRestoreFailed -> Succeeded (stash kept, warning surfaced)

History is never rewritten: divergence is resolved with a merge commit and
pushes are never forced. A merge whose only conflict is the metadata file is
concluded by merging its records; any other conflict needs a user decision.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from .config import METADATA_FILE, Options
from .errors import (
    CorruptMetadata,
    DivergedHistory,
    DocumentNotFound,
    GitOperationFailed,
    LocalChangesWouldBeOverwritten,
    ManualResolutionRequired,
    WorkspaceError,
)
from .git_client import GitRepository
from .metadata import atomic_write, merge_metadata
from .models import (
    ConflictRecord,
    FileChange,
    ResolutionStrategy,
    SyncKind,
    SyncOperation,
    SyncStatus,
)

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

STASH_MESSAGE = "docsync: local changes saved before pull"
MAX_OPERATIONS = 50


class PullState(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    NEEDS_STASH = "needs-stash"
    STASH_SAVED = "stash-saved"
    PULL_RETRY = "pull-retry"
    NEEDS_MERGE = "needs-merge"
    MERGE_ATTEMPT = "merge-attempt"
    STASH_RESTORE_FAILED = "stash-restore-failed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PullState.SUCCEEDED, PullState.FAILED)


@dataclass
class PullAttempt:
    remote: str
    branch: str
    timeout: float | None = None
    state: PullState = PullState.IDLE
    stash: str | None = None
    stashed: bool = False
    merged: bool = False
    preserved_stash: str | None = None
    error: WorkspaceError | None = None
    warnings: list[str] = field(default_factory=list)
    history: list[PullState] = field(default_factory=list)


@dataclass
class PullOutcome:
    state: PullState
    merged: bool
    preserved_stash: str | None
    warnings: list[str]
    changes: list[FileChange]
    history: list[PullState]


@dataclass
class LinkOutcome:
    remote: str
    branch: str
    merged: bool
    changes: list[FileChange]


def conclude_metadata_merge(repository: GitRepository) -> str | None:
    """Finish a merge whose only conflict is the metadata file.

    Returns the merge commit, or ``None`` when other paths conflict or the
    metadata cannot be merged, leaving the merge for manual resolution.
    """
    if repository.conflicted_paths() != [METADATA_FILE]:
        return None
    ours = repository.read_stage(2, METADATA_FILE)
    theirs = repository.read_stage(3, METADATA_FILE)
    if ours is None or theirs is None:
        return None
    try:
        merged = merge_metadata(repository.read_stage(1, METADATA_FILE), ours, theirs)
    except CorruptMetadata as exc:
        _LOGGER.warning("%s; leaving the merge for manual resolution", exc.message)
        return None
    atomic_write(Path(repository.root) / METADATA_FILE, merged)
    repository.stage([METADATA_FILE])
    sha = repository.conclude_merge()
    _LOGGER.info("Merged concurrent metadata changes in %s", sha[:7])
    return sha


class PullStateMachine:
    def __init__(
        self,
        repository: GitRepository,
        on_transition: Callable[[PullState], None] | None = None,
    ) -> None:
        self._repository = repository
        self._on_transition = on_transition
        self._handlers: dict[PullState, Callable[[PullAttempt], PullState]] = {
            PullState.IDLE: self._start,
            PullState.PULLING: self._pull,
            PullState.NEEDS_STASH: self._save_stash,
            PullState.STASH_SAVED: self._retry,
            PullState.PULL_RETRY: self._retry_pull,
            PullState.NEEDS_MERGE: self._begin_merge,
            PullState.MERGE_ATTEMPT: self._merge,
            PullState.STASH_RESTORE_FAILED: self._keep_stash,
        }

    def step(self, attempt: PullAttempt) -> PullState:
        if attempt.state.terminal:
            raise ValueError(f"Pull attempt already finished as {attempt.state.value}")
        attempt.state = self._handlers[attempt.state](attempt)
        attempt.history.append(attempt.state)
        if self._on_transition is not None:
            self._on_transition(attempt.state)
        return attempt.state

    def run(self, attempt: PullAttempt) -> PullAttempt:
        while not attempt.state.terminal:
            self.step(attempt)
        return attempt

    def _start(self, attempt: PullAttempt) -> PullState:
        return PullState.PULLING

    def _pull(self, attempt: PullAttempt) -> PullState:
        try:
            self._repository.pull(
                attempt.remote, attempt.branch, strategy="ff-only", timeout=attempt.timeout
            )
        except LocalChangesWouldBeOverwritten as exc:
            _LOGGER.info("Pull blocked by local changes to %s", ", ".join(exc.paths) or "working tree")
            attempt.error = exc
            return PullState.NEEDS_STASH
        except DivergedHistory as exc:
            _LOGGER.info("Local and %s/%s have diverged; merging", attempt.remote, attempt.branch)
            attempt.error = exc
            return PullState.NEEDS_MERGE
        except WorkspaceError as exc:
            attempt.error = exc
            return PullState.FAILED
        attempt.error = None
        return PullState.SUCCEEDED

    def _save_stash(self, attempt: PullAttempt) -> PullState:
        if attempt.stashed:
            return PullState.FAILED
        attempt.stashed = True
        try:
            attempt.stash = self._repository.stash_save(STASH_MESSAGE)
        except WorkspaceError as exc:
            attempt.error = exc
            return PullState.FAILED
        if attempt.stash is None:
            # nothing to stash, so the blocking error stands
            return PullState.FAILED
        _LOGGER.warning("Saved local changes to stash %s before pulling", attempt.stash[:7])
        return PullState.STASH_SAVED

    def _retry(self, attempt: PullAttempt) -> PullState:
        return PullState.PULL_RETRY

    def _retry_pull(self, attempt: PullAttempt) -> PullState:
        try:
            self._repository.pull(
                attempt.remote, attempt.branch, strategy="merge", timeout=attempt.timeout
            )
        except WorkspaceError as exc:
            if isinstance(exc, ManualResolutionRequired) and conclude_metadata_merge(self._repository):
                attempt.merged = True
            else:
                attempt.error = exc
                if not self._repository.merge_in_progress():
                    self._restore_stash(attempt)
                else:
                    self._remember_stash(attempt)
                return PullState.FAILED
        attempt.error = None
        if not self._restore_stash(attempt):
            return PullState.STASH_RESTORE_FAILED
        return PullState.SUCCEEDED

    def _restore_stash(self, attempt: PullAttempt) -> bool:
        if attempt.stash is None:
            return True
        try:
            self._repository.stash_apply(attempt.stash)
        except WorkspaceError as exc:
            _LOGGER.warning("Could not re-apply stash %s: %s", attempt.stash[:7], exc.message)
            return False
        self._repository.stash_drop(attempt.stash)
        _LOGGER.info("Re-applied local changes from stash %s", attempt.stash[:7])
        attempt.stash = None
        return True

    def _remember_stash(self, attempt: PullAttempt) -> None:
        if attempt.stash is None:
            return
        attempt.preserved_stash = attempt.stash
        attempt.warnings.append(
            f"Local changes are kept in stash {attempt.stash} and were not re-applied"
        )

    def _keep_stash(self, attempt: PullAttempt) -> PullState:
        # the working tree may hold a half-applied stash; the stash itself stays intact
        self._repository.reset_hard("HEAD")
        self._remember_stash(attempt)
        return PullState.SUCCEEDED

    def _begin_merge(self, attempt: PullAttempt) -> PullState:
        return PullState.MERGE_ATTEMPT

    def _merge(self, attempt: PullAttempt) -> PullState:
        try:
            self._repository.pull(
                attempt.remote, attempt.branch, strategy="merge", timeout=attempt.timeout
            )
        except LocalChangesWouldBeOverwritten as exc:
            attempt.error = exc
            return PullState.NEEDS_STASH
        except ManualResolutionRequired as exc:
            if conclude_metadata_merge(self._repository) is None:
                attempt.error = exc
                return PullState.FAILED
        except WorkspaceError as exc:
            attempt.error = exc
            return PullState.FAILED
        attempt.error = None
        attempt.merged = True
        return PullState.SUCCEEDED


class WorkingTreeGate:
    """Lets document writes run side by side while keeping them out of a pull.

    A pull announces itself first, so writes arriving afterwards wait for the
    pull to finish, then it waits for writes already in flight to drain.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._writers = 0
        self._pulling = False

    @property
    def pulling(self) -> bool:
        return self._pulling

    @contextlib.asynccontextmanager
    async def writing(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._pulling)
            self._writers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._writers -= 1
                self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._pulling)
            self._pulling = True
            await self._cond.wait_for(lambda: self._writers == 0)
        try:
            yield
        finally:
            async with self._cond:
                self._pulling = False
                self._cond.notify_all()


class SyncCoordinator:
    """Serializes commit/push/pull/fetch for one workspace and owns recovery."""

    def __init__(self, repository: GitRepository, options: Options) -> None:
        self._repository = repository
        self._options = options
        self._lock = asyncio.Lock()
        self.gate = WorkingTreeGate()
        self._operations: OrderedDict[str, SyncOperation] = OrderedDict()
        self._conflicts: dict[str, ConflictRecord] = {}

    # -- bookkeeping --------------------------------------------------------

    def operations(self) -> list[SyncOperation]:
        return list(self._operations.values())

    def _record(self, operation: SyncOperation) -> SyncOperation:
        self._operations[operation.id] = operation
        self._operations.move_to_end(operation.id)
        while len(self._operations) > MAX_OPERATIONS:
            self._operations.popitem(last=False)
        return operation

    def _progress(self, operation_id: str, phase: str) -> None:
        operation = self._operations.get(operation_id)
        if operation is not None and not operation.status.terminal:
            self._operations[operation_id] = operation.report(phase)

    async def _run(
        self,
        kind: SyncKind,
        work: Callable[[SyncOperation], Awaitable[T]],
    ) -> T:
        operation = self._record(SyncOperation(kind=kind))
        async with self._lock:
            operation = self._record(operation.advance(SyncStatus.IN_PROGRESS))
            try:
                result = await work(operation)
            except WorkspaceError as exc:
                current = self._operations.get(operation.id, operation)
                self._record(current.advance(SyncStatus.ERROR, error=exc.message))
                _LOGGER.warning("%s failed: %s", kind.value.capitalize(), exc.message)
                raise
            except Exception as exc:
                current = self._operations.get(operation.id, operation)
                self._record(current.advance(SyncStatus.ERROR, error=str(exc)))
                _LOGGER.exception("%s failed unexpectedly", kind.value.capitalize())
                raise GitOperationFailed(f"{kind.value} failed: {exc}") from exc
            current = self._operations.get(operation.id, operation)
            warnings = getattr(result, "warnings", None) or []
            self._record(current.advance(SyncStatus.SUCCESS, warnings=list(warnings)))
            return result

    def _timeout(self, timeout: float | None) -> float:
        return timeout if timeout is not None else float(self._options.network_timeout)

    def _target(self, remote: str | None, branch: str | None) -> tuple[str, str]:
        remote = remote or self._options.remote_name
        if not branch:
            branch = self._repository.current_branch()
            if branch == "HEAD":
                branch = self._options.branch
        return remote, branch

    # -- operations ---------------------------------------------------------

    async def commit(self, message: str, paths: list[str] | None = None) -> str | None:
        """Stage ``paths`` (or the whole tree) and commit; ``None`` when nothing changed."""

        async def work(operation: SyncOperation) -> str | None:
            return await asyncio.to_thread(self._commit_sync, message, paths)

        return await self._run(SyncKind.COMMIT, work)

    def _commit_sync(self, message: str, paths: list[str] | None) -> str | None:
        if paths is None:
            self._repository.stage_all()
        else:
            self._repository.stage(paths)
        if not self._repository.has_staged_changes():
            return None
        return self._repository.commit(message)

    async def push(
        self, remote: str | None = None, branch: str | None = None, *, timeout: float | None = None
    ) -> None:
        remote, branch = self._target(remote, branch)

        async def work(operation: SyncOperation) -> None:
            self._progress(operation.id, f"pushing to {remote}/{branch}")
            await asyncio.to_thread(
                self._repository.push, remote, branch, timeout=self._timeout(timeout)
            )
            _LOGGER.info("Pushed %s to %s", branch, remote)

        await self._run(SyncKind.PUSH, work)

    async def fetch(self, remote: str | None = None, *, timeout: float | None = None) -> None:
        remote = remote or self._options.remote_name

        async def work(operation: SyncOperation) -> None:
            self._progress(operation.id, f"fetching {remote}")
            await asyncio.to_thread(self._repository.fetch, remote, timeout=self._timeout(timeout))

        await self._run(SyncKind.FETCH, work)

    async def pull(
        self, remote: str | None = None, branch: str | None = None, *, timeout: float | None = None
    ) -> PullOutcome:
        remote, branch = self._target(remote, branch)
        attempt = PullAttempt(remote=remote, branch=branch, timeout=self._timeout(timeout))

        async def work(operation: SyncOperation) -> PullOutcome:
            machine = PullStateMachine(
                self._repository,
                on_transition=lambda state: self._progress(operation.id, state.value),
            )
            before = await asyncio.to_thread(self._repository.head)
            await asyncio.to_thread(machine.run, attempt)
            if attempt.state is PullState.FAILED:
                if isinstance(attempt.error, ManualResolutionRequired):
                    await asyncio.to_thread(self._load_conflicts)
                    attempt.error.paths = sorted(self._conflicts) or attempt.error.paths
                raise attempt.error or WorkspaceError("Pull failed")
            after = await asyncio.to_thread(self._repository.head)
            changes = await asyncio.to_thread(self._repository.changes_between, before, after)
            _LOGGER.info(
                "Pulled %s/%s: %d file(s) changed%s",
                remote,
                branch,
                len(changes),
                " (merged)" if attempt.merged else "",
            )
            return PullOutcome(
                state=attempt.state,
                merged=attempt.merged,
                preserved_stash=attempt.preserved_stash,
                warnings=list(attempt.warnings),
                changes=changes,
                history=list(attempt.history),
            )

        async with self.gate.exclusive():
            return await self._run(SyncKind.PULL, work)

    async def link_remote(
        self,
        url: str,
        *,
        remote: str | None = None,
        branch: str | None = None,
        timeout: float | None = None,
    ) -> LinkOutcome:
        """First-time linkage: point the canonical remote at ``url`` and merge its history."""
        remote, branch = self._target(remote, branch)

        async def work(operation: SyncOperation) -> LinkOutcome:
            return await asyncio.to_thread(
                self._link_sync, operation.id, url, remote, branch, self._timeout(timeout)
            )

        async with self.gate.exclusive():
            return await self._run(SyncKind.LINK, work)

    def _link_sync(
        self, operation_id: str, url: str, remote: str, branch: str, timeout: float
    ) -> LinkOutcome:
        if self._repository.has_remote(remote):
            self._repository.set_remote_url(remote, url)
        else:
            self._repository.add_remote(remote, url)
        self._progress(operation_id, f"fetching {remote}")
        self._repository.fetch(remote, timeout=timeout)

        if not self._repository.has_ref(f"refs/remotes/{remote}/{branch}"):
            self._progress(operation_id, f"publishing {branch}")
            self._repository.push(remote, branch, timeout=timeout, set_upstream=True)
            return LinkOutcome(remote=remote, branch=branch, merged=False, changes=[])

        before = self._repository.head()
        self._progress(operation_id, f"merging {remote}/{branch}")
        try:
            self._repository.merge(f"{remote}/{branch}", allow_unrelated=True)
        except WorkspaceError as exc:
            self._load_conflicts()
            raise ManualResolutionRequired(
                f"Merging {remote}/{branch} needs a manual decision: {exc.message}",
                self._conflicts or exc.paths,
            ) from exc
        self._repository.set_upstream(remote, branch)
        after = self._repository.head()
        return LinkOutcome(
            remote=remote,
            branch=branch,
            merged=before != after,
            changes=self._repository.changes_between(before, after),
        )

    async def clone(self, run_clone: Callable[[], T]) -> T:
        async def work(operation: SyncOperation) -> T:
            self._progress(operation.id, "cloning")
            return await asyncio.to_thread(run_clone)

        return await self._run(SyncKind.CLONE, work)

    async def ahead_behind(self, remote: str | None = None, branch: str | None = None) -> tuple[int, int]:
        remote, branch = self._target(remote, branch)
        return await asyncio.to_thread(self._repository.ahead_behind, remote, branch)

    # -- conflicts ----------------------------------------------------------

    def _load_conflicts(self) -> None:
        for path in self._repository.conflicted_paths():
            if path in self._conflicts:
                continue
            self._conflicts[path] = ConflictRecord(
                path=path,
                base=self._repository.read_stage(1, path),
                ours=self._repository.read_stage(2, path),
                theirs=self._repository.read_stage(3, path),
            )

    async def conflicts(self) -> list[ConflictRecord]:
        await asyncio.to_thread(self._load_conflicts)
        return [self._conflicts[path] for path in sorted(self._conflicts)]

    async def resolve_conflict(
        self, path: str, strategy: ResolutionStrategy, content: str | None = None
    ) -> str | None:
        """Resolve one conflicted path; returns the merge commit once none remain."""

        async def work(operation: SyncOperation) -> str | None:
            return await asyncio.to_thread(self._resolve_sync, path, strategy, content)

        async with self.gate.exclusive():
            return await self._run(SyncKind.COMMIT, work)

    def _resolve_sync(self, path: str, strategy: ResolutionStrategy, content: str | None) -> str | None:
        self._load_conflicts()
        record = self._conflicts.get(path)
        if record is None:
            raise DocumentNotFound(f"No unresolved conflict for {path}", [path])
        if strategy is ResolutionStrategy.KEEP_LOCAL:
            resolved = record.ours
        elif strategy is ResolutionStrategy.ACCEPT_REMOTE:
            resolved = record.theirs
        else:
            if content is None:
                raise ManualResolutionRequired(f"Manual resolution of {path} needs content", [path])
            resolved = content

        target = Path(self._repository.root) / path
        if resolved is None:
            target.unlink(missing_ok=True)
        else:
            atomic_write(target, resolved)
        self._repository.stage([path])
        self._conflicts[path] = record.model_copy(update={"resolved": resolved, "strategy": strategy})
        _LOGGER.info("Resolved conflict in %s using %s", path, strategy.value)

        if self._repository.conflicted_paths():
            return None
        sha = self._repository.conclude_merge()
        self._conflicts.clear()
        _LOGGER.info("Concluded merge %s", sha[:7])
        return sha
