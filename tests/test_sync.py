"""Tests for pull recovery, push policy, remote linkage and conflict resolution."""

import asyncio
import json
import threading
import time
from unittest.mock import MagicMock

import git
import pytest

from docsync.config import METADATA_FILE
from docsync.errors import (
    AuthenticationFailed,
    DivergedHistory,
    GitOperationFailed,
    LocalChangesWouldBeOverwritten,
    ManualResolutionRequired,
    NetworkUnavailable,
    RejectedNonFastForward,
)
from docsync.metadata import serialize
from docsync.models import (
    DocumentMetadata,
    MetadataFile,
    MetadataRecord,
    ResolutionStrategy,
    SyncKind,
    SyncStatus,
    WorkspaceSection,
)
from docsync.service import Workspace
from docsync.sync import MAX_OPERATIONS, PullAttempt, PullState, PullStateMachine, WorkingTreeGate

from conftest import commit_file, configure_identity

TEN_LINES = "".join(f"line{i}\n" for i in range(1, 11))
STAMP = "2024-01-01T00:00:00+00:00"


def _replace_line(text: str, number: int, replacement: str) -> str:
    lines = text.splitlines(keepends=True)
    lines[number - 1] = f"{replacement}\n"
    return "".join(lines)


def _metadata_text(*paths: str) -> str:
    documents = {path: MetadataRecord(id=path, title=path, created=STAMP, modified=STAMP) for path in paths}
    return serialize(MetadataFile(workspace=WorkspaceSection(name="shared"), documents=documents))


async def _share_file(ws, other, relative="documents/shared.md", content=TEN_LINES):
    """Commit a plain file on the workspace, publish it and bring the other device up to date."""
    (ws.root / relative).write_text(content, encoding="utf-8")
    await ws.commit(f"Add {relative}")
    await ws.push()
    other.git.pull("--ff-only")
    return relative


# -- state machine ---------------------------------------------------------------


class TestPullStateMachine:
    def _run(self, repository):
        return PullStateMachine(repository).run(PullAttempt(remote="origin", branch="main"))

    def test_fast_forward(self):
        repository = MagicMock()
        attempt = self._run(repository)
        assert attempt.history == [PullState.PULLING, PullState.SUCCEEDED]
        repository.pull.assert_called_once_with("origin", "main", strategy="ff-only", timeout=None)

    def test_local_changes_are_stashed_and_restored(self):
        repository = MagicMock()
        repository.pull.side_effect = [LocalChangesWouldBeOverwritten("blocked", ["a.md"]), None]
        repository.stash_save.return_value = "abc1234"

        attempt = self._run(repository)

        assert attempt.history == [
            PullState.PULLING,
            PullState.NEEDS_STASH,
            PullState.STASH_SAVED,
            PullState.PULL_RETRY,
            PullState.SUCCEEDED,
        ]
        repository.stash_apply.assert_called_once_with("abc1234")
        repository.stash_drop.assert_called_once_with("abc1234")
        assert attempt.preserved_stash is None
        assert attempt.warnings == []

    def test_failed_restore_keeps_stash(self):
        repository = MagicMock()
        repository.pull.side_effect = [LocalChangesWouldBeOverwritten("blocked"), None]
        repository.stash_save.return_value = "abc1234"
        repository.stash_apply.side_effect = ManualResolutionRequired("conflict", ["a.md"])

        attempt = self._run(repository)

        assert attempt.history[-2:] == [PullState.STASH_RESTORE_FAILED, PullState.SUCCEEDED]
        assert attempt.preserved_stash == "abc1234"
        assert len(attempt.warnings) == 1
        repository.stash_drop.assert_not_called()
        repository.reset_hard.assert_called_once_with("HEAD")

    def test_failed_retry_restores_stash(self):
        repository = MagicMock()
        network = NetworkUnavailable("offline")
        repository.pull.side_effect = [LocalChangesWouldBeOverwritten("blocked"), network]
        repository.stash_save.return_value = "abc1234"
        repository.merge_in_progress.return_value = False

        attempt = self._run(repository)

        assert attempt.state is PullState.FAILED
        assert attempt.error is network
        repository.stash_apply.assert_called_once_with("abc1234")

    def test_nothing_to_stash_fails_with_original_error(self):
        repository = MagicMock()
        blocked = LocalChangesWouldBeOverwritten("blocked")
        repository.pull.side_effect = [blocked]
        repository.stash_save.return_value = None

        attempt = self._run(repository)

        assert attempt.history == [PullState.PULLING, PullState.NEEDS_STASH, PullState.FAILED]
        assert attempt.error is blocked

    def test_diverged_history_is_merged(self):
        repository = MagicMock()
        repository.pull.side_effect = [DivergedHistory("diverged"), None]

        attempt = self._run(repository)

        assert attempt.history == [
            PullState.PULLING,
            PullState.NEEDS_MERGE,
            PullState.MERGE_ATTEMPT,
            PullState.SUCCEEDED,
        ]
        assert attempt.merged is True
        assert repository.pull.call_args.kwargs["strategy"] == "merge"

    def test_merge_blocked_by_local_changes_goes_through_stash(self):
        repository = MagicMock()
        repository.pull.side_effect = [
            DivergedHistory("diverged"),
            LocalChangesWouldBeOverwritten("blocked"),
            None,
        ]
        repository.stash_save.return_value = "s1"

        attempt = self._run(repository)

        assert attempt.history == [
            PullState.PULLING,
            PullState.NEEDS_MERGE,
            PullState.MERGE_ATTEMPT,
            PullState.NEEDS_STASH,
            PullState.STASH_SAVED,
            PullState.PULL_RETRY,
            PullState.SUCCEEDED,
        ]

    def test_metadata_only_conflict_is_merged_automatically(self, tmp_path):
        repository = MagicMock()
        repository.root = tmp_path
        repository.pull.side_effect = [DivergedHistory("diverged"), ManualResolutionRequired("conflict")]
        repository.conflicted_paths.return_value = [METADATA_FILE]
        stages = {
            1: _metadata_text(),
            2: _metadata_text("documents/local.md"),
            3: _metadata_text("documents/remote.md"),
        }
        repository.read_stage.side_effect = lambda stage, path: stages[stage]
        repository.conclude_merge.return_value = "f" * 40

        attempt = self._run(repository)

        assert attempt.history[-1] is PullState.SUCCEEDED
        assert attempt.merged is True
        assert attempt.error is None
        repository.stage.assert_called_once_with([METADATA_FILE])
        repository.conclude_merge.assert_called_once_with()
        written = json.loads((tmp_path / METADATA_FILE).read_text())
        assert sorted(written["documents"]) == ["documents/local.md", "documents/remote.md"]

    def test_conflict_beyond_metadata_needs_manual_resolution(self):
        repository = MagicMock()
        conflict = ManualResolutionRequired("conflict", ["documents/a.md"])
        repository.pull.side_effect = [DivergedHistory("diverged"), conflict]
        repository.conflicted_paths.return_value = [METADATA_FILE, "documents/a.md"]

        attempt = self._run(repository)

        assert attempt.state is PullState.FAILED
        assert attempt.error is conflict
        repository.conclude_merge.assert_not_called()

    def test_other_errors_propagate_unchanged(self):
        repository = MagicMock()
        auth = AuthenticationFailed("denied")
        repository.pull.side_effect = [auth]

        attempt = self._run(repository)

        assert attempt.history == [PullState.PULLING, PullState.FAILED]
        assert attempt.error is auth
        repository.stash_save.assert_not_called()

    def test_step_after_finish_is_rejected(self):
        repository = MagicMock()
        machine = PullStateMachine(repository)
        attempt = machine.run(PullAttempt(remote="origin", branch="main"))
        with pytest.raises(ValueError):
            machine.step(attempt)

    def test_transitions_are_reported(self):
        seen = []
        machine = PullStateMachine(MagicMock(), on_transition=seen.append)
        machine.run(PullAttempt(remote="origin", branch="main"))
        assert seen == [PullState.PULLING, PullState.SUCCEEDED]


class TestWorkingTreeGate:
    @pytest.mark.asyncio
    async def test_exclusive_waits_for_writers(self):
        gate = WorkingTreeGate()
        order = []

        async def writer():
            async with gate.writing():
                await asyncio.sleep(0.05)
                order.append("write")

        async def puller():
            await asyncio.sleep(0.01)
            async with gate.exclusive():
                order.append("pull")

        await asyncio.gather(writer(), puller())
        assert order == ["write", "pull"]

    @pytest.mark.asyncio
    async def test_writes_wait_for_pull(self):
        gate = WorkingTreeGate()
        order = []

        async def puller():
            async with gate.exclusive():
                await asyncio.sleep(0.05)
                order.append("pull")

        async def writer():
            await asyncio.sleep(0.01)
            assert gate.pulling
            async with gate.writing():
                order.append("write")

        await asyncio.gather(puller(), writer())
        assert order == ["pull", "write"]


# -- push / pull against a real remote --------------------------------------------


class TestAheadBehind:
    @pytest.mark.asyncio
    async def test_zero_without_remote_branch(self, workspace):
        assert await workspace.coordinator.ahead_behind() == (0, 0)
        status = await workspace.get_status()
        assert (status.ahead, status.behind) == (0, 0)

    @pytest.mark.asyncio
    async def test_push_clears_ahead(self, linked):
        ws, _ = linked
        await ws.write("documents/note.md", "hello")
        assert (await ws.get_status()).ahead == 1

        await ws.push()

        assert (await ws.get_status()).ahead == 0

    @pytest.mark.asyncio
    async def test_pull_clears_behind(self, linked):
        ws, other = linked
        commit_file(other, "documents/remote.md", "from elsewhere\n", "Remote note")
        other.git.push()

        await ws.fetch()
        assert (await ws.get_status()).behind == 1

        outcome = await ws.pull()

        assert outcome.state is PullState.SUCCEEDED
        assert (await ws.get_status()).behind == 0
        assert (ws.root / "documents/remote.md").read_text() == "from elsewhere\n"
        assert [change.path for change in outcome.changes] == ["documents/remote.md"]


class TestPullRecovery:
    @pytest.mark.asyncio
    async def test_uncommitted_edit_survives_pull(self, linked):
        ws, other = linked
        relative = await _share_file(ws, other)
        commit_file(other, relative, _replace_line(TEN_LINES, 1, "remote1"), "Remote edit")
        other.git.push()
        (ws.root / relative).write_text(_replace_line(TEN_LINES, 9, "local9"), encoding="utf-8")

        outcome = await ws.pull()

        assert outcome.state is PullState.SUCCEEDED
        assert PullState.NEEDS_STASH in outcome.history
        assert outcome.preserved_stash is None
        content = (ws.root / relative).read_text()
        assert content.startswith("remote1\n")
        assert "local9\n" in content
        status = await ws.get_status()
        assert status.modified == [relative]
        assert status.behind == 0
        assert ws.repository.stash_list() == []

    @pytest.mark.asyncio
    async def test_unrestorable_edit_is_kept_in_stash(self, linked):
        ws, other = linked
        relative = await _share_file(ws, other)
        commit_file(other, relative, _replace_line(TEN_LINES, 1, "remote1"), "Remote edit")
        other.git.push()
        (ws.root / relative).write_text(_replace_line(TEN_LINES, 1, "local1"), encoding="utf-8")

        outcome = await ws.pull()

        assert outcome.state is PullState.SUCCEEDED
        assert PullState.STASH_RESTORE_FAILED in outcome.history
        assert outcome.preserved_stash in ws.repository.stash_list()
        assert outcome.warnings
        assert (ws.root / relative).read_text().startswith("remote1\n")
        assert (await ws.get_status()).clean
        assert ws.operations()[-1].warnings == outcome.warnings

    @pytest.mark.asyncio
    async def test_diverged_history_produces_merge_commit(self, linked):
        ws, other = linked
        await ws.write("documents/v1.md", "v1")
        await ws.push()
        other.git.pull("--ff-only")

        await ws.write("documents/local.md", "v2 local")
        commit_file(other, "documents/remote.md", "v2 remote\n", "v2 remote")
        other.git.push()

        outcome = await ws.pull()

        assert outcome.merged is True
        assert PullState.NEEDS_MERGE in outcome.history
        head = (await ws.log(max_count=1))[0]
        assert len(head.parents) == 2
        status = await ws.get_status()
        assert status.clean
        assert status.behind == 0
        assert (ws.root / "documents/local.md").exists()
        assert (ws.root / "documents/remote.md").exists()

        await ws.push()
        assert (await ws.get_status()).ahead == 0

    @pytest.mark.asyncio
    async def test_documents_added_on_two_devices_merge_cleanly(self, linked, bare_remote, options, tmp_path):
        ws, _ = linked
        laptop = await Workspace.clone(str(bare_remote), tmp_path / "laptop", options)
        try:
            await ws.write("documents/local.md", "written at the desk", DocumentMetadata(title="Local"))
            await laptop.write("documents/remote.md", "written on the train", DocumentMetadata(title="Remote"))
            await laptop.push()

            outcome = await ws.pull()

            assert outcome.merged is True
            head = (await ws.log(max_count=1))[0]
            assert len(head.parents) == 2
            assert (await ws.get_status()).clean
            assert [(e.path, e.title) for e in await ws.list_documents()] == [
                ("documents/local.md", "Local"),
                ("documents/remote.md", "Remote"),
            ]
            assert [r.path for r in await ws.search("train")] == ["documents/remote.md"]

            await ws.push()
            await laptop.pull()
            assert set(laptop.metadata.list()) == {"documents/local.md", "documents/remote.md"}
        finally:
            await laptop.close()

    @pytest.mark.asyncio
    async def test_timeout_is_retryable_and_leaves_tree_alone(self, workspace, monkeypatch):
        def stalled(*args, **kwargs):
            raise NetworkUnavailable("pull timed out", timed_out=True)

        monkeypatch.setattr(workspace.repository, "pull", stalled)
        head = workspace.repository.head()

        with pytest.raises(NetworkUnavailable) as excinfo:
            await workspace.pull()

        assert excinfo.value.retryable
        assert excinfo.value.timed_out
        assert workspace.repository.head() == head
        assert (await workspace.get_status()).clean
        last = workspace.operations()[-1]
        assert (last.kind, last.status) == (SyncKind.PULL, SyncStatus.ERROR)


class TestConflicts:
    @pytest.mark.asyncio
    async def test_conflicting_edits_need_manual_resolution(self, linked):
        ws, other = linked
        relative = await _share_file(ws, other)
        (ws.root / relative).write_text(_replace_line(TEN_LINES, 1, "local1"), encoding="utf-8")
        await ws.commit("Local edit")
        commit_file(other, relative, _replace_line(TEN_LINES, 1, "remote1"), "Remote edit")
        other.git.push()

        with pytest.raises(ManualResolutionRequired) as excinfo:
            await ws.pull()

        assert excinfo.value.paths == [relative]
        assert (await ws.get_status()).conflicted == [relative]
        [record] = await ws.conflicts()
        assert record.path == relative
        assert record.base == TEN_LINES
        assert record.ours.startswith("local1")
        assert record.theirs.startswith("remote1")

        sha = await ws.resolve_conflict(relative, ResolutionStrategy.KEEP_LOCAL)

        assert sha is not None
        head = (await ws.log(max_count=1))[0]
        assert head.hash == sha
        assert len(head.parents) == 2
        assert (ws.root / relative).read_text() == record.ours
        assert (await ws.get_status()).clean
        assert await ws.conflicts() == []

    @pytest.mark.asyncio
    async def test_manual_strategy_requires_content(self, linked):
        ws, other = linked
        relative = await _share_file(ws, other)
        (ws.root / relative).write_text("mine\n", encoding="utf-8")
        await ws.commit("Local rewrite")
        commit_file(other, relative, "theirs\n", "Remote rewrite")
        other.git.push()
        with pytest.raises(ManualResolutionRequired):
            await ws.pull()

        with pytest.raises(ManualResolutionRequired):
            await ws.resolve_conflict(relative, ResolutionStrategy.MANUAL)

        await ws.resolve_conflict(relative, ResolutionStrategy.MANUAL, "combined\n")
        assert (ws.root / relative).read_text() == "combined\n"
        assert (await ws.get_status()).clean


class TestPush:
    @pytest.mark.asyncio
    async def test_rejected_push_is_never_forced(self, linked, bare_remote):
        ws, other = linked
        remote_head = commit_file(other, "documents/remote.md", "remote\n", "Remote note")
        other.git.push()
        await ws.write("documents/local.md", "local")

        with pytest.raises(RejectedNonFastForward):
            await ws.push()

        assert git.Repo(bare_remote).heads.main.commit.hexsha == remote_head
        last = ws.operations()[-1]
        assert (last.kind, last.status) == (SyncKind.PUSH, SyncStatus.ERROR)
        assert last.error


class TestLinkRemote:
    @pytest.mark.asyncio
    async def test_first_link_publishes_branch(self, workspace, bare_remote):
        outcome = await workspace.sync_with_remote(str(bare_remote))

        assert outcome.merged is False
        assert git.Repo(bare_remote).heads.main.commit.hexsha == workspace.repository.head()
        assert [remote.name for remote in await workspace.get_remotes()] == ["origin"]
        info = await workspace.info()
        assert info.remote is not None
        assert info.remote.url == str(bare_remote)

    @pytest.mark.asyncio
    async def test_unrelated_histories_are_merged(self, workspace, bare_remote, tmp_path):
        seed = configure_identity(git.Repo.init(tmp_path / "seed", initial_branch="main"))
        commit_file(seed, "remote-notes.md", "existing notes\n", "Existing remote content")
        seed.git.push(str(bare_remote), "main")

        outcome = await workspace.sync_with_remote(str(bare_remote))

        assert outcome.merged is True
        assert (workspace.root / "remote-notes.md").read_text() == "existing notes\n"
        head = (await workspace.log(max_count=1))[0]
        assert len(head.parents) == 2
        assert (await workspace.get_status()).clean

        await workspace.push()
        assert git.Repo(bare_remote).heads.main.commit.hexsha == head.hash

    @pytest.mark.asyncio
    async def test_conflicting_remote_content_is_not_linked(self, workspace, bare_remote, tmp_path):
        seed = configure_identity(git.Repo.init(tmp_path / "seed", initial_branch="main"))
        commit_file(seed, "README.md", "# Somebody else's notes\n", "Existing readme")
        seed.git.push(str(bare_remote), "main")

        with pytest.raises(ManualResolutionRequired) as excinfo:
            await workspace.sync_with_remote(str(bare_remote))

        assert excinfo.value.kind == "manual_resolution_required"
        assert excinfo.value.paths == ["README.md"]
        assert (await workspace.info()).remote is None
        [record] = await workspace.conflicts()
        assert record.path == "README.md"
        assert record.base is None
        assert record.theirs == "# Somebody else's notes\n"
        last = workspace.operations()[-1]
        assert (last.kind, last.status) == (SyncKind.LINK, SyncStatus.ERROR)

    @pytest.mark.asyncio
    async def test_relinking_updates_url(self, linked, tmp_path):
        ws, _ = linked
        mirror = tmp_path / "mirror.git"
        git.Repo.init(mirror, bare=True, initial_branch="main")

        await ws.sync_with_remote(str(mirror))

        [remote] = await ws.get_remotes()
        assert remote.url == str(mirror)


class TestSerialization:
    @pytest.mark.asyncio
    async def test_sync_operations_never_overlap(self, workspace, monkeypatch):
        active = 0
        peak = 0
        guard = threading.Lock()

        def slow_push(*args, **kwargs):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with guard:
                active -= 1

        monkeypatch.setattr(workspace.repository, "push", slow_push)

        await asyncio.gather(workspace.push(), workspace.push(), workspace.push())

        assert peak == 1
        assert [op.status for op in workspace.operations()] == [SyncStatus.SUCCESS] * 3

    @pytest.mark.asyncio
    async def test_write_during_pull_is_deferred(self, workspace, monkeypatch):
        entered = threading.Event()
        release = threading.Event()

        def blocked_pull(*args, **kwargs):
            entered.set()
            release.wait(5)

        monkeypatch.setattr(workspace.repository, "pull", blocked_pull)

        pull_task = asyncio.create_task(workspace.pull())
        await asyncio.to_thread(entered.wait, 5)
        write_task = asyncio.create_task(workspace.write("documents/late.md", "late"))
        await asyncio.sleep(0.1)

        assert not write_task.done()
        assert not (workspace.root / "documents/late.md").exists()

        release.set()
        await pull_task
        await write_task
        assert (workspace.root / "documents/late.md").exists()

    @pytest.mark.asyncio
    async def test_write_proceeds_during_push(self, workspace, monkeypatch):
        await workspace.update_settings(auto_commit=False)
        entered = threading.Event()
        release = threading.Event()

        def blocked_push(*args, **kwargs):
            entered.set()
            release.wait(5)

        monkeypatch.setattr(workspace.repository, "push", blocked_push)

        push_task = asyncio.create_task(workspace.push())
        await asyncio.to_thread(entered.wait, 5)
        try:
            await asyncio.wait_for(workspace.write("documents/during.md", "during"), timeout=5)
        finally:
            release.set()
            await push_task

        assert "documents/during.md" in (await workspace.get_status()).staged


class TestOperations:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self, workspace):
        for _ in range(MAX_OPERATIONS + 5):
            await workspace.commit("nothing to do")

        operations = workspace.operations()
        assert len(operations) == MAX_OPERATIONS
        assert all(op.status is SyncStatus.SUCCESS for op in operations)
        assert all(op.completed_at >= op.started_at for op in operations)

    @pytest.mark.asyncio
    async def test_empty_commit_returns_none(self, workspace):
        assert await workspace.commit("nothing to do") is None

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_typed_and_recorded(self, workspace, monkeypatch):
        def unplugged(*args, **kwargs):
            raise OSError("disk unplugged")

        monkeypatch.setattr(workspace.repository, "stage_all", unplugged)

        with pytest.raises(GitOperationFailed) as excinfo:
            await workspace.commit("anything")

        assert isinstance(excinfo.value.__cause__, OSError)
        last = workspace.operations()[-1]
        assert (last.kind, last.status) == (SyncKind.COMMIT, SyncStatus.ERROR)
        assert "disk unplugged" in last.error
