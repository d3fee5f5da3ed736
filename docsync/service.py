from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import frontmatter
from .bootstrap import WorkspaceBootstrapper
from .config import (
    CONFIG_DIR,
    CONFIG_FILE,
    INDEX_FILE,
    METADATA_FILE,
    STATE_FILE,
    Options,
    WorkspaceConfig,
    WorkspaceSettings,
    dump_json,
    load_workspace_config,
)
from .errors import DocumentNotFound, InvalidPath, WorkspaceError
from .git_client import GitRepository, authenticated_url
from .metadata import MetadataStore, atomic_write
from .models import (
    AuthMode,
    CommitInfo,
    ConflictRecord,
    DocumentEntry,
    DocumentMetadata,
    FileChange,
    LocalState,
    MetadataRecord,
    RemoteInfo,
    RemoteLink,
    RepositoryStatus,
    ResolutionStrategy,
    SearchResult,
    SyncOperation,
    TagCount,
    WorkspaceInfo,
    utc_now,
)
from .search import HistorySearcher, SearchIndex
from .sync import LinkOutcome, PullOutcome, SyncCoordinator
from .tags import TagRegistry

_LOGGER = logging.getLogger(__name__)


def _reconcile_message(discovered: dict[str, MetadataRecord], pruned: list[str]) -> str:
    parts = []
    if discovered:
        parts.append("Add: " + ", ".join(record.title for record in discovered.values()))
    if pruned:
        parts.append("Delete: " + ", ".join(Path(path).stem for path in pruned))
    return "; ".join(parts)


class Workspace:
    """One open workspace: repository session, metadata, search index and sync policy."""

    def __init__(self, root: Path | str, options: Options | None = None) -> None:
        self.options = options or Options(workspace_path=str(root))
        self.root = Path(root).expanduser().resolve()
        self.repository = GitRepository(self.root, self.options)
        self.bootstrapper = WorkspaceBootstrapper(self.repository, self.options)
        self.metadata = MetadataStore(self.root)
        self.tags = TagRegistry(self.metadata)
        self.coordinator = SyncCoordinator(self.repository, self.options)
        self.history = HistorySearcher(self.repository, self.options.history_budget_ms)
        self._index: SearchIndex | None = None
        self._auto_sync: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()

    @classmethod
    async def open(cls, root: Path | str, options: Options | None = None) -> Workspace:
        workspace = cls(root, options)
        await workspace.initialize()
        return workspace

    @classmethod
    async def clone(
        cls,
        url: str,
        root: Path | str,
        options: Options | None = None,
        *,
        timeout: float | None = None,
    ) -> Workspace:
        workspace = cls(root, options)
        clone_url = authenticated_url(url, workspace.options.token)
        await workspace.coordinator.clone(
            lambda: workspace.bootstrapper.clone(
                clone_url, timeout=timeout or workspace.options.network_timeout
            )
        )
        await workspace.initialize()
        workspace._save_state(
            workspace._load_state().model_copy(
                update={"remote": RemoteLink(url=url, name="origin", branch=workspace.repository.current_branch(),
                                             auth_mode=workspace._auth_mode_for(url), last_synced=utc_now())}
            )
        )
        return workspace

    async def initialize(self) -> None:
        await asyncio.to_thread(self.bootstrapper.init_workspace)
        self._index = SearchIndex(self.root / INDEX_FILE)
        await asyncio.to_thread(self._reindex_all)
        state = self._load_state()
        self._save_state(state.model_copy(update={"last_opened": utc_now()}))
        if self.settings.auto_sync and state.remote is not None:
            self.start_auto_sync()
        _LOGGER.info("Opened workspace %s", self.root)

    @property
    def index(self) -> SearchIndex:
        if self._index is None:
            raise WorkspaceError("Workspace is not open")
        return self._index

    # -- configuration ------------------------------------------------------

    def _config(self) -> WorkspaceConfig:
        try:
            config = load_workspace_config(self.root)
        except (json.JSONDecodeError, ValidationError) as exc:
            _LOGGER.warning("Ignoring unreadable %s: %s", CONFIG_FILE, exc)
            config = None
        return config or WorkspaceConfig(created=utc_now())

    @property
    def settings(self) -> WorkspaceSettings:
        return self._config().settings

    async def update_settings(self, **changes: Any) -> WorkspaceSettings:
        config = self._config()
        settings = WorkspaceSettings.model_validate({**config.settings.model_dump(), **changes})
        config = config.model_copy(update={"settings": settings})
        await asyncio.to_thread(
            atomic_write,
            self.root / CONFIG_FILE,
            dump_json(config.model_dump(mode="json", by_alias=True)),
        )
        if settings.auto_commit:
            await self.coordinator.commit("Update workspace settings", [CONFIG_FILE])
        else:
            await asyncio.to_thread(self.repository.stage, [CONFIG_FILE])
        if settings.auto_sync and self._load_state().remote is not None:
            self.start_auto_sync(restart=True)
        elif not settings.auto_sync:
            await self.stop_auto_sync()
        return settings

    def _load_state(self) -> LocalState:
        path = self.root / STATE_FILE
        if not path.exists():
            return LocalState()
        try:
            return LocalState.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            _LOGGER.warning("Resetting unreadable %s: %s", STATE_FILE, exc)
            return LocalState()

    def _save_state(self, state: LocalState) -> None:
        atomic_write(
            self.root / STATE_FILE,
            dump_json(state.model_dump(mode="json", by_alias=True, exclude_none=True)),
        )

    def _auth_mode_for(self, url: str) -> AuthMode:
        if not url.startswith(("https://", "http://")):
            return AuthMode.KEY
        return AuthMode.TOKEN if self.options.token else AuthMode.PASSWORD

    def public_config(self) -> dict[str, Any]:
        data = self.options.model_dump()
        data.pop("access_token", None)
        return data

    async def info(self) -> WorkspaceInfo:
        workspace = await asyncio.to_thread(self.metadata.workspace)
        root_commit = await asyncio.to_thread(self.repository.root_commit)
        state = self._load_state()
        return WorkspaceInfo(
            id=root_commit[:12] if root_commit else None,
            name=workspace.name,
            root=str(self.root),
            created=self._config().created,
            last_opened=state.last_opened,
            is_versioned=self.repository.is_repository(),
            remote=state.remote,
            settings=self.settings,
        )

    # -- documents ----------------------------------------------------------

    def _relative(self, path: str) -> str:
        target = (self.root / path).resolve()
        try:
            relative = target.relative_to(self.root).as_posix()
        except ValueError as exc:
            raise InvalidPath(f"Unsafe document path {path}", [path]) from exc
        top = relative.split("/", 1)[0]
        if relative in {".", METADATA_FILE} or top in {".git", CONFIG_DIR}:
            raise InvalidPath(f"{path} is reserved for the workspace", [path])
        return relative

    async def read(self, path: str) -> str:
        relative = self._relative(path)
        try:
            text = await asyncio.to_thread((self.root / relative).read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise DocumentNotFound(f"Document not found: {relative}", [relative]) from exc
        _, body = frontmatter.split(text)
        return body

    async def write(
        self, path: str, content: str, metadata: DocumentMetadata | None = None
    ) -> MetadataRecord:
        """Write content and metadata, then stage or commit both together."""
        relative = self._relative(path)
        async with self.coordinator.gate.writing():
            record, created = await asyncio.to_thread(
                self._write_sync, relative, content, metadata or DocumentMetadata()
            )
            verb = "Add" if created else "Update"
            await self._record_change(f"{verb}: {record.title}", [relative, METADATA_FILE])
        return record

    def _write_sync(
        self, relative: str, content: str, metadata: DocumentMetadata
    ) -> tuple[MetadataRecord, bool]:
        existing = self.metadata.get(relative)
        _, body = frontmatter.split(content)
        now = utc_now()
        supplied = metadata.model_dump(exclude_none=True)
        if existing is not None:
            record = MetadataRecord.model_validate(
                {**existing.model_dump(), **supplied, "modified": now}
            )
        else:
            defaults = {
                "title": Path(relative).stem,
                "mode": self.settings.default_mode,
                "created": now,
                "modified": now,
            }
            record = MetadataRecord.model_validate({**defaults, **supplied})
        text = body if record.mode == "code" else frontmatter.render(record, body)
        atomic_write(self.root / relative, text)
        self.metadata.upsert(relative, record)
        self.index.index_document(relative, record, body)
        return record, existing is None

    async def update(self, path: str, metadata: DocumentMetadata) -> MetadataRecord:
        body = await self.read(path)
        return await self.write(path, body, metadata)

    async def add_tags(self, path: str, tags: list[str]) -> MetadataRecord:
        relative = self._relative(path)
        record = await asyncio.to_thread(self.metadata.get, relative)
        if record is None:
            raise DocumentNotFound(f"Document not found: {relative}", [relative])
        return await self.update(relative, DocumentMetadata(tags=[*record.tags, *tags]))

    async def delete(self, path: str) -> None:
        relative = self._relative(path)
        async with self.coordinator.gate.writing():
            record = await asyncio.to_thread(self._delete_sync, relative)
            await self._record_change(f"Delete: {record.title}", [relative, METADATA_FILE])

    def _delete_sync(self, relative: str) -> MetadataRecord:
        record = self.metadata.get(relative)
        target = self.root / relative
        if record is None:
            if not target.exists():
                raise DocumentNotFound(f"Document not found: {relative}", [relative])
            record = MetadataRecord(title=target.stem)
        target.unlink(missing_ok=True)
        self.metadata.remove(relative)
        self.index.remove(relative)
        return record

    async def _record_change(self, message: str, paths: list[str]) -> None:
        if self.settings.auto_commit:
            await self.coordinator.commit(message, paths)
        else:
            await asyncio.to_thread(self.repository.stage, paths)

    async def list_documents(self) -> list[DocumentEntry]:
        """List documents, first reconciling metadata with files added or removed by hand."""
        async with self.coordinator.gate.writing():
            discovered, pruned = await asyncio.to_thread(self._reconcile_sync)
            if discovered or pruned:
                await self._record_change(
                    _reconcile_message(discovered, pruned),
                    [*discovered, *pruned, METADATA_FILE],
                )
        records = await asyncio.to_thread(self.metadata.list)
        return [
            DocumentEntry.model_validate({"path": path, **record.model_dump()})
            for path, record in records.items()
        ]

    def _reconcile_sync(self) -> tuple[dict[str, MetadataRecord], list[str]]:
        discovered = self.metadata.discover()
        for path, record in discovered.items():
            self.index.index_document(path, record, self._read_body(path))
        pruned = self.metadata.prune()
        for path in pruned:
            self.index.remove(path)
        return discovered, pruned

    # -- search & tags ------------------------------------------------------

    def filter(self, **criteria: Any) -> list[SearchResult]:
        return self.index.filter(**criteria)

    async def search(
        self, query: str, *, include_history: bool = False, limit: int = 50
    ) -> list[SearchResult]:
        results = await asyncio.to_thread(self.index.search, query, limit)
        if include_history:
            historical = await asyncio.to_thread(
                self.history.search,
                query,
                exclude=[result.path for result in results],
                limit=limit,
            )
            results = sorted(
                sorted(results + historical, key=lambda result: result.modified, reverse=True),
                key=lambda result: result.score,
                reverse=True,
            )[:limit]
        return results

    def documents_by_tag(self, tag: str) -> list[SearchResult]:
        return self.index.filter(tags=[tag])

    def tag_counts(self) -> list[TagCount]:
        return self.tags.counts()

    # -- repository ---------------------------------------------------------

    async def get_status(self) -> RepositoryStatus:
        return await asyncio.to_thread(self.repository.status)

    async def commit(self, message: str) -> str | None:
        return await self.coordinator.commit(message)

    async def push(
        self, remote: str | None = None, branch: str | None = None, *, timeout: float | None = None
    ) -> None:
        await self.coordinator.push(remote, branch, timeout=timeout)
        self._touch_remote()

    async def fetch(self, remote: str | None = None, *, timeout: float | None = None) -> None:
        await self.coordinator.fetch(remote, timeout=timeout)

    async def pull(
        self, remote: str | None = None, branch: str | None = None, *, timeout: float | None = None
    ) -> PullOutcome:
        outcome = await self.coordinator.pull(remote, branch, timeout=timeout)
        for warning in outcome.warnings:
            _LOGGER.warning(warning)
        await asyncio.to_thread(self._refresh, outcome.changes)
        self._touch_remote()
        return outcome

    async def sync_with_remote(
        self, url: str, *, branch: str | None = None, timeout: float | None = None
    ) -> LinkOutcome:
        remote = self.options.remote_name
        outcome = await self.coordinator.link_remote(
            authenticated_url(url, self.options.token),
            remote=remote,
            branch=branch,
            timeout=timeout,
        )
        state = self._load_state()
        self._save_state(
            state.model_copy(
                update={
                    "remote": RemoteLink(
                        url=url,
                        name=remote,
                        branch=outcome.branch,
                        auth_mode=self._auth_mode_for(url),
                        last_synced=utc_now(),
                    )
                }
            )
        )
        await asyncio.to_thread(self._refresh, outcome.changes)
        if self.settings.auto_sync:
            self.start_auto_sync(restart=True)
        return outcome

    def _touch_remote(self) -> None:
        state = self._load_state()
        if state.remote is not None:
            remote = state.remote.model_copy(update={"last_synced": utc_now()})
            self._save_state(state.model_copy(update={"remote": remote}))

    async def get_remotes(self) -> list[RemoteInfo]:
        return await asyncio.to_thread(self.repository.list_remotes)

    async def add_remote(self, name: str, url: str) -> None:
        await asyncio.to_thread(self.repository.add_remote, name, url)

    async def set_remote_url(self, name: str, url: str) -> None:
        await asyncio.to_thread(self.repository.set_remote_url, name, url)

    async def set_user_config(self, name: str, email: str) -> None:
        await asyncio.to_thread(self.repository.set_identity, name, email)

    async def log(self, path: str | None = None, max_count: int = 50) -> list[CommitInfo]:
        return await asyncio.to_thread(self.repository.log, path, max_count)

    async def read_at_revision(self, revision: str, path: str) -> str:
        return await asyncio.to_thread(self.repository.read_file_at_revision, revision, path)

    async def conflicts(self) -> list[ConflictRecord]:
        return await self.coordinator.conflicts()

    async def resolve_conflict(
        self, path: str, strategy: ResolutionStrategy, content: str | None = None
    ) -> str | None:
        before = await asyncio.to_thread(self.repository.head)
        sha = await self.coordinator.resolve_conflict(self._relative(path), strategy, content)
        if sha is not None:
            changes = await asyncio.to_thread(self.repository.changes_between, before, sha)
            await asyncio.to_thread(self._refresh, changes)
        return sha

    def operations(self) -> list[SyncOperation]:
        return self.coordinator.operations()

    # -- index maintenance --------------------------------------------------

    def _read_body(self, path: str) -> str:
        _, body = frontmatter.split((self.root / path).read_text(encoding="utf-8"))
        return body

    def _reindex_all(self) -> None:
        self.index.rebuild(self.metadata.list(), self._read_body)

    def _refresh(self, changes: list[FileChange]) -> None:
        if not changes:
            return
        if any(change.path == METADATA_FILE for change in changes):
            self._reindex_all()
            return
        for change in changes:
            if change.previous_path:
                self.index.remove(change.previous_path)
            if change.change_type == "deleted":
                self.index.remove(change.path)
                continue
            record = self.metadata.get(change.path)
            if record is not None:
                self.index.index_document(change.path, record, self._read_body(change.path))

    # -- lifecycle ----------------------------------------------------------

    def start_auto_sync(self, *, restart: bool = False) -> None:
        if self._auto_sync is not None and not self._auto_sync.done():
            if not restart:
                return
            self._auto_sync.cancel()
        self._stop = asyncio.Event()
        self._auto_sync = asyncio.create_task(self._auto_sync_loop())

    async def stop_auto_sync(self) -> None:
        self._stop.set()
        task, self._auto_sync = self._auto_sync, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def sync_interval_seconds(self) -> float:
        return self.settings.sync_interval * 60

    async def _auto_sync_loop(self) -> None:
        interval = self.sync_interval_seconds
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.pull()
            except WorkspaceError as exc:
                _LOGGER.warning("Background sync failed (%s): %s", exc.kind, exc.message)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("Background sync crashed: %s", exc)

    async def close(self) -> None:
        await self.stop_auto_sync()
        if self._index is not None:
            self._index.close()
            self._index = None
        self.repository.close()
        _LOGGER.info("Closed workspace %s", self.root)
