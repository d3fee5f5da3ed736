from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .config import LAYOUT_VERSION, CamelModel, DocumentMode, WorkspaceSettings


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FileChange(BaseModel):
    path: str
    change_type: Literal["added", "modified", "deleted", "renamed"]
    previous_path: str | None = None


class RepositoryStatus(BaseModel):
    branch: str
    ahead: int = 0
    behind: int = 0
    modified: list[str] = Field(default_factory=list)
    staged: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)
    conflicted: list[str] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.modified or self.staged or self.untracked or self.conflicted)

    def summary(self) -> dict[str, Any]:
        return {**self.model_dump(), "clean": self.clean}


class CommitInfo(BaseModel):
    hash: str
    message: str
    author: str
    email: str
    date: datetime
    parents: list[str] = Field(default_factory=list)


class RemoteInfo(BaseModel):
    name: str
    url: str


class AuthMode(str, Enum):
    KEY = "key"
    PASSWORD = "password"
    TOKEN = "token"


class RemoteLink(CamelModel):
    url: str
    name: str = "origin"
    branch: str = "main"
    auth_mode: AuthMode = AuthMode.PASSWORD
    last_synced: str | None = None


class LocalState(CamelModel):
    """Non-versioned per-machine state kept in ``.docsync/state.json``."""

    last_opened: str | None = None
    remote: RemoteLink | None = None


class SyncKind(str, Enum):
    PUSH = "push"
    PULL = "pull"
    FETCH = "fetch"
    CLONE = "clone"
    COMMIT = "commit"
    LINK = "link"


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (SyncStatus.SUCCESS, SyncStatus.ERROR)


class SyncProgress(BaseModel):
    phase: str
    loaded: int | None = None
    total: int | None = None


class SyncOperation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: SyncKind
    status: SyncStatus = SyncStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: SyncProgress | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)

    def advance(self, status: SyncStatus, **updates: Any) -> SyncOperation:
        """Return the operation moved to ``status``; terminal operations are immutable."""
        if self.status.terminal:
            raise ValueError(f"Sync operation {self.id} already finished as {self.status.value}")
        now = datetime.now(timezone.utc)
        if status is SyncStatus.IN_PROGRESS and self.started_at is None:
            updates.setdefault("started_at", now)
        if status.terminal:
            updates.setdefault("completed_at", now)
            updates.setdefault("started_at", self.started_at or now)
        return self.model_copy(update={"status": status, **updates})

    def report(self, phase: str, loaded: int | None = None, total: int | None = None) -> SyncOperation:
        if self.status.terminal:
            raise ValueError(f"Sync operation {self.id} already finished as {self.status.value}")
        return self.model_copy(update={"progress": SyncProgress(phase=phase, loaded=loaded, total=total)})


class MetadataRecord(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str
    tags: list[str] = Field(default_factory=list)
    created: str = Field(default_factory=utc_now)
    modified: str = Field(default_factory=utc_now)
    mode: DocumentMode = "markdown"
    language: str | None = None
    custom_fields: dict[str, Any] | None = None

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, tags: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for tag in tags:
            tag = tag.strip()
            if tag:
                seen.setdefault(tag, None)
        return list(seen)


class DocumentMetadata(BaseModel):
    """Metadata supplied by an editor alongside a write."""

    title: str | None = None
    mode: DocumentMode | None = None
    tags: list[str] | None = None
    language: str | None = None
    custom_fields: dict[str, Any] | None = None


class WorkspaceSection(BaseModel):
    name: str
    created: str = Field(default_factory=utc_now)
    description: str = ""


class MetadataFile(BaseModel):
    version: str = LAYOUT_VERSION
    workspace: WorkspaceSection
    documents: dict[str, MetadataRecord] = Field(default_factory=dict)


class DocumentEntry(MetadataRecord):
    path: str


class TagCount(BaseModel):
    name: str
    count: int


class SearchMatch(BaseModel):
    line: int
    column: int
    text: str
    before: str
    after: str


class SearchResult(BaseModel):
    path: str
    title: str
    mode: str
    tags: list[str]
    modified: str
    score: float = Field(ge=0.0, le=1.0)
    tier: int = 1
    revision: str | None = None
    matches: list[SearchMatch] = Field(default_factory=list)


class ResolutionStrategy(str, Enum):
    KEEP_LOCAL = "keep-local"
    ACCEPT_REMOTE = "accept-remote"
    MANUAL = "manual"


class ConflictRecord(BaseModel):
    path: str
    base: str | None = None
    ours: str | None = None
    theirs: str | None = None
    resolved: str | None = None
    strategy: ResolutionStrategy | None = None


class WorkspaceInfo(BaseModel):
    id: str | None
    name: str
    root: str
    created: str
    last_opened: str | None = None
    is_versioned: bool
    remote: RemoteLink | None = None
    settings: WorkspaceSettings
