from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .errors import WorkspaceError
from .models import (
    CommitInfo,
    ConflictRecord,
    DocumentEntry,
    DocumentMetadata,
    MetadataRecord,
    RemoteInfo,
    ResolutionStrategy,
    SearchResult,
    SyncOperation,
    TagCount,
    WorkspaceInfo,
)
from .service import Workspace

_STATUS_CODES = {
    "not_initialized": 409,
    "authentication_failed": 401,
    "network_unavailable": 503,
    "rejected_non_fast_forward": 409,
    "diverged_history": 409,
    "local_changes": 409,
    "manual_resolution_required": 409,
    "corrupt_metadata": 500,
    "document_not_found": 404,
    "invalid_path": 400,
    "git_error": 500,
}


class CommitRequest(BaseModel):
    message: str


class RemoteRequest(BaseModel):
    remote: str | None = None
    branch: str | None = None
    timeout: float | None = None


class LinkRequest(BaseModel):
    url: str
    branch: str | None = None
    timeout: float | None = None


class AddRemoteRequest(BaseModel):
    name: str
    url: str


class WriteRequest(BaseModel):
    content: str
    metadata: DocumentMetadata | None = None


class ResolveRequest(BaseModel):
    path: str
    strategy: ResolutionStrategy
    content: str | None = None


def create_app(workspace: Workspace) -> FastAPI:
    app = FastAPI(title="DocSync", version="0.1.0")

    @app.exception_handler(WorkspaceError)
    async def workspace_error(request: Request, exc: WorkspaceError) -> JSONResponse:
        return JSONResponse(status_code=_STATUS_CODES.get(exc.kind, 500), content=exc.to_dict())

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/workspace", response_model=WorkspaceInfo)
    async def info() -> WorkspaceInfo:
        return await workspace.info()

    @app.get("/config")
    async def config() -> dict[str, Any]:
        return workspace.public_config()

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return (await workspace.get_status()).summary()

    @app.post("/commit")
    async def commit(body: CommitRequest) -> dict[str, str | None]:
        return {"commit": await workspace.commit(body.message)}

    @app.post("/push")
    async def push(body: RemoteRequest | None = None) -> dict[str, str]:
        body = body or RemoteRequest()
        await workspace.push(body.remote, body.branch, timeout=body.timeout)
        return {"status": "ok"}

    @app.post("/pull")
    async def pull(body: RemoteRequest | None = None) -> dict[str, Any]:
        body = body or RemoteRequest()
        outcome = await workspace.pull(body.remote, body.branch, timeout=body.timeout)
        return {
            "state": outcome.state.value,
            "merged": outcome.merged,
            "preserved_stash": outcome.preserved_stash,
            "warnings": outcome.warnings,
            "changes": [change.model_dump() for change in outcome.changes],
        }

    @app.post("/sync")
    async def sync_with_remote(body: LinkRequest) -> dict[str, Any]:
        outcome = await workspace.sync_with_remote(body.url, branch=body.branch, timeout=body.timeout)
        return {
            "remote": outcome.remote,
            "branch": outcome.branch,
            "merged": outcome.merged,
            "changes": [change.model_dump() for change in outcome.changes],
        }

    @app.get("/remotes", response_model=list[RemoteInfo])
    async def remotes() -> list[RemoteInfo]:
        return await workspace.get_remotes()

    @app.post("/remotes")
    async def add_remote(body: AddRemoteRequest) -> dict[str, str]:
        await workspace.add_remote(body.name, body.url)
        return {"status": "ok"}

    @app.get("/log", response_model=list[CommitInfo])
    async def log(path: str | None = None, max_count: int = Query(50, ge=1)) -> list[CommitInfo]:
        return await workspace.log(path, max_count)

    @app.get("/documents", response_model=list[DocumentEntry])
    async def documents() -> list[DocumentEntry]:
        return await workspace.list_documents()

    @app.get("/documents/{path:path}")
    async def read_document(path: str) -> dict[str, str]:
        return {"path": path, "content": await workspace.read(path)}

    @app.put("/documents/{path:path}", response_model=MetadataRecord)
    async def write_document(path: str, body: WriteRequest) -> MetadataRecord:
        return await workspace.write(path, body.content, body.metadata)

    @app.delete("/documents/{path:path}")
    async def delete_document(path: str) -> dict[str, str]:
        await workspace.delete(path)
        return {"status": "deleted"}

    @app.get("/search", response_model=list[SearchResult])
    async def search(
        q: str, include_history: bool = False, limit: int = Query(50, ge=1)
    ) -> list[SearchResult]:
        return await workspace.search(q, include_history=include_history, limit=limit)

    @app.get("/search/filter", response_model=list[SearchResult])
    async def search_filter(
        title: str | None = None,
        tag: list[str] | None = Query(None),
        mode: str | None = None,
        modified_after: str | None = None,
        modified_before: str | None = None,
        limit: int = Query(50, ge=1),
    ) -> list[SearchResult]:
        return workspace.filter(
            title=title,
            tags=tag,
            mode=mode,
            modified_after=modified_after,
            modified_before=modified_before,
            limit=limit,
        )

    @app.get("/tags", response_model=list[TagCount])
    async def tags() -> list[TagCount]:
        return workspace.tag_counts()

    @app.get("/conflicts", response_model=list[ConflictRecord])
    async def conflicts() -> list[ConflictRecord]:
        return await workspace.conflicts()

    @app.post("/conflicts/resolve")
    async def resolve(body: ResolveRequest) -> dict[str, str | None]:
        return {"commit": await workspace.resolve_conflict(body.path, body.strategy, body.content)}

    @app.get("/operations", response_model=list[SyncOperation])
    async def operations() -> list[SyncOperation]:
        return workspace.operations()

    return app
