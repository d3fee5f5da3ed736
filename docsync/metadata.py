from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from . import frontmatter
from .config import CONFIG_DIR, DOCUMENTS_DIR, METADATA_FILE, dump_json
from .errors import CorruptMetadata
from .models import MetadataFile, MetadataRecord, WorkspaceSection

_LOGGER = logging.getLogger(__name__)

_RESERVED_ROOT_FILES = {METADATA_FILE, ".gitignore", "README.md"}
_SKIPPED_NAMES = {".gitkeep", ".DS_Store", "Thumbs.db"}


def atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file in the same directory, fsync, rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def iter_document_paths(root: Path) -> Iterator[str]:
    """Yield working-tree relative paths of every user document under ``root``."""
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(root)
        parts = relative.parts
        if parts[0] in {".git", CONFIG_DIR}:
            continue
        if len(parts) == 1 and parts[0] in _RESERVED_ROOT_FILES:
            continue
        if path.name in _SKIPPED_NAMES or path.name.endswith(".tmp"):
            continue
        yield relative.as_posix()


def record_from_file(root: Path, relative_path: str) -> MetadataRecord:
    """Derive a metadata record from a file's frontmatter and filesystem stats."""
    full_path = root / relative_path
    stats = full_path.stat()
    try:
        header, _ = frontmatter.split(full_path.read_text(encoding="utf-8"))
    except UnicodeDecodeError:
        header = {}
    mtime = datetime.fromtimestamp(stats.st_mtime, timezone.utc).isoformat()
    tags = header.get("tags") or []
    if isinstance(tags, str):
        tags = [part.strip() for part in tags.split(",")]
    return MetadataRecord(
        id=relative_path.replace("/", "_").replace(".", "_"),
        title=str(header.get("title") or Path(relative_path).stem),
        tags=[str(tag) for tag in tags],
        created=mtime,
        modified=mtime,
        mode=header.get("mode") if header.get("mode") in ("notes", "markdown", "code")
        else frontmatter.infer_mode(relative_path),
        language=header.get("language"),
    )


def serialize(data: MetadataFile) -> str:
    return dump_json(data.model_dump(mode="json", by_alias=True, exclude_none=True))


def merge_documents(
    base: dict[str, MetadataRecord],
    ours: dict[str, MetadataRecord],
    theirs: dict[str, MetadataRecord],
) -> dict[str, MetadataRecord]:
    """Three-way merge of two ``documents`` maps that share ``base``.

    Records added on either side are kept and records removed on either side
    are dropped. When both sides changed a record, the later ``modified`` wins.
    """
    merged: dict[str, MetadataRecord] = {}
    for path in sorted(base.keys() | ours.keys() | theirs.keys()):
        original, mine, other = base.get(path), ours.get(path), theirs.get(path)
        if mine is None or other is None:
            survivor = mine if other is None else other
            if original is None and survivor is not None:
                merged[path] = survivor
            continue
        if mine == other or other == original:
            merged[path] = mine
        elif mine == original:
            merged[path] = other
        else:
            merged[path] = other if other.modified > mine.modified else mine
    return merged


def merge_metadata(base: str | None, ours: str, theirs: str) -> str:
    """Merge three versions of the metadata file text; ``base`` is None for add/add."""
    try:
        mine = MetadataFile.model_validate_json(ours)
        other = MetadataFile.model_validate_json(theirs)
        original = MetadataFile.model_validate_json(base) if base else None
    except ValidationError as exc:
        raise CorruptMetadata(
            f"Cannot merge {METADATA_FILE}: {exc}", [METADATA_FILE]
        ) from exc
    documents = merge_documents(
        original.documents if original is not None else {}, mine.documents, other.documents
    )
    return serialize(mine.model_copy(update={"documents": documents}))


class MetadataStore:
    """Authoritative path -> metadata mapping persisted in the versioned metadata file.

    Every mutation reads the whole file, applies the change and atomically
    replaces the file, so the on-disk state is always a complete document.
    A single writer per workspace is assumed.
    """

    def __init__(self, root: Path, workspace_name: str | None = None) -> None:
        self._root = Path(root)
        self._path = self._root / METADATA_FILE
        self._workspace_name = workspace_name or self._root.name
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def relative_path(self) -> str:
        return METADATA_FILE

    def _read(self) -> MetadataFile:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
            return MetadataFile.model_validate(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            raise CorruptMetadata(
                f"Metadata file {METADATA_FILE} could not be parsed: {exc}", [METADATA_FILE]
            ) from exc

    def _write(self, data: MetadataFile) -> None:
        atomic_write(self._path, serialize(data))

    def load(self) -> MetadataFile:
        with self._lock:
            if not self._path.exists():
                data = MetadataFile(workspace=WorkspaceSection(name=self._workspace_name))
                self._write(data)
                return data
            try:
                return self._read()
            except CorruptMetadata as exc:
                _LOGGER.warning("%s; rebuilding from the working tree", exc.message)
                return self.rebuild()

    def rebuild(self) -> MetadataFile:
        """Recreate the metadata file from document frontmatter in the working tree."""
        with self._lock:
            data = MetadataFile(workspace=WorkspaceSection(name=self._workspace_name))
            for relative_path in iter_document_paths(self._root):
                data.documents[relative_path] = record_from_file(self._root, relative_path)
            self._write(data)
            _LOGGER.info("Rebuilt metadata for %d document(s)", len(data.documents))
            return data

    def workspace(self) -> WorkspaceSection:
        return self.load().workspace

    def get(self, path: str) -> MetadataRecord | None:
        return self.load().documents.get(path)

    def upsert(self, path: str, record: MetadataRecord) -> MetadataRecord:
        with self._lock:
            data = self.load()
            data.documents[path] = record
            self._write(data)
            return record

    def remove(self, path: str) -> bool:
        with self._lock:
            data = self.load()
            if data.documents.pop(path, None) is None:
                return False
            self._write(data)
            return True

    def list(self) -> dict[str, MetadataRecord]:
        """Return every record whose file still exists."""
        documents = self.load().documents
        return {
            path: documents[path]
            for path in sorted(documents)
            if (self._root / path).is_file()
        }

    def prune(self) -> list[str]:
        """Drop records whose files are gone from the working tree; returns their paths."""
        with self._lock:
            data = self.load()
            missing = sorted(path for path in data.documents if not (self._root / path).is_file())
            if missing:
                for path in missing:
                    del data.documents[path]
                self._write(data)
                _LOGGER.info("Dropped metadata for %d deleted document(s)", len(missing))
            return missing

    def discover(self) -> dict[str, MetadataRecord]:
        """Add records for documents present on disk but absent from the metadata file."""
        with self._lock:
            data = self.load()
            found = {}
            if not (self._root / DOCUMENTS_DIR).is_dir():
                return found
            for relative_path in iter_document_paths(self._root / DOCUMENTS_DIR):
                path = f"{DOCUMENTS_DIR}/{relative_path}"
                if path not in data.documents:
                    found[path] = record_from_file(self._root, path)
            if found:
                data.documents.update(found)
                self._write(data)
            return found

    def all_tags(self) -> dict[str, int]:
        counts: Counter[str] = Counter()
        for record in self.list().values():
            counts.update(record.tags)
        return dict(sorted(counts.items()))
