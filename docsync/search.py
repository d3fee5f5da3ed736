"""
Search index over workspace documents.

The index is derived data: it lives in an ignored SQLite file inside the
configuration directory and can always be rebuilt from the metadata store
and the working tree.

Three query tiers trade latency for reach:

- ``filter``: metadata only (title, tags, mode, modified range).
- ``search``: ranked full text over the current content, maintained
  incrementally on every write.
- ``HistorySearcher``: full text over past revisions read from the
  repository, bounded by a time budget and never exhaustive.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

from . import frontmatter
from .config import CONFIG_DIR, METADATA_FILE
from .errors import DocumentNotFound
from .git_client import EMPTY_TREE
from .models import MetadataRecord, SearchMatch, SearchResult

if TYPE_CHECKING:
    from .git_client import GitRepository

_LOGGER = logging.getLogger(__name__)

CONTEXT_CHARS = 50
MAX_MATCHES_PER_DOCUMENT = 20
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def find_matches(body: str, terms: Iterable[str], limit: int = MAX_MATCHES_PER_DOCUMENT) -> list[SearchMatch]:
    """Locate term occurrences with 1-indexed line/column and bounded context."""
    patterns = [re.compile(re.escape(term), re.IGNORECASE) for term in set(terms) if term]
    found: list[SearchMatch] = []
    for line_no, line in enumerate(body.splitlines(), start=1):
        for pattern in patterns:
            for hit in pattern.finditer(line):
                start, end = hit.span()
                found.append(
                    SearchMatch(
                        line=line_no,
                        column=start + 1,
                        text=line[start:end],
                        before=line[max(0, start - CONTEXT_CHARS) : start],
                        after=line[end : end + CONTEXT_CHARS],
                    )
                )
    found.sort(key=lambda match: (match.line, match.column))
    return found[:limit]


def relevance(terms: list[str], title: str, body: str, tags: Iterable[str]) -> float:
    """Score in [0, 1]: query-term coverage, weighted toward the title, plus a phrase bonus."""
    wanted = set(terms)
    if not wanted:
        return 0.0
    title_tokens = set(tokenize(title))
    all_tokens = title_tokens | set(tokenize(body)) | {tag.lower() for tag in tags}
    coverage = len(wanted & all_tokens) / len(wanted)
    if coverage == 0:
        return 0.0
    title_coverage = len(wanted & title_tokens) / len(wanted)
    phrase = " ".join(terms)
    phrase_bonus = 1.0 if phrase in " ".join(tokenize(title)) or phrase in " ".join(tokenize(body)) else 0.0
    score = 0.6 * coverage + 0.3 * title_coverage + 0.1 * phrase_bonus
    return round(min(score, 1.0), 4)


def rank(results: list[SearchResult]) -> list[SearchResult]:
    """Order by descending score, most recently modified first on ties."""
    results = sorted(results, key=lambda result: result.modified, reverse=True)
    return sorted(results, key=lambda result: result.score, reverse=True)


class SearchIndex:
    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS documents (
                path TEXT PRIMARY KEY,
                doc_id TEXT NOT NULL,
                title TEXT NOT NULL,
                mode TEXT NOT NULL,
                language TEXT,
                created TEXT NOT NULL,
                modified TEXT NOT NULL,
                body TEXT NOT NULL DEFAULT ''
            );
            CREATE TABLE IF NOT EXISTS document_tags (
                path TEXT NOT NULL,
                tag TEXT NOT NULL,
                PRIMARY KEY (path, tag)
            );
            CREATE TABLE IF NOT EXISTS terms (
                term TEXT NOT NULL,
                path TEXT NOT NULL,
                freq INTEGER NOT NULL,
                PRIMARY KEY (term, path)
            );
            CREATE INDEX IF NOT EXISTS idx_documents_modified ON documents(modified);
            CREATE INDEX IF NOT EXISTS idx_document_tags_tag ON document_tags(tag);
            CREATE INDEX IF NOT EXISTS idx_terms_path ON terms(path);
            """
        )
        self._conn.commit()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Search index is closed")
        return self._conn

    # -- maintenance --------------------------------------------------------

    def index_document(self, path: str, record: MetadataRecord, body: str) -> None:
        term_counts = Counter(tokenize(record.title))
        term_counts.update(tokenize(body))
        term_counts.update(tag.lower() for tag in record.tags)
        with self._lock, self.conn:
            self._delete(path)
            self.conn.execute(
                """
                INSERT INTO documents (path, doc_id, title, mode, language, created, modified, body)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (path, record.id, record.title, record.mode, record.language,
                 record.created, record.modified, body),
            )
            self.conn.executemany(
                "INSERT INTO document_tags (path, tag) VALUES (?, ?)",
                [(path, tag) for tag in record.tags],
            )
            self.conn.executemany(
                "INSERT INTO terms (term, path, freq) VALUES (?, ?, ?)",
                [(term, path, count) for term, count in term_counts.items()],
            )

    def _delete(self, path: str) -> None:
        for table in ("documents", "document_tags", "terms"):
            self.conn.execute(f"DELETE FROM {table} WHERE path = ?", (path,))

    def remove(self, path: str) -> None:
        with self._lock, self.conn:
            self._delete(path)

    def rebuild(self, records: dict[str, MetadataRecord], read_body: Callable[[str], str]) -> int:
        with self._lock:
            with self.conn:
                for table in ("documents", "document_tags", "terms"):
                    self.conn.execute(f"DELETE FROM {table}")
            for path, record in records.items():
                try:
                    body = read_body(path)
                except (FileNotFoundError, UnicodeDecodeError):
                    body = ""
                self.index_document(path, record, body)
        _LOGGER.debug("Indexed %d document(s)", len(records))
        return len(records)

    def paths(self) -> set[str]:
        with self._lock:
            rows = self.conn.execute("SELECT path FROM documents").fetchall()
        return {row["path"] for row in rows}

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -- tier 1 -------------------------------------------------------------

    def filter(
        self,
        *,
        title: str | None = None,
        tags: Iterable[str] | None = None,
        mode: str | None = None,
        modified_after: str | None = None,
        modified_before: str | None = None,
        limit: int = 50,
    ) -> list[SearchResult]:
        clauses: list[str] = []
        params: list[object] = []
        if title:
            clauses.append("title LIKE ?")
            params.append(f"%{title}%")
        if mode:
            clauses.append("mode = ?")
            params.append(mode)
        if modified_after:
            clauses.append("modified >= ?")
            params.append(modified_after)
        if modified_before:
            clauses.append("modified <= ?")
            params.append(modified_before)
        wanted_tags = sorted(set(tags or ()))
        if wanted_tags:
            placeholders = ", ".join("?" for _ in wanted_tags)
            clauses.append(
                f"""path IN (
                    SELECT path FROM document_tags WHERE tag IN ({placeholders})
                    GROUP BY path HAVING COUNT(DISTINCT tag) = ?
                )"""
            )
            params.extend(wanted_tags)
            params.append(len(wanted_tags))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM documents {where} ORDER BY modified DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            return [self._result(row, score=1.0, tier=1) for row in rows]

    def _tags_for(self, path: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT tag FROM document_tags WHERE path = ? ORDER BY tag", (path,)
        ).fetchall()
        return [row["tag"] for row in rows]

    def _result(self, row: sqlite3.Row, *, score: float, tier: int, **extra) -> SearchResult:
        return SearchResult(
            path=row["path"],
            title=row["title"],
            mode=row["mode"],
            tags=self._tags_for(row["path"]),
            modified=row["modified"],
            score=score,
            tier=tier,
            **extra,
        )

    # -- tier 2 -------------------------------------------------------------

    def search(self, query: str, limit: int = 50) -> list[SearchResult]:
        terms = tokenize(query)
        if not terms:
            return []
        placeholders = ", ".join("?" for _ in set(terms))
        with self._lock:
            candidates = self.conn.execute(
                f"""
                SELECT d.* FROM documents d
                WHERE d.path IN (SELECT DISTINCT path FROM terms WHERE term IN ({placeholders}))
                """,
                tuple(set(terms)),
            ).fetchall()
            results = []
            for row in candidates:
                tags = self._tags_for(row["path"])
                score = relevance(terms, row["title"], row["body"], tags)
                if score <= 0:
                    continue
                results.append(
                    self._result(row, score=score, tier=2, matches=find_matches(row["body"], terms))
                )
        return rank(results)[:limit]


class HistorySearcher:
    """Full-text search across past revisions, bounded by a time budget.

    A miss means "not found in the scanned history", never "does not exist".
    """

    def __init__(self, repository: GitRepository, budget_ms: int = 500, max_commits: int = 200) -> None:
        self._repository = repository
        self._budget = budget_ms / 1000
        self._max_commits = max_commits

    def search(self, query: str, *, exclude: Iterable[str] = (), limit: int = 50) -> list[SearchResult]:
        terms = tokenize(query)
        if not terms:
            return []
        deadline = time.monotonic() + self._budget
        seen = set(exclude)
        results: list[SearchResult] = []
        for commit in self._repository.log(max_count=self._max_commits):
            if time.monotonic() > deadline or len(results) >= limit:
                break
            base = commit.parents[0] if commit.parents else EMPTY_TREE
            for change in self._repository.changes_between(base, commit.hash):
                if change.change_type == "deleted" or change.path in seen or not self._is_document(change.path):
                    continue
                try:
                    text = self._repository.read_file_at_revision(commit.hash, change.path)
                except DocumentNotFound:
                    continue
                header, body = frontmatter.split(text)
                title = str(header.get("title") or Path(change.path).stem)
                tags = [str(tag) for tag in header.get("tags") or []]
                score = relevance(terms, title, body, tags)
                if score <= 0:
                    continue
                seen.add(change.path)
                results.append(
                    SearchResult(
                        path=change.path,
                        title=title,
                        mode=str(header.get("mode") or frontmatter.infer_mode(change.path)),
                        tags=tags,
                        modified=commit.date.isoformat(),
                        score=score,
                        tier=3,
                        revision=commit.hash,
                        matches=find_matches(body, terms),
                    )
                )
        if time.monotonic() > deadline:
            _LOGGER.debug("History search for %r stopped at its time budget", query)
        return rank(results)[:limit]

    @staticmethod
    def _is_document(path: str) -> bool:
        return not (
            path.startswith(f"{CONFIG_DIR}/") or path in {METADATA_FILE, ".gitignore", "README.md"}
        )
