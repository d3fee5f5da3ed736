from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import (
    CACHE_DIR,
    CONFIG_DIR,
    CONFIG_FILE,
    DOCUMENTS_DIR,
    INDEX_FILE,
    METADATA_FILE,
    STATE_FILE,
    Options,
    WorkspaceConfig,
    dump_json,
)
from .errors import InvalidPath
from .git_client import GitRepository
from .metadata import atomic_write
from .models import MetadataFile, WorkspaceSection, utc_now

_LOGGER = logging.getLogger(__name__)

INITIAL_COMMIT_MESSAGE = "Initialize DocSync workspace"

GITIGNORE = f"""# DocSync local files
{INDEX_FILE}
{INDEX_FILE}-*
{CACHE_DIR}/
{STATE_FILE}
.DS_Store
Thumbs.db
"""

README = """# {name}

This is a DocSync workspace. Documents are stored in the `{documents}/` directory.

## Structure

- `{config_dir}/` - Workspace configuration and local data
- `{metadata}` - Document metadata and tags
- `{documents}/` - Your documents

## Sync

This workspace is a Git repository. You can:
- Push to a remote repository for backup and sharing
- Pull changes from other devices
- View complete version history
"""


@dataclass
class BootstrapResult:
    created: bool
    head: str | None


class WorkspaceBootstrapper:
    """First-use initialization of a workspace directory.

    Re-running on an existing repository only repairs the local identity;
    it never re-initializes, rewrites files or commits.
    """

    def __init__(self, repository: GitRepository, options: Options) -> None:
        self._repository = repository
        self._options = options

    @property
    def root(self) -> Path:
        return self._repository.root

    def init_workspace(self) -> BootstrapResult:
        if self._repository.is_repository():
            self._repository.open()
            self._repair_identity()
            return BootstrapResult(created=False, head=self._repository.head())

        self._repository.initialize(self._options.branch)
        self._repository.set_identity(self._options.author_name, self._options.author_email)
        written = self._write_layout()
        self._repository.stage(written)
        head = self._repository.commit(INITIAL_COMMIT_MESSAGE)
        _LOGGER.info("Created workspace at %s (%s)", self.root, head[:7])
        return BootstrapResult(created=True, head=head)

    def clone(self, url: str, *, timeout: float | None = None) -> BootstrapResult:
        if self.root.exists() and any(self.root.iterdir()):
            raise InvalidPath(f"Cannot clone into non-empty directory {self.root}")
        GitRepository.clone(url, self.root, timeout=timeout)
        result = self.init_workspace()
        # a cloned workspace may predate the reserved layout; seed only what is missing
        self._write_layout()
        return BootstrapResult(created=False, head=result.head)

    def _repair_identity(self) -> None:
        name, email = self._repository.identity()
        if name and email:
            return
        _LOGGER.info("Configuring missing git identity for %s", self.root)
        self._repository.set_identity(
            self._options.author_name, self._options.author_email, overwrite=False
        )

    def _write_layout(self) -> list[str]:
        """Create any missing reserved file and return the layout paths."""
        name = self.root.name
        files = {
            ".gitignore": GITIGNORE,
            CONFIG_FILE: dump_json(
                WorkspaceConfig(created=utc_now()).model_dump(mode="json", by_alias=True)
            ),
            METADATA_FILE: dump_json(
                MetadataFile(workspace=WorkspaceSection(name=name)).model_dump(
                    mode="json", by_alias=True, exclude_none=True
                )
            ),
            f"{DOCUMENTS_DIR}/.gitkeep": "",
            "README.md": README.format(
                name=name,
                documents=DOCUMENTS_DIR,
                config_dir=CONFIG_DIR,
                metadata=METADATA_FILE,
            ),
        }
        for relative_path, content in files.items():
            target = self.root / relative_path
            if target.exists():
                continue
            atomic_write(target, content)
        (self.root / CACHE_DIR).mkdir(parents=True, exist_ok=True)
        return list(files)
