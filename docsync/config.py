from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError
from pydantic.alias_generators import to_camel

OPTIONS_PATH = Path(os.getenv("DOCSYNC_OPTIONS_FILE", "./options.json"))
LOCAL_DEV_OPTIONS = Path("./dev/options.json")
DEFAULT_HTTP_PORT = 7999

# On-disk workspace layout
CONFIG_DIR = ".docsync"
CONFIG_FILE = f"{CONFIG_DIR}/config.json"
STATE_FILE = f"{CONFIG_DIR}/state.json"
INDEX_FILE = f"{CONFIG_DIR}/index.db"
CACHE_DIR = f"{CONFIG_DIR}/cache"
METADATA_FILE = ".docsync-metadata.json"
DOCUMENTS_DIR = "documents"
LAYOUT_VERSION = "1.0"

DocumentMode = Literal["notes", "markdown", "code"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkspaceSettings(CamelModel):
    auto_commit: bool = True
    auto_sync: bool = False
    sync_interval: PositiveInt = 5
    default_mode: DocumentMode = "markdown"


class WorkspaceConfig(CamelModel):
    """Contents of the versioned ``.docsync/config.json``."""

    version: str = LAYOUT_VERSION
    created: str
    settings: WorkspaceSettings = Field(default_factory=WorkspaceSettings)


class Options(BaseModel):
    workspace_path: str = "./workspace"
    remote_name: str = "origin"
    branch: str = "main"
    access_token: str | None = None
    author_name: str = "DocSync User"
    author_email: str = "docsync@localhost"
    network_timeout: PositiveInt = 60
    history_budget_ms: PositiveInt = 500
    verify_ssl: bool = True
    log_level: str = Field(default="info", pattern=r"^(debug|info|warning|error)$")
    http_api_port: int = DEFAULT_HTTP_PORT

    @property
    def token(self) -> str | None:
        return self.access_token or os.getenv("GIT_ACCESS_TOKEN")


def load_options(path: Path | str | None = None) -> Options:
    """Load process options from ``path``, or from the first default location present."""
    candidates = [Path(path)] if path is not None else [OPTIONS_PATH, LOCAL_DEV_OPTIONS]
    source = next((candidate for candidate in candidates if candidate.is_file()), None)
    if source is None:
        looked_in = ", ".join(str(candidate) for candidate in candidates)
        raise FileNotFoundError(f"No options file found (looked in {looked_in})")
    try:
        # malformed JSON surfaces as a ValidationError too
        return Options.model_validate_json(source.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise RuntimeError(f"Invalid options in {source}: {exc}") from exc


def load_workspace_config(root: Path) -> WorkspaceConfig | None:
    path = root / CONFIG_FILE
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return WorkspaceConfig.model_validate(json.load(handle))


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"
