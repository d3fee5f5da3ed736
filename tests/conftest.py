"""
Shared pytest fixtures for docsync tests.

Every test runs against real git repositories under ``tmp_path``: a bare
repository plays the remote, and plain clones play other devices.
"""

from pathlib import Path

import git
import pytest
import pytest_asyncio

from docsync.config import Options
from docsync.service import Workspace


def configure_identity(repo: git.Repo, name: str = "Other Device") -> git.Repo:
    with repo.config_writer(config_level="repository") as writer:
        writer.set_value("user", "name", name)
        writer.set_value("user", "email", "other@example.com")
    return repo


def clone_device(remote: Path, target: Path) -> git.Repo:
    """Clone the remote as a second device with its own identity."""
    return configure_identity(git.Repo.clone_from(str(remote), str(target)))


def commit_file(repo: git.Repo, relative_path: str, content: str, message: str) -> str:
    path = Path(repo.working_tree_dir) / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    repo.git.add(relative_path)
    repo.git.commit("-m", message)
    return repo.head.commit.hexsha


@pytest.fixture
def options(tmp_path):
    return Options(
        workspace_path=str(tmp_path / "workspace"),
        author_name="Test User",
        author_email="test@example.com",
        network_timeout=30,
        history_budget_ms=5000,
        http_api_port=0,
    )


@pytest.fixture
def bare_remote(tmp_path):
    path = tmp_path / "remote.git"
    git.Repo.init(path, bare=True, initial_branch="main")
    return path


@pytest_asyncio.fixture
async def workspace(options):
    ws = await Workspace.open(options.workspace_path, options)
    yield ws
    await ws.close()


@pytest_asyncio.fixture
async def linked(workspace, bare_remote, tmp_path):
    """A workspace published to a bare remote plus a second device cloned from it."""
    await workspace.sync_with_remote(str(bare_remote))
    other = clone_device(bare_remote, tmp_path / "other")
    return workspace, other
