"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages, and
provides the fixtures shared across test packages.
"""

import sys
from collections.abc import Callable, Generator
from pathlib import Path

import pygit2
import pytest

# Insert local src directory at the beginning of sys.path
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Force reimport of cataloger modules if already imported
for module_name in list(sys.modules.keys()):
    if module_name.startswith("cataloger"):
        del sys.modules[module_name]

from cataloger.config.models import KnowledgeBaseConfig  # noqa: E402
from cataloger.kb import KnowledgeBaseStore  # noqa: E402

SIGNATURE = pygit2.Signature("Test User", "test@example.com")


@pytest.fixture
def kb_config() -> KnowledgeBaseConfig:
    """Fast retry settings for tests."""
    return KnowledgeBaseConfig(
        retire_after_full_scans=1,
        busy_timeout_ms=200,
        max_retries=2,
        retry_base_delay_sec=0.01,
        retry_max_delay_sec=0.02,
    )


@pytest.fixture
def kb_store(tmp_path: Path, kb_config: KnowledgeBaseConfig) -> Generator[KnowledgeBaseStore, None, None]:
    """Knowledge base in a temporary SQLite file."""
    store = KnowledgeBaseStore.open(tmp_path / "kb" / "kb.db", kb_config)
    yield store
    store.close()


def _commit_all(repo: pygit2.Repository, message: str) -> str:
    """Stage every change in the working tree and commit; returns the new SHA."""
    repo.index.add_all()
    repo.index.write()
    tree = repo.index.write_tree()
    parents = [] if repo.head_is_unborn else [repo.head.target]
    oid = repo.create_commit("HEAD", SIGNATURE, SIGNATURE, message, tree, parents)
    return str(oid)


@pytest.fixture
def git_repo(tmp_path: Path) -> Generator[pygit2.Repository, None, None]:
    """Temporary git repository with an initial commit."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    repo = pygit2.init_repository(str(repo_path), initial_head="main")
    repo.config["user.name"] = "Test User"
    repo.config["user.email"] = "test@example.com"
    (repo_path / "README.md").write_text("# Test Repo\n")
    _commit_all(repo, "Initial commit")
    yield repo


@pytest.fixture
def commit() -> Callable[[pygit2.Repository, str], str]:
    """Stage and commit the whole working tree."""
    return _commit_all


@pytest.fixture
def write_file() -> Callable[[Path, str, str], Path]:
    """Write ``content`` to ``root/relative``, creating parent directories."""

    def _write(root: Path, relative: str, content: str) -> Path:
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    return _write
