"""Repository access layer - owns pygit2.Repository and exposes the facts a scan needs."""

from __future__ import annotations

import contextlib
from pathlib import Path

import pygit2
import structlog

from cataloger.git.errors import (
    GitError,
    NotARepositoryError,
    RefNotFoundError,
    UnbornHeadError,
)

logger = structlog.get_logger()

# Working tree status flags that mean "content differs from HEAD"
_CHANGED_STATUS = (
    pygit2.GIT_STATUS_WT_NEW
    | pygit2.GIT_STATUS_WT_MODIFIED
    | pygit2.GIT_STATUS_WT_DELETED
    | pygit2.GIT_STATUS_WT_RENAMED
    | pygit2.GIT_STATUS_WT_TYPECHANGE
    | pygit2.GIT_STATUS_INDEX_NEW
    | pygit2.GIT_STATUS_INDEX_MODIFIED
    | pygit2.GIT_STATUS_INDEX_DELETED
    | pygit2.GIT_STATUS_INDEX_RENAMED
    | pygit2.GIT_STATUS_INDEX_TYPECHANGE
)


class GitRepo:
    """Owns pygit2.Repository and provides normalized access to repo state."""

    def __init__(self, repo_path: Path | str) -> None:
        self._path = Path(repo_path)
        try:
            self._repo = pygit2.Repository(str(self._path))
        except pygit2.GitError as e:
            raise NotARepositoryError(str(self._path)) from e

    @classmethod
    def discover(cls, path: Path | str) -> GitRepo | None:
        """Open the repository at path, or None if path is not inside one."""
        try:
            return cls(path)
        except NotARepositoryError:
            return None

    @property
    def repo(self) -> pygit2.Repository:
        return self._repo

    @property
    def path(self) -> Path:
        return Path(self._repo.workdir) if self._repo.workdir else self._path

    @property
    def is_unborn(self) -> bool:
        return self._repo.head_is_unborn

    def head_sha(self) -> str:
        """Hex SHA of the HEAD commit."""
        if self.is_unborn:
            raise UnbornHeadError(str(self.path))
        return str(self._repo.head.peel(pygit2.Commit).id)

    def resolve_commit(self, ref: str) -> pygit2.Commit:
        try:
            obj = self._repo.revparse_single(ref)
            return obj.peel(pygit2.Commit)  # type: ignore[no-any-return]
        except (KeyError, ValueError, pygit2.GitError) as e:
            raise RefNotFoundError(ref) from e

    def normalize_path(self, path: str | Path) -> str:
        p = Path(path)
        if p.is_absolute():
            with contextlib.suppress(ValueError):
                p = p.relative_to(self.path)
        return p.as_posix()

    def tracked_files(self) -> list[str]:
        """Paths in the index plus untracked, non-ignored working tree files."""
        paths = {entry.path for entry in self._repo.index}
        for path, flags in self._repo.status().items():
            if flags & pygit2.GIT_STATUS_WT_NEW:
                paths.add(path)
            elif flags & pygit2.GIT_STATUS_WT_DELETED:
                paths.discard(path)
        return sorted(paths)

    def changed_files_since(self, base_sha: str) -> list[str]:
        """Paths whose content differs between base_sha and the working tree.

        Union of the committed diff base..HEAD and uncommitted working-tree
        changes. Deleted paths are included; callers decide what absence means.
        """
        base = self.resolve_commit(base_sha)
        changed: set[str] = set()

        if not self.is_unborn:
            head = self._repo.head.peel(pygit2.Commit)
            if head.id != base.id:
                try:
                    diff = self._repo.diff(base, head)
                except pygit2.GitError as e:
                    raise GitError(f"Cannot diff {base_sha}..HEAD: {e}") from e
                for delta in diff.deltas:
                    if delta.old_file.path:
                        changed.add(delta.old_file.path)
                    if delta.new_file.path:
                        changed.add(delta.new_file.path)

        for path, flags in self._repo.status().items():
            if flags & _CHANGED_STATUS:
                changed.add(path)

        logger.debug("git_changed_files", base=base_sha, count=len(changed))
        return sorted(changed)
