"""Scan planning: which files a run visits.

Full and integrity runs enumerate the whole tree. Incremental runs diff the
working tree against a baseline commit: ``--since`` when given, otherwise the
commit of the last successful incremental or full run. Files that run could
not commit are visited again. Without a usable baseline the plan falls back
to full enumeration.
"""

from __future__ import annotations

import os
from pathlib import Path

import structlog

from cataloger.config.constants import UNVERSIONED_COMMIT
from cataloger.config.models import ScanConfig
from cataloger.core.errors import ScanError
from cataloger.facts.models import ScanMode
from cataloger.git import GitError, GitRepo, RefNotFoundError
from cataloger.kb.store import KnowledgeBaseStore
from cataloger.scan.models import ScanPlan

logger = structlog.get_logger()


def repository_id(root: Path) -> str:
    """Stable repository identifier used in fact identity."""
    return root.resolve().as_posix()


class ScanPlanner:
    def __init__(self, root: Path, store: KnowledgeBaseStore, config: ScanConfig | None = None) -> None:
        self._root = root
        self._store = store
        self._config = config or ScanConfig()
        self._extensions = {e.lower() for e in self._config.included_extensions}
        self._excluded = set(self._config.excluded_dirs)
        self._git: GitRepo | None = None
        self._opened = False

    @property
    def repository(self) -> str:
        return repository_id(self._root)

    @property
    def git(self) -> GitRepo | None:
        if not self._opened:
            self._git = GitRepo.discover(self._root)
            self._opened = True
        return self._git

    def eligible(self, path: str) -> bool:
        parts = path.split("/")
        if any(part in self._excluded for part in parts[:-1]):
            return False
        return os.path.splitext(parts[-1])[1].lower() in self._extensions

    def plan(self, mode: ScanMode, *, since: str | None = None) -> ScanPlan:
        """Build the file list for a run.

        Raises ScanError.repository_unreadable if the tree cannot be enumerated
        and ScanError.invalid_baseline if ``since`` does not name a commit.
        """
        if not self._root.is_dir():
            raise ScanError.repository_unreadable(str(self._root), "not a directory")

        git = self.git
        commit_sha = self._commit_sha(git)
        files = self._enumerate(git)

        if mode is not ScanMode.INCREMENTAL:
            return self._full(mode, files, commit_sha)

        last = self._store.last_successful_run(self.repository)
        base = since
        if base is None and last is not None and last.commit_sha and last.commit_sha != UNVERSIONED_COMMIT:
            base = last.commit_sha

        if base is None or git is None:
            logger.info("incremental_baseline_missing", repository=self.repository)
            return self._full(mode, files, commit_sha)

        try:
            changed = git.changed_files_since(base)
        except RefNotFoundError as e:
            if since is not None:
                raise ScanError.invalid_baseline(since, "commit not found") from e
            logger.warning("incremental_baseline_unknown", base=base)
            return self._full(mode, files, commit_sha)
        except GitError as e:
            raise ScanError.invalid_baseline(base, str(e)) from e

        present = set(files)
        pending = [p for p in (last.pending_files if last else ()) if p in present]
        selected = sorted({p for p in changed if p in present} | set(pending))
        deleted = [p for p in changed if p not in present and self.eligible(p)]
        logger.info(
            "scan_planned",
            mode=mode.value,
            base=base,
            files=len(selected),
            pending=len(pending),
            deleted=len(deleted),
        )
        return ScanPlan(
            mode=mode,
            files=tuple(selected),
            commit_sha=commit_sha,
            base_commit_sha=base,
            deleted=tuple(deleted),
            full_enumeration=False,
        )

    def _full(self, mode: ScanMode, files: list[str], commit_sha: str) -> ScanPlan:
        logger.info("scan_planned", mode=mode.value, files=len(files), full=True)
        return ScanPlan(mode=mode, files=tuple(files), commit_sha=commit_sha)

    def _commit_sha(self, git: GitRepo | None) -> str:
        if git is None or git.is_unborn:
            return UNVERSIONED_COMMIT
        return git.head_sha()

    def _enumerate(self, git: GitRepo | None) -> list[str]:
        if git is not None:
            try:
                paths = git.tracked_files()
            except GitError as e:
                raise ScanError.repository_unreadable(str(self._root), str(e)) from e
            return [p for p in paths if self.eligible(p) and (self._root / p).is_file()]

        found: list[str] = []

        def _on_error(e: OSError) -> None:
            raise ScanError.repository_unreadable(str(self._root), e.strerror or type(e).__name__)

        for dirpath, dirnames, filenames in os.walk(self._root, onerror=_on_error):
            dirnames[:] = sorted(d for d in dirnames if d not in self._excluded)
            rel = Path(dirpath).relative_to(self._root)
            for name in filenames:
                path = (rel / name).as_posix()
                if self.eligible(path):
                    found.append(path)
        return sorted(found)
