"""Git access for scan planning."""

from cataloger.git.errors import GitError, NotARepositoryError, RefNotFoundError, UnbornHeadError
from cataloger.git.ops import GitRepo

__all__ = [
    "GitRepo",
    "GitError",
    "NotARepositoryError",
    "RefNotFoundError",
    "UnbornHeadError",
]
