"""Document sources the sampler reads from.

A source must be read-only; the sampler refuses anything else. The bundled
JSON-lines source reads ``<directory>/<collection>.jsonl`` exports, which is
how production collections are usually handed to an offline scanner.
"""

from __future__ import annotations

import json
import random
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger()


@runtime_checkable
class DocumentSource(Protocol):
    """Read-only access to sampled documents of a collection."""

    @property
    def read_only(self) -> bool:
        """True if the source cannot modify stored data."""
        ...

    def sample(
        self,
        collection: str,
        *,
        limit: int,
        seed: int,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        """Return up to ``limit`` documents. Same seed, same documents.

        Raises TimeoutError when ``timeout`` elapses and ConnectionError (or
        OSError) when the store cannot be reached.
        """
        ...


class JsonLinesDocumentSource:
    """Seeded reservoir sample over a JSON-lines export per collection."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    @property
    def read_only(self) -> bool:
        return True

    def _path_for(self, collection: str) -> Path:
        if not collection or Path(collection).name != collection or collection.startswith("."):
            raise ValueError("collection name is not a plain file name")
        return self._directory / f"{collection}.jsonl"

    def sample(
        self,
        collection: str,
        *,
        limit: int,
        seed: int,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        if not self._directory.is_dir():
            raise ConnectionError(f"document source directory missing: {self._directory}")
        path = self._path_for(collection)
        if not path.exists():
            return []

        deadline = time.monotonic() + timeout if timeout is not None else None
        rng = random.Random(seed)
        reservoir: list[dict[str, Any]] = []
        seen = 0
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                if deadline is not None and time.monotonic() > deadline:
                    raise TimeoutError(collection)
                line = line.strip()
                if not line:
                    continue
                try:
                    doc = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(doc, dict):
                    continue
                seen += 1
                if len(reservoir) < limit:
                    reservoir.append(doc)
                else:
                    j = rng.randrange(seen)
                    if j < limit:
                        reservoir[j] = doc

        logger.debug("source_sampled", collection=collection, scanned=seen, drawn=len(reservoir))
        return reservoir


class InMemoryDocumentSource:
    """Documents held in memory, for embedding the sampler and for tests."""

    def __init__(
        self,
        collections: Mapping[str, Sequence[Mapping[str, Any]]],
        *,
        read_only: bool = True,
    ) -> None:
        self._collections = {name: [dict(d) for d in docs] for name, docs in collections.items()}
        self._read_only = read_only

    @property
    def read_only(self) -> bool:
        return self._read_only

    def sample(
        self,
        collection: str,
        *,
        limit: int,
        seed: int,
        timeout: float | None = None,  # noqa: ARG002
    ) -> list[dict[str, Any]]:
        docs = self._collections.get(collection, [])
        if len(docs) <= limit:
            return [dict(d) for d in docs]
        return [dict(d) for d in random.Random(seed).sample(docs, limit)]
