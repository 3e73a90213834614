"""Privacy-safe structural sampling of resolved collections.

For each confidently resolved collection the sampler draws a bounded, seeded
sample and reduces it to field shapes: type, nullability, an approximate
length range and a coarse format signature. No field value survives the
reduction. Fields the PII classifier flags keep only their type.

Failures are isolated per collection: the caller always gets a Sample back,
degraded if something went wrong.
"""

from __future__ import annotations

import hashlib
import json
import re
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import structlog

from cataloger.config.models import SamplingConfig
from cataloger.core.errors import SamplingError
from cataloger.facts.models import FieldShape, ResolvedCollection, Sample, SampleStatus
from cataloger.sampling.pii import PiiClassifier
from cataloger.sampling.sources import DocumentSource

logger = structlog.get_logger()

_EXTENDED_JSON_TYPES = {
    "$oid": "objectid",
    "$date": "datetime",
    "$binary": "binary",
    "$numberLong": "integer",
    "$numberInt": "integer",
    "$numberDouble": "number",
    "$numberDecimal": "number",
}

_FORMATS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("email", re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")),
    ("uuid", re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")),
    ("objectid", re.compile(r"^[0-9a-fA-F]{24}$")),
    (
        "iso-date",
        re.compile(r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$"),
    ),
    ("url", re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://\S+$")),
    ("phone", re.compile(r"^(?:\+\d[\d\s().-]{6,}|\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4})$")),
    ("numeric", re.compile(r"^-?\d+(?:\.\d+)?$")),
    ("identifier", re.compile(r"^[A-Za-z0-9_:-]{1,64}$")),
)


def sample_seed(collection: str, scan_run_id: str) -> int:
    """Deterministic seed per (collection, scan run)."""
    digest = hashlib.sha256(f"{collection}\x1f{scan_run_id}".encode()).hexdigest()
    return int(digest[:16], 16)


def bucket_range(low: int, high: int) -> tuple[int, int]:
    """Widen a length range to powers of two so exact lengths are not disclosed."""
    lo = 0 if low <= 0 else 1 << (low.bit_length() - 1)
    hi = 0 if high <= 0 else 1 << (high - 1).bit_length()
    return lo, max(lo, hi)


def format_signature(value: str) -> str:
    for name, pattern in _FORMATS:
        if pattern.match(value):
            return name
    return "text"


def value_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime | date):
        return "datetime"
    if isinstance(value, bytes | bytearray):
        return "binary"
    if isinstance(value, Mapping):
        if len(value) == 1:
            key = next(iter(value))
            if key in _EXTENDED_JSON_TYPES:
                return _EXTENDED_JSON_TYPES[key]
        return "object"
    if isinstance(value, list | tuple):
        return "array"
    if type(value).__name__ == "ObjectId":
        return "objectid"
    return "mixed"


# =============================================================================
# Rate limiting
# =============================================================================


class RateLimiter:
    """Minimum spacing between request starts, shared across threads."""

    def __init__(
        self,
        min_interval_sec: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._interval = max(0.0, min_interval_sec)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_at = 0.0

    def wait(self) -> None:
        if self._interval <= 0:
            return
        with self._lock:
            now = self._clock()
            wait_s = max(0.0, self._next_at - now)
            if wait_s > 0:
                self._sleep(wait_s)
                now = self._clock()
            self._next_at = max(now, self._next_at) + self._interval


# =============================================================================
# Shape accumulation
# =============================================================================


@dataclass
class _FieldStats:
    types: set[str] = field(default_factory=set)
    present: int = 0
    nulls: int = 0
    objects: int = 0
    min_len: int | None = None
    max_len: int | None = None
    formats: set[str] = field(default_factory=set)
    pii: str | None = None
    is_element: bool = False
    parent: str | None = None

    def observe_length(self, n: int) -> None:
        self.min_len = n if self.min_len is None else min(self.min_len, n)
        self.max_len = n if self.max_len is None else max(self.max_len, n)


class _ShapeBuilder:
    """Folds documents into per-path statistics, classifying as it goes."""

    def __init__(self, classifier: PiiClassifier) -> None:
        self._classifier = classifier
        self._stats: dict[str, _FieldStats] = {}
        self.documents = 0

    def add_document(self, doc: Mapping[str, Any]) -> None:
        self.documents += 1
        self._walk_mapping(doc, prefix="", parent=None)

    def _key(self, key: object) -> str:
        text = str(key)
        # Map keys can themselves be data (e.g. keyed by email)
        return "<key>" if self._classifier.classify_value(text) else text

    def _walk_mapping(self, doc: Mapping[str, Any], prefix: str, parent: str | None) -> None:
        for key, value in doc.items():
            path = f"{prefix}.{self._key(key)}" if prefix else self._key(key)
            self._observe(path, value, parent=parent, is_element=False)

    def _observe(self, path: str, value: Any, *, parent: str | None, is_element: bool) -> None:
        stats = self._stats.setdefault(path, _FieldStats(is_element=is_element, parent=parent))
        stats.present += 1
        kind = value_type(value)
        stats.types.add(kind)

        if stats.pii is None:
            stats.pii = self._classifier.classify(path, (value,))

        if kind == "null":
            stats.nulls += 1
        elif kind == "string":
            stats.observe_length(len(value))
            stats.formats.add(format_signature(value))
        elif kind == "objectid":
            stats.formats.add("objectid")
        elif kind == "binary" and isinstance(value, bytes | bytearray):
            stats.observe_length(len(value))
        elif kind == "array":
            stats.observe_length(len(value))
            for element in value:
                self._observe(f"{path}[]", element, parent=path, is_element=True)
        elif kind == "object":
            stats.objects += 1
            self._walk_mapping(value, prefix=path, parent=path)

    def _redacted(self, path: str) -> bool:
        """A field is redacted when it or any enclosing field is PII."""
        current: str | None = path
        while current is not None:
            stats = self._stats[current]
            if stats.pii is not None:
                return True
            current = stats.parent
        return False

    def shapes(self) -> tuple[FieldShape, ...]:
        out = []
        for path in sorted(self._stats):
            stats = self._stats[path]
            concrete = stats.types - {"null"}
            type_name = concrete.pop() if len(concrete) == 1 else ("null" if not concrete else "mixed")

            if self._redacted(path):
                out.append(FieldShape(path=path, type=type_name, redacted=True))
                continue

            if stats.is_element:
                nullable = stats.nulls > 0
            else:
                parent_present = self._stats[stats.parent].objects if stats.parent else self.documents
                nullable = stats.nulls > 0 or stats.present < parent_present

            length = None
            if stats.min_len is not None and stats.max_len is not None:
                length = bucket_range(stats.min_len, stats.max_len)
            fmt = None
            if stats.formats:
                fmt = next(iter(stats.formats)) if len(stats.formats) == 1 else "mixed"

            out.append(
                FieldShape(
                    path=path,
                    type=type_name,
                    nullable=nullable,
                    length_range=length,
                    format_signature=fmt,
                )
            )
        return tuple(out)


# =============================================================================
# Sampler
# =============================================================================


class PrivacySampler:
    """Draws bounded samples and emits structure only.

    Concurrency against the data store is capped by a bounded semaphore and
    request starts are spaced by a rate limiter.
    """

    def __init__(
        self,
        source: DocumentSource,
        config: SamplingConfig | None = None,
        classifier: PiiClassifier | None = None,
    ) -> None:
        self._source = source
        self._config = config or SamplingConfig()
        self._classifier = classifier or PiiClassifier()
        self._slots = threading.BoundedSemaphore(self._config.max_concurrent)
        self._limiter = RateLimiter(self._config.min_interval_sec)
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_concurrent, thread_name_prefix="cataloger-sampler"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> PrivacySampler:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def eligible(self, resolved: ResolvedCollection) -> bool:
        return resolved.collection_name is not None and resolved.confidence >= self._config.min_confidence

    def sample_resolved(self, resolved: ResolvedCollection, scan_run_id: str) -> Sample | None:
        """Sample the collection an operation resolved to, if confident enough."""
        if resolved.collection_name is None:
            return None
        if not self.eligible(resolved):
            error = SamplingError.below_threshold(
                resolved.collection_name, resolved.confidence, self._config.min_confidence
            )
            logger.debug("sampling_skipped", collection=resolved.collection_name, reason=error.error_name)
            return None
        return self.sample(resolved.collection_name, scan_run_id)

    def sample(self, collection: str, scan_run_id: str) -> Sample:
        """Sample one collection. Never raises for source or classification failures."""
        try:
            if not self._source.read_only:
                raise SamplingError.not_read_only(collection)
            documents = self._fetch(collection, scan_run_id)
            shapes, count = self._reduce(collection, documents)
        except SamplingError as e:
            return self._degraded(collection, scan_run_id, e)

        status = SampleStatus.COMPLETE if count else SampleStatus.EMPTY
        logger.info("collection_sampled", collection=collection, documents=count, fields=len(shapes))
        return Sample(
            collection_name=collection,
            scan_run_id=scan_run_id,
            field_shapes=shapes,
            document_count=count,
            status=status,
        )

    def _fetch(self, collection: str, scan_run_id: str) -> list[dict[str, Any]]:
        timeout = self._config.timeout_sec
        if not self._slots.acquire(timeout=timeout):
            raise SamplingError.timeout(collection, timeout)
        try:
            self._limiter.wait()
            future = self._executor.submit(
                self._source.sample,
                collection,
                limit=self._config.max_documents,
                seed=sample_seed(collection, scan_run_id),
                timeout=timeout,
            )
            try:
                return future.result(timeout=timeout)
            except (FutureTimeoutError, TimeoutError) as e:
                future.cancel()
                raise SamplingError.timeout(collection, timeout) from e
            except Exception as e:
                # Only the exception class is kept; messages may echo data.
                raise SamplingError.connection_failed(collection, type(e).__name__) from e
        finally:
            self._slots.release()

    def _reduce(self, collection: str, documents: list[dict[str, Any]]) -> tuple[tuple[FieldShape, ...], int]:
        builder = _ShapeBuilder(self._classifier)
        budget = self._config.max_bytes
        used = 0
        try:
            for doc in documents[: self._config.max_documents]:
                size = len(json.dumps(doc, default=str).encode())
                if used + size > budget:
                    break
                used += size
                builder.add_document(doc)
            return builder.shapes(), builder.documents
        except Exception as e:
            raise SamplingError.classification_failed(collection, type(e).__name__) from e

    def _degraded(self, collection: str, scan_run_id: str, error: SamplingError) -> Sample:
        error_type = error.details.get("error_type")
        label = f"{error.error_name}:{error_type}" if error_type else error.error_name
        logger.warning("collection_sample_degraded", collection=collection, error=label)
        return Sample(
            collection_name=collection,
            scan_run_id=scan_run_id,
            field_shapes=(),
            document_count=0,
            status=SampleStatus.DEGRADED,
            error=label,
        )
