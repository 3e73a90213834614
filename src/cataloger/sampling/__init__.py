"""Privacy-safe structural sampling."""

from cataloger.sampling.pii import PiiClassifier
from cataloger.sampling.sampler import PrivacySampler, RateLimiter, bucket_range, format_signature, sample_seed
from cataloger.sampling.sources import DocumentSource, InMemoryDocumentSource, JsonLinesDocumentSource

__all__ = [
    "DocumentSource",
    "InMemoryDocumentSource",
    "JsonLinesDocumentSource",
    "PiiClassifier",
    "PrivacySampler",
    "RateLimiter",
    "bucket_range",
    "format_signature",
    "sample_seed",
]
