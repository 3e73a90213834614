"""Collection name resolution."""

from cataloger.resolution.resolver import CollectionResolver, binding_confidence, pluralize, rank

__all__ = ["CollectionResolver", "binding_confidence", "pluralize", "rank"]
