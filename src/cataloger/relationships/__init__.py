"""Relationship inference."""

from cataloger.relationships.inferencer import (
    FactGraph,
    FactNode,
    RelationshipInferencer,
    referenced_type_names,
)

__all__ = ["FactGraph", "FactNode", "RelationshipInferencer", "referenced_type_names"]
