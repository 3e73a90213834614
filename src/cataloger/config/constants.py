"""Configuration constants.

Values here are fixed parts of the scanning model and are NOT user-configurable.
For configurable values, see models.py.
"""

# =============================================================================
# Collection resolution
# =============================================================================

LITERAL_CONFIDENCE = 1.0
"""A literal string argument names the collection directly."""

BINDING_BASE_CONFIDENCE = 1.0
BINDING_HOP_PENALTY = 0.15
"""Variable-binding confidence is max(0, BASE - PENALTY * hops)."""

ANNOTATION_CONFIDENCE = 0.9
"""Record type carries an explicit collection-name annotation."""

CONVENTION_CONFIDENCE = 0.4
"""Pluralised, lower-cased record type name."""

# =============================================================================
# Relationship inference
# =============================================================================

MIN_EDGE_CONFIDENCE = 0.2
"""Edges below this are reported as low-confidence candidates, never merged into the graph."""

LOOKUP_CONFIDENCE = 0.9
"""A ``$lookup`` stage joins the pipeline's collection to its ``from`` collection."""

FOREIGN_KEY_CONFIDENCE = 0.6
"""A ``customer_id``/``customerId`` field names the ``Customer`` record."""

# =============================================================================
# Search
# =============================================================================

SEARCH_DEFAULT_LIMIT = 50
SEARCH_MAX_LIMIT = 500

# =============================================================================
# Exit codes
# =============================================================================

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2

UNVERSIONED_COMMIT = "unversioned"
"""Commit SHA recorded for directories that are not git repositories."""
