"""Exception taxonomy for Cortex.

Every error raised on purpose by the package derives from
:class:`CortexError` so callers at the host boundary can catch one type.
"""

from __future__ import annotations


class CortexError(Exception):
    """Base class for all Cortex errors."""


class StoreUnavailable(CortexError):
    """The SQLite store file is corrupt, unreadable, or cannot be created."""


class DuplicateEdge(CortexError):
    """An edge with the same (source, target, relation_type) already exists."""

    def __init__(self, source_id: str, target_id: str, relation_type: str) -> None:
        super().__init__(
            f"Edge {source_id} -[{relation_type}]-> {target_id} already exists."
        )
        self.source_id = source_id
        self.target_id = target_id
        self.relation_type = relation_type


class DimensionMismatch(CortexError, ValueError):
    """Two vectors of different length were compared."""


class ServiceUnavailable(CortexError):
    """An external text or embedding service failed or timed out."""


class EmptyExtraction(CortexError):
    """Code indexing found no text in the requested range."""


class LockTimeout(CortexError):
    """Another process held the store lock for longer than the bounded wait."""


class ConsolidationAborted(CortexError):
    """A consolidation run failed and the store was restored from its checkpoint."""
