"""Typed relationship graph between memories.

New memories are auto-linked to similar existing ones, ambiguous pairs are
classified in a single batched text-service call, and in-degree centrality
feeds the ranking formula.  Traversal never goes beyond one hop.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .errors import DuplicateEdge, ServiceUnavailable
from .llm import CLASSIFIABLE_RELATIONS, EdgeClassification, TextService
from .memory import ACTIVE, Edge, Memory
from .similarity import memory_similarity
from .store import MemoryStore

logger = logging.getLogger(__name__)

RELATES_MIN = 0.1
"""Similarity above which a ``relates_to`` edge is created."""

RELATES_MAX = 0.5
"""Similarity below which a ``relates_to`` edge is created."""

CONSOLIDATION_SIMILARITY = 0.7
"""Similarity at or above which a pair is flagged for consolidation."""


@dataclass
class LinkResult:
    """Outcome of :func:`auto_link`.

    Attributes:
        edges: Edges created (``relates_to`` plus classified ones).
        flagged: Pairs similar enough to be consolidation candidates.
        ambiguous: Pairs between the link and consolidation bands.
        skipped_duplicates: Edges that already existed.
    """

    edges: list[Edge] = field(default_factory=list)
    flagged: list[tuple[Memory, Memory, float]] = field(default_factory=list)
    ambiguous: list[tuple[Memory, Memory, float]] = field(default_factory=list)
    skipped_duplicates: int = 0


def auto_link(
    store: MemoryStore,
    memory: Memory,
    candidates: Sequence[Memory] | None = None,
    text_service: TextService | None = None,
) -> LinkResult:
    """Link *memory* to similar existing memories of the same scope.

    * ``0.1 < sim < 0.5`` creates a bidirectional ``relates_to`` edge
      (skipped when the pair is already linked in either direction).
    * ``sim >= 0.7`` flags the pair for consolidation; no edge.
    * Flagged and in-between pairs go to one batched classification call
      when *text_service* is given.

    Args:
        store: Store holding *memory* (must already be inserted).
        memory: The new memory.
        candidates: Existing memories to compare against.  Defaults to all
            active memories in *store*.
        text_service: Optional classifier for edge-type refinement.

    Returns:
        A :class:`LinkResult`.
    """
    result = LinkResult()
    if memory.is_code:
        return result
    if candidates is None:
        candidates = store.list_active()

    for other in candidates:
        if other.id == memory.id or other.is_code or other.status != ACTIVE:
            continue
        if other.scope != memory.scope:
            continue
        sim = memory_similarity(memory, other)
        if sim is None:
            continue

        if sim >= CONSOLIDATION_SIMILARITY:
            result.flagged.append((memory, other, sim))
        elif RELATES_MIN < sim < RELATES_MAX:
            if store.edge_exists(memory.id, other.id, "relates_to", either_direction=True):
                result.skipped_duplicates += 1
                continue
            edge = _try_add(
                store,
                Edge(
                    source_id=memory.id,
                    target_id=other.id,
                    relation_type="relates_to",
                    strength=sim,
                    bidirectional=True,
                ),
                result,
            )
            if edge is not None:
                result.edges.append(edge)
        elif sim >= RELATES_MAX:
            result.ambiguous.append((memory, other, sim))

    if text_service is not None and (result.flagged or result.ambiguous):
        result.edges.extend(
            classify_pairs(store, result.flagged, result.ambiguous, text_service, result)
        )

    logger.debug(
        "auto_link %s: %d edges, %d flagged, %d ambiguous",
        memory.id,
        len(result.edges),
        len(result.flagged),
        len(result.ambiguous),
    )
    return result


def classify_pairs(
    store: MemoryStore,
    flagged: Sequence[tuple[Memory, Memory, float]],
    ambiguous: Sequence[tuple[Memory, Memory, float]],
    text_service: TextService,
    result: LinkResult | None = None,
) -> list[Edge]:
    """Refine edge types for all pairs with a single classification call.

    Flagged pairs only gain edges for relations other than ``relates_to``
    (they are headed for consolidation).  Invalid classifications are
    discarded, and a service failure yields no edges.
    """
    pairs = [(a, b) for a, b, _ in flagged] + [(a, b) for a, b, _ in ambiguous]
    if not pairs:
        return []
    flagged_keys = {(a.id, b.id) for a, b, _ in flagged}

    try:
        classifications = text_service.classify_edges(pairs)
    except ServiceUnavailable as exc:
        logger.warning("Edge classification skipped: %s", exc)
        return []

    created: list[Edge] = []
    for item in classifications:
        if not _valid_classification(item):
            logger.debug("Discarding invalid classification %r", item)
            continue
        if item.relation_type == "relates_to" and (item.source_id, item.target_id) in flagged_keys:
            continue
        edge = _try_add(
            store,
            Edge(
                source_id=item.source_id,
                target_id=item.target_id,
                relation_type=item.relation_type,
                strength=item.strength,
                bidirectional=item.bidirectional,
            ),
            result,
        )
        if edge is not None:
            created.append(edge)
    return created


def _valid_classification(item: EdgeClassification) -> bool:
    return item.relation_type in CLASSIFIABLE_RELATIONS and 0.0 <= item.strength <= 1.0


def _try_add(store: MemoryStore, edge: Edge, result: LinkResult | None) -> Edge | None:
    try:
        return store.add_edge(edge)
    except DuplicateEdge:
        if result is not None:
            result.skipped_duplicates += 1
        return None


def link(
    store: MemoryStore,
    source_id: str,
    target_id: str,
    relation_type: str,
    strength: float = 1.0,
    bidirectional: bool = False,
) -> Edge:
    """Create an edge on explicit request.

    This is the human-directed path and the only one through which a
    caller may create a ``supersedes`` edge by hand.

    Raises:
        DuplicateEdge: If the triple already exists.
        ValueError: If the relation type, strength or endpoints are invalid.
    """
    if not 0.0 <= strength <= 1.0:
        raise ValueError(f"Edge strength must be within [0, 1], got {strength}.")
    edge = Edge(
        source_id=source_id,
        target_id=target_id,
        relation_type=relation_type,
        strength=strength,
        bidirectional=bidirectional,
    )
    return store.add_edge(edge)


# ---------------------------------------------------------------------------
# Centrality
# ---------------------------------------------------------------------------


def centrality_map(store: MemoryStore) -> dict[str, float]:
    """Normalised in-degree of every memory with at least one incoming edge.

    One O(E) pass; values are derived per call and never persisted.
    """
    counts = store.in_degree_counts()
    if not counts:
        return {}
    top = max(counts.values())
    return {mid: n / top for mid, n in counts.items()}


def centrality(store: MemoryStore, memory_id: str) -> float:
    """In-degree of *memory_id* divided by the store's maximum in-degree."""
    return centrality_map(store).get(memory_id, 0.0)


def neighbours(store: MemoryStore, memory_id: str) -> list[tuple[Edge, Memory]]:
    """One-hop neighbours of *memory_id* with the connecting edge."""
    edges = store.get_edges(memory_id, direction="both")
    other_ids = [e.target_id if e.source_id == memory_id else e.source_id for e in edges]
    by_id = {m.id: m for m in store.get_many(other_ids)}
    return [
        (edge, by_id[other])
        for edge, other in zip(edges, other_ids)
        if other in by_id
    ]
