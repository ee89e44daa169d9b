"""Memory consolidation for Cortex.

Finds clusters of near-duplicate memories, asks the text service for one
merged memory per cluster, and replaces the originals with it.  A run is
all-or-nothing: the store is snapshotted first and restored if any step
fails, so the store never holds a mix of merged and un-merged duplicates.
Originals are marked ``superseded``, never deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .embeddings import EmbeddingRouter
from .errors import ConsolidationAborted, ServiceUnavailable
from .llm import MergedMemory, TextService
from .memory import ACTIVE, SUPERSEDED, Edge, Memory
from .similarity import memory_similarity
from .store import MemoryStore, remove_snapshot

logger = logging.getLogger(__name__)

AUTO_THRESHOLD = 0.7
"""Similarity threshold for automatic consolidation."""

MANUAL_THRESHOLD = 0.5
"""Similarity threshold for an explicit consolidation request."""

MANUAL_MAX_CLUSTER_SIZE = 8
"""Largest cluster a manual run will propose; longer chains are split."""

EXTRACTIONS_PER_CONSOLIDATION = 10
MAX_ACTIVE_MEMORIES = 80

META_EXTRACTIONS = "extractions_since_consolidation"
META_LAST_RUN = "last_consolidation_at"


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


def _eligible(memory: Memory) -> bool:
    return (
        memory.status == ACTIVE
        and not memory.is_code
        and not memory.pinned
        and (memory.embedding is not None or memory.local_embedding is not None)
    )


def find_clusters(
    memories: Sequence[Memory],
    threshold: float = AUTO_THRESHOLD,
    max_cluster_size: int | None = None,
) -> list[list[Memory]]:
    """Group same-type memories by single-linkage similarity.

    Two memories join the same cluster when a chain of pairs with
    ``similarity > threshold`` connects them, even if their own similarity
    is lower.  When *max_cluster_size* is set, an oversized group is split
    into connected chunks of at most that size, grown breadth-first from
    the oldest remaining member.

    Args:
        memories: Candidate memories (ineligible ones are ignored).
        threshold: Similarity a pair must exceed to link.
        max_cluster_size: Optional bound on cluster size.

    Returns:
        Clusters of two or more memories, largest first, each ordered by
        ``created_at``.
    """
    eligible = [m for m in memories if _eligible(m)]
    adjacency: dict[str, set[str]] = {m.id: set() for m in eligible}
    parent = {m.id: m.id for m in eligible}

    def find(x: str) -> str:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for i, a in enumerate(eligible):
        for b in eligible[i + 1 :]:
            if a.memory_type != b.memory_type:
                continue
            sim = memory_similarity(a, b)
            if sim is None or sim <= threshold:
                continue
            adjacency[a.id].add(b.id)
            adjacency[b.id].add(a.id)
            ra, rb = find(a.id), find(b.id)
            if ra != rb:
                parent[rb] = ra

    groups: dict[str, list[Memory]] = {}
    for mem in eligible:
        groups.setdefault(find(mem.id), []).append(mem)

    clusters: list[list[Memory]] = []
    for group in groups.values():
        if len(group) < 2:
            continue
        group.sort(key=lambda m: m.created_at)
        if max_cluster_size is not None and len(group) > max_cluster_size:
            clusters.extend(_split(group, adjacency, max_cluster_size))
        else:
            clusters.append(group)

    clusters.sort(key=lambda c: (-len(c), c[0].created_at))
    return clusters


def _split(
    group: list[Memory],
    adjacency: dict[str, set[str]],
    limit: int,
) -> list[list[Memory]]:
    by_id = {m.id: m for m in group}
    remaining = [m.id for m in group]
    chunks: list[list[Memory]] = []
    while remaining:
        seed = remaining[0]
        chunk = [seed]
        queue = [seed]
        taken = {seed}
        while queue and len(chunk) < limit:
            current = queue.pop(0)
            for nxt in sorted(adjacency[current], key=lambda i: by_id[i].created_at):
                if nxt in taken or nxt not in remaining:
                    continue
                chunk.append(nxt)
                taken.add(nxt)
                queue.append(nxt)
                if len(chunk) >= limit:
                    break
        remaining = [i for i in remaining if i not in taken]
        if len(chunk) >= 2:
            chunks.append(sorted((by_id[i] for i in chunk), key=lambda m: m.created_at))
    return chunks


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------


class StoreCheckpoint:
    """Snapshot, apply, then commit-or-restore.

    On entry a full snapshot of *store* is written.  Leaving the block
    normally discards the snapshot.  Leaving it with an exception restores
    every row from the snapshot before the exception propagates, unless
    nothing was committed inside the block: then the rolled-back
    transaction already left the store as it was, and skipping the
    restore keeps rows other processes wrote in the meantime.

    Usage::

        with StoreCheckpoint(store):
            ...  # writes that must land together
    """

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.path: str | None = None
        self._commits = 0

    def __enter__(self) -> StoreCheckpoint:
        self.path = self.store.snapshot()
        self._commits = self.store.commit_count
        logger.debug("Store checkpoint written to %s", self.path)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.path is None:
            return
        try:
            if exc_type is not None:
                if self.store.commit_count == self._commits:
                    logger.info("Nothing committed to %s since the checkpoint; no restore needed", self.store.path)
                else:
                    logger.warning("Restoring %s from checkpoint after %s", self.store.path, exc_type.__name__)
                    self.store.restore(self.path)
        finally:
            remove_snapshot(self.path)
            self.path = None


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


@dataclass
class MergeProposal:
    """One cluster and the memory that would replace it."""

    cluster: list[Memory]
    merged: Memory

    @property
    def original_ids(self) -> list[str]:
        return [m.id for m in self.cluster]


@dataclass
class ConsolidationResult:
    """Outcome of a consolidation run.

    Attributes:
        merged: Newly inserted merged memories.
        superseded_ids: Originals now marked ``superseded``.
        proposals: Every proposal considered.
        rejected: Proposals declined by the approval callback.
    """

    merged: list[Memory] = field(default_factory=list)
    superseded_ids: list[str] = field(default_factory=list)
    proposals: list[MergeProposal] = field(default_factory=list)
    rejected: list[MergeProposal] = field(default_factory=list)


def build_merged_memory(
    cluster: Sequence[Memory],
    merged: MergedMemory,
    now: datetime | None = None,
) -> Memory:
    """Combine the attributes of *cluster* around the merged text."""
    now = now or datetime.now(timezone.utc)
    tags: list[str] = list(merged.tags)
    for mem in cluster:
        tags.extend(mem.tags)
    head = cluster[0]
    return Memory(
        content=merged.content,
        summary=merged.summary,
        memory_type=head.memory_type,
        scope=head.scope,
        confidence=max(m.confidence for m in cluster),
        priority=max(m.priority for m in cluster),
        source_type="consolidation",
        source_session=head.source_session,
        source_context={"merged_from": [m.id for m in cluster]},
        tags=tags,
        access_count=sum(m.access_count for m in cluster),
        created_at=now,
        updated_at=now,
    )


def propose(
    clusters: Sequence[Sequence[Memory]],
    text_service: TextService,
    now: datetime | None = None,
) -> list[MergeProposal]:
    """Ask the text service for a merge of every cluster.

    Raises:
        ServiceUnavailable: If any merge call fails; no proposals are
            returned in that case.
    """
    proposals: list[MergeProposal] = []
    for cluster in clusters:
        merged = text_service.merge_cluster(cluster)
        proposals.append(MergeProposal(list(cluster), build_merged_memory(cluster, merged, now)))
    return proposals


# ---------------------------------------------------------------------------
# Consolidation run
# ---------------------------------------------------------------------------


def consolidate(
    store: MemoryStore,
    clusters: Sequence[Sequence[Memory]],
    text_service: TextService,
    embedder: EmbeddingRouter | None = None,
    approve: Callable[[list[MergeProposal]], list[MergeProposal]] | None = None,
    now: datetime | None = None,
) -> ConsolidationResult:
    """Merge each cluster into one memory, all-or-nothing.

    Merge proposals are requested first.  Then, under the store lock and
    a :class:`StoreCheckpoint`, every merged memory is inserted as active,
    its originals are marked superseded, and ``supersedes`` edges point
    from the merged memory to each original.

    Args:
        store: The store to consolidate.
        clusters: Output of :func:`find_clusters`.
        text_service: Produces merged bodies.
        embedder: Embeds merged memories after commit (optional).
        approve: Receives the proposals and returns the ones to commit.
            Used for manual runs; ``None`` commits everything.
        now: Current time.

    Returns:
        A :class:`ConsolidationResult`.

    Raises:
        ConsolidationAborted: If any step fails.  The store is left as it
            was before the run.
        LockTimeout: If the store lock cannot be acquired.
    """
    result = ConsolidationResult()
    if not clusters:
        return result
    now = now or datetime.now(timezone.utc)

    try:
        result.proposals = propose(clusters, text_service, now)
    except ServiceUnavailable as exc:
        raise ConsolidationAborted(f"Merge request failed: {exc}") from exc

    accepted = approve(list(result.proposals)) if approve is not None else list(result.proposals)
    accepted_ids = {id(p) for p in accepted}
    result.rejected = [p for p in result.proposals if id(p) not in accepted_ids]
    if not accepted:
        return result

    with store.lock:
        try:
            with StoreCheckpoint(store), store.transaction():
                for proposal in accepted:
                    _apply(store, proposal)
                store.set_meta(META_EXTRACTIONS, 0)
                store.set_meta(META_LAST_RUN, now.isoformat())
        except ConsolidationAborted:
            raise
        except Exception as exc:
            logger.exception("Consolidation failed; changes rolled back")
            raise ConsolidationAborted(f"Consolidation failed: {exc}") from exc

    for proposal in accepted:
        result.merged.append(proposal.merged)
        result.superseded_ids.extend(proposal.original_ids)

    if embedder is not None:
        for mem in result.merged:
            _embed_after_commit(store, embedder, mem)

    logger.info(
        "Consolidation (%s): %d clusters merged, %d originals superseded, %d rejected",
        store.scope,
        len(result.merged),
        len(result.superseded_ids),
        len(result.rejected),
    )
    return result


def _apply(store: MemoryStore, proposal: MergeProposal) -> None:
    for original in proposal.cluster:
        current = store.get(original.id)
        if current is None or current.status != ACTIVE:
            raise ConsolidationAborted(
                f"Memory {original.id} changed while consolidation was running."
            )
    store.insert(proposal.merged)
    for original in proposal.cluster:
        store.update(original.id, status=SUPERSEDED)
        store.add_edge(
            Edge(
                source_id=proposal.merged.id,
                target_id=original.id,
                relation_type="supersedes",
                strength=1.0,
            )
        )


def _embed_after_commit(store: MemoryStore, embedder: EmbeddingRouter, memory: Memory) -> None:
    if embedder.embed_memory(memory):
        store.update(
            memory.id,
            touch=False,
            embedding=memory.embedding,
            local_embedding=memory.local_embedding,
        )
    else:
        store.enqueue_backfill(memory.id)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


def should_consolidate(store: MemoryStore) -> bool:
    """Whether automatic consolidation is due.

    Due after :data:`EXTRACTIONS_PER_CONSOLIDATION` extraction events since
    the last run, or when more than :data:`MAX_ACTIVE_MEMORIES` memories are
    active.
    """
    extractions = int(store.get_meta(META_EXTRACTIONS, "0") or 0)
    if extractions >= EXTRACTIONS_PER_CONSOLIDATION:
        return True
    return store.count(status=ACTIVE) > MAX_ACTIVE_MEMORIES


def run_automatic(
    store: MemoryStore,
    text_service: TextService,
    embedder: EmbeddingRouter | None = None,
    now: datetime | None = None,
) -> ConsolidationResult | None:
    """Consolidate at :data:`AUTO_THRESHOLD` when a trigger fires.

    Returns:
        The result, or ``None`` when no trigger fired.
    """
    if not should_consolidate(store):
        return None
    clusters = find_clusters(store.list_active(), threshold=AUTO_THRESHOLD)
    if not clusters:
        store.set_meta(META_EXTRACTIONS, 0)
        return ConsolidationResult()
    return consolidate(store, clusters, text_service, embedder=embedder, now=now)
