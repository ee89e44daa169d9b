"""Relevance scoring for Cortex.

Combines stored signals -- confidence, priority, graph centrality, and
access frequency -- into a single score that decides which memories reach
the push surface and how semantic-query candidates are ordered.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from .memory import Memory


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class RankingWeights:
    """Weights that control how each signal contributes to the score.

    Attributes:
        confidence: Weight for the memory's confidence.
        priority: Weight for ``priority / 10``.
        centrality: Weight for normalised in-degree.
        frequency: Weight for log-scaled access count.
        branch_boost: Added when the memory was captured on the caller's
            current branch.
    """

    confidence: float = 0.5
    priority: float = 0.2
    centrality: float = 0.15
    frequency: float = 0.15
    branch_boost: float = 0.1


@dataclass
class RankingContext:
    """What the caller is working on right now.

    Attributes:
        branch: Current git branch, if known.
        changed_files: Files modified in the working tree.
    """

    branch: str | None = None
    changed_files: Sequence[str] = field(default_factory=tuple)

    def matches(self, memory: Memory) -> bool:
        """Whether *memory* was captured in this branch or touches a changed file."""
        ctx = memory.source_context or {}
        if self.branch and ctx.get("branch") == self.branch:
            return True
        path = ctx.get("file_path")
        if path and self.changed_files:
            return any(_same_file(path, changed) for changed in self.changed_files)
        return False


def _same_file(a: str, b: str) -> bool:
    a = a.replace("\\", "/")
    b = b.replace("\\", "/")
    return a == b or a.endswith("/" + b) or b.endswith("/" + a)


class RelevanceEngine:
    """Scores and ranks memories.

    Args:
        weights: A :class:`RankingWeights` instance.
    """

    def __init__(self, weights: RankingWeights | None = None) -> None:
        self.weights = weights or RankingWeights()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(
        self,
        memory: Memory,
        centrality: float = 0.0,
        max_access_count: int = 0,
        context: RankingContext | None = None,
    ) -> float:
        """Compute the relevance score of a single memory.

        ``0.5*confidence + 0.2*(priority/10) + 0.15*centrality +
        0.15*log(access+1)/log(max_access+1)``, each term clamped to
        ``[0, 1]``, plus the branch boost when *context* matches.

        Args:
            memory: The memory to score.
            centrality: Normalised in-degree of the memory.
            max_access_count: Highest access count among the candidates.
            context: Current branch / changed files, if known.

        Returns:
            A non-negative float.
        """
        w = self.weights

        confidence_term = _clamp(memory.confidence)
        priority_term = _clamp(memory.priority / 10.0)
        centrality_term = _clamp(centrality)

        frequency_term = 0.0
        ceiling = max(max_access_count, memory.access_count)
        if ceiling > 0:
            frequency_term = _clamp(
                math.log(memory.access_count + 1) / math.log(ceiling + 1)
            )

        total = (
            w.confidence * confidence_term
            + w.priority * priority_term
            + w.centrality * centrality_term
            + w.frequency * frequency_term
        )

        if context is not None and context.branch:
            if (memory.source_context or {}).get("branch") == context.branch:
                total += w.branch_boost

        return total

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank(
        self,
        memories: Sequence[Memory],
        centrality: Mapping[str, float] | None = None,
        context: RankingContext | None = None,
    ) -> list[tuple[float, Memory]]:
        """Order memories for selection.

        Pinned memories come first (they bypass scoring), then the rest by
        descending score; ties are broken by ``created_at`` descending.

        Returns:
            ``(score, memory)`` pairs in selection order.  Pinned memories
            carry ``math.inf`` as their score.
        """
        centrality = centrality or {}
        max_access = max((m.access_count for m in memories), default=0)

        pinned: list[tuple[float, Memory]] = []
        scored: list[tuple[float, Memory]] = []
        for mem in memories:
            if mem.pinned:
                pinned.append((math.inf, mem))
                continue
            s = self.score(
                mem,
                centrality=centrality.get(mem.id, 0.0),
                max_access_count=max_access,
                context=context,
            )
            scored.append((s, mem))

        pinned.sort(key=lambda pair: pair[1].created_at, reverse=True)
        scored.sort(key=lambda pair: (pair[0], pair[1].created_at), reverse=True)
        return pinned + scored

    def __repr__(self) -> str:  # pragma: no cover
        w = self.weights
        return (
            f"RelevanceEngine(confidence={w.confidence}, priority={w.priority}, "
            f"centrality={w.centrality}, frequency={w.frequency})"
        )
