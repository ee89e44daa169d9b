"""Vector similarity for Cortex.

The single place where embedding vectors are compared numerically.  Pure
Python, no I/O.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from .errors import DimensionMismatch
from .memory import Memory


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        a: First vector.
        b: Second vector.

    Returns:
        Cosine similarity in the range ``[-1, 1]``.  Returns ``0.0`` if
        either vector has zero magnitude.

    Raises:
        DimensionMismatch: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise DimensionMismatch(
            f"Vectors must be the same length (got {len(a)} and {len(b)})."
        )

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for ai, bi in zip(a, b):
        dot += ai * bi
        mag_a += ai * ai
        mag_b += bi * bi

    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0

    sim = dot / (math.sqrt(mag_a) * math.sqrt(mag_b))
    # Guard against float drift pushing |sim| just past 1.
    return max(-1.0, min(1.0, sim))


def memory_similarity(a: Memory, b: Memory) -> float | None:
    """Cosine similarity of two memories' embeddings.

    Remote vectors are preferred; local vectors are used when both sides
    have one of matching length.  Returns ``None`` when the memories have
    no comparable vectors (for example raw ``code`` memories).
    """
    for left, right in ((a.embedding, b.embedding), (a.local_embedding, b.local_embedding)):
        if left and right and len(left) == len(right):
            return cosine_similarity(left, right)
    return None
