"""Tests for cosine similarity and memory-to-memory comparison."""

from __future__ import annotations

import pytest
from conftest import make_memory, sim_vector

from cortex.errors import DimensionMismatch
from cortex.similarity import cosine_similarity, memory_similarity

# ------------------------------------------------------------------
# cosine_similarity
# ------------------------------------------------------------------


def test_identical_vectors():
    assert cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]) == pytest.approx(1.0)


def test_orthogonal_vectors():
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)


def test_opposite_vectors():
    assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)


def test_zero_magnitude_returns_zero():
    """A zero vector has no direction, so the similarity is 0."""
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0


def test_dimension_mismatch():
    with pytest.raises(DimensionMismatch):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_dimension_mismatch_is_value_error():
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 2.0])


def test_symmetric_and_bounded():
    a = [0.12, -0.7, 3.3, 0.0]
    b = [1.5, 0.2, -0.4, 2.2]
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_scale_invariant():
    assert cosine_similarity([1.0, 2.0], [10.0, 20.0]) == pytest.approx(1.0)


# ------------------------------------------------------------------
# memory_similarity
# ------------------------------------------------------------------


def test_memory_similarity_remote_vectors():
    a = make_memory("a", vector=[1.0, 0.0])
    b = make_memory("b", vector=sim_vector(0.42))
    assert memory_similarity(a, b) == pytest.approx(0.42)


def test_memory_similarity_prefers_remote_over_local():
    a = make_memory("a", vector=[1.0, 0.0], local_embedding=[0.0, 1.0, 0.0])
    b = make_memory("b", vector=[1.0, 0.0], local_embedding=[1.0, 0.0, 0.0])
    assert memory_similarity(a, b) == pytest.approx(1.0)


def test_memory_similarity_falls_back_to_local():
    a = make_memory("a", local_embedding=[1.0, 0.0, 0.0])
    b = make_memory("b", vector=[1.0, 0.0], local_embedding=[0.0, 1.0, 0.0])
    assert memory_similarity(a, b) == pytest.approx(0.0)


def test_memory_similarity_none_without_comparable_vectors():
    code = make_memory("def f(): pass", memory_type="code")
    prose = make_memory("a function", vector=[1.0, 0.0])
    assert memory_similarity(code, prose) is None
