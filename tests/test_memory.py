"""Tests for the Memory, Edge and ExtractionCheckpoint data model."""

from __future__ import annotations

import pytest

from cortex.memory import (
    ACTIVE,
    GLOBAL_SCOPE,
    PROJECT_SCOPE,
    Edge,
    ExtractionCheckpoint,
    Memory,
    make_summary,
    validate_scope,
)

# ------------------------------------------------------------------
# Construction and validation
# ------------------------------------------------------------------


class TestMemory:
    def test_defaults(self):
        mem = Memory(content="Tokens are refreshed by the gateway.")
        assert len(mem.id) == 32
        assert mem.memory_type == "context"
        assert mem.scope == PROJECT_SCOPE
        assert mem.status == ACTIVE
        assert mem.summary == "Tokens are refreshed by the gateway."
        assert mem.embedding is None
        assert mem.access_count == 0

    def test_empty_content_rejected(self):
        with pytest.raises(ValueError):
            Memory(content="   ")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Invalid memory type"):
            Memory(content="x", memory_type="trivia")

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError, match="Invalid memory status"):
            Memory(content="x", status="deleted")

    def test_code_memory_cannot_carry_embedding(self):
        with pytest.raises(ValueError, match="never carry an embedding"):
            Memory(content="x = 1", memory_type="code", embedding=[0.1, 0.2])
        with pytest.raises(ValueError):
            Memory(content="x = 1", memory_type="code", local_embedding=[0.1])

    def test_confidence_and_priority_are_clamped(self):
        mem = Memory(content="x", confidence=1.7, priority=42)
        assert mem.confidence == 1.0
        assert mem.priority == 10
        low = Memory(content="x", confidence=-0.5, priority=0)
        assert low.confidence == 0.0
        assert low.priority == 1

    def test_tags_are_deduplicated_in_order(self):
        mem = Memory(content="x", tags=["db", "auth", "db", " ", "auth", "cache"])
        assert mem.tags == ["db", "auth", "cache"]

    def test_empty_vectors_become_none(self):
        mem = Memory(content="x", embedding=[], local_embedding=[])
        assert mem.embedding is None
        assert mem.local_embedding is None

    def test_file_path_property(self):
        mem = Memory(content="x", source_context={"file_path": "src/a.ts"})
        assert mem.file_path == "src/a.ts"
        assert Memory(content="y").file_path is None


# ------------------------------------------------------------------
# Summary
# ------------------------------------------------------------------


class TestSummary:
    def test_short_text_unchanged(self):
        assert make_summary("short  text\nhere") == "short text here"

    def test_long_text_truncated_to_limit(self):
        summary = make_summary("word " * 100)
        assert len(summary) <= 200
        assert summary.endswith("...")

    def test_explicit_summary_is_bounded(self):
        mem = Memory(content="body", summary="s" * 500)
        assert len(mem.summary) == 200
        assert mem.summary.endswith("...")

    def test_summary_derived_from_content(self):
        mem = Memory(content="c" * 300)
        assert len(mem.summary) == 200


# ------------------------------------------------------------------
# Serialisation
# ------------------------------------------------------------------


def test_to_dict_from_dict_preserves_fields():
    mem = Memory(
        content="Use WAL mode for concurrent readers.",
        memory_type="decision",
        tags=["sqlite"],
        source_context={"branch": "main"},
        embedding=[0.5, 0.25],
        pinned=True,
    )
    restored = Memory.from_dict(mem.to_dict())
    assert restored.id == mem.id
    assert restored.memory_type == "decision"
    assert restored.tags == ["sqlite"]
    assert restored.source_context == {"branch": "main"}
    assert restored.embedding == [0.5, 0.25]
    assert restored.pinned is True
    assert restored.created_at == mem.created_at


def test_validate_scope():
    assert validate_scope(PROJECT_SCOPE) == PROJECT_SCOPE
    assert validate_scope(GLOBAL_SCOPE) == GLOBAL_SCOPE
    with pytest.raises(ValueError, match="Invalid scope"):
        validate_scope("team")


# ------------------------------------------------------------------
# Edge / checkpoint
# ------------------------------------------------------------------


class TestEdge:
    def test_self_loop_rejected(self):
        with pytest.raises(ValueError):
            Edge(source_id="a", target_id="a", relation_type="relates_to")

    def test_unknown_relation_rejected(self):
        with pytest.raises(ValueError, match="Invalid relation type"):
            Edge(source_id="a", target_id="b", relation_type="causes")

    def test_strength_clamped(self):
        assert Edge(source_id="a", target_id="b", relation_type="refines", strength=3).strength == 1.0

    def test_key(self):
        edge = Edge(source_id="a", target_id="b", relation_type="refines")
        assert edge.key == ("a", "b", "refines")


def test_checkpoint_defaults():
    cp = ExtractionCheckpoint(session_id="s1")
    assert cp.cursor_position == 0
    assert cp.extracted_at.tzinfo is not None
