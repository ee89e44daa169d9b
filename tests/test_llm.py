"""Tests for text-service prompts and response decoding."""

from __future__ import annotations

import json

import pytest
from conftest import FakeTextService, make_memory

from cortex.errors import ServiceUnavailable
from cortex.llm import (
    OfflineTextService,
    build_extraction_prompt,
    create_text_service,
    extract_json_payload,
    parse_classifications,
    parse_extraction,
    parse_merge,
)

# ------------------------------------------------------------------
# JSON payload extraction
# ------------------------------------------------------------------


class TestExtractJsonPayload:
    def test_plain_json(self):
        assert extract_json_payload('[{"a": 1}]') == [{"a": 1}]

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"content": "x"}\n```\nDone.'
        assert extract_json_payload(text) == {"content": "x"}

    def test_surrounding_prose(self):
        assert extract_json_payload('Sure! [1, 2, 3] hope that helps') == [1, 2, 3]

    @pytest.mark.parametrize("text", ["", "   ", "no json here", "[unclosed"])
    def test_nothing_parses(self, text):
        assert extract_json_payload(text) is None


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------


def test_parse_extraction_valid_items():
    response = json.dumps(
        [
            {
                "type": "gotcha",
                "content": "  SQLite FTS5 needs the rowid join.  ",
                "summary": "FTS5 rowid join",
                "confidence": 0.8,
                "priority": 7,
                "tags": ["sqlite", "fts", "sqlite"],
            },
            {"type": "decision", "content": "Use WAL mode."},
        ]
    )
    proposed = parse_extraction(response)
    assert len(proposed) == 2
    first = proposed[0]
    assert first.memory_type == "gotcha"
    assert first.content == "SQLite FTS5 needs the rowid join."
    assert first.priority == 7
    assert first.tags == ("sqlite", "fts")
    assert proposed[1].confidence == 0.7
    assert proposed[1].priority == 5


@pytest.mark.parametrize(
    "item",
    [
        {"type": "code", "content": "x = 1"},
        {"type": "code_description", "content": "a file"},
        {"type": "trivia", "content": "fun fact"},
        {"type": "context", "content": "   "},
        {"type": "context", "content": "x", "confidence": 1.4},
        {"type": "context", "content": "x", "priority": 11},
        {"type": "context", "content": "x", "priority": True},
        {"type": "context", "content": "x", "tags": "not-a-list"},
        "just a string",
    ],
)
def test_parse_extraction_drops_invalid(item):
    assert parse_extraction(json.dumps([item])) == []


def test_parse_extraction_accepts_wrapped_object():
    response = '{"memories": [{"type": "pattern", "content": "Repositories return dataclasses."}]}'
    assert [p.memory_type for p in parse_extraction(response)] == ["pattern"]


def test_parse_extraction_malformed():
    assert parse_extraction("I could not find anything.") == []


def test_extraction_prompt_includes_git_context():
    prompt = build_extraction_prompt(
        "user: hello",
        {"branch": "main", "recent_commits": ["fix a", "fix b"], "changed_files": []},
    )
    assert prompt.startswith("You maintain")
    assert "- branch: main" in prompt
    assert "fix a, fix b" in prompt
    assert "- changed_files: (none)" in prompt
    assert prompt.rstrip().endswith("user: hello")


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------


def test_parse_classifications_maps_pairs():
    a, b, c = make_memory("a"), make_memory("b"), make_memory("c")
    response = json.dumps(
        [
            {"pair": 1, "relation_type": "contradicts", "strength": 0.6, "bidirectional": True},
            {"pair": 1, "relation_type": "refines", "strength": 0.6},
            {"pair": 0, "relation_type": "exemplifies", "strength": 0.3},
        ]
    )
    result = parse_classifications(response, [(a, b), (a, c)])
    assert [(r.source_id, r.target_id, r.relation_type) for r in result] == [
        (a.id, c.id, "contradicts"),
        (a.id, b.id, "exemplifies"),
    ]
    assert result[0].bidirectional is True


@pytest.mark.parametrize(
    "item",
    [
        {"pair": 0, "relation_type": "source_of", "strength": 0.5},
        {"pair": 0, "relation_type": "supersedes", "strength": 0.5},
        {"pair": 0, "relation_type": "refines", "strength": -0.1},
        {"pair": 0, "relation_type": "refines"},
        {"pair": "0", "relation_type": "refines", "strength": 0.5},
        {"pair": 0, "relation_type": "refines", "strength": 0.5, "bidirectional": "yes"},
    ],
)
def test_parse_classifications_drops_invalid(item):
    a, b = make_memory("a"), make_memory("b")
    assert parse_classifications(json.dumps([item]), [(a, b)]) == []


# ------------------------------------------------------------------
# Merge
# ------------------------------------------------------------------


def test_parse_merge():
    merged = parse_merge('{"content": "Combined fact.", "summary": "Combined", "tags": ["x"]}')
    assert merged.content == "Combined fact."
    assert merged.tags == ("x",)


@pytest.mark.parametrize("text", ["[]", '{"summary": "no content"}', '{"content": ""}', "nope"])
def test_parse_merge_invalid(text):
    assert parse_merge(text) is None


def test_merge_cluster_raises_on_undecodable_response():
    service = FakeTextService(merge="I refuse.")
    with pytest.raises(ServiceUnavailable):
        service.merge_cluster([make_memory("a"), make_memory("b")])


# ------------------------------------------------------------------
# Services
# ------------------------------------------------------------------


def test_offline_service_always_fails():
    with pytest.raises(ServiceUnavailable):
        OfflineTextService().extract("user: hi")


def test_create_text_service_without_key():
    assert isinstance(create_text_service(), OfflineTextService)


def test_classify_edges_skips_empty_input():
    service = FakeTextService()
    assert service.classify_edges([]) == []
    assert service.prompts == []
