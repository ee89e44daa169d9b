"""Tests for auto-linking, edge classification and centrality."""

from __future__ import annotations

import json

import pytest
from conftest import FakeTextService, make_memory, sim_vector

from cortex.errors import DuplicateEdge
from cortex.graph import auto_link, centrality, centrality_map, link, neighbours
from cortex.memory import Edge


def _insert(store, *memories):
    for mem in memories:
        store.insert(mem)
    return memories


# ------------------------------------------------------------------
# auto_link bands
# ------------------------------------------------------------------


def test_relates_to_edge_in_link_band(store):
    existing, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.42)),
    )
    result = auto_link(store, new)

    assert len(result.edges) == 1
    edge = store.list_edges()[0]
    assert edge.relation_type == "relates_to"
    assert edge.bidirectional is True
    assert edge.strength == pytest.approx(0.42, abs=1e-5)
    assert {edge.source_id, edge.target_id} == {existing.id, new.id}


def test_rerun_creates_no_duplicate(store):
    _, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.42)),
    )
    auto_link(store, new)
    second = auto_link(store, new)
    assert second.edges == []
    assert second.skipped_duplicates == 1
    assert len(store.list_edges()) == 1


def test_existing_reverse_edge_counts_as_linked(store):
    existing, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.3)),
    )
    store.add_edge(Edge(existing.id, new.id, "relates_to", bidirectional=True))
    assert auto_link(store, new).edges == []


def test_high_similarity_flags_without_edge(store):
    _, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("near duplicate", vector=sim_vector(0.92)),
    )
    result = auto_link(store, new)
    assert result.edges == []
    assert len(result.flagged) == 1
    assert store.list_edges() == []


@pytest.mark.parametrize("sim", [0.0, 0.05])
def test_unrelated_pairs_get_nothing(store, sim):
    _, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(sim)),
    )
    result = auto_link(store, new)
    assert result.edges == [] and result.flagged == [] and result.ambiguous == []


def test_code_memories_are_never_linked(store):
    code = make_memory("x = 1", memory_type="code")
    prose = make_memory("prose", vector=[1.0, 0.0])
    _insert(store, code, prose)
    assert auto_link(store, code).edges == []
    assert auto_link(store, prose).edges == []


def test_vectors_of_other_kind_are_skipped(store):
    _, new = _insert(
        store,
        make_memory("local only", local_embedding=[1.0, 0.0]),
        make_memory("remote only", vector=sim_vector(0.3)),
    )
    assert auto_link(store, new).edges == []


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------


def test_single_classification_call_for_all_pairs(store):
    base = make_memory("base", vector=[1.0, 0.0])
    twin = make_memory("twin", vector=sim_vector(0.95))
    cousin = make_memory("cousin", vector=sim_vector(0.6))
    _insert(store, base, twin, cousin)
    new = make_memory("new", vector=[1.0, 0.0])
    store.insert(new)

    service = FakeTextService(classification="[]")
    result = auto_link(store, new, text_service=service)
    assert len(service.prompts) == 1
    assert service.prompts[0].startswith("Classify")
    assert len(result.flagged) == 2  # base and twin
    assert len(result.ambiguous) == 1


def test_invalid_classifications_are_discarded(store):
    existing, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.6)),
    )
    response = json.dumps(
        [
            {"pair": 0, "relation_type": "supersedes", "strength": 0.9},
            {"pair": 0, "relation_type": "causes", "strength": 0.9},
            {"pair": 0, "relation_type": "refines", "strength": 1.5},
            {"pair": 7, "relation_type": "refines", "strength": 0.5},
        ]
    )
    auto_link(store, new, text_service=FakeTextService(classification=response))
    assert store.list_edges() == []


def test_valid_classification_creates_edge(store):
    existing, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.6)),
    )
    response = '```json\n[{"pair": 0, "relation_type": "refines", "strength": 0.7}]\n```'
    result = auto_link(store, new, text_service=FakeTextService(classification=response))
    assert len(result.edges) == 1
    edge = result.edges[0]
    assert (edge.source_id, edge.target_id, edge.relation_type) == (new.id, existing.id, "refines")


def test_flagged_pairs_never_gain_relates_to(store):
    _, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.9)),
    )
    response = '[{"pair": 0, "relation_type": "relates_to", "strength": 0.9}]'
    auto_link(store, new, text_service=FakeTextService(classification=response))
    assert store.list_edges() == []


def test_classification_outage_yields_no_edges(store):
    _, new = _insert(
        store,
        make_memory("existing", vector=[1.0, 0.0]),
        make_memory("new", vector=sim_vector(0.6)),
    )
    result = auto_link(store, new, text_service=FakeTextService(available=False))
    assert result.edges == []


# ------------------------------------------------------------------
# Explicit link
# ------------------------------------------------------------------


def test_link_allows_supersedes(store):
    old, new = _insert(store, make_memory("old"), make_memory("new"))
    edge = link(store, new.id, old.id, "supersedes")
    assert edge.id is not None
    assert edge.strength == 1.0


def test_link_rejects_bad_input(store):
    a, b = _insert(store, make_memory("a"), make_memory("b"))
    with pytest.raises(ValueError):
        link(store, a.id, b.id, "relates_to", strength=1.5)
    with pytest.raises(ValueError):
        link(store, a.id, b.id, "friends_with")
    with pytest.raises(ValueError):
        link(store, a.id, a.id, "refines")
    link(store, a.id, b.id, "refines")
    with pytest.raises(DuplicateEdge):
        link(store, a.id, b.id, "refines")


# ------------------------------------------------------------------
# Centrality
# ------------------------------------------------------------------


def test_centrality_normalised_by_max_in_degree(store):
    hub, a, b, c = _insert(store, make_memory("hub"), make_memory("a"), make_memory("b"), make_memory("c"))
    link(store, a.id, hub.id, "exemplifies")
    link(store, b.id, hub.id, "exemplifies")
    link(store, c.id, a.id, "refines")

    assert centrality(store, hub.id) == pytest.approx(1.0)
    assert centrality(store, a.id) == pytest.approx(0.5)
    assert centrality(store, c.id) == 0.0


def test_centrality_empty_graph(store):
    assert centrality_map(store) == {}


def test_neighbours_one_hop(store):
    a, b, c = _insert(store, make_memory("a"), make_memory("b"), make_memory("c"))
    link(store, a.id, b.id, "refines")
    link(store, b.id, c.id, "refines")
    assert {m.id for _, m in neighbours(store, a.id)} == {b.id}
    assert {m.id for _, m in neighbours(store, b.id)} == {a.id, c.id}
