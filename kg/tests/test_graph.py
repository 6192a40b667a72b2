from __future__ import annotations

import pytest

from kg.config import GraphConfig
from kg.graph import (
    RelatedItem,
    accumulate,
    boost_factor,
    build_related_graph,
    rank_neighbors,
    related_graph_payload,
    round_score,
    type_diverse_select,
)
from kg.schemas import GraphNode, PageRecord, RecordType
from kg.signals import Edge, Signal


def _node(slug: str, kind: str = "concept", numeric_id: str | None = None) -> GraphNode:
    return GraphNode(
        slug=slug,
        kind=kind,
        title=slug.title(),
        record_type=RecordType.entity,
        numeric_id=numeric_id,
    )


def _edge(a: str, b: str, weight: float, signal: Signal = Signal.declared_relation) -> Edge:
    return Edge(a=a, b=b, weight=weight, signal=signal)


def _item(slug: str, kind: str, score: float) -> RelatedItem:
    return RelatedItem(slug=slug, kind=kind, title=slug, score=score)


def test_boost_uses_neighbor_quality_and_rounds_half_up() -> None:
    nodes = {"source": _node("source"), "neighbor": _node("neighbor", "risk")}
    pages = {"neighbor": PageRecord.model_validate({"id": "neighbor", "quality": 80, "importance": 90})}
    adjacency = accumulate([_edge("source", "neighbor", 5.0, Signal.body_reference)])

    related = rank_neighbors(
        "source",
        adjacency,
        nodes=nodes,
        pages=pages,
        labels={},
        numeric_ids={"neighbor": "E9"},
        config=GraphConfig(),
    )

    # 5 * (1 + 80/40 + 90/400) = 16.125
    assert related == [RelatedItem(slug="neighbor", kind="risk", title="Neighbor", score=16.13, numeric_id="E9")]


def test_boost_defaults_for_unrated_pages() -> None:
    assert boost_factor(None, None) == pytest.approx(1.25)
    assert boost_factor(0, 0) == pytest.approx(1.0)
    assert boost_factor(None, None, default_quality=0, default_importance=0) == pytest.approx(1.0)


def test_round_score_is_half_up() -> None:
    assert round_score(16.125) == 16.13
    assert round_score(2.675) == 2.68
    assert round_score(1.004) == 1.0


def test_accumulate_sums_symmetrically_and_skips_self_edges() -> None:
    adjacency = accumulate(
        [
            _edge("a", "b", 10.0),
            _edge("b", "a", 5.0, Signal.body_reference),
            _edge("a", "b", 0.3, Signal.shared_tag),
            _edge("a", "a", 6.0, Signal.slug_prefix),
        ]
    )

    assert adjacency["a"]["b"] == adjacency["b"]["a"] == pytest.approx(15.3)
    assert "a" not in adjacency["a"]


def test_threshold_removes_weak_neighbors_and_isolated_records() -> None:
    nodes = {slug: _node(slug) for slug in ("a", "b", "c", "d")}
    edges = [
        _edge("a", "b", 0.7, Signal.shared_tag),
        _edge("c", "d", 0.9, Signal.shared_tag),
    ]

    graph = build_related_graph(edges, nodes=nodes, pages={}, labels={}, numeric_ids={}, config=GraphConfig())

    # 0.7 * 1.25 falls below 1.0; 0.9 * 1.25 is kept
    assert set(graph) == {"c", "d"}
    assert graph["c"][0].score == 1.13


def test_type_diverse_select_keeps_rare_kinds_within_cap() -> None:
    candidates = [
        _item("r1", "risk", 10.0),
        _item("r2", "risk", 9.0),
        _item("r3", "risk", 8.0),
        _item("r4", "risk", 7.0),
        _item("p1", "person", 1.5),
        _item("o1", "organization", 1.2),
    ]

    selected = type_diverse_select(candidates, limit=4, min_per_type=2)

    assert [item.slug for item in selected] == ["r1", "r2", "p1", "o1"]


def test_type_diverse_select_fills_remaining_slots_by_score() -> None:
    candidates = [
        _item("r1", "risk", 10.0),
        _item("r2", "risk", 9.0),
        _item("r3", "risk", 8.0),
        _item("p1", "person", 1.5),
    ]

    selected = type_diverse_select(candidates, limit=25, min_per_type=2)

    assert [item.slug for item in selected] == ["r1", "r2", "r3", "p1"]


def test_equal_scores_break_ties_by_slug() -> None:
    candidates = [_item("zeta", "risk", 5.0), _item("alpha", "risk", 5.0), _item("mid", "risk", 6.0)]

    selected = type_diverse_select(candidates, limit=25, min_per_type=2)

    assert [item.slug for item in selected] == ["mid", "alpha", "zeta"]


def test_build_related_graph_is_deterministic_and_carries_labels() -> None:
    nodes = {
        "miri": _node("miri", "organization", "E1"),
        "deceptive-alignment": _node("deceptive-alignment", "risk", "E2"),
        "anthropic": _node("anthropic", "organization"),
        "anthropic-ipo": _node("anthropic-ipo", "event"),
    }
    edges = [
        _edge("miri", "deceptive-alignment", 10.0),
        _edge("anthropic", "anthropic-ipo", 6.0, Signal.slug_prefix),
        _edge("miri", "ghost", 10.0),
    ]
    labels = {("miri", "deceptive-alignment"): "researches"}

    first = build_related_graph(
        edges, nodes=nodes, pages={}, labels=labels, numeric_ids={"anthropic": "E3"}, config=GraphConfig()
    )
    second = build_related_graph(
        list(reversed(edges)),
        nodes=nodes,
        pages={},
        labels=labels,
        numeric_ids={"anthropic": "E3"},
        config=GraphConfig(),
    )

    assert related_graph_payload(first) == related_graph_payload(second)
    payload = related_graph_payload(first)
    assert list(payload) == ["anthropic", "anthropic-ipo", "deceptive-alignment", "miri"]
    assert payload["miri"] == [
        {
            "id": "deceptive-alignment",
            "numericId": "E2",
            "type": "risk",
            "title": "Deceptive-Alignment",
            "score": 12.5,
            "label": "researches",
        }
    ]
    assert "label" not in payload["deceptive-alignment"][0]
    assert payload["anthropic-ipo"][0]["numericId"] == "E3"
    assert payload["anthropic"][0] == {"id": "anthropic-ipo", "type": "event", "title": "Anthropic-Ipo", "score": 7.5}


def test_max_per_entity_caps_output() -> None:
    nodes = {"hub": _node("hub")}
    edges = []
    for index in range(30):
        slug = f"leaf-{index:02d}"
        nodes[slug] = _node(slug)
        edges.append(_edge("hub", slug, 10.0 + index))

    graph = build_related_graph(edges, nodes=nodes, pages={}, labels={}, numeric_ids={}, config=GraphConfig())

    assert len(graph["hub"]) == 25
    assert graph["hub"][0].slug == "leaf-29"
    assert len(graph["leaf-00"]) == 1
