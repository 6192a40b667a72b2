"""Merge signal edges into per-record "related items" lists.

Scores are raw summed edge weight times the neighbor page's quality boost.
Scores are rounded half-up to two decimals for output and ordering; the
``min_score`` threshold is applied to the unrounded value. Equal scores are
ordered by ascending slug so identical input always yields identical output.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from kg.config import GraphConfig
from kg.schemas import GraphNode, PageRecord
from kg.signals import Edge

SCORE_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class RelatedItem:
    slug: str
    kind: str
    title: str
    score: float
    numeric_id: str | None = None
    label: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.slug,
            "type": self.kind,
            "title": self.title,
            "score": self.score,
        }
        if self.numeric_id is not None:
            payload["numericId"] = self.numeric_id
        if self.label is not None:
            payload["label"] = self.label
        return payload


def accumulate(edges: Iterable[Edge]) -> dict[str, dict[str, float]]:
    adjacency: dict[str, dict[str, float]] = {}
    for edge in edges:
        if edge.a == edge.b or edge.weight <= 0:
            continue
        forward = adjacency.setdefault(edge.a, {})
        forward[edge.b] = forward.get(edge.b, 0.0) + edge.weight
        backward = adjacency.setdefault(edge.b, {})
        backward[edge.a] = backward.get(edge.a, 0.0) + edge.weight
    return adjacency


def boost_factor(
    quality: int | None,
    importance: int | None,
    *,
    default_quality: int = 5,
    default_importance: int = 50,
) -> float:
    q = default_quality if quality is None else quality
    imp = default_importance if importance is None else importance
    return 1.0 + q / 40.0 + imp / 400.0


def round_score(value: float) -> float:
    # Format first so binary noise such as 16.124999999999998 rounds as 16.125.
    return float(Decimal(f"{value:.9f}").quantize(SCORE_QUANTUM, rounding=ROUND_HALF_UP))


def _score_order(item: RelatedItem) -> tuple[float, str]:
    return (-item.score, item.slug)


def type_diverse_select(candidates: list[RelatedItem], *, limit: int, min_per_type: int) -> list[RelatedItem]:
    ordered = sorted(candidates, key=_score_order)
    by_kind: dict[str, list[RelatedItem]] = {}
    for item in ordered:
        by_kind.setdefault(item.kind, []).append(item)

    selected: dict[str, RelatedItem] = {}
    for items in by_kind.values():
        for item in items[:min_per_type]:
            selected[item.slug] = item

    for item in ordered:
        if len(selected) >= limit:
            break
        selected.setdefault(item.slug, item)

    return sorted(selected.values(), key=_score_order)[:limit]


def rank_neighbors(
    slug: str,
    adjacency: Mapping[str, Mapping[str, float]],
    *,
    nodes: Mapping[str, GraphNode],
    pages: Mapping[str, PageRecord],
    labels: Mapping[tuple[str, str], str],
    numeric_ids: Mapping[str, str],
    config: GraphConfig,
    limit: int | None = None,
) -> list[RelatedItem]:
    candidates: list[RelatedItem] = []
    for neighbor, raw_weight in adjacency.get(slug, {}).items():
        node = nodes.get(neighbor)
        if node is None or neighbor == slug:
            continue
        page = pages.get(neighbor)
        boosted = raw_weight * boost_factor(
            page.quality if page else None,
            page.importance if page else None,
            default_quality=config.default_quality,
            default_importance=config.default_importance,
        )
        if boosted < config.min_score:
            continue
        candidates.append(
            RelatedItem(
                slug=neighbor,
                kind=node.kind,
                title=node.title,
                score=round_score(boosted),
                numeric_id=numeric_ids.get(neighbor) or node.numeric_id,
                label=labels.get((slug, neighbor)),
            )
        )

    return type_diverse_select(
        candidates,
        limit=limit or config.max_per_entity,
        min_per_type=config.min_per_type,
    )


def build_related_graph(
    edges: Iterable[Edge],
    *,
    nodes: Mapping[str, GraphNode],
    pages: Mapping[str, PageRecord],
    labels: Mapping[tuple[str, str], str],
    numeric_ids: Mapping[str, str],
    config: GraphConfig,
) -> dict[str, list[RelatedItem]]:
    adjacency = accumulate(edge for edge in edges if edge.a in nodes and edge.b in nodes)
    graph: dict[str, list[RelatedItem]] = {}
    for slug in sorted(adjacency):
        related = rank_neighbors(
            slug,
            adjacency,
            nodes=nodes,
            pages=pages,
            labels=labels,
            numeric_ids=numeric_ids,
            config=config,
        )
        # Records without a qualifying neighbor are left out entirely.
        if related:
            graph[slug] = related
    return graph


def related_graph_payload(graph: Mapping[str, list[RelatedItem]]) -> dict[str, list[dict[str, Any]]]:
    return {slug: [item.as_dict() for item in graph[slug]] for slug in sorted(graph)}
