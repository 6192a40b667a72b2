"""Relatedness signals between records.

Every collector is a pure function returning ``Edge`` values. Edges are
undirected; the graph builder sums them. Directional relationship labels are
kept apart in ``directional_labels`` because they are not part of the weight.
"""

from __future__ import annotations

import bisect
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from kg.schemas import EntityRecord, parse_numeric_id

BODY_REFERENCE_RE = re.compile(r'<EntityLink\s+[^>]*\bid="(?P<target>[^"]+)"')
UNLABELED_RELATIONSHIP = "related"

DECLARED_RELATION_WEIGHT = 10.0
SLUG_PREFIX_WEIGHT = 6.0
BODY_REFERENCE_WEIGHT = 5.0
SIMILARITY_MAX_WEIGHT = 3.0
SHARED_TAG_NUMERATOR = 2.0

DEFAULT_INVERSE_LABELS: dict[str, str] = {
    "causes": "caused by",
    "cause": "caused by",
    "mitigates": "mitigated by",
    "mitigated-by": "mitigates",
    "mitigation": "mitigated by",
    "requires": "required by",
    "enables": "enabled by",
    "blocks": "blocked by",
    "supersedes": "superseded by",
    "increases": "increased by",
    "decreases": "decreased by",
    "supports": "supported by",
    "measures": "measured by",
    "measured-by": "measures",
    "analyzed-by": "analyzes",
    "analyzes": "analyzed by",
    "child-of": "parent of",
    "composed-of": "component of",
    "component": "composed of",
    "addresses": "addressed by",
    "affects": "affected by",
    "amplifies": "amplified by",
    "contributes-to": "receives contribution from",
    "driven-by": "drives",
    "driver": "driven by",
    "drives": "driven by",
    "leads-to": "leads",
    "shaped-by": "shapes",
    "prerequisite": "depends on",
    "research": "researched by",
    "models": "modeled by",
}


class Signal(str, Enum):
    declared_relation = "declared_relation"
    slug_prefix = "slug_prefix"
    body_reference = "body_reference"
    similarity = "similarity"
    shared_tag = "shared_tag"


@dataclass(frozen=True)
class Edge:
    a: str
    b: str
    weight: float
    signal: Signal


@dataclass(frozen=True)
class SimilarPage:
    slug: str
    similarity: float


def declared_relation_edges(
    entities: Sequence[EntityRecord],
    known: set[str],
    *,
    weight: float = DECLARED_RELATION_WEIGHT,
) -> list[Edge]:
    edges: list[Edge] = []
    for entity in entities:
        seen: set[str] = set()
        for entry in entity.related_entries:
            target = entry.target
            if target == entity.slug or target in seen or target not in known:
                continue
            seen.add(target)
            edges.append(Edge(a=entity.slug, b=target, weight=weight, signal=Signal.declared_relation))
    return edges


def slug_prefix_edges(slugs: Iterable[str], *, weight: float = SLUG_PREFIX_WEIGHT) -> list[Edge]:
    ordered = sorted(set(slugs))
    edges: list[Edge] = []
    for slug in ordered:
        prefix = f"{slug}-"
        index = bisect.bisect_left(ordered, prefix)
        while index < len(ordered) and ordered[index].startswith(prefix):
            edges.append(Edge(a=slug, b=ordered[index], weight=weight, signal=Signal.slug_prefix))
            index += 1
    return edges


def body_reference_edges(
    bodies: Mapping[str, str],
    known: set[str],
    numeric_to_slug: Mapping[str, str],
    *,
    weight: float = BODY_REFERENCE_WEIGHT,
) -> list[Edge]:
    """One edge per source page and referenced record, however often it is linked."""
    edges: list[Edge] = []
    for source in sorted(bodies):
        seen: set[str] = set()
        for match in BODY_REFERENCE_RE.finditer(bodies[source]):
            target = match.group("target").strip()
            if parse_numeric_id(target) is not None:
                target = numeric_to_slug.get(target, "")
            if not target or target == source or target in seen or target not in known:
                continue
            seen.add(target)
            edges.append(Edge(a=source, b=target, weight=weight, signal=Signal.body_reference))
    return edges


def similarity_edges(
    similar_pages: Mapping[str, Sequence[SimilarPage]],
    known: set[str],
    *,
    max_weight: float = SIMILARITY_MAX_WEIGHT,
) -> list[Edge]:
    # The oracle usually reports a pair from both sides; keep the stronger one.
    strongest: dict[tuple[str, str], float] = {}
    for source, matches in similar_pages.items():
        if source not in known:
            continue
        for match in matches:
            if match.slug == source or match.slug not in known:
                continue
            pair = (source, match.slug) if source < match.slug else (match.slug, source)
            percent = min(max(match.similarity, 0.0), 100.0)
            if percent > strongest.get(pair, -1.0):
                strongest[pair] = percent

    return [
        Edge(a=a, b=b, weight=percent / 100.0 * max_weight, signal=Signal.similarity)
        for (a, b), percent in sorted(strongest.items())
        if percent > 0
    ]


def shared_tag_edges(
    entities: Sequence[EntityRecord],
    *,
    numerator: float = SHARED_TAG_NUMERATOR,
) -> list[Edge]:
    carriers: dict[str, list[str]] = {}
    for entity in entities:
        for tag in entity.tags:
            slugs = carriers.setdefault(tag, [])
            if entity.slug not in slugs:
                slugs.append(entity.slug)

    edges: list[Edge] = []
    for tag in sorted(carriers):
        slugs = sorted(carriers[tag])
        if len(slugs) < 2:
            continue
        # Rarer tags carry more signal.
        weight = numerator / math.log2(len(slugs) + 2)
        for index, a in enumerate(slugs):
            for b in slugs[index + 1 :]:
                edges.append(Edge(a=a, b=b, weight=weight, signal=Signal.shared_tag))
    return edges


def format_label(label: str | None) -> str | None:
    if not label:
        return None
    text = label.strip().lower()
    if not text or text == UNLABELED_RELATIONSHIP:
        return None
    return text.replace("-", " ")


def directional_labels(
    entities: Sequence[EntityRecord],
    known: set[str],
    inverse_labels: Mapping[str, str] = DEFAULT_INVERSE_LABELS,
) -> dict[tuple[str, str], str]:
    """Return ``(source, target) -> label``; explicit labels always win over inferred ones."""
    explicit: dict[tuple[str, str], str] = {}
    for entity in entities:
        for entry in entity.related_entries:
            label = entry.relationship
            if not label or label == UNLABELED_RELATIONSHIP:
                continue
            if entry.target == entity.slug or entry.target not in known:
                continue
            explicit.setdefault((entity.slug, entry.target), label)

    labels = {pair: format_label(label) or label for pair, label in explicit.items()}
    for (source, target), label in explicit.items():
        reverse = (target, source)
        inverse = inverse_labels.get(label)
        if inverse is None or reverse in labels:
            continue
        labels[reverse] = inverse
    return labels


def collect_edges(
    *,
    entities: Sequence[EntityRecord],
    known: set[str],
    bodies: Mapping[str, str],
    numeric_to_slug: Mapping[str, str],
    similar_pages: Mapping[str, Sequence[SimilarPage]],
    declared_weight: float = DECLARED_RELATION_WEIGHT,
    prefix_weight: float = SLUG_PREFIX_WEIGHT,
    body_weight: float = BODY_REFERENCE_WEIGHT,
    similarity_weight: float = SIMILARITY_MAX_WEIGHT,
    tag_numerator: float = SHARED_TAG_NUMERATOR,
) -> list[Edge]:
    return [
        *declared_relation_edges(entities, known, weight=declared_weight),
        *slug_prefix_edges(known, weight=prefix_weight),
        *body_reference_edges(bodies, known, numeric_to_slug, weight=body_weight),
        *similarity_edges(similar_pages, known, max_weight=similarity_weight),
        *shared_tag_edges(entities, numerator=tag_numerator),
    ]
