from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any

from kg.schemas import EntityRecord

TOP_N = 10


def build_backlinks(entities: Sequence[EntityRecord]) -> dict[str, list[dict[str, Any]]]:
    """Map each declared-relation target to the entities that point at it.

    Inferred graph edges are not included. Targets need not be known records.
    """
    backlinks: dict[str, list[dict[str, Any]]] = {}
    for entity in entities:
        seen: set[str] = set()
        for entry in entity.related_entries:
            if entry.target == entity.slug or entry.target in seen:
                continue
            seen.add(entry.target)
            link: dict[str, Any] = {
                "id": entity.slug,
                "type": entity.kind,
                "title": entity.display_title(),
            }
            if entry.relationship:
                link["relationship"] = entry.relationship
            backlinks.setdefault(entry.target, []).append(link)
    return {target: backlinks[target] for target in sorted(backlinks)}


def build_tag_index(entities: Sequence[EntityRecord]) -> dict[str, list[dict[str, Any]]]:
    index: dict[str, dict[str, dict[str, Any]]] = {}
    for entity in entities:
        for tag in entity.tags:
            carriers = index.setdefault(tag, {})
            carriers.setdefault(
                entity.slug,
                {"id": entity.slug, "type": entity.kind, "title": entity.display_title()},
            )

    return {
        tag: sorted(index[tag].values(), key=lambda item: (item["title"].lower(), item["id"]))
        for tag in sorted(index)
    }


def _ranked(counts: Counter[str], *, limit: int | None = None) -> list[dict[str, Any]]:
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ordered = ordered[:limit]
    return [{"id": key, "count": count} for key, count in ordered]


def compute_stats(
    entities: Sequence[EntityRecord],
    backlinks: Mapping[str, Sequence[Mapping[str, Any]]],
    tag_index: Mapping[str, Sequence[Mapping[str, Any]]],
) -> dict[str, Any]:
    by_type = Counter(entity.kind for entity in entities)
    return {
        "totalEntities": len(entities),
        "byType": {item["id"]: item["count"] for item in _ranked(by_type)},
        "withDescription": sum(1 for entity in entities if entity.description),
        "totalTags": len(tag_index),
        "topTags": _ranked(Counter({tag: len(items) for tag, items in tag_index.items()}), limit=TOP_N),
        "mostLinked": _ranked(Counter({target: len(items) for target, items in backlinks.items()}), limit=TOP_N),
    }
