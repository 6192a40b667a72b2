from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from kg.issues import Issue, append_issue
from kg.signals import SimilarPage

SIMILARITY_KEYS = ("similarity", "similarityPercent")


class SimilarityOracle:
    """Source of ranked similar-page pairs computed outside the compiler."""

    backend_id = "unknown"

    def similar_pages(self) -> dict[str, list[SimilarPage]]:
        raise NotImplementedError


class EmptySimilarityOracle(SimilarityOracle):
    backend_id = "empty"

    def similar_pages(self) -> dict[str, list[SimilarPage]]:
        return {}


class StaticSimilarityOracle(SimilarityOracle):
    backend_id = "static"

    def __init__(self, pairs: dict[str, list[SimilarPage]]) -> None:
        self._pairs = pairs

    def similar_pages(self) -> dict[str, list[SimilarPage]]:
        return {slug: list(matches) for slug, matches in self._pairs.items()}


def _parse_match(source: str, item: Any) -> SimilarPage:
    if not isinstance(item, dict):
        raise ValueError(f"similar pages for {source!r} must be objects")
    slug = str(item.get("id") or "").strip()
    if not slug:
        raise ValueError(f"similar page for {source!r} is missing id")
    for key in SIMILARITY_KEYS:
        if key in item:
            return SimilarPage(slug=slug, similarity=float(item[key]))
    raise ValueError(f"similar page {slug!r} for {source!r} is missing similarity")


class JsonSimilarityOracle(SimilarityOracle):
    """Reads ``{"<slug>": [{"id": "<slug>", "similarity": <percent>}, ...]}``."""

    backend_id = "json"

    def __init__(self, path: Path) -> None:
        self.path = path

    def similar_pages(self) -> dict[str, list[SimilarPage]]:
        if not self.path.exists():
            return {}
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("similarity payload must be an object keyed by page id")

        pairs: dict[str, list[SimilarPage]] = {}
        for source, matches in payload.items():
            if not isinstance(matches, list):
                raise ValueError(f"similar pages for {source!r} must be a list")
            pairs[str(source)] = [_parse_match(str(source), item) for item in matches]
        return pairs


def read_similar_pages(
    oracle: SimilarityOracle,
    issues: list[Issue],
    *,
    path: Path,
    project_root: Path,
) -> dict[str, list[SimilarPage]]:
    try:
        return oracle.similar_pages()
    except (ValueError, TypeError) as exc:
        # json.JSONDecodeError is a ValueError.
        append_issue(
            issues,
            code="similarity_unavailable",
            path=path,
            message=f"similarity signal skipped: {exc}",
            project_root=project_root,
        )
        return {}
