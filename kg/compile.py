from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kg.config import CompilerConfig
from kg.corpus import Corpus, load_corpus
from kg.graph import RelatedItem, accumulate, build_related_graph, rank_neighbors, related_graph_payload
from kg.indexes import build_backlinks, build_tag_index, compute_stats
from kg.issues import Issue, sorted_issue_dicts
from kg.registry import IdPassResult, RegistryState, stabilize_identifiers
from kg.schemas import EntityRecord, GraphNode, PageRecord
from kg.signals import Edge, collect_edges, directional_labels
from kg.similarity import JsonSimilarityOracle, SimilarityOracle, read_similar_pages
from kg.storage import resolve_project_path, write_json_if_changed

RELATED_GRAPH_FILE = "related-graph.json"
BACKLINKS_FILE = "backlinks.json"
TAG_INDEX_FILE = "tag-index.json"
STATS_FILE = "stats.json"
ID_MAPS_FILE = "id-registry-maps.json"


@dataclass(frozen=True)
class ProjectPaths:
    project_root: Path
    content_root: Path
    entities_dir: Path
    registry_path: Path
    similarity_path: Path
    output_dir: Path

    @classmethod
    def from_config(cls, project_root: Path, config: CompilerConfig) -> "ProjectPaths":
        return cls(
            project_root=project_root,
            content_root=resolve_project_path(project_root, config.content_dir),
            entities_dir=resolve_project_path(project_root, config.entities_dir),
            registry_path=resolve_project_path(project_root, config.ids.registry_path),
            similarity_path=resolve_project_path(project_root, config.similarity_path),
            output_dir=resolve_project_path(project_root, config.output_dir),
        )


@dataclass(frozen=True)
class GraphInputs:
    entities: list[EntityRecord]
    nodes: dict[str, GraphNode]
    pages: dict[str, PageRecord]


def load_project(paths: ProjectPaths) -> Corpus:
    return load_corpus(
        project_root=paths.project_root,
        content_root=paths.content_root,
        entities_dir=paths.entities_dir,
    )


def graph_inputs(corpus: Corpus) -> GraphInputs:
    """First definition of each slug wins; entities take precedence over pages."""
    entities: dict[str, EntityRecord] = {}
    for record in corpus.entity_records():
        entities.setdefault(record.slug, record)

    pages: dict[str, PageRecord] = {}
    for page in corpus.page_records():
        pages.setdefault(page.slug, page)

    nodes: dict[str, GraphNode] = {slug: record.as_node() for slug, record in entities.items()}
    for slug, page in pages.items():
        # Section index pages are navigation, not related-item candidates.
        if page.is_index or slug in nodes:
            continue
        nodes[slug] = page.as_node()
    return GraphInputs(entities=list(entities.values()), nodes=nodes, pages=pages)


def _id_pass(
    corpus: Corpus,
    paths: ProjectPaths,
    config: CompilerConfig,
    *,
    allow_reassignment: bool | None,
    dry_run: bool,
) -> IdPassResult:
    return stabilize_identifiers(
        corpus,
        registry_path=paths.registry_path,
        content_root=paths.content_root,
        project_root=paths.project_root,
        allow_reassignment=config.ids.allow_reassignment if allow_reassignment is None else allow_reassignment,
        dry_run=dry_run,
        skip_categories=config.ids.skip_categories,
    )


def _collect_edges(
    corpus: Corpus,
    inputs: GraphInputs,
    state: RegistryState,
    paths: ProjectPaths,
    config: CompilerConfig,
    oracle: SimilarityOracle,
    issues: list[Issue],
) -> list[Edge]:
    weights = config.graph.weights
    similar_pages = read_similar_pages(
        oracle,
        issues,
        path=paths.similarity_path,
        project_root=paths.project_root,
    )
    return collect_edges(
        entities=inputs.entities,
        known=set(inputs.nodes),
        bodies=corpus.bodies(),
        numeric_to_slug=state.numeric_to_slug,
        similar_pages=similar_pages,
        declared_weight=weights.declared_relation,
        prefix_weight=weights.slug_prefix,
        body_weight=weights.body_reference,
        similarity_weight=weights.similarity,
        tag_numerator=weights.shared_tag,
    )


def run_id_pass(
    *,
    project_root: Path,
    config: CompilerConfig | None = None,
    allow_reassignment: bool | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    config = config or CompilerConfig()
    paths = ProjectPaths.from_config(project_root, config)
    corpus = load_project(paths)
    result = _id_pass(corpus, paths, config, allow_reassignment=allow_reassignment, dry_run=dry_run)

    issues = [*corpus.issues, *result.issues]
    payload = result.as_dict()
    payload["entity_count"] = len(corpus.entities)
    payload["page_count"] = len(corpus.pages)
    payload["issue_count"] = len(issues)
    payload["issues"] = sorted_issue_dicts(issues)
    return payload


def compile_knowledge_graph(
    *,
    project_root: Path,
    config: CompilerConfig | None = None,
    oracle: SimilarityOracle | None = None,
    allow_reassignment: bool | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    config = config or CompilerConfig()
    paths = ProjectPaths.from_config(project_root, config)
    oracle = oracle or JsonSimilarityOracle(paths.similarity_path)

    corpus = load_project(paths)
    id_result = _id_pass(corpus, paths, config, allow_reassignment=allow_reassignment, dry_run=dry_run)
    state = id_result.state
    issues: list[Issue] = [*corpus.issues, *id_result.issues]

    inputs = graph_inputs(corpus)
    edges = _collect_edges(corpus, inputs, state, paths, config, oracle, issues)
    graph = build_related_graph(
        edges,
        nodes=inputs.nodes,
        pages=inputs.pages,
        labels=directional_labels(inputs.entities, set(inputs.nodes), config.graph.inverse_labels),
        numeric_ids=state.slug_to_numeric(),
        config=config.graph,
    )
    backlinks = build_backlinks(inputs.entities)
    tag_index = build_tag_index(inputs.entities)
    stats = compute_stats(inputs.entities, backlinks, tag_index)

    outputs: dict[str, Any] = {
        RELATED_GRAPH_FILE: related_graph_payload(graph),
        BACKLINKS_FILE: backlinks,
        TAG_INDEX_FILE: tag_index,
        STATS_FILE: stats,
        ID_MAPS_FILE: {
            "byNumericId": state.as_payload()["entities"],
            "bySlug": dict(sorted(state.slug_to_numeric().items())),
        },
    }
    written: list[str] = []
    if not dry_run:
        for name, payload in outputs.items():
            if write_json_if_changed(paths.output_dir / name, payload):
                written.append(name)

    id_payload = id_result.as_dict()
    id_payload.pop("issues")
    id_payload.pop("issue_count")
    return {
        "ok": True,
        "dry_run": dry_run,
        "ids": id_payload,
        "entity_count": len(inputs.entities),
        "page_count": len(inputs.pages),
        "node_count": len(inputs.nodes),
        "edge_count": len(edges),
        "graph_record_count": len(graph),
        "backlink_target_count": len(backlinks),
        "tag_count": len(tag_index),
        "output_dir": paths.output_dir.as_posix(),
        "written": written,
        "issue_count": len(issues),
        "issues": sorted_issue_dicts(issues),
    }


def related_for(
    slug: str,
    *,
    project_root: Path,
    config: CompilerConfig | None = None,
    oracle: SimilarityOracle | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Neighbor list for one record, computed in memory without writing anything."""
    config = config or CompilerConfig()
    paths = ProjectPaths.from_config(project_root, config)
    oracle = oracle or JsonSimilarityOracle(paths.similarity_path)

    corpus = load_project(paths)
    id_result = _id_pass(corpus, paths, config, allow_reassignment=True, dry_run=True)
    issues: list[Issue] = [*corpus.issues, *id_result.issues]
    inputs = graph_inputs(corpus)
    if slug not in inputs.nodes:
        return {
            "ok": False,
            "id": slug,
            "message": f"unknown record id: {slug}",
            "related": [],
            "total": 0,
        }

    edges = _collect_edges(corpus, inputs, id_result.state, paths, config, oracle, issues)
    related: list[RelatedItem] = rank_neighbors(
        slug,
        accumulate(edge for edge in edges if edge.a in inputs.nodes and edge.b in inputs.nodes),
        nodes=inputs.nodes,
        pages=inputs.pages,
        labels=directional_labels(inputs.entities, set(inputs.nodes), config.graph.inverse_labels),
        numeric_ids=id_result.state.slug_to_numeric(),
        config=config.graph,
        limit=limit,
    )
    return {
        "ok": True,
        "id": slug,
        "related": [item.as_dict() for item in related],
        "total": len(related),
        "issue_count": len(issues),
        "issues": sorted_issue_dicts(issues),
    }
