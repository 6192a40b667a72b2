from __future__ import annotations

import json
from pathlib import Path

import pytest

from kg.compile import (
    BACKLINKS_FILE,
    ID_MAPS_FILE,
    RELATED_GRAPH_FILE,
    STATS_FILE,
    TAG_INDEX_FILE,
    compile_knowledge_graph,
    related_for,
    run_id_pass,
)
from kg.config import CompilerConfig, GraphConfig
from kg.registry import IdConflictError
from kg.signals import SimilarPage
from kg.similarity import StaticSimilarityOracle


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


ENTITIES_YAML = """\
- id: miri
  type: organization
  title: MIRI
  tags: [alignment]
  relatedEntries:
    - id: deceptive-alignment
      relationship: researches
- id: deceptive-alignment
  type: risk
  title: Deceptive Alignment
- id: anthropic
  type: organization
  title: Anthropic
- id: anthropic-ipo
  type: event
  title: Anthropic IPO
"""

RISK_PAGE = """\
---
title: Deceptive Alignment
quality: 80
importance: 90
---
A model that appears aligned during training.
"""

OVERVIEW_PAGE = """\
---
title: Alignment Overview
quality: 40
---
See <EntityLink id="miri">MIRI</EntityLink> for agent foundations work.
"""


@pytest.fixture
def project(tmp_path: Path) -> Path:
    _write(tmp_path / "data/entities/entities.yaml", ENTITIES_YAML)
    _write(tmp_path / "content/knowledge-base/risks/deceptive-alignment.mdx", RISK_PAGE)
    _write(tmp_path / "content/knowledge-base/overview/alignment-overview.md", OVERVIEW_PAGE)
    _write(tmp_path / "content/guides/index.md", "---\ntitle: Guides\n---\n")
    return tmp_path


def test_compile_knowledge_graph_end_to_end(project: Path) -> None:
    result = compile_knowledge_graph(project_root=project)

    assert result["ok"] is True
    assert result["ids"]["assigned_count"] == 5
    assert [(item["id"], item["numericId"]) for item in result["ids"]["assignments"]] == [
        ("miri", "E1"),
        ("deceptive-alignment", "E2"),
        ("anthropic", "E3"),
        ("anthropic-ipo", "E4"),
        ("alignment-overview", "E5"),
    ]
    assert result["entity_count"] == 4
    assert result["issues"] == []
    assert sorted(result["written"]) == sorted(
        [RELATED_GRAPH_FILE, BACKLINKS_FILE, TAG_INDEX_FILE, STATS_FILE, ID_MAPS_FILE]
    )

    output_dir = project / "build/data"
    graph = _read_json(output_dir / RELATED_GRAPH_FILE)
    assert list(graph) == sorted(graph)
    assert "__index__/guides" not in graph

    # 10 * (1 + 80/40 + 90/400) with the research page's ratings
    assert graph["miri"][0] == {
        "id": "deceptive-alignment",
        "numericId": "E2",
        "type": "risk",
        "title": "Deceptive Alignment",
        "score": 32.25,
        "label": "researches",
    }
    assert graph["miri"][1]["id"] == "alignment-overview"
    assert graph["miri"][1]["score"] == 10.63
    assert graph["deceptive-alignment"] == [
        {"id": "miri", "numericId": "E1", "type": "organization", "title": "MIRI", "score": 12.5}
    ]
    assert graph["anthropic"] == [
        {"id": "anthropic-ipo", "numericId": "E4", "type": "event", "title": "Anthropic IPO", "score": 7.5}
    ]

    assert _read_json(output_dir / BACKLINKS_FILE) == {
        "deceptive-alignment": [
            {"id": "miri", "type": "organization", "title": "MIRI", "relationship": "researches"}
        ]
    }
    assert _read_json(output_dir / TAG_INDEX_FILE) == {
        "alignment": [{"id": "miri", "type": "organization", "title": "MIRI"}]
    }
    assert _read_json(output_dir / STATS_FILE)["totalEntities"] == 4
    id_maps = _read_json(output_dir / ID_MAPS_FILE)
    assert id_maps["byNumericId"]["E5"] == "alignment-overview"
    assert id_maps["bySlug"]["miri"] == "E1"

    assert _read_json(project / "data/id-registry.json")["nextId"] == 6
    overview = (project / "content/knowledge-base/overview/alignment-overview.md").read_text(encoding="utf-8")
    assert overview.startswith("---\nnumericId: E5\ntitle: Alignment Overview\n")


def test_compile_knowledge_graph_is_stable_on_rerun(project: Path) -> None:
    compile_knowledge_graph(project_root=project)
    graph_before = (project / "build/data" / RELATED_GRAPH_FILE).read_text(encoding="utf-8")

    second = compile_knowledge_graph(project_root=project)

    assert second["ids"]["assigned_count"] == 0
    assert second["ids"]["registry_written"] is False
    assert second["written"] == []
    assert (project / "build/data" / RELATED_GRAPH_FILE).read_text(encoding="utf-8") == graph_before


def test_compile_knowledge_graph_dry_run_writes_nothing(project: Path) -> None:
    entities_before = (project / "data/entities/entities.yaml").read_text(encoding="utf-8")

    result = compile_knowledge_graph(project_root=project, dry_run=True)

    assert result["dry_run"] is True
    assert result["written"] == []
    assert result["graph_record_count"] > 0
    assert not (project / "build").exists()
    assert not (project / "data/id-registry.json").exists()
    assert (project / "data/entities/entities.yaml").read_text(encoding="utf-8") == entities_before


def test_compile_knowledge_graph_uses_similarity_oracle(project: Path) -> None:
    oracle = StaticSimilarityOracle({"anthropic": [SimilarPage(slug="alignment-overview", similarity=100.0)]})

    result = compile_knowledge_graph(project_root=project, oracle=oracle, dry_run=True)
    related = related_for("anthropic", project_root=project, oracle=oracle)

    assert result["edge_count"] == 4
    # 3 * (1 + 40/40 + 50/400) for the overview page
    assert [(item["id"], item["score"]) for item in related["related"]] == [
        ("anthropic-ipo", 7.5),
        ("alignment-overview", 6.38),
    ]


def test_compile_knowledge_graph_respects_config(project: Path) -> None:
    config = CompilerConfig(output_dir="site/graph", graph=GraphConfig(min_score=20.0))

    result = compile_knowledge_graph(project_root=project, config=config)

    graph = _read_json(project / "site/graph" / RELATED_GRAPH_FILE)
    assert result["output_dir"].endswith("site/graph")
    assert list(graph) == ["miri"]
    assert [item["id"] for item in graph["miri"]] == ["deceptive-alignment"]


def test_compile_knowledge_graph_stops_on_conflict(project: Path) -> None:
    _write(
        project / "data/entities/extra.yaml",
        "- id: shared-one\n  numericId: E7\n- id: shared-two\n  numericId: E7\n",
    )
    _write(
        project / "content/knowledge-base/overview/cites.md",
        '---\ntitle: Cites\n---\n<EntityLink id="E7" />\n',
    )

    with pytest.raises(IdConflictError) as excinfo:
        compile_knowledge_graph(project_root=project)

    assert excinfo.value.details["conflicts"][0]["numericIds"] == ["E7"]
    assert excinfo.value.details["references"][0]["path"] == "content/knowledge-base/overview/cites.md"
    assert not (project / "build").exists()


def test_run_id_pass_reports_counts(project: Path) -> None:
    result = run_id_pass(project_root=project, dry_run=True)

    assert result["ok"] is True
    assert result["entity_count"] == 4
    assert result["page_count"] == 3
    assert result["assigned_count"] == 5
    assert result["registry_written"] is False


def test_related_for_unknown_record(project: Path) -> None:
    result = related_for("nowhere", project_root=project)

    assert result == {
        "ok": False,
        "id": "nowhere",
        "message": "unknown record id: nowhere",
        "related": [],
        "total": 0,
    }


def test_related_for_applies_limit_without_writing(project: Path) -> None:
    result = related_for("miri", project_root=project, limit=1)

    assert result["ok"] is True
    assert result["total"] == 1
    assert result["related"][0]["id"] == "deceptive-alignment"
    assert not (project / "data/id-registry.json").exists()
    assert not (project / "build").exists()
