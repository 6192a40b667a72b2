from __future__ import annotations

import json
from pathlib import Path

import pytest

from kg.cli import main


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.fixture(autouse=True)
def _clear_compiler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KG_CONTENT_DIR", "KG_DATA_DIR", "KG_OUTPUT_DIR", "KG_REGISTRY_PATH", "KG_MAX_PER_ENTITY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    _write(
        tmp_path / "data/entities/orgs.yaml",
        "- id: anthropic\n  type: organization\n- id: anthropic-ipo\n  type: event\n",
    )
    return tmp_path


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict]:
    exit_code = main(list(argv))
    return exit_code, json.loads(capsys.readouterr().out)


def test_build_command_writes_outputs(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code, payload = _run(capsys, "build", "--project-root", str(project))

    assert exit_code == 0
    assert payload["ok"] is True
    assert payload["ids"]["assigned_count"] == 2
    assert (project / "build/data/related-graph.json").exists()


def test_check_ids_fails_when_records_lack_ids(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    before = (project / "data/entities/orgs.yaml").read_text(encoding="utf-8")

    exit_code, payload = _run(capsys, "check-ids", "--project-root", str(project))

    assert exit_code == 1
    assert payload["ok"] is False
    assert payload["assigned_count"] == 2
    assert (project / "data/entities/orgs.yaml").read_text(encoding="utf-8") == before
    assert not (project / "data/id-registry.json").exists()


def test_check_ids_passes_after_assign_ids(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code, payload = _run(capsys, "assign-ids", "--project-root", str(project))
    assert exit_code == 0
    assert payload["registry_written"] is True

    exit_code, payload = _run(capsys, "check-ids", "--project-root", str(project))
    assert exit_code == 0
    assert payload["ok"] is True


def test_conflict_reports_structured_error(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write(
        project / "data/entities/orgs.yaml",
        "- id: anthropic\n  numericId: E1\n- id: anthropic-ipo\n  numericId: E1\n",
    )

    exit_code, payload = _run(capsys, "build", "--project-root", str(project))

    assert exit_code == 1
    assert payload["ok"] is False
    assert payload["error_type"] == "IdConflictError"
    assert payload["details"]["conflicts"][0]["slugs"] == ["anthropic", "anthropic-ipo"]


def test_reassignment_requires_flag(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write(project / "data/id-registry.json", json.dumps({"nextId": 2, "entities": {"E1": "acme-corp"}}))
    _write(project / "data/entities/orgs.yaml", "- id: acme-labs\n  numericId: E1\n")

    exit_code, payload = _run(capsys, "assign-ids", "--project-root", str(project))
    assert exit_code == 1
    assert payload["error_type"] == "IdReassignmentError"

    exit_code, payload = _run(capsys, "assign-ids", "--project-root", str(project), "--allow-id-reassignment")
    assert exit_code == 0
    assert [item["kind"] for item in payload["reassignments"]] == ["id-changed"]


def test_related_command(project: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code, payload = _run(capsys, "related", "anthropic", "--project-root", str(project))

    assert exit_code == 0
    assert payload["related"] == [
        {"id": "anthropic-ipo", "numericId": "E2", "type": "event", "title": "Anthropic Ipo", "score": 7.5}
    ]

    exit_code, payload = _run(capsys, "related", "missing", "--project-root", str(project))
    assert exit_code == 1
    assert payload["message"] == "unknown record id: missing"

    exit_code, payload = _run(capsys, "related", "anthropic", "--project-root", str(project), "--limit", "0")
    assert exit_code == 1
    assert payload["message"] == "--limit must be >= 1"
