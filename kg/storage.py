from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def relpath(path: Path, project_root: Path) -> str:
    try:
        return path.relative_to(project_root).as_posix()
    except ValueError:
        return path.as_posix()


def resolve_project_path(project_root: Path, raw_path: str | Path) -> Path:
    path = Path(raw_path)
    if path.is_absolute():
        return path
    return (project_root / path).resolve()


def render_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(f"{path.suffix}.tmp")
    temp_path.write_text(text, encoding="utf-8")
    temp_path.replace(path)


def write_json_if_changed(path: Path, payload: Any) -> bool:
    """Write ``payload`` atomically; return False when the file already matches."""
    rendered = render_json(payload)
    if path.exists() and path.read_text(encoding="utf-8") == rendered:
        return False
    write_text_atomic(path, rendered)
    return True
