from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kg.storage import relpath


@dataclass(frozen=True)
class Issue:
    code: str
    path: str
    message: str
    line: int | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "path": self.path,
            "message": self.message,
        }
        if self.line is not None:
            payload["line"] = self.line
        return payload


def append_issue(
    issues: list[Issue],
    *,
    code: str,
    path: Path,
    message: str,
    line: int | None = None,
    project_root: Path,
) -> None:
    issues.append(Issue(code=code, path=relpath(path, project_root), message=message, line=line))


def sorted_issue_dicts(issues: list[Issue]) -> list[dict[str, Any]]:
    ordered = sorted(
        issues,
        key=lambda issue: (
            issue.path,
            0 if issue.line is None else issue.line,
            issue.code,
            issue.message,
        ),
    )
    return [issue.as_dict() for issue in ordered]
