"""Stable numeric identifiers (``E<n>``) for entities and pages.

The pass is ``load -> collect -> assign -> detect -> write back -> persist``.
Each step takes and returns explicit values; the only writes happen at the end
of a successful pass. The registry file is a derived artifact: every record
carries its own ``numericId``, so a missing or corrupt registry is rebuilt
from the corpus.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from kg.corpus import PAGE_SUFFIXES, Corpus, write_numeric_id
from kg.issues import Issue, append_issue, sorted_issue_dicts
from kg.schemas import (
    EntityRecord,
    PageRecord,
    RecordType,
    RegistryFile,
    format_numeric_id,
    parse_numeric_id,
)
from kg.storage import relpath, write_json_if_changed

ENTITY_LINK_ID_RE = re.compile(r'<EntityLink\s+[^>]*\bid="(?P<id>E\d+)"')
DEFAULT_SKIP_CATEGORIES = frozenset({"style-guides", "tools", "dashboard", "project", "guides"})
DASHBOARD_CONTENT_FORMAT = "dashboard"

CONFLICT_SHARED_ID = "shared-id"
CONFLICT_MULTIPLE_IDS = "multiple-ids"
REASSIGNED_ID = "id-changed"
REASSIGNED_SLUG = "slug-changed"


def _numeric_sort_key(numeric_id: str) -> tuple[int, str]:
    number = parse_numeric_id(numeric_id)
    return (number if number is not None else 0, numeric_id)


@dataclass(frozen=True)
class RegistryState:
    next_id: int = 1
    numeric_to_slug: dict[str, str] = field(default_factory=dict)

    def slug_to_numeric(self) -> dict[str, str]:
        return {slug: numeric_id for numeric_id, slug in self.numeric_to_slug.items()}

    def as_payload(self) -> dict[str, Any]:
        return {
            "nextId": self.next_id,
            "entities": {
                numeric_id: self.numeric_to_slug[numeric_id]
                for numeric_id in sorted(self.numeric_to_slug, key=_numeric_sort_key)
            },
        }


@dataclass(frozen=True)
class IdConflict:
    kind: str
    numeric_ids: tuple[str, ...]
    slugs: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "numericIds": list(self.numeric_ids), "slugs": list(self.slugs)}


@dataclass(frozen=True)
class IdMaps:
    numeric_to_slug: dict[str, str]
    slug_to_numeric: dict[str, str]
    conflicts: list[IdConflict] = field(default_factory=list)


@dataclass(frozen=True)
class Reassignment:
    """``subject`` is the numeric id for ``id-changed`` and the slug for ``slug-changed``."""

    kind: str
    subject: str
    previous: str
    current: str

    def affected_ids(self) -> tuple[str, ...]:
        if self.kind == REASSIGNED_ID:
            return (self.subject,)
        return (self.previous, self.current)

    def as_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "subject": self.subject, "previous": self.previous, "current": self.current}


@dataclass(frozen=True)
class IdReference:
    path: str
    line: int
    numeric_id: str

    def as_dict(self) -> dict[str, Any]:
        return {"path": self.path, "line": self.line, "numericId": self.numeric_id}


@dataclass(frozen=True)
class IdAssignment:
    slug: str
    numeric_id: str
    record_type: RecordType
    reused: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.slug,
            "numericId": self.numeric_id,
            "recordType": self.record_type.value,
            "reused": self.reused,
        }


class IdRegistryError(RuntimeError):
    """Base error for fatal identifier integrity failures."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class IdConflictError(IdRegistryError):
    def __init__(self, *, conflicts: Sequence[IdConflict], references: Sequence[IdReference] = ()) -> None:
        summary = ", ".join(
            f"{'/'.join(conflict.numeric_ids)} <- {', '.join(conflict.slugs)}" for conflict in conflicts
        )
        super().__init__(
            f"{len(conflicts)} numeric id conflict(s): {summary}",
            details={
                "conflicts": [conflict.as_dict() for conflict in conflicts],
                "references": [reference.as_dict() for reference in references],
            },
        )
        self.conflicts = list(conflicts)
        self.references = list(references)


class IdReassignmentError(IdRegistryError):
    def __init__(self, *, reassignments: Sequence[Reassignment], references: Sequence[IdReference] = ()) -> None:
        summary = ", ".join(
            f"{item.subject}: {item.previous} -> {item.current}" for item in reassignments
        )
        super().__init__(
            f"{len(reassignments)} numeric id reassignment(s): {summary}; "
            "rerun with --allow-id-reassignment if this restructuring is intentional",
            details={
                "reassignments": [item.as_dict() for item in reassignments],
                "references": [reference.as_dict() for reference in references],
            },
        )
        self.reassignments = list(reassignments)
        self.references = list(references)


def load_registry(
    path: Path,
    issues: list[Issue] | None = None,
    *,
    project_root: Path | None = None,
) -> RegistryState:
    if not path.exists():
        return RegistryState()

    root = project_root or path.parent
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        registry = RegistryFile.model_validate(payload)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        if issues is not None:
            append_issue(
                issues,
                code="registry_recovered",
                path=path,
                message=f"registry unreadable, rebuilding from records: {exc}",
                project_root=root,
            )
        return RegistryState()
    return RegistryState(next_id=registry.next_id, numeric_to_slug=dict(registry.entities))


def persist_registry(path: Path, state: RegistryState) -> bool:
    return write_json_if_changed(path, state.as_payload())


def collect_declared_ids(
    entities: Sequence[EntityRecord],
    pages: Sequence[PageRecord],
) -> IdMaps:
    claimants: dict[str, list[str]] = {}
    declared: dict[str, list[str]] = {}
    numeric_to_slug: dict[str, str] = {}
    slug_to_numeric: dict[str, str] = {}

    records: list[EntityRecord | PageRecord] = [*entities, *pages]
    for record in records:
        numeric_id = record.numeric_id
        if numeric_id is None:
            continue
        slugs = claimants.setdefault(numeric_id, [])
        if record.slug not in slugs:
            slugs.append(record.slug)
        ids = declared.setdefault(record.slug, [])
        if numeric_id not in ids:
            ids.append(numeric_id)

        if numeric_id not in numeric_to_slug and record.slug not in slug_to_numeric:
            numeric_to_slug[numeric_id] = record.slug
            slug_to_numeric[record.slug] = numeric_id

    conflicts = [
        IdConflict(kind=CONFLICT_SHARED_ID, numeric_ids=(numeric_id,), slugs=tuple(slugs))
        for numeric_id, slugs in sorted(claimants.items(), key=lambda item: _numeric_sort_key(item[0]))
        if len(slugs) > 1
    ]
    conflicts.extend(
        IdConflict(kind=CONFLICT_MULTIPLE_IDS, numeric_ids=tuple(ids), slugs=(slug,))
        for slug, ids in sorted(declared.items())
        if len(ids) > 1
    )
    return IdMaps(numeric_to_slug=numeric_to_slug, slug_to_numeric=slug_to_numeric, conflicts=conflicts)


def compute_next_id(numeric_ids: Iterable[str], reserved: Iterable[str] = ()) -> int:
    highest = 0
    for numeric_id in [*numeric_ids, *reserved]:
        number = parse_numeric_id(numeric_id)
        if number is not None and number > highest:
            highest = number
    return highest + 1


def filter_eligible_pages(
    pages: Sequence[PageRecord],
    entity_slugs: set[str],
    skip_categories: Iterable[str] = DEFAULT_SKIP_CATEGORIES,
) -> list[PageRecord]:
    skipped = set(skip_categories)
    return [
        page
        for page in pages
        if page.slug not in entity_slugs
        and page.category not in skipped
        and page.content_format != DASHBOARD_CONTENT_FORMAT
    ]


def detect_reassignments(previous: RegistryState, numeric_to_slug: Mapping[str, str]) -> list[Reassignment]:
    reassignments: list[Reassignment] = []
    for numeric_id in sorted(previous.numeric_to_slug, key=_numeric_sort_key):
        previous_slug = previous.numeric_to_slug[numeric_id]
        current_slug = numeric_to_slug.get(numeric_id)
        if current_slug is not None and current_slug != previous_slug:
            reassignments.append(
                Reassignment(kind=REASSIGNED_ID, subject=numeric_id, previous=previous_slug, current=current_slug)
            )

    current_by_slug = {slug: numeric_id for numeric_id, slug in numeric_to_slug.items()}
    previous_by_slug = previous.slug_to_numeric()
    for slug in sorted(previous_by_slug):
        current_id = current_by_slug.get(slug)
        if current_id is not None and current_id != previous_by_slug[slug]:
            reassignments.append(
                Reassignment(kind=REASSIGNED_SLUG, subject=slug, previous=previous_by_slug[slug], current=current_id)
            )
    return reassignments


def scan_numeric_id_refs(
    content_root: Path,
    numeric_ids: Iterable[str],
    *,
    project_root: Path,
) -> list[IdReference]:
    wanted = set(numeric_ids)
    references: list[IdReference] = []
    if not wanted:
        return references

    if not content_root.exists():
        return references

    paths = sorted(
        (path for path in content_root.rglob("*") if path.is_file() and path.suffix in PAGE_SUFFIXES),
        key=lambda path: path.as_posix(),
    )
    for path in paths:
        text = path.read_text(encoding="utf-8")
        for line_number, line in enumerate(text.splitlines(), start=1):
            for match in ENTITY_LINK_ID_RE.finditer(line):
                if match.group("id") in wanted:
                    references.append(
                        IdReference(
                            path=relpath(path, project_root),
                            line=line_number,
                            numeric_id=match.group("id"),
                        )
                    )
    return references


def assign_missing_ids(
    entities: Sequence[EntityRecord],
    pages: Sequence[PageRecord],
    id_maps: IdMaps,
    previous: RegistryState,
    *,
    skip_categories: Iterable[str] = DEFAULT_SKIP_CATEGORIES,
) -> tuple[RegistryState, list[IdAssignment]]:
    numeric_to_slug = dict(id_maps.numeric_to_slug)
    slug_to_numeric = dict(id_maps.slug_to_numeric)
    previous_by_slug = previous.slug_to_numeric()
    # Retired ids stay reserved so they are never handed to a new slug.
    next_number = compute_next_id(numeric_to_slug, reserved=previous.numeric_to_slug)
    assignments: list[IdAssignment] = []

    def assign(slug: str, record_type: RecordType) -> None:
        nonlocal next_number
        if slug in slug_to_numeric:
            return
        remembered = previous_by_slug.get(slug)
        if remembered is not None and remembered not in numeric_to_slug:
            numeric_id = remembered
            reused = True
        else:
            numeric_id = format_numeric_id(next_number)
            next_number += 1
            reused = False
        numeric_to_slug[numeric_id] = slug
        slug_to_numeric[slug] = numeric_id
        assignments.append(IdAssignment(slug=slug, numeric_id=numeric_id, record_type=record_type, reused=reused))

    for entity in entities:
        assign(entity.slug, RecordType.entity)

    entity_slugs = {entity.slug for entity in entities}
    for page in filter_eligible_pages(pages, entity_slugs, skip_categories):
        assign(page.slug, RecordType.page)

    next_id = max(next_number, compute_next_id(numeric_to_slug))
    return RegistryState(next_id=next_id, numeric_to_slug=numeric_to_slug), assignments


@dataclass
class IdPassResult:
    state: RegistryState
    assignments: list[IdAssignment]
    reassignments: list[Reassignment]
    issues: list[Issue]
    dry_run: bool = False
    registry_written: bool = False
    writeback_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "dry_run": self.dry_run,
            "next_id": self.state.next_id,
            "id_count": len(self.state.numeric_to_slug),
            "assigned_count": len(self.assignments),
            "assignments": [assignment.as_dict() for assignment in self.assignments],
            "reassignments": [item.as_dict() for item in self.reassignments],
            "registry_written": self.registry_written,
            "writeback_count": self.writeback_count,
            "issue_count": len(self.issues),
            "issues": sorted_issue_dicts(self.issues),
        }


def stabilize_identifiers(
    corpus: Corpus,
    *,
    registry_path: Path,
    content_root: Path,
    project_root: Path,
    allow_reassignment: bool = False,
    dry_run: bool = False,
    skip_categories: Iterable[str] = DEFAULT_SKIP_CATEGORIES,
) -> IdPassResult:
    issues: list[Issue] = []
    previous = load_registry(registry_path, issues, project_root=project_root)
    entities = corpus.entity_records()
    pages = corpus.page_records()

    id_maps = collect_declared_ids(entities, pages)
    if id_maps.conflicts:
        affected = {numeric_id for conflict in id_maps.conflicts for numeric_id in conflict.numeric_ids}
        raise IdConflictError(
            conflicts=id_maps.conflicts,
            references=scan_numeric_id_refs(content_root, affected, project_root=project_root),
        )

    state, assignments = assign_missing_ids(
        entities,
        pages,
        id_maps,
        previous,
        skip_categories=skip_categories,
    )

    reassignments = detect_reassignments(previous, state.numeric_to_slug)
    if reassignments and not allow_reassignment:
        affected = {numeric_id for item in reassignments for numeric_id in item.affected_ids()}
        raise IdReassignmentError(
            reassignments=reassignments,
            references=scan_numeric_id_refs(content_root, affected, project_root=project_root),
        )
    for item in reassignments:
        append_issue(
            issues,
            code="id_reassignment_allowed",
            path=registry_path,
            message=f"{item.kind} {item.subject}: {item.previous} -> {item.current}",
            project_root=project_root,
        )

    result = IdPassResult(
        state=state,
        assignments=assignments,
        reassignments=reassignments,
        issues=issues,
        dry_run=dry_run,
    )
    if dry_run:
        return result

    for assignment in assignments:
        source = corpus.source_for(assignment.slug, assignment.record_type)
        if source is None:
            append_issue(
                issues,
                code="writeback_failed",
                path=registry_path,
                message=f"no source file found for {assignment.slug}",
                project_root=project_root,
            )
            continue
        source_path, origin = source
        if write_numeric_id(source_path, origin=origin, slug=assignment.slug, numeric_id=assignment.numeric_id):
            result.writeback_count += 1
        else:
            append_issue(
                issues,
                code="writeback_failed",
                path=source_path,
                message=f"could not locate the id line for {assignment.slug}",
                project_root=project_root,
            )

    result.registry_written = persist_registry(registry_path, state)
    return result
