"""Read entity and page records from a content repository.

Entities live in ``data/entities/*.yaml`` (each file a YAML list). Pages are
markdown/MDX files under the content root with YAML frontmatter. The loader
also owns the inverse operation: writing an assigned ``numericId`` back into
the record's own source file.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kg.issues import Issue, append_issue
from kg.schemas import INDEX_SLUG_PREFIX, EntityRecord, PageRecord, RecordType
from kg.storage import write_text_atomic

FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*\n?", re.DOTALL)
EMPTY_NUMERIC_ID_RE = re.compile(r"^numericId:[ \t]*(?:null|~|''|\"\")?[ \t]*$")
PAGE_SUFFIXES = (".md", ".mdx")
ENTITY_FILE_SUFFIXES = (".yaml", ".yml")
PROMOTED_FRONTMATTER_KEYS = ("tags", "relatedEntries", "description", "lastUpdated")
# Identity comes from the file path, never from frontmatter.
PAGE_RESERVED_KEYS = frozenset({"id", "slug", "category", "record_type"})

ORIGIN_YAML = "yaml"
ORIGIN_FRONTMATTER = "frontmatter"


@dataclass(frozen=True)
class EntitySource:
    record: EntityRecord
    path: Path
    origin: str


@dataclass(frozen=True)
class PageSource:
    record: PageRecord
    path: Path
    frontmatter: dict[str, Any]
    body: str


@dataclass(frozen=True)
class Corpus:
    entities: list[EntitySource]
    pages: list[PageSource]
    issues: list[Issue] = field(default_factory=list)

    def entity_records(self) -> list[EntityRecord]:
        return [source.record for source in self.entities]

    def page_records(self) -> list[PageRecord]:
        return [source.record for source in self.pages]

    def bodies(self) -> dict[str, str]:
        bodies: dict[str, str] = {}
        for source in self.pages:
            bodies.setdefault(source.record.slug, source.body)
        return bodies

    def source_for(self, slug: str, record_type: RecordType) -> tuple[Path, str] | None:
        if record_type == RecordType.entity:
            for entity in self.entities:
                if entity.record.slug == slug:
                    return entity.path, entity.origin
            return None
        for page in self.pages:
            if page.record.slug == slug:
                return page.path, ORIGIN_FRONTMATTER
        return None


def split_frontmatter(markdown: str) -> tuple[dict[str, Any] | None, str]:
    text = markdown[1:] if markdown.startswith("﻿") else markdown
    match = FRONTMATTER_RE.match(text)
    if not match:
        return None, text
    payload = yaml.safe_load(match.group(1)) or {}
    if not isinstance(payload, dict):
        raise ValueError("frontmatter must be a YAML mapping")
    return payload, text[match.end() :].lstrip("\n")


def page_identity(path: Path, content_root: Path) -> tuple[str, str]:
    rel = path.relative_to(content_root)
    dir_parts = [part for part in rel.parent.parts if part not in ("", ".")]
    if path.stem == "index":
        slug = "/".join([INDEX_SLUG_PREFIX, *dir_parts])
    else:
        slug = path.stem

    if len(dir_parts) > 1:
        category = dir_parts[1]
    elif dir_parts:
        category = dir_parts[0]
    else:
        category = "other"
    return slug, category


def _yaml_error_line(exc: yaml.YAMLError) -> int | None:
    mark = getattr(exc, "problem_mark", None)
    if mark is None:
        return None
    return int(mark.line) + 1


def load_entity_files(entities_dir: Path, issues: list[Issue], project_root: Path) -> list[EntitySource]:
    sources: list[EntitySource] = []
    if not entities_dir.exists():
        return sources

    paths = sorted(
        (path for path in entities_dir.rglob("*") if path.is_file() and path.suffix in ENTITY_FILE_SUFFIXES),
        key=lambda path: path.as_posix(),
    )
    for path in paths:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            append_issue(
                issues,
                code="invalid_yaml",
                path=path,
                message=f"YAML parse error: {exc}",
                line=_yaml_error_line(exc),
                project_root=project_root,
            )
            continue

        if payload is None:
            continue
        if not isinstance(payload, list):
            append_issue(
                issues,
                code="invalid_yaml",
                path=path,
                message="expected a YAML list of entities",
                project_root=project_root,
            )
            continue

        for position, item in enumerate(payload, start=1):
            if not isinstance(item, dict):
                append_issue(
                    issues,
                    code="schema_error",
                    path=path,
                    message=f"entry {position}: expected a mapping",
                    project_root=project_root,
                )
                continue
            try:
                record = EntityRecord.model_validate(item)
            except ValidationError as exc:
                append_issue(
                    issues,
                    code="schema_error",
                    path=path,
                    message=f"entry {position}: {exc.errors()[0]['msg']}",
                    project_root=project_root,
                )
                continue
            sources.append(EntitySource(record=record, path=path, origin=ORIGIN_YAML))
    return sources


def read_page(path: Path, content_root: Path, issues: list[Issue], project_root: Path) -> PageSource | None:
    markdown = path.read_text(encoding="utf-8")
    try:
        frontmatter, body = split_frontmatter(markdown)
    except yaml.YAMLError as exc:
        append_issue(
            issues,
            code="invalid_frontmatter",
            path=path,
            message=f"invalid YAML frontmatter: {exc}",
            project_root=project_root,
        )
        return None
    except ValueError as exc:
        append_issue(
            issues,
            code="invalid_frontmatter",
            path=path,
            message=str(exc),
            project_root=project_root,
        )
        return None

    metadata = frontmatter or {}
    slug, category = page_identity(path, content_root)
    payload = {key: value for key, value in metadata.items() if key not in PAGE_RESERVED_KEYS}
    payload["id"] = slug
    payload["category"] = category
    try:
        record = PageRecord.model_validate(payload)
    except ValidationError as exc:
        append_issue(
            issues,
            code="schema_error",
            path=path,
            message=exc.errors()[0]["msg"],
            project_root=project_root,
        )
        return None
    return PageSource(record=record, path=path, frontmatter=metadata, body=body)


def scan_pages(content_root: Path, issues: list[Issue], project_root: Path) -> list[PageSource]:
    pages: list[PageSource] = []
    if not content_root.exists():
        return pages

    paths = sorted(
        (path for path in content_root.rglob("*") if path.is_file() and path.suffix in PAGE_SUFFIXES),
        key=lambda path: path.as_posix(),
    )
    for path in paths:
        page = read_page(path, content_root, issues, project_root)
        if page is not None:
            pages.append(page)
    return pages


def promote_frontmatter_entities(
    pages: list[PageSource],
    known_slugs: set[str],
    issues: list[Issue],
    project_root: Path,
) -> list[EntitySource]:
    promoted: list[EntitySource] = []
    seen = set(known_slugs)
    for page in pages:
        record = page.record
        if record.entity_type is None or record.slug in seen:
            continue
        seen.add(record.slug)

        payload: dict[str, Any] = {
            key: page.frontmatter[key] for key in PROMOTED_FRONTMATTER_KEYS if key in page.frontmatter
        }
        payload.update(
            {
                "id": record.slug,
                "numericId": record.numeric_id,
                "type": record.entity_type,
                "title": record.title,
            }
        )
        try:
            entity = EntityRecord.model_validate(payload)
        except ValidationError as exc:
            append_issue(
                issues,
                code="schema_error",
                path=page.path,
                message=f"frontmatter entity: {exc.errors()[0]['msg']}",
                project_root=project_root,
            )
            continue
        promoted.append(EntitySource(record=entity, path=page.path, origin=ORIGIN_FRONTMATTER))
    return promoted


def _report_duplicate_slugs(
    items: list[tuple[str, Path]],
    *,
    label: str,
    issues: list[Issue],
    project_root: Path,
) -> None:
    counts = Counter(slug for slug, _ in items)
    first_seen: set[str] = set()
    for slug, path in items:
        if counts[slug] < 2:
            continue
        if slug not in first_seen:
            first_seen.add(slug)
            continue
        append_issue(
            issues,
            code="duplicate_slug",
            path=path,
            message=f"{label} id {slug} is defined more than once; the first definition is used",
            project_root=project_root,
        )


def load_corpus(*, project_root: Path, content_root: Path, entities_dir: Path) -> Corpus:
    issues: list[Issue] = []
    yaml_entities = load_entity_files(entities_dir, issues, project_root)
    pages = scan_pages(content_root, issues, project_root)
    promoted = promote_frontmatter_entities(
        pages,
        {source.record.slug for source in yaml_entities},
        issues,
        project_root,
    )
    entities = [*yaml_entities, *promoted]

    _report_duplicate_slugs(
        [(source.record.slug, source.path) for source in entities],
        label="entity",
        issues=issues,
        project_root=project_root,
    )
    _report_duplicate_slugs(
        [(source.record.slug, source.path) for source in pages],
        label="page",
        issues=issues,
        project_root=project_root,
    )
    return Corpus(entities=entities, pages=pages, issues=issues)


def insert_frontmatter_numeric_id(markdown: str, numeric_id: str) -> str:
    bom = "﻿" if markdown.startswith("﻿") else ""
    text = markdown[len(bom) :]
    match = FRONTMATTER_RE.match(text)
    if not match:
        return f"{bom}---\nnumericId: {numeric_id}\n---\n\n{text}"

    block_start = match.start(1)
    block = match.group(1)
    block_lines = block.split("\n")
    for index, line in enumerate(block_lines):
        if EMPTY_NUMERIC_ID_RE.match(line.rstrip("\r")):
            block_lines[index] = f"numericId: {numeric_id}"
            return bom + text[:block_start] + "\n".join(block_lines) + text[match.end(1) :]
    return bom + text[:block_start] + f"numericId: {numeric_id}\n" + text[block_start:]


def insert_yaml_numeric_id(text: str, slug: str, numeric_id: str) -> str | None:
    # Entity files are top-level lists; nested relatedEntries items must not match.
    id_line_re = re.compile(
        rf"^(?P<lead>-[ \t]+|  )id:\s*(?P<quote>['\"]?){re.escape(slug)}(?P=quote)\s*(?:#.*)?$"
    )
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        match = id_line_re.match(line.rstrip("\r\n"))
        if not match:
            continue

        indent = " " * len(match.group("lead"))
        new_line = f"{indent}numericId: {numeric_id}\n"

        cursor = index + 1
        while cursor < len(lines):
            candidate = lines[cursor].rstrip("\r\n")
            if not candidate.strip():
                cursor += 1
                continue
            depth = len(candidate) - len(candidate.lstrip(" "))
            if depth < len(indent):
                break
            if depth == len(indent) and EMPTY_NUMERIC_ID_RE.match(candidate.strip()):
                lines[cursor] = new_line
                return "".join(lines)
            cursor += 1

        if not lines[index].endswith("\n"):
            lines[index] = lines[index] + "\n"
        lines.insert(index + 1, new_line)
        return "".join(lines)
    return None


def write_numeric_id(path: Path, *, origin: str, slug: str, numeric_id: str) -> bool:
    text = path.read_text(encoding="utf-8")
    if origin == ORIGIN_FRONTMATTER:
        updated: str | None = insert_frontmatter_numeric_id(text, numeric_id)
    else:
        updated = insert_yaml_numeric_id(text, slug, numeric_id)
    if updated is None:
        return False
    write_text_atomic(path, updated)
    return True
