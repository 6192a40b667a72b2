from __future__ import annotations

import datetime as _dt
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

NUMERIC_ID_RE = re.compile(r"^E(?P<number>[1-9]\d*)$")
SLUG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_./-]*$")
SLUG_SEPARATOR_RE = re.compile(r"[-_]+")
INDEX_SLUG_PREFIX = "__index__"
DEFAULT_KIND = "concept"
DEFAULT_CONTENT_FORMAT = "article"


class KGBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CorpusModel(KGBaseModel):
    # Source records carry many display-only keys this compiler never reads.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RecordType(str, Enum):
    entity = "entity"
    page = "page"


def parse_numeric_id(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    match = NUMERIC_ID_RE.match(value.strip())
    if not match:
        return None
    return int(match.group("number"))


def format_numeric_id(number: int) -> str:
    if number < 1:
        raise ValueError("numeric id suffix must be >= 1")
    return f"E{number}"


def validate_numeric_id(value: str) -> str:
    text = value.strip()
    if parse_numeric_id(text) is None:
        raise ValueError("numericId must match E<integer>")
    return text


def validate_slug(value: str) -> str:
    text = value.strip()
    if not text:
        raise ValueError("id must be non-empty")
    if not SLUG_RE.match(text):
        raise ValueError(f"invalid id {text!r}; use letters, digits, '-', '_', '.', '/'")
    return text


def title_from_slug(slug: str) -> str:
    tail = slug.rstrip("/").rsplit("/", 1)[-1]
    parts = [part for part in SLUG_SEPARATOR_RE.split(tail.strip()) if part]
    if not parts:
        return "Untitled"
    return " ".join(parts).title()


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (_dt.date, _dt.datetime)):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    return text


def _normalize_score(value: Any, *, field_name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer between 0 and 100")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError as exc:
            raise ValueError(f"{field_name} must be an integer between 0 and 100") from exc
    number = int(value)
    if number < 0 or number > 100:
        raise ValueError(f"{field_name} must be between 0 and 100")
    return number


@dataclass(frozen=True)
class GraphNode:
    """Minimal capability shared by entities and pages."""

    slug: str
    kind: str
    title: str
    record_type: RecordType
    numeric_id: str | None = None


class RelatedEntry(CorpusModel):
    target: str = Field(alias="id")
    relationship: str | None = None

    @field_validator("target", mode="before")
    @classmethod
    def validate_target(cls, value: Any) -> str:
        return validate_slug(str(value))

    @field_validator("relationship", mode="before")
    @classmethod
    def normalize_relationship(cls, value: Any) -> str | None:
        text = _normalize_optional_text(value)
        return text.lower() if text else None


class EntityRecord(CorpusModel):
    record_type: Literal[RecordType.entity] = RecordType.entity
    slug: str = Field(alias="id")
    numeric_id: str | None = Field(alias="numericId", default=None)
    kind: str = Field(alias="type", default=DEFAULT_KIND)
    title: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    related_entries: list[RelatedEntry] = Field(alias="relatedEntries", default_factory=list)
    last_updated: str | None = Field(alias="lastUpdated", default=None)

    @field_validator("slug", mode="before")
    @classmethod
    def validate_slug_value(cls, value: Any) -> str:
        return validate_slug(str(value))

    @field_validator("numeric_id", mode="before")
    @classmethod
    def validate_numeric_id_value(cls, value: Any) -> str | None:
        text = _normalize_optional_text(value)
        if text is None:
            return None
        return validate_numeric_id(text)

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, value: Any) -> str:
        text = _normalize_optional_text(value)
        return text.lower() if text else DEFAULT_KIND

    @field_validator("title", "description", "last_updated", mode="before")
    @classmethod
    def normalize_text(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        tags: list[str] = []
        for item in value:
            text = _normalize_optional_text(item)
            if text is None or text in tags:
                continue
            tags.append(text)
        return tags

    @field_validator("related_entries", mode="before")
    @classmethod
    def normalize_related_entries(cls, value: Any) -> list[Any]:
        if value is None:
            return []
        entries: list[Any] = []
        for item in value:
            # Bare strings are shorthand for {id: <slug>}.
            entries.append({"id": item} if isinstance(item, str) else item)
        return entries

    def display_title(self) -> str:
        return self.title or title_from_slug(self.slug)

    def as_node(self) -> GraphNode:
        return GraphNode(
            slug=self.slug,
            kind=self.kind,
            title=self.display_title(),
            record_type=RecordType.entity,
            numeric_id=self.numeric_id,
        )


class PageRecord(CorpusModel):
    record_type: Literal[RecordType.page] = RecordType.page
    slug: str = Field(alias="id")
    numeric_id: str | None = Field(alias="numericId", default=None)
    title: str | None = None
    category: str = "other"
    subcategory: str | None = None
    quality: int | None = None
    importance: int | None = None
    content_format: str = Field(alias="contentFormat", default=DEFAULT_CONTENT_FORMAT)
    entity_type: str | None = Field(alias="entityType", default=None)

    @field_validator("slug", mode="before")
    @classmethod
    def validate_slug_value(cls, value: Any) -> str:
        return validate_slug(str(value))

    @field_validator("numeric_id", mode="before")
    @classmethod
    def validate_numeric_id_value(cls, value: Any) -> str | None:
        text = _normalize_optional_text(value)
        if text is None:
            return None
        return validate_numeric_id(text)

    @field_validator("title", "subcategory", mode="before")
    @classmethod
    def normalize_text(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)

    @field_validator("entity_type", mode="before")
    @classmethod
    def normalize_entity_type(cls, value: Any) -> str | None:
        text = _normalize_optional_text(value)
        return text.lower() if text else None

    @field_validator("category", "content_format", mode="before")
    @classmethod
    def normalize_required_token(cls, value: Any, info: ValidationInfo) -> str:
        text = _normalize_optional_text(value)
        if text is None:
            return "other" if info.field_name == "category" else DEFAULT_CONTENT_FORMAT
        return text

    @field_validator("quality", mode="before")
    @classmethod
    def validate_quality(cls, value: Any) -> int | None:
        return _normalize_score(value, field_name="quality")

    @field_validator("importance", mode="before")
    @classmethod
    def validate_importance(cls, value: Any) -> int | None:
        return _normalize_score(value, field_name="importance")

    @property
    def is_index(self) -> bool:
        return self.slug.startswith(f"{INDEX_SLUG_PREFIX}/")

    def display_title(self) -> str:
        return self.title or title_from_slug(self.slug)

    def as_node(self) -> GraphNode:
        return GraphNode(
            slug=self.slug,
            kind=self.entity_type or DEFAULT_KIND,
            title=self.display_title(),
            record_type=RecordType.page,
            numeric_id=self.numeric_id,
        )


CorpusRecord = EntityRecord | PageRecord


class RegistryFile(KGBaseModel):
    next_id: int = Field(alias="nextId", default=1)
    entities: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_counter_key(cls, value: Any) -> Any:
        if isinstance(value, dict) and "_nextId" in value:
            payload = dict(value)
            legacy = payload.pop("_nextId")
            payload.setdefault("nextId", legacy)
            return payload
        return value

    @field_validator("next_id")
    @classmethod
    def validate_next_id(cls, value: int) -> int:
        if value < 1:
            raise ValueError("nextId must be >= 1")
        return value

    @field_validator("entities")
    @classmethod
    def validate_entities(cls, value: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        seen_slugs: set[str] = set()
        for numeric_id, slug in value.items():
            slug = validate_slug(slug)
            if slug in seen_slugs:
                raise ValueError(f"slug {slug!r} is mapped to more than one numeric id")
            seen_slugs.add(slug)
            normalized[validate_numeric_id(numeric_id)] = slug
        return normalized
