from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import Field, field_validator, model_validator

from kg.registry import DEFAULT_SKIP_CATEGORIES
from kg.schemas import KGBaseModel
from kg.signals import (
    BODY_REFERENCE_WEIGHT,
    DECLARED_RELATION_WEIGHT,
    DEFAULT_INVERSE_LABELS,
    SHARED_TAG_NUMERATOR,
    SIMILARITY_MAX_WEIGHT,
    SLUG_PREFIX_WEIGHT,
)

DEFAULT_CONTENT_DIR = "content"
DEFAULT_DATA_DIR = "data"
DEFAULT_REGISTRY_PATH = f"{DEFAULT_DATA_DIR}/id-registry.json"
DEFAULT_SIMILARITY_PATH = f"{DEFAULT_DATA_DIR}/similarity.json"
DEFAULT_OUTPUT_DIR = "build/data"


def _validate_relative_path(value: str) -> str:
    path = value.strip()
    if not path:
        raise ValueError("path must be non-empty")
    if path.startswith("/"):
        raise ValueError("path must be relative")
    if ".." in path.split("/"):
        raise ValueError("path cannot contain '..'")
    return path


def _parse_bool(raw: str, *, env_var: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{env_var} must be a boolean value")


def _parse_int(raw: str, *, env_var: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{env_var} must be an integer") from exc


def _parse_float(raw: str, *, env_var: str) -> float:
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{env_var} must be a number") from exc


def _parse_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class SignalWeights(KGBaseModel):
    declared_relation: float = DECLARED_RELATION_WEIGHT
    slug_prefix: float = SLUG_PREFIX_WEIGHT
    body_reference: float = BODY_REFERENCE_WEIGHT
    similarity: float = SIMILARITY_MAX_WEIGHT
    shared_tag: float = SHARED_TAG_NUMERATOR

    @field_validator("declared_relation", "slug_prefix", "body_reference", "similarity", "shared_tag")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("signal weights must be >= 0")
        return value


class GraphConfig(KGBaseModel):
    max_per_entity: int = 25
    min_per_type: int = 2
    min_score: float = 1.0
    default_quality: int = 5
    default_importance: int = 50
    weights: SignalWeights = Field(default_factory=SignalWeights)
    inverse_labels: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_INVERSE_LABELS))

    @field_validator("max_per_entity")
    @classmethod
    def validate_max_per_entity(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_per_entity must be >= 1")
        return value

    @field_validator("min_per_type")
    @classmethod
    def validate_min_per_type(cls, value: int) -> int:
        if value < 0:
            raise ValueError("min_per_type must be >= 0")
        return value

    @field_validator("min_score")
    @classmethod
    def validate_min_score(cls, value: float) -> float:
        if value < 0:
            raise ValueError("min_score must be >= 0")
        return value

    @field_validator("default_quality", "default_importance")
    @classmethod
    def validate_default_rating(cls, value: int) -> int:
        if value < 0 or value > 100:
            raise ValueError("default ratings must be between 0 and 100")
        return value

    @field_validator("inverse_labels")
    @classmethod
    def normalize_inverse_labels(cls, value: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for label, inverse in value.items():
            key = label.strip().lower()
            text = inverse.strip()
            if not key or not text:
                raise ValueError("inverse labels must be non-empty")
            normalized[key] = text
        return normalized

    @model_validator(mode="after")
    def validate_selection_bounds(self) -> "GraphConfig":
        if self.min_per_type > self.max_per_entity:
            raise ValueError("min_per_type must be <= max_per_entity")
        return self


class IdConfig(KGBaseModel):
    registry_path: str = DEFAULT_REGISTRY_PATH
    skip_categories: list[str] = Field(default_factory=lambda: sorted(DEFAULT_SKIP_CATEGORIES))
    allow_reassignment: bool = False

    @field_validator("registry_path")
    @classmethod
    def validate_registry_path(cls, value: str) -> str:
        return _validate_relative_path(value)

    @field_validator("skip_categories")
    @classmethod
    def normalize_skip_categories(cls, value: list[str]) -> list[str]:
        categories: list[str] = []
        for item in value:
            text = item.strip()
            if text and text not in categories:
                categories.append(text)
        return categories


class CompilerConfig(KGBaseModel):
    content_dir: str = DEFAULT_CONTENT_DIR
    data_dir: str = DEFAULT_DATA_DIR
    similarity_path: str = DEFAULT_SIMILARITY_PATH
    output_dir: str = DEFAULT_OUTPUT_DIR
    ids: IdConfig = Field(default_factory=IdConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)

    @field_validator("content_dir", "data_dir", "similarity_path", "output_dir")
    @classmethod
    def validate_paths(cls, value: str) -> str:
        return _validate_relative_path(value)

    @property
    def entities_dir(self) -> str:
        return f"{self.data_dir}/entities"


def load_compiler_config_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    base_config: CompilerConfig | None = None,
) -> CompilerConfig:
    env = dict(os.environ if environ is None else environ)
    config = base_config or CompilerConfig()
    payload = config.model_dump(mode="python")

    for field_name, env_var in (
        ("content_dir", "KG_CONTENT_DIR"),
        ("data_dir", "KG_DATA_DIR"),
        ("similarity_path", "KG_SIMILARITY_PATH"),
        ("output_dir", "KG_OUTPUT_DIR"),
    ):
        if env_var in env:
            payload[field_name] = env[env_var]

    if "KG_REGISTRY_PATH" in env:
        payload["ids"]["registry_path"] = env["KG_REGISTRY_PATH"]
    if "KG_SKIP_CATEGORIES" in env:
        payload["ids"]["skip_categories"] = _parse_list(env["KG_SKIP_CATEGORIES"])
    if "KG_ALLOW_ID_REASSIGNMENT" in env:
        payload["ids"]["allow_reassignment"] = _parse_bool(
            env["KG_ALLOW_ID_REASSIGNMENT"],
            env_var="KG_ALLOW_ID_REASSIGNMENT",
        )

    graph_payload = payload["graph"]
    for field_name, env_var in (
        ("max_per_entity", "KG_MAX_PER_ENTITY"),
        ("min_per_type", "KG_MIN_PER_TYPE"),
        ("default_quality", "KG_DEFAULT_QUALITY"),
        ("default_importance", "KG_DEFAULT_IMPORTANCE"),
    ):
        if env_var in env:
            graph_payload[field_name] = _parse_int(env[env_var], env_var=env_var)
    if "KG_MIN_SCORE" in env:
        graph_payload["min_score"] = _parse_float(env["KG_MIN_SCORE"], env_var="KG_MIN_SCORE")

    for field_name in SignalWeights.model_fields:
        env_var = f"KG_WEIGHT_{field_name.upper()}"
        if env_var in env:
            graph_payload["weights"][field_name] = _parse_float(env[env_var], env_var=env_var)

    return CompilerConfig.model_validate(payload)
