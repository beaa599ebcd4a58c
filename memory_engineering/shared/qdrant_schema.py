from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from qdrant_client.models import (
    Distance,
    PayloadSchemaType,
    TextIndexParams,
    TextIndexType,
    TokenizerType,
    VectorParams,
)

from memory_engineering.shared.config import Config
from memory_engineering.shared.errors import DimensionMismatch

logger = logging.getLogger(__name__)

PayloadFieldSchema = Union[PayloadSchemaType, TextIndexParams]

DISTANCES = {
    "cosine": Distance.COSINE,
    "dot": Distance.DOT,
    "euclidean": Distance.EUCLID,
}

# Analyzed text index for the lexical pipeline. The project scope id is never
# matched through this index: analyzed fields lowercase/split values.
SEARCHABLE_TEXT_INDEX = TextIndexParams(
    type=TextIndexType.TEXT,
    tokenizer=TokenizerType.WORD,
    min_token_len=2,
    max_token_len=40,
    lowercase=True,
)

COMMON_PAYLOAD_INDEXES: List[Tuple[str, PayloadFieldSchema]] = [
    ("project_id", PayloadSchemaType.KEYWORD),  # exact-match token field
    ("doc_type", PayloadSchemaType.KEYWORD),
    ("name", PayloadSchemaType.KEYWORD),
    ("searchable_text", SEARCHABLE_TEXT_INDEX),
    ("freshness", PayloadSchemaType.FLOAT),
    ("access_count", PayloadSchemaType.INTEGER),
]

MEMORY_PAYLOAD_INDEXES: List[Tuple[str, PayloadFieldSchema]] = [
    ("memory_class", PayloadSchemaType.KEYWORD),
    ("created_at", PayloadSchemaType.FLOAT),
    ("updated_at", PayloadSchemaType.FLOAT),
    ("expires_at", PayloadSchemaType.FLOAT),
    ("metadata.telemetry_day", PayloadSchemaType.KEYWORD),
    ("metadata.telemetry_kind", PayloadSchemaType.KEYWORD),
]

CODE_PAYLOAD_INDEXES: List[Tuple[str, PayloadFieldSchema]] = [
    ("file_path", PayloadSchemaType.KEYWORD),
    ("kind", PayloadSchemaType.KEYWORD),
    ("pattern_tags", PayloadSchemaType.KEYWORD),
    ("dependencies", PayloadSchemaType.KEYWORD),
    ("last_modified", PayloadSchemaType.FLOAT),
]


@dataclass(frozen=True)
class CollectionSchema:
    """Desired definition of one collection: its vector index and payload indexes."""

    name: str
    vector_name: str
    dims: int
    distance: Distance = Distance.COSINE
    payload_indexes: List[Tuple[str, PayloadFieldSchema]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def vectors_config(self) -> dict:
        return {self.vector_name: VectorParams(size=self.dims, distance=self.distance)}

    def index_names(self) -> List[str]:
        return [name for name, _ in self.payload_indexes]


def _distance(config: Config) -> Distance:
    return DISTANCES[config.embedding.similarity]


def build_memory_schema(config: Config) -> CollectionSchema:
    return CollectionSchema(
        name=config.store.memory_collection,
        vector_name=config.store.vector_name,
        dims=config.embedding.dims,
        distance=_distance(config),
        payload_indexes=COMMON_PAYLOAD_INDEXES + MEMORY_PAYLOAD_INDEXES,
    )


def build_code_schema(config: Config) -> CollectionSchema:
    return CollectionSchema(
        name=config.store.code_collection,
        vector_name=config.store.vector_name,
        dims=config.embedding.dims,
        distance=_distance(config),
        payload_indexes=COMMON_PAYLOAD_INDEXES + CODE_PAYLOAD_INDEXES,
    )


def build_schemas(config: Config) -> List[CollectionSchema]:
    return [build_memory_schema(config), build_code_schema(config)]


def validate_vector_params(
    schema: CollectionSchema, existing: Optional[Any]
) -> None:
    """
    Compare an existing collection's vector params with the desired schema.

    ``existing`` is the ``vectors`` entry of a collection's config: either a
    dict of named ``VectorParams`` or a single ``VectorParams``.

    Raises DimensionMismatch when the stored vector size differs.
    """
    if existing is None:
        return
    params = existing.get(schema.vector_name) if isinstance(existing, dict) else existing
    if params is None:
        raise DimensionMismatch(
            f"Collection '{schema.name}' has no vector named '{schema.vector_name}'.",
            remediation="Run recreate_indexes() to rebuild the collection definition.",
        )
    size = getattr(params, "size", None)
    if size is not None and size != schema.dims:
        raise DimensionMismatch(
            f"Collection '{schema.name}' stores {size}-dim vectors but the embedding "
            f"model produces {schema.dims}.",
            expected=schema.dims,
            received=size,
            remediation=(
                "Run recreate_indexes() and re-index, or set embedding.dims to match "
                "the stored collection."
            ),
        )
    distance = getattr(params, "distance", None)
    if distance is not None and distance != schema.distance:
        logger.warning(
            "Collection distance differs from configuration",
            extra={
                "collection": schema.name,
                "stored": str(distance),
                "configured": str(schema.distance),
            },
        )
