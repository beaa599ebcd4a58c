"""
Index lifecycle management with dimension enforcement.

The IndexManager makes sure every collection the engine reads from exists
with its vector index and payload indexes before queries depend on them.
Creation is idempotent ("already exists" is success) and, when the store is
still provisioning, re-checked in the background at fixed delays without
blocking foreground calls.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from memory_engineering.providers.embeddings.base import EmbeddingProvider
from memory_engineering.shared.errors import (
    DimensionMismatch,
    IndexNotReady,
    ProviderUnavailable,
)
from memory_engineering.shared.observability.metrics import index_ensure_total
from memory_engineering.shared.qdrant_schema import CollectionSchema
from memory_engineering.store.base import DocumentStore

logger = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_EXISTS = "exists"
OUTCOME_PENDING = "pending"


class IndexManager:
    """
    Ensures collections and payload indexes exist.

    The only process-wide state is ``_ensured``: a per-collection flag set once
    a collection and all its payload indexes have been confirmed.
    """

    def __init__(
        self,
        store: DocumentStore,
        schemas: Sequence[CollectionSchema],
        retry_delays: Sequence[float] = (30.0, 120.0),
    ):
        self._store = store
        self._schemas: Dict[str, CollectionSchema] = {s.name: s for s in schemas}
        self._retry_delays = list(retry_delays)
        self._ensured: Dict[str, bool] = {}
        self._background: Optional[asyncio.Task] = None

    @property
    def schemas(self) -> List[CollectionSchema]:
        return list(self._schemas.values())

    def get_schema(self, name: str) -> CollectionSchema:
        if name not in self._schemas:
            raise KeyError(
                f"Collection '{name}' not registered. Registered: {list(self._schemas)}"
            )
        return self._schemas[name]

    def is_ensured(self, name: str) -> bool:
        return self._ensured.get(name, False)

    @property
    def rechecking(self) -> bool:
        """True while the background re-check task is still running."""
        return self._background is not None and not self._background.done()

    def enforce_compatibility(self, collection: str, provider: EmbeddingProvider) -> None:
        """
        Refuse providers whose vectors would not fit the collection.

        Raises:
            DimensionMismatch: provider dims differ from the collection's dims
        """
        schema = self.get_schema(collection)
        if schema.dims != provider.dims:
            raise DimensionMismatch(
                f"Collection '{collection}' expects {schema.dims}-dim vectors, "
                f"provider '{provider.provider_name}' generates {provider.dims}-dim vectors.",
                expected=schema.dims,
                received=provider.dims,
            )

    async def ensure_collection(self, schema: CollectionSchema) -> str:
        created = await self._store.create_collection(schema)
        for field_name, field_schema in schema.payload_indexes:
            made = await self._store.create_payload_index(schema.name, field_name, field_schema)
            if made:
                logger.info(
                    "Payload index created",
                    extra={"collection": schema.name, "field": field_name},
                )
        status = await self._store.collection_status(schema.name)
        if not status.ready:
            raise IndexNotReady(f"Collection '{schema.name}' is still building.")
        self._ensured[schema.name] = True
        return OUTCOME_CREATED if created else OUTCOME_EXISTS

    async def ensure_indexes(self, *, force: bool = False) -> Dict[str, str]:
        """
        Ensure every registered collection; return ``{collection: outcome}``.

        Outcomes are ``created``, ``exists`` or ``pending``. Pending
        collections are left for the background re-check.
        """
        outcomes: Dict[str, str] = {}
        for name, schema in self._schemas.items():
            if self._ensured.get(name) and not force:
                outcomes[name] = OUTCOME_EXISTS
                continue
            try:
                outcome = await self.ensure_collection(schema)
            except (IndexNotReady, ProviderUnavailable) as exc:
                logger.warning(
                    "Index not ready; will re-check in background",
                    extra={"collection": name, "error": str(exc)},
                )
                outcome = OUTCOME_PENDING
            index_ensure_total.labels(collection_name=name, outcome=outcome).inc()
            outcomes[name] = outcome
        return outcomes

    def schedule_background_checks(self) -> Optional[asyncio.Task]:
        """Start the delayed re-checks if any collection is not yet ensured."""
        if all(self._ensured.get(name) for name in self._schemas):
            return None
        if self.rechecking:
            return self._background
        self._background = asyncio.create_task(self._recheck_loop())
        return self._background

    async def _recheck_loop(self) -> None:
        for delay in self._retry_delays:
            await asyncio.sleep(delay)
            outcomes = await self.ensure_indexes()
            if all(outcome != OUTCOME_PENDING for outcome in outcomes.values()):
                logger.info("All indexes ensured after background re-check")
                return
        logger.error(
            "Indexes still pending after background re-checks",
            extra={"pending": [n for n in self._schemas if not self._ensured.get(n)]},
        )

    async def recreate_indexes(self) -> Dict[str, str]:
        """Drop and rebuild every collection; stored points are discarded."""
        for name in self._schemas:
            logger.warning("Dropping collection for recreation", extra={"collection": name})
            await self._store.drop_collection(name)
            self._ensured.pop(name, None)
        return await self.ensure_indexes(force=True)

    async def status(self) -> List[Dict]:
        statuses = []
        for name, schema in self._schemas.items():
            status = await self._store.collection_status(name)
            statuses.append(
                {
                    "name": name,
                    "exists": status.exists,
                    "ready": status.ready,
                    "points": status.points,
                    "vector_size": status.vector_size,
                    "expected_dims": schema.dims,
                    "payload_indexes": status.payload_indexes,
                    "missing_indexes": [
                        idx for idx in schema.index_names() if idx not in status.payload_indexes
                    ],
                    "ensured": self._ensured.get(name, False),
                }
            )
        return statuses

    async def aclose(self) -> None:
        if self._background is not None and not self._background.done():
            self._background.cancel()
            try:
                await self._background
            except asyncio.CancelledError:
                pass
        self._background = None
