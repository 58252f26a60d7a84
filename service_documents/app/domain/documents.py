"""
Generic document operations over dynamically named collections.

Reads on the list path are cache-aside and fall back to a stale cache entry
when the datastore fails. Every successful write evicts the collection's
cache namespace.
"""

import json
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TYPE_CHECKING

from shared.errors import InvalidArgumentError, NotFoundError, ServiceException
from shared.logging import get_logger
from ..adapters.mongo_store import serialize_document
from ..caching.cache_manager import CacheManager
from ..query.options import parse_query_options
from .validation import require_object_id, sanitize_document, validate_namespace

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.mongo_store import MongoDocumentStore
    from shared.metrics import MetricsCollector


IDENTITY_FIELD = "_id"
STALE_WARNING = "Serving stale data due to database error"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def namespace(database: str, collection: str) -> str:
    return f"{database}/{collection}"


def cache_key(database: str, collection: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Build ``database/collection[:json(params)]``; parameter order is preserved."""
    base = namespace(database, collection)
    if not params:
        return base
    return f"{base}:{json.dumps(dict(params), separators=(',', ':'), default=str)}"


class DocumentGateway:
    """Executes CRUD and aggregation requests against any database/collection."""

    def __init__(
        self,
        store: "MongoDocumentStore",
        cache: CacheManager,
        *,
        allowed_databases: Optional[Iterable[str]] = None,
        metrics: Optional["MetricsCollector"] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.allowed_databases = list(allowed_databases or [])
        self.metrics = metrics
        self.logger = get_logger("documents.gateway")
        self._now = now

    def validate_namespace(self, database: str, collection: str) -> None:
        validate_namespace(database, collection, self.allowed_databases)

    def invalidate_collection(self, database: str, collection: str) -> int:
        """Evict every cached view of a collection."""
        pattern = namespace(database, collection)
        count = self.cache.invalidate_pattern(pattern)
        if self.metrics and count:
            self.metrics.increment_counter("cache_invalidations_total", count)
        return count

    def _record_cache(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_requests_total", result=result)

    def _timed(self, operation: str):
        if self.metrics:
            return self.metrics.time_operation("datastore_query_duration_seconds", operation=operation)
        return nullcontext()

    async def list_documents(
        self,
        database: str,
        collection: str,
        params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """List documents with filtering, sorting, pagination and projection."""
        self.validate_namespace(database, collection)
        key = cache_key(database, collection, params)

        cached = self.cache.get(key)
        if cached is not None:
            self._record_cache("hit")
            return {**cached, "meta": {**cached.get("meta", {}), "source": "cache"}}

        self._record_cache("miss")
        spec = parse_query_options(params)
        mongo_filter = spec.mongo_filter()

        try:
            with self._timed("find"):
                documents = await self.store.find(
                    database,
                    collection,
                    mongo_filter,
                    projection=spec.mongo_projection(),
                    sort=spec.mongo_sort(),
                    skip=spec.skip,
                    limit=spec.limit,
                )
                total = await self.store.count(database, collection, mongo_filter)
        except ServiceException as exc:
            if exc.status_code < 500:
                raise
            stale = self.cache.get_stale(key)
            if stale is None or not stale.data:
                raise
            self._record_cache("stale")
            self.logger.warning(
                "Serving stale cache after datastore failure",
                key=key,
                expired=stale.is_expired,
                error=exc.message,
            )
            return {
                **stale.data,
                "meta": {
                    **stale.data.get("meta", {}),
                    "source": "cache-stale",
                    "stale": True,
                    "cache": {
                        "createdAt": stale.created_at,
                        "expiry": stale.expiry_iso,
                        "isExpired": stale.is_expired,
                    },
                },
                "warning": STALE_WARNING,
            }

        response = {
            "success": True,
            "data": documents,
            "meta": {
                "total": total,
                "count": len(documents),
                "database": database,
                "collection": collection,
                "source": "database",
            },
        }
        self.cache.set(key, response)
        return response

    async def get_document(self, database: str, collection: str, document_id: str) -> Dict[str, Any]:
        self.validate_namespace(database, collection)
        oid = require_object_id(document_id)

        document = await self.store.find_one(database, collection, {IDENTITY_FIELD: oid})
        if document is None:
            raise NotFoundError()
        return {"success": True, "data": document}

    async def create_document(self, database: str, collection: str, body: Any) -> Dict[str, Any]:
        self.validate_namespace(database, collection)
        if not isinstance(body, dict) or not body:
            raise InvalidArgumentError("Request body cannot be empty")

        document = self._stamp_created(body)
        inserted_id = await self.store.insert_one(database, collection, document)
        self.invalidate_collection(database, collection)

        self.logger.info("Document created", database=database, collection=collection, id=inserted_id)
        return {
            "success": True,
            "data": serialize_document({**document, IDENTITY_FIELD: inserted_id}),
            "message": "Document created successfully",
        }

    async def create_documents(self, database: str, collection: str, body: Any) -> Dict[str, Any]:
        self.validate_namespace(database, collection)
        if not isinstance(body, list) or not body:
            raise InvalidArgumentError("Request body must be a non-empty array")
        invalid = [index for index, item in enumerate(body) if not isinstance(item, dict)]
        if invalid:
            raise InvalidArgumentError("Every bulk item must be a JSON object", details={"indexes": invalid})

        documents = [self._stamp_created(item) for item in body]
        inserted_ids = await self.store.insert_many(database, collection, documents)
        self.invalidate_collection(database, collection)

        return {
            "success": True,
            "data": {
                "insertedCount": len(inserted_ids),
                "insertedIds": inserted_ids,
            },
            "message": f"{len(inserted_ids)} documents created successfully",
        }

    async def replace_document(self, database: str, collection: str, document_id: str, body: Any) -> Dict[str, Any]:
        """Replace a document's body; its identity is kept and ``updatedAt`` stamped."""
        self.validate_namespace(database, collection)
        oid = require_object_id(document_id)
        self._require_body(body)

        replacement = self._strip_identity(body)
        replacement["updatedAt"] = self._now()
        document = await self.store.replace_one(database, collection, {IDENTITY_FIELD: oid}, replacement)
        if document is None:
            raise NotFoundError()
        self.invalidate_collection(database, collection)

        return {"success": True, "data": document, "message": "Document updated successfully"}

    async def update_document(self, database: str, collection: str, document_id: str, body: Any) -> Dict[str, Any]:
        """Merge ``body`` into a document with ``$set``."""
        self.validate_namespace(database, collection)
        oid = require_object_id(document_id)
        self._require_body(body)

        fields = self._strip_identity(body)
        fields["updatedAt"] = self._now()
        document = await self.store.update_one(database, collection, {IDENTITY_FIELD: oid}, fields)
        if document is None:
            raise NotFoundError()
        self.invalidate_collection(database, collection)

        return {"success": True, "data": document, "message": "Document patched successfully"}

    async def delete_document(self, database: str, collection: str, document_id: str) -> Dict[str, Any]:
        self.validate_namespace(database, collection)
        oid = require_object_id(document_id)

        document = await self.store.delete_one(database, collection, {IDENTITY_FIELD: oid})
        if document is None:
            raise NotFoundError()
        self.invalidate_collection(database, collection)

        return {"success": True, "data": document, "message": "Document deleted successfully"}

    async def delete_documents(self, database: str, collection: str, body: Any) -> Dict[str, Any]:
        """Delete by filter. An empty filter is refused so a collection is never wiped by accident."""
        self.validate_namespace(database, collection)
        mongo_filter = sanitize_document(body) if isinstance(body, dict) else None
        if not mongo_filter:
            raise InvalidArgumentError(
                "Filter criteria required in request body to prevent accidental deletion of all documents"
            )

        deleted = await self.store.delete_many(database, collection, mongo_filter)
        self.invalidate_collection(database, collection)

        self.logger.info("Documents deleted", database=database, collection=collection, deleted=deleted)
        return {
            "success": True,
            "data": {"deletedCount": deleted},
            "message": f"{deleted} documents deleted successfully",
        }

    async def count_documents(self, database: str, collection: str, params: Mapping[str, Any]) -> Dict[str, Any]:
        self.validate_namespace(database, collection)
        spec = parse_query_options(params)
        total = await self.store.count(database, collection, spec.mongo_filter())
        return {"success": True, "data": {"count": total}}

    async def distinct_values(
        self,
        database: str,
        collection: str,
        field: str,
        params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        self.validate_namespace(database, collection)
        if not field or field.startswith("$"):
            raise InvalidArgumentError("Invalid field name", details={"field": field})
        spec = parse_query_options(params)
        values = await self.store.distinct(database, collection, field, spec.mongo_filter())
        return {"success": True, "data": values, "meta": {"field": field, "count": len(values)}}

    async def aggregate(self, database: str, collection: str, pipeline: Any) -> Dict[str, Any]:
        """Run a caller-supplied aggregation pipeline verbatim."""
        self.validate_namespace(database, collection)
        if not isinstance(pipeline, list):
            raise InvalidArgumentError("Aggregation pipeline must be provided as an array")

        results = await self.store.aggregate(database, collection, pipeline)
        return {"success": True, "data": results, "meta": {"count": len(results)}}

    @staticmethod
    def _require_body(body: Any) -> None:
        if not isinstance(body, dict) or not body:
            raise InvalidArgumentError("Request body cannot be empty")

    @staticmethod
    def _strip_identity(body: Dict[str, Any]) -> Dict[str, Any]:
        document = sanitize_document(body)
        document.pop(IDENTITY_FIELD, None)
        return document

    def _stamp_created(self, body: Dict[str, Any]) -> Dict[str, Any]:
        document = self._strip_identity(body)
        timestamp = self._now()
        document["createdAt"] = timestamp
        document["updatedAt"] = timestamp
        return document
