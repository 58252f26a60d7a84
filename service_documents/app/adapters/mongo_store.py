"""
Async MongoDB adapter used by the Document Gateway.

Every call addresses a ``database``/``collection`` pair by name and returns
plain, JSON-ready documents (``ObjectId`` and ``datetime`` values rendered as
strings). Driver errors are translated to the shared error taxonomy here.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from bson import ObjectId
from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from shared.errors import ConflictError, InternalError, UnavailableError
from shared.logging import get_logger


_UNAVAILABLE_ERRORS = (ServerSelectionTimeoutError, ConnectionFailure, NetworkTimeout, AutoReconnect)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return the ObjectId for a canonical 24-char hex string, else None."""
    if not value or not isinstance(value, str):
        return None
    if not ObjectId.is_valid(value):
        return None
    oid = ObjectId(value)
    return oid if str(oid) == value else None


def serialize_document(value: Any) -> Any:
    """Render BSON values as JSON-ready Python values."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal128):
        return str(value.to_decimal())
    if isinstance(value, Mapping):
        return {key: serialize_document(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_document(item) for item in value]
    return value


class MongoDocumentStore:
    """Thin async wrapper over a motor client addressing collections by name."""

    def __init__(
        self,
        uri: str,
        *,
        max_pool_size: int = 10,
        server_selection_timeout_ms: int = 5000,
        socket_timeout_ms: int = 45000,
    ) -> None:
        self.logger = get_logger("documents.mongo")
        self._client = AsyncIOMotorClient(
            uri,
            maxPoolSize=max_pool_size,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
            tz_aware=True,
        )

    async def close(self) -> None:
        """Close the underlying client."""
        self._client.close()

    async def ping(self) -> bool:
        """Return True when the server answers a ping."""
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError as exc:
            self.logger.warning("MongoDB ping failed", error=str(exc))
            return False

    def _collection(self, database: str, collection: str):
        return self._client[database][collection]

    @asynccontextmanager
    async def _translate_errors(self, operation: str, database: str, collection: str):
        try:
            yield
        except DuplicateKeyError as exc:
            key_value = (exc.details or {}).get("keyValue")
            raise ConflictError(details={"keyValue": serialize_document(key_value)} if key_value else None) from exc
        except _UNAVAILABLE_ERRORS as exc:
            self.logger.error(
                "MongoDB unavailable",
                operation=operation,
                database=database,
                collection=collection,
                error=str(exc),
            )
            raise UnavailableError() from exc
        except PyMongoError as exc:
            self.logger.error(
                "MongoDB operation failed",
                operation=operation,
                database=database,
                collection=collection,
                error=str(exc),
            )
            raise InternalError(details={"error": str(exc)}) from exc

    async def find(
        self,
        database: str,
        collection: str,
        filter: Dict[str, Any],
        *,
        projection: Optional[Dict[str, int]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        async with self._translate_errors("find", database, collection):
            cursor = self._collection(database, collection).find(filter, projection)
            if sort:
                cursor = cursor.sort(list(sort))
            if skip > 0:
                cursor = cursor.skip(skip)
            if limit > 0:
                cursor = cursor.limit(limit)
            documents = await cursor.to_list(length=None)
        return serialize_document(documents)

    async def count(self, database: str, collection: str, filter: Dict[str, Any]) -> int:
        async with self._translate_errors("count", database, collection):
            return await self._collection(database, collection).count_documents(filter)

    async def find_one(self, database: str, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._translate_errors("find_one", database, collection):
            document = await self._collection(database, collection).find_one(filter)
        return serialize_document(document) if document is not None else None

    async def insert_one(self, database: str, collection: str, document: Dict[str, Any]) -> str:
        async with self._translate_errors("insert_one", database, collection):
            result = await self._collection(database, collection).insert_one(document)
        return str(result.inserted_id)

    async def insert_many(self, database: str, collection: str, documents: List[Dict[str, Any]]) -> List[str]:
        async with self._translate_errors("insert_many", database, collection):
            result = await self._collection(database, collection).insert_many(documents)
        return [str(inserted_id) for inserted_id in result.inserted_ids]

    async def update_one(
        self,
        database: str,
        collection: str,
        filter: Dict[str, Any],
        fields: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """``$set`` ``fields`` on the first match; return the updated document or None."""
        async with self._translate_errors("update_one", database, collection):
            document = await self._collection(database, collection).find_one_and_update(
                filter,
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        return serialize_document(document) if document is not None else None

    async def replace_one(
        self,
        database: str,
        collection: str,
        filter: Dict[str, Any],
        replacement: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Replace the first match; return the new document or None."""
        async with self._translate_errors("replace_one", database, collection):
            document = await self._collection(database, collection).find_one_and_replace(
                filter,
                replacement,
                return_document=ReturnDocument.AFTER,
            )
        return serialize_document(document) if document is not None else None

    async def delete_one(self, database: str, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Delete the first match; return the removed document or None."""
        async with self._translate_errors("delete_one", database, collection):
            document = await self._collection(database, collection).find_one_and_delete(filter)
        return serialize_document(document) if document is not None else None

    async def delete_many(self, database: str, collection: str, filter: Dict[str, Any]) -> int:
        async with self._translate_errors("delete_many", database, collection):
            result = await self._collection(database, collection).delete_many(filter)
        return result.deleted_count

    async def distinct(self, database: str, collection: str, field: str, filter: Dict[str, Any]) -> List[Any]:
        async with self._translate_errors("distinct", database, collection):
            values = await self._collection(database, collection).distinct(field, filter)
        return serialize_document(values)

    async def aggregate(self, database: str, collection: str, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        async with self._translate_errors("aggregate", database, collection):
            cursor = self._collection(database, collection).aggregate(pipeline)
            results = await cursor.to_list(length=None)
        return serialize_document(results)

    async def increment(
        self,
        database: str,
        collection: str,
        filter: Dict[str, Any],
        field: str,
        amount: float,
    ) -> int:
        """``$inc`` ``field`` by ``amount`` on the first match; return the matched count."""
        async with self._translate_errors("increment", database, collection):
            result = await self._collection(database, collection).update_one(filter, {"$inc": {field: amount}})
        return result.matched_count
