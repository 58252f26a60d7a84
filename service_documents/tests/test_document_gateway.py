"""
Unit tests for the generic document gateway.
"""

import pytest
from datetime import datetime, timezone
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_documents.app.caching.cache_manager import CacheManager
from service_documents.app.domain.documents import DocumentGateway, STALE_WARNING, cache_key
from shared.errors import InvalidArgumentError, NotFoundError, UnavailableError
from shared.test_helpers import InMemoryDocumentStore, TestDataFactory


FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.timings = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        self.timings.append((operation_name, labels))
        yield


class FakeClock:

    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


class TestCacheKey:
    """Test cases for cache_key."""

    def test_without_params(self):
        assert cache_key("utiles", "products") == "utiles/products"
        assert cache_key("utiles", "products", {}) == "utiles/products"

    def test_with_params(self):
        assert cache_key("utiles", "products", {"page": "2", "limit": "5"}) == 'utiles/products:{"page":"2","limit":"5"}'


class TestDocumentGateway:
    """Test cases for DocumentGateway."""

    @pytest.fixture
    def store(self):
        store = InMemoryDocumentStore()
        store.seed("utiles", "products", TestDataFactory.create_products())
        return store

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return CacheManager(300, clock=clock)

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def gateway(self, store, cache, metrics):
        return DocumentGateway(store, cache, metrics=metrics, now=lambda: FIXED_NOW)

    @pytest.mark.asyncio
    async def test_list_documents_from_database(self, gateway, store):
        result = await gateway.list_documents("utiles", "products", {"category": "pens", "sort": "price"})

        assert result["success"] is True
        assert [doc["refid"] for doc in result["data"]] == ["B", "A"]
        assert result["meta"] == {
            "total": 2,
            "count": 2,
            "database": "utiles",
            "collection": "products",
            "source": "database",
        }
        assert all(isinstance(doc["_id"], str) for doc in result["data"])

    @pytest.mark.asyncio
    async def test_list_documents_cache_hit(self, gateway, store, metrics):
        """Test the second identical request is served from cache."""
        params = {"category": "pens"}
        await gateway.list_documents("utiles", "products", params)
        calls_after_first = len(store.calls)

        result = await gateway.list_documents("utiles", "products", params)

        assert result["meta"]["source"] == "cache"
        assert result["meta"]["total"] == 2
        assert len(store.calls) == calls_after_first
        assert ("cache_requests_total", 1, {"result": "hit"}) in metrics.counters
        assert metrics.timings == [("datastore_query_duration_seconds", {"operation": "find"})]

    @pytest.mark.asyncio
    async def test_list_documents_pagination(self, gateway):
        result = await gateway.list_documents("utiles", "products", {"page": "2", "limit": "2", "sort": "refid"})

        assert [doc["refid"] for doc in result["data"]] == ["C", "D"]
        assert result["meta"]["total"] == 4
        assert result["meta"]["count"] == 2

    @pytest.mark.asyncio
    async def test_list_documents_projection(self, gateway):
        result = await gateway.list_documents("utiles", "products", {"fields": "name", "refid": "A"})

        assert set(result["data"][0]) == {"_id", "name"}

    @pytest.mark.asyncio
    async def test_stale_fallback_on_outage(self, gateway, store, cache, clock):
        """Test an expired entry is served when the datastore is down."""
        fresh = await gateway.list_documents("utiles", "products", {})
        clock.now += 301
        store.fail()

        result = await gateway.list_documents("utiles", "products", {})

        assert result["data"] == fresh["data"]
        assert result["meta"]["source"] == "cache-stale"
        assert result["meta"]["stale"] is True
        assert result["meta"]["cache"]["isExpired"] is True
        assert result["warning"] == STALE_WARNING

    @pytest.mark.asyncio
    async def test_outage_without_cache_raises(self, gateway, store):
        store.fail()

        with pytest.raises(UnavailableError):
            await gateway.list_documents("utiles", "products", {})

    @pytest.mark.asyncio
    async def test_invalid_filter_not_served_stale(self, gateway, store):
        with pytest.raises(InvalidArgumentError):
            await gateway.list_documents("utiles", "products", {"price": "gte:abc"})
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_invalid_database_name(self, gateway, store):
        with pytest.raises(InvalidArgumentError) as exc_info:
            await gateway.list_documents("bad.db", "products", {})

        assert exc_info.value.message == "Invalid database name"
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_system_collection_rejected(self, gateway):
        with pytest.raises(InvalidArgumentError):
            await gateway.list_documents("utiles", "system.users", {})

    @pytest.mark.asyncio
    async def test_allowed_databases(self, store, cache):
        gateway = DocumentGateway(store, cache, allowed_databases=["utiles"])

        with pytest.raises(InvalidArgumentError) as exc_info:
            await gateway.list_documents("admin", "users", {})

        assert exc_info.value.message == "Database is not allowed"

    @pytest.mark.asyncio
    async def test_get_document(self, gateway, store):
        product_id = store.seed("utiles", "products", [{"refid": "Z", "name": "Eraser"}])[0]

        result = await gateway.get_document("utiles", "products", product_id)

        assert result == {"success": True, "data": {"_id": product_id, "refid": "Z", "name": "Eraser"}}

    @pytest.mark.asyncio
    async def test_get_document_invalid_id_skips_lookup(self, gateway, store):
        with pytest.raises(InvalidArgumentError) as exc_info:
            await gateway.get_document("utiles", "products", "not-an-id")

        assert exc_info.value.message == "Invalid document ID format"
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_get_document_not_found(self, gateway):
        with pytest.raises(NotFoundError):
            await gateway.get_document("utiles", "products", "507f1f77bcf86cd799439011")

    @pytest.mark.asyncio
    async def test_create_document_stamps_and_strips_identity(self, gateway, store):
        result = await gateway.create_document("utiles", "products", {
            "_id": "client-chosen",
            "refid": "E",
            "$where": "sleep(1000)",
        })

        data = result["data"]
        assert data["_id"] != "client-chosen"
        assert data["refid"] == "E"
        assert "$where" not in data
        assert data["createdAt"] == FIXED_NOW.isoformat()
        assert data["updatedAt"] == FIXED_NOW.isoformat()
        assert result["message"] == "Document created successfully"
        assert len(store.documents("utiles", "products")) == 5

    @pytest.mark.asyncio
    async def test_create_document_empty_body(self, gateway):
        with pytest.raises(InvalidArgumentError):
            await gateway.create_document("utiles", "products", {})

    @pytest.mark.asyncio
    async def test_write_invalidates_collection_cache(self, gateway, cache):
        """Test a write evicts every cached view of the collection."""
        await gateway.list_documents("utiles", "products", {})
        await gateway.list_documents("utiles", "products", {"category": "pens"})
        cache.set("utiles/orders", {"keep": True})

        await gateway.create_document("utiles", "products", {"refid": "F"})

        assert cache.stats()["keys"] == ["utiles/orders"]
        result = await gateway.list_documents("utiles", "products", {})
        assert result["meta"]["source"] == "database"
        assert result["meta"]["total"] == 5

    @pytest.mark.asyncio
    async def test_create_documents(self, gateway, store):
        result = await gateway.create_documents("utiles", "products", [{"refid": "X"}, {"refid": "Y"}])

        assert result["data"]["insertedCount"] == 2
        assert len(result["data"]["insertedIds"]) == 2
        assert len(store.documents("utiles", "products")) == 6

    @pytest.mark.asyncio
    async def test_create_documents_requires_array(self, gateway):
        with pytest.raises(InvalidArgumentError):
            await gateway.create_documents("utiles", "products", {"refid": "X"})
        with pytest.raises(InvalidArgumentError):
            await gateway.create_documents("utiles", "products", [])

    @pytest.mark.asyncio
    async def test_replace_document(self, gateway, store):
        product_id = store.seed("utiles", "products", [{"refid": "Z", "name": "Eraser", "stock": 3}])[0]

        result = await gateway.replace_document("utiles", "products", product_id, {"refid": "Z", "name": "Big eraser"})

        assert result["data"] == {
            "_id": product_id,
            "refid": "Z",
            "name": "Big eraser",
            "updatedAt": FIXED_NOW.isoformat(),
        }

    @pytest.mark.asyncio
    async def test_update_document_merges_fields(self, gateway, store):
        product_id = store.seed("utiles", "products", [{"refid": "Z", "name": "Eraser", "stock": 3}])[0]

        result = await gateway.update_document("utiles", "products", product_id, {"stock": 9, "_id": "ignored"})

        assert result["data"]["_id"] == product_id
        assert result["data"]["name"] == "Eraser"
        assert result["data"]["stock"] == 9
        assert result["message"] == "Document patched successfully"

    @pytest.mark.asyncio
    async def test_update_document_not_found(self, gateway):
        with pytest.raises(NotFoundError):
            await gateway.update_document("utiles", "products", "507f1f77bcf86cd799439011", {"stock": 1})

    @pytest.mark.asyncio
    async def test_delete_document(self, gateway, store):
        product_id = store.seed("utiles", "products", [{"refid": "Z"}])[0]

        result = await gateway.delete_document("utiles", "products", product_id)

        assert result["data"]["_id"] == product_id
        with pytest.raises(NotFoundError):
            await gateway.delete_document("utiles", "products", product_id)

    @pytest.mark.asyncio
    async def test_delete_documents_by_filter(self, gateway, store):
        result = await gateway.delete_documents("utiles", "products", {"category": "pens"})

        assert result["data"] == {"deletedCount": 2}
        assert len(store.documents("utiles", "products")) == 2

    @pytest.mark.asyncio
    async def test_delete_documents_refuses_empty_filter(self, gateway, store):
        """Test an empty filter never reaches the datastore."""
        for body in (None, {}, [], {"$where": "true"}):
            with pytest.raises(InvalidArgumentError):
                await gateway.delete_documents("utiles", "products", body)

        assert store.calls == []
        assert len(store.documents("utiles", "products")) == 4

    @pytest.mark.asyncio
    async def test_count_documents(self, gateway):
        result = await gateway.count_documents("utiles", "products", {"price": "gte:10"})
        assert result == {"success": True, "data": {"count": 2}}

    @pytest.mark.asyncio
    async def test_distinct_values(self, gateway):
        result = await gateway.distinct_values("utiles", "products", "category", {})

        assert sorted(result["data"]) == ["notebooks", "pencils", "pens"]
        assert result["meta"] == {"field": "category", "count": 3}

    @pytest.mark.asyncio
    async def test_aggregate(self, gateway):
        result = await gateway.aggregate("utiles", "products", [{"$match": {"category": "pens"}}, {"$limit": 1}])

        assert result["meta"]["count"] == 1
        assert result["data"][0]["category"] == "pens"

    @pytest.mark.asyncio
    async def test_aggregate_requires_list(self, gateway, store):
        for pipeline in (None, {"$match": {}}, "[]"):
            with pytest.raises(InvalidArgumentError):
                await gateway.aggregate("utiles", "products", pipeline)
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_non_retryable_store_error_not_served_stale(self, gateway, store):
        gateway.cache.set(cache_key("utiles", "products", {}), {"success": True, "data": [1], "meta": {}}, ttl=-1)

        with patch.object(store, "find", new_callable=AsyncMock) as mock_find:
            mock_find.side_effect = InvalidArgumentError("bad sort")
            with pytest.raises(InvalidArgumentError):
                await gateway.list_documents("utiles", "products", {})
