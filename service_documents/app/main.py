"""
Document Gateway service.

Generic CRUD/aggregation over ``/api/{database}/{collection}`` with an
in-process response cache, plus the order status endpoint and cache
administration.
"""

import json
from typing import Any, Dict, Optional

from fastapi import Query, Request, WebSocket, WebSocketDisconnect

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import InvalidArgumentError, ServiceException

from .adapters.mongo_store import MongoDocumentStore
from .caching.cache_manager import CacheManager
from .domain.documents import DocumentGateway
from .domain.orders import OrderStatusService
from .events.admin_channel import ADMIN_ROOM, AdminEventChannel
from .models import CacheClearRequest, SearchRequest
from .query.options import collect_params


ENDPOINTS = [
    {"method": "GET", "path": "/api/{database}/{collection}", "description": "List documents (page, limit, sort, fields, field filters)"},
    {"method": "GET", "path": "/api/{database}/{collection}/{id}", "description": "Get a single document by ID"},
    {"method": "POST", "path": "/api/{database}/{collection}", "description": "Create a document"},
    {"method": "POST", "path": "/api/{database}/{collection}/bulk", "description": "Create multiple documents"},
    {"method": "PUT", "path": "/api/{database}/{collection}/{id}", "description": "Replace a document"},
    {"method": "PATCH", "path": "/api/{database}/{collection}/{id}", "description": "Partially update a document"},
    {"method": "DELETE", "path": "/api/{database}/{collection}/{id}", "description": "Delete a document by ID"},
    {"method": "DELETE", "path": "/api/{database}/{collection}/bulk", "description": "Delete documents matching the body filter"},
    {"method": "GET", "path": "/api/{database}/{collection}/count", "description": "Count documents"},
    {"method": "GET", "path": "/api/{database}/{collection}/distinct/{field}", "description": "Distinct values for a field"},
    {"method": "POST", "path": "/api/{database}/{collection}/search", "description": "Aggregation pipeline ({\"pipeline\": [...]})"},
    {"method": "GET", "path": "/api/order/{id}/{status}", "description": "Order status transition (?device=)"},
    {"method": "GET", "path": "/api/cache/stats", "description": "Cache statistics"},
    {"method": "POST", "path": "/api/cache/clear", "description": "Clear cache (all, or by {\"pattern\"})"},
    {"method": "POST", "path": "/api/cache/cleanup", "description": "Remove expired cache entries"},
    {"method": "WS", "path": "/ws/admin", "description": "Admin change notifications"},
]


class DocumentsService(BaseService):
    """Document Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        store: Optional[MongoDocumentStore] = None,
        cache_manager: Optional[CacheManager] = None,
        events: Optional[AdminEventChannel] = None,
    ):
        super().__init__("documents", 8000, config)

        self.store = store or MongoDocumentStore(
            self.config.mongodb_uri,
            max_pool_size=self.config.mongodb_max_pool_size,
            server_selection_timeout_ms=self.config.mongodb_server_selection_timeout_ms,
            socket_timeout_ms=self.config.mongodb_socket_timeout_ms,
        )
        self.cache_manager = cache_manager or CacheManager(
            self.config.cache_default_ttl_seconds,
            self.config.cache_ttl_rules,
            sweep_interval=self.config.cache_sweep_interval_seconds,
        )
        self.events = events or AdminEventChannel()

        self.gateway = DocumentGateway(
            self.store,
            self.cache_manager,
            allowed_databases=self.config.allowed_databases,
            metrics=self.metrics,
        )
        self.orders = OrderStatusService(
            self.store,
            self.cache_manager,
            self.events,
            database=self.config.orders_database,
            orders_collection=self.config.orders_collection,
            products_collection=self.config.products_collection,
            metrics=self.metrics,
        )

        self._setup_info_routes()
        self._setup_cache_routes()
        self._setup_order_routes()
        self._setup_document_routes()
        self._setup_event_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.documents_service = self

    async def on_startup(self) -> None:
        await self.cache_manager.start()
        self.logger.info("Documents service started", env=self.config.env)

    async def on_shutdown(self) -> None:
        await self.cache_manager.stop()
        await self.events.stop()
        await self.store.close()
        self.logger.info("Documents service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        return {"mongodb": "ok" if await self.store.ping() else "error"}

    @staticmethod
    async def _read_json(request: Request) -> Any:
        raw = await request.body()
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidArgumentError("Invalid JSON in request body") from exc

    def _setup_info_routes(self):

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "documents",
                "message": "Document Gateway - generic CRUD API for MongoDB collections",
                "version": "1.0.0",
                "documentation": "/docs" if self.config.is_local else None,
                "endpoints": ENDPOINTS,
            }

    def _setup_cache_routes(self):

        @self.app.get("/api/cache/stats")
        async def cache_stats():
            return {"success": True, "data": self.cache_manager.stats()}

        @self.app.post("/api/cache/clear")
        async def cache_clear(payload: Optional[CacheClearRequest] = None):
            if payload and payload.pattern:
                count = self.cache_manager.invalidate_pattern(payload.pattern)
                return {
                    "success": True,
                    "data": {"pattern": payload.pattern, "invalidated": count},
                    "message": f"Cache invalidated for pattern: {payload.pattern} ({count} entries)",
                }
            count = self.cache_manager.clear()
            return {"success": True, "data": {"invalidated": count}, "message": "Cache cleared"}

        @self.app.post("/api/cache/cleanup")
        async def cache_cleanup():
            cleaned = self.cache_manager.cleanup()
            return {"success": True, "data": {"cleaned": cleaned}, "message": f"{cleaned} expired entries removed"}

    def _setup_order_routes(self):

        @self.app.get("/api/order/{order_id}/{status}")
        async def update_order_status(order_id: str, status: str, device: Optional[str] = Query(None)):
            """Move an order to a new status, adjusting stock as needed."""
            order = await self.orders.transition(order_id, status, device=device)
            return {"success": True, "data": order, "message": f"Order status updated to: {status}"}

    def _setup_document_routes(self):
        # Literal sub-paths (count, distinct, search, bulk) are registered before {document_id}

        @self.app.get("/api/{database}/{collection}/count")
        async def count_documents(database: str, collection: str, request: Request):
            params = collect_params(request.query_params.multi_items())
            return await self.gateway.count_documents(database, collection, params)

        @self.app.get("/api/{database}/{collection}/distinct/{field}")
        async def distinct_values(database: str, collection: str, field: str, request: Request):
            params = collect_params(request.query_params.multi_items())
            return await self.gateway.distinct_values(database, collection, field, params)

        @self.app.post("/api/{database}/{collection}/search")
        async def search(database: str, collection: str, payload: SearchRequest):
            return await self.gateway.aggregate(database, collection, payload.pipeline)

        @self.app.post("/api/{database}/{collection}/bulk", status_code=201)
        async def create_many(database: str, collection: str, request: Request):
            body = await self._read_json(request)
            return await self.gateway.create_documents(database, collection, body)

        @self.app.delete("/api/{database}/{collection}/bulk")
        async def delete_many(database: str, collection: str, request: Request):
            body = await self._read_json(request)
            return await self.gateway.delete_documents(database, collection, body)

        @self.app.get("/api/{database}/{collection}")
        async def list_documents(database: str, collection: str, request: Request):
            params = collect_params(request.query_params.multi_items())
            return await self.gateway.list_documents(database, collection, params)

        @self.app.get("/api/{database}/{collection}/{document_id}")
        async def get_document(database: str, collection: str, document_id: str):
            return await self.gateway.get_document(database, collection, document_id)

        @self.app.post("/api/{database}/{collection}", status_code=201)
        async def create_document(database: str, collection: str, request: Request):
            body = await self._read_json(request)
            return await self.gateway.create_document(database, collection, body)

        @self.app.put("/api/{database}/{collection}/{document_id}")
        async def replace_document(database: str, collection: str, document_id: str, request: Request):
            body = await self._read_json(request)
            return await self.gateway.replace_document(database, collection, document_id, body)

        @self.app.patch("/api/{database}/{collection}/{document_id}")
        async def update_document(database: str, collection: str, document_id: str, request: Request):
            body = await self._read_json(request)
            if (
                self.orders.is_orders_collection(database, collection)
                and isinstance(body, dict)
                and "status" in body
            ):
                self.gateway.validate_namespace(database, collection)
                extra = {key: value for key, value in body.items() if key != "status"}
                order = await self.orders.transition(document_id, str(body["status"]), extra_fields=extra)
                return {"success": True, "data": order, "message": "Document patched successfully"}
            return await self.gateway.update_document(database, collection, document_id, body)

        @self.app.delete("/api/{database}/{collection}/{document_id}")
        async def delete_document(database: str, collection: str, document_id: str):
            return await self.gateway.delete_document(database, collection, document_id)

    def _setup_event_routes(self):

        @self.app.websocket("/ws/admin")
        async def admin_events(websocket: WebSocket, room: Optional[str] = Query(None)):
            """Admin notification stream; join with {"type": "join:admin"} or ?room=admin."""
            await websocket.accept()
            if room and room != ADMIN_ROOM:
                await websocket.close(code=1008)
                return
            try:
                connection_id = await self.events.connect(websocket, room)
            except ServiceException as e:
                self.logger.warning("Admin WebSocket rejected", error=e.message)
                await websocket.close(code=1013)
                return

            try:
                while True:
                    raw = await websocket.receive_text()
                    reply = await self.events.handle_message(connection_id, raw)
                    if reply:
                        await websocket.send_text(json.dumps(reply))
            except WebSocketDisconnect:
                pass
            finally:
                await self.events.disconnect(connection_id, close=False)


def create_app():
    """Create FastAPI application."""
    service = DocumentsService()
    return service.app


if __name__ == "__main__":
    service = DocumentsService()
    service.run()
