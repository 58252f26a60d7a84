"""
Document Gateway Service package.

The service exposes one generic HTTP surface for CRUD and aggregation
against arbitrary MongoDB collections:
- Caching: in-process TTL cache with prefix invalidation and stale reads
- Query parsing: request parameters to typed filter/sort/page/projection
- Orders: status transitions coupled to idempotent stock adjustment
- Events: admin WebSocket notifications for order changes

Structure:
- app.main: FastAPI app, routes, and wiring.
- app.adapters: MongoDB datastore adapter.
- app.caching: Cache manager.
- app.query: Query option parser.
- app.domain: Generic document operations, order state machine, validation.
- app.events: Admin event channel.
"""
