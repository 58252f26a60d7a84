"""
Shared utilities for the Document Gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI application scaffold
- test_helpers: In-memory datastore and fixtures for tests

Do not import from service packages into shared/.
"""
