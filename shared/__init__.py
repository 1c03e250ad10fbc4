"""
Shared utilities for the Shopping Mesh.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- results: Tagged Ok/Err results at service boundaries
- circuit_breaker: Per-downstream failure isolation
- registry: File-backed service registry shared across processes
- messaging: AMQP publish/subscribe façade
- document_store: JSON-file document collections
- auth: Token validation against the identity service
- base_service: FastAPI service skeleton and lifecycle

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
