"""
API Gateway Service package for the Shopping Mesh.

The gateway fronts client requests:
- Routing: path-prefix mounts resolved through the service registry
- Resilience: one circuit breaker per downstream service
- Aggregation: dashboard and global search fanned out to several services

Structure:
- app.main: FastAPI app, mounts and introspection routes.
- app.proxy: breaker-guarded forwarding to downstream services.
- app.aggregator: concurrent fan-out with per-branch availability.
"""
