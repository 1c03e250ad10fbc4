"""
API Gateway service for the Shopping Mesh.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService, envelope
from shared.circuit_breaker import CircuitBreakerRegistry
from shared.messaging import MessageBroker
from shared.registry import ServiceRegistry
from service_gateway.app.aggregator import Aggregator
from service_gateway.app.proxy import ServiceProxy

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

# Mount prefix -> owning service
ROUTES = {
    "/api/auth": "user-service",
    "/api/users": "user-service",
    "/api/lists": "list-service",
    "/api/items": "item-service",
}


class GatewayService(BaseService):
    """API Gateway service implementation."""

    discoverable = False
    uses_broker = False

    def __init__(self,
                 registry: Optional[ServiceRegistry] = None,
                 broker: Optional[MessageBroker] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 clock: Callable[[], float] = time.monotonic,
                 **config_overrides):
        self._client = client
        self._clock = clock
        super().__init__("gateway", 3000, registry=registry, broker=broker, **config_overrides)

    def _setup_service_routes(self):
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=self.config.breaker_failure_threshold,
            recovery_timeout=self.config.breaker_recovery_timeout,
            clock=self._clock,
        )
        self.proxy = ServiceProxy(
            self.registry,
            self.breakers,
            timeout=self.config.proxy_timeout,
            metrics=self.metrics,
            client=self._client,
        )
        self.aggregator = Aggregator(
            self.proxy,
            self.registry,
            timeout=self.config.aggregation_timeout,
            metrics=self.metrics,
        )

        self._setup_gateway_routes()
        self._setup_aggregated_routes()
        for prefix, service_name in ROUTES.items():
            self._mount(prefix, service_name)

    def _response_headers(self) -> Dict[str, str]:
        return {"X-Gateway": "api-gateway", "X-Gateway-Version": self.version}

    async def _services_snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: record.model_dump() for name, record in (await self.registry.snapshot()).items()}

    async def _check_dependencies(self) -> Dict[str, Any]:
        services = await self._services_snapshot()
        return {"services": services, "service_count": len(services)}

    def _setup_gateway_routes(self):
        """Operational introspection routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "API Gateway",
                "version": self.version,
                "description": "Gateway for the shopping microservices",
                "endpoints": {
                    "auth": "/api/auth/*",
                    "users": "/api/users/*",
                    "lists": "/api/lists/*",
                    "items": "/api/items/*",
                    "health": "/health",
                    "registry": "/registry",
                    "dashboard": "/api/dashboard",
                    "search": "/api/search",
                },
                "services": await self._services_snapshot(),
            }

        @self.app.get("/registry")
        async def registry():
            services = await self._services_snapshot()
            return envelope(
                services=services,
                count=len(services),
                timestamp=datetime.now(timezone.utc).isoformat(),
            )

        @self.app.get("/debug/services")
        async def debug_services():
            return envelope(
                services=await self._services_snapshot(),
                stats=await asyncio.to_thread(self.registry.get_stats),
                circuit_breakers=self.breakers.get_all_states(),
            )

    def _setup_aggregated_routes(self):

        @self.app.get("/api/dashboard")
        async def dashboard(request: Request):
            auth_header = request.headers.get("Authorization")
            if not auth_header:
                return JSONResponse(
                    status_code=401,
                    content={"success": False, "message": "Authentication token required"},
                )
            return envelope(await self.aggregator.dashboard(auth_header))

        @self.app.get("/api/search")
        async def global_search(request: Request):
            query = request.query_params.get("q")
            if not query:
                return JSONResponse(
                    status_code=400,
                    content={"success": False, "message": 'Search parameter "q" is required'},
                )
            auth_header = request.headers.get("Authorization")
            return envelope(await self.aggregator.search(query, auth_header))

    def _mount(self, prefix: str, service_name: str):

        async def proxy_route(request: Request):
            return await self.proxy.forward(request, service_name, prefix)

        self.app.add_api_route(prefix, proxy_route, methods=PROXY_METHODS, include_in_schema=False)
        self.app.add_api_route(f"{prefix}/{{path:path}}", proxy_route, methods=PROXY_METHODS,
                               include_in_schema=False)

    async def on_startup(self):
        self.spawn(self._health_check_loop())

    async def on_shutdown(self):
        await self.proxy.close()

    async def _health_check_loop(self):
        await asyncio.sleep(self.config.health_check_initial_delay)
        while True:
            try:
                await self.registry.perform_health_checks()
            except Exception as e:
                self.logger.error("Health sweep failed", error=str(e))
            await asyncio.sleep(self.config.health_check_interval)


def create_app(**kwargs):
    """Create FastAPI application."""
    service = GatewayService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
