"""
Base service class for the Shopping Mesh services.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import get_config
from shared.errors import PlatformException
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.messaging import MessageBroker
from shared.metrics import get_metrics_collector
from shared.registry import ServiceRegistry


def envelope(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    """Success envelope ``{success, message?, data?, ...}``."""
    body: Dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


class BaseService:
    """Base service class with common functionality.

    Subclasses override ``on_startup``/``on_shutdown`` for their own
    resources and ``_setup_service_routes`` for their HTTP surface.
    """

    version = "1.0.0"
    endpoints: List[str] = ["/health"]
    discoverable = True
    uses_broker = True

    def __init__(self, service_name: str, port: int,
                 registry: Optional[ServiceRegistry] = None,
                 broker: Optional[MessageBroker] = None,
                 **config_overrides):
        self.service_name = service_name
        self.port = port
        self.config = get_config(service_name, port, **config_overrides)

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)

        self.registry = registry or ServiceRegistry(self.config.registry_file)
        self.broker = broker or MessageBroker(
            self.config.rabbitmq_url,
            reconnect_delay=self.config.broker_reconnect_delay
        )
        if self.broker.metrics is None:
            self.broker.metrics = self.metrics

        self._start_time = time.time()
        self._background_tasks: List[asyncio.Task] = []

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()
        self._setup_service_routes()
        self._setup_error_handlers()
        self.app.state.service = self

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        return FastAPI(
            title=f"{self.service_name} API",
            description=f"Shopping Mesh - {self.service_name}",
            version=self.version,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            start_time = time.time()

            try:
                response = await call_next(request)
            finally:
                clear_context()

            duration = time.time() - start_time
            self.metrics.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=duration
            )
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                request_id=request_id
            )

            response.headers["X-Request-ID"] = request_id
            for header, value in self._response_headers().items():
                response.headers[header] = value
            return response

    def _response_headers(self) -> Dict[str, str]:
        return {"X-Service": self.service_name, "X-Service-Version": self.version}

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                details = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={
                        "service": self.service_name,
                        "status": "unhealthy",
                        "error": str(e)
                    }
                )

            self.metrics.record_health_check("ok")
            return {
                "service": self.service_name,
                "status": "healthy",
                "timestamp": _iso_now(),
                "uptime_seconds": self._get_uptime(),
                "version": self.version,
                "broker_connected": self.broker.is_connected if self.uses_broker else None,
                **details
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(
                content=generate_latest(self.metrics.registry),
                media_type=CONTENT_TYPE_LATEST
            )

    def _setup_service_routes(self):
        """Register service-specific routes. Override in subclasses."""

    def _setup_error_handlers(self):

        @self.app.exception_handler(PlatformException)
        async def platform_exception_handler(request: Request, exc: PlatformException):
            log = self.logger.warning if exc.status_code < 500 else self.logger.error
            log("Request failed", code=exc.code, message=exc.message, status_code=exc.status_code)
            if exc.status_code >= 500:
                self.metrics.record_error(exc.code)

            body = exc.to_response().model_dump(exclude_none=True)
            return JSONResponse(status_code=exc.status_code, content=body)

        @self.app.exception_handler(RequestValidationError)
        async def validation_exception_handler(request: Request, exc: RequestValidationError):
            errors = exc.errors()
            field = ".".join(str(part) for part in errors[0]["loc"][1:]) if errors else None
            message = f"Invalid value for {field}" if field else "Invalid request"
            return JSONResponse(
                status_code=400,
                content={"success": False, "code": "VALIDATION_ERROR", "message": message,
                         "details": {"field": field} if field else {}}
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
            return JSONResponse(
                status_code=exc.status_code,
                content={"success": False, "message": message, "service": self.service_name}
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error("unhandled")
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "code": "INTERNAL_ERROR",
                    "message": "Internal server error",
                    "service": self.service_name
                }
            )

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Extra fields for /health. Override in subclasses."""
        return {}

    def _get_uptime(self) -> float:
        """Get service uptime in seconds."""
        return time.time() - self._start_time

    # Lifecycle

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` as a background task cancelled on shutdown."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.append(task)
        return task

    async def on_startup(self):
        """Connect resources and bind subscriptions. Override in subclasses."""

    async def on_shutdown(self):
        """Release service resources. Override in subclasses."""

    async def start(self):
        if self.uses_broker:
            await self.broker.connect()
        await self.on_startup()
        if self.discoverable:
            await asyncio.to_thread(self.registry.register, self.service_name, self.registration_info())
            self.spawn(self._heartbeat_loop())
        self.logger.info("Service started", port=self.port, url=self.config.advertised_url)

    async def stop(self):
        for task in self._background_tasks:
            task.cancel()
        for task in self._background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background_tasks.clear()

        await self.on_shutdown()
        if self.discoverable:
            await asyncio.to_thread(self.registry.unregister, self.service_name)
        await self.broker.close()
        self.logger.info("Service stopped")

    def registration_info(self) -> Dict[str, Any]:
        return {
            "url": self.config.advertised_url,
            "version": self.version,
            "endpoints": list(self.endpoints),
            "metadata": {"database": "JSON-NoSQL"},
        }

    async def heartbeat(self) -> bool:
        """Refresh this service's registry record; True when it had to be restored."""
        return await self.registry.heartbeat(self.service_name, self.registration_info())

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                await self.heartbeat()
            except OSError as e:
                self.logger.error("Heartbeat failed", error=str(e))

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()
