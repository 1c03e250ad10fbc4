"""
Request router for the gateway.

Every downstream call, proxied or aggregated, goes through ``ServiceProxy``:
breaker check, discovery, one HTTP attempt, breaker bookkeeping. Downstream
answers below 500 count as a healthy round trip; transport faults and 5xx
count as failures and surface as 503 tagged with the service name. The proxy
never retries.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shared.circuit_breaker import CircuitBreakerRegistry
from shared.errors import ServiceUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.registry import ServiceRegistry
from shared.results import Err, ErrorKind, Ok, Result, decode_envelope

HOP_BY_HOP_HEADERS = frozenset({
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

# Mount roots the owning service serves under a resource path instead of "/"
ROOT_PATH_REWRITES: Dict[Tuple[str, str], str] = {
    ("user-service", "/api/users"): "/users",
    ("item-service", "/api/items"): "/items",
    ("list-service", "/api/lists"): "/lists",
}


def rewrite_path(service_name: str, prefix: str, original_path: str) -> str:
    """Strip the mount prefix and apply the root rewrites."""
    target = original_path
    if original_path.startswith(prefix):
        target = original_path[len(prefix):]

    if not target.startswith("/"):
        target = "/" + target

    if target == "/":
        target = ROOT_PATH_REWRITES.get((service_name, prefix), target)
    return target


def forwardable_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    }


@dataclass(frozen=True)
class RelayedResponse:
    """A downstream answer (status < 500) relayed verbatim."""
    status_code: int
    content: bytes
    media_type: Optional[str]


class ServiceProxy:
    """Routes calls to downstream services behind per-service breakers."""

    def __init__(self,
                 registry: ServiceRegistry,
                 breakers: CircuitBreakerRegistry,
                 timeout: float = 10.0,
                 metrics: Optional[MetricsCollector] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.registry = registry
        self.breakers = breakers
        self.timeout = timeout
        self.metrics = metrics
        self.client = client or httpx.AsyncClient()
        self.logger = get_logger("gateway.proxy")

    async def close(self):
        await self.client.aclose()

    def _unavailable(self, service_name: str, message: str, error: Optional[str] = None) -> Err:
        body: Dict[str, Any] = {"success": False, "message": message, "service": service_name}
        if error:
            body["error"] = error
        return Err(ErrorKind.UNAVAILABLE, message, service=service_name, status_code=503, body=body)

    def _record(self, service_name: str, outcome: str):
        if self.metrics is None:
            return
        self.metrics.increment_counter("proxy_requests_total", service=service_name, outcome=outcome)
        breaker = self.breakers.get(service_name)
        self.metrics.set_gauge("circuit_breaker_open",
                               1.0 if breaker is not None and breaker.is_open() else 0.0,
                               service=service_name)

    async def send(self,
                   service_name: str,
                   method: str,
                   path: str,
                   headers: Optional[Mapping[str, str]] = None,
                   params: Optional[Iterable[Tuple[str, Any]]] = None,
                   body: Optional[bytes] = None,
                   timeout: Optional[float] = None) -> Result:
        """One attempt against ``service_name``; ``Ok`` carries the raw httpx response."""
        if not self.breakers.allow_request(service_name):
            self.logger.warning("Circuit breaker open, call rejected", service=service_name)
            self._record(service_name, "rejected")
            return self._unavailable(service_name, f"Service {service_name} temporarily unavailable",
                                     error="CIRCUIT_OPEN")

        try:
            record = await self.registry.lookup(service_name)
        except ServiceUnavailableError as e:
            # Not a downstream fault: no breaker failure, and an admitted trial is handed back
            self.breakers.release(service_name)
            self.logger.error("Service discovery failed", service=service_name, error=e.message)
            self._record(service_name, "undiscoverable")
            return self._unavailable(service_name, f"Service {service_name} not found", error=e.code)
        except BaseException:
            self.breakers.release(service_name)
            raise

        url = f"{record.url}{path}"
        self.logger.debug("Forwarding request", service=service_name, method=method, url=url)

        try:
            response = await self.client.request(
                method,
                url,
                headers=forwardable_headers(headers or {}),
                params=list(params or []),
                content=body if method.upper() in BODY_METHODS else None,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.HTTPError as e:
            self.breakers.record_failure(service_name)
            self.logger.error("Downstream call failed", service=service_name, error=type(e).__name__,
                              detail=str(e))
            self._record(service_name, "transport_error")
            return self._unavailable(service_name, f"Service {service_name} unavailable",
                                     error=type(e).__name__)
        except Exception:
            self.breakers.record_failure(service_name)
            self._record(service_name, "error")
            raise
        except BaseException:
            # Cancelled mid-flight: no outcome to record
            self.breakers.release(service_name)
            self.logger.warning("Downstream call cancelled", service=service_name)
            raise

        if response.status_code >= 500:
            self.breakers.record_failure(service_name)
            self.logger.error("Downstream server error", service=service_name,
                              status_code=response.status_code)
            self._record(service_name, "server_error")
            return self._unavailable(service_name, f"Service {service_name} unavailable",
                                     error=f"HTTP_{response.status_code}")

        self.breakers.record_success(service_name)
        self._record(service_name, "ok")
        return Ok(response, status_code=response.status_code)

    async def forward(self, request: Request, service_name: str, prefix: str) -> Response:
        """Proxy an inbound gateway request to the service mounted at ``prefix``."""
        target_path = rewrite_path(service_name, prefix, request.url.path)
        self.logger.info("Proxy request", method=request.method, path=request.url.path,
                         service=service_name, target_path=target_path)

        body = await request.body() if request.method.upper() in BODY_METHODS else None
        result = await self.send(
            service_name,
            request.method,
            target_path,
            headers=request.headers,
            params=request.query_params.multi_items(),
            body=body,
        )
        return render(self._relay(result))

    def _relay(self, result: Result) -> Result:
        if not result.ok:
            return result
        response: httpx.Response = result.value
        return Ok(
            RelayedResponse(
                status_code=response.status_code,
                content=response.content,
                media_type=response.headers.get("content-type"),
            ),
            status_code=response.status_code,
        )

    async def call_service(self,
                           service_name: str,
                           path: str,
                           method: str = "GET",
                           auth_header: Optional[str] = None,
                           params: Optional[Mapping[str, Any]] = None,
                           timeout: Optional[float] = None) -> Result:
        """Internal call whose success envelope is decoded into ``Ok(data)``."""
        headers = {"Authorization": auth_header} if auth_header else {}
        result = await self.send(
            service_name,
            method,
            path,
            headers=headers,
            params=list((params or {}).items()),
            timeout=timeout,
        )
        if not result.ok:
            return result

        response: httpx.Response = result.value
        try:
            payload = response.json()
        except ValueError:
            return Err(ErrorKind.BAD_RESPONSE, "response is not JSON",
                       service=service_name, status_code=response.status_code)
        return decode_envelope(service_name, response.status_code, payload)


def render(result: Result) -> Response:
    """Turn a relayed result into the gateway's HTTP response."""
    if result.ok:
        relayed: RelayedResponse = result.value
        return Response(
            content=relayed.content,
            status_code=relayed.status_code,
            media_type=relayed.media_type,
        )
    return JSONResponse(status_code=result.status_code or 503, content=result.body)
