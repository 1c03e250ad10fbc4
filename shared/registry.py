"""
Service registry shared by every process on a host.

Records live in one JSON file so services started as separate processes
see each other's registrations. Every read goes back to the file, which keeps
discovery within one health-check interval of the latest liveness probe.
"""

import asyncio
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from shared.errors import ServiceUnavailableError
from shared.logging import get_logger


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ServiceRecord(BaseModel):
    """A registered service instance."""

    name: str
    url: str
    version: str = "1.0.0"
    endpoints: List[str] = Field(default_factory=list)
    healthy: bool = True
    registered_at: str = Field(default_factory=_utcnow)
    last_health_check: str = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ServiceNotFoundError(ServiceUnavailableError):
    """Discovery of a name nobody registered."""

    def __init__(self, service: str):
        super().__init__(service, f"Service {service} not found")
        self.code = "SERVICE_NOT_FOUND"


class ServiceUnhealthyError(ServiceUnavailableError):
    """Discovery of a service whose last probe failed."""

    def __init__(self, service: str):
        super().__init__(service, f"Service {service} is unhealthy")
        self.code = "SERVICE_UNHEALTHY"


class ServiceRegistry:
    """File-backed directory of name -> ServiceRecord."""

    def __init__(self, registry_file: str, probe_timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.registry_file = registry_file
        self.probe_timeout = probe_timeout
        self._transport = transport
        self._lock = threading.Lock()
        self.logger = get_logger("registry")

        directory = os.path.dirname(os.path.abspath(registry_file))
        os.makedirs(directory, exist_ok=True)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        try:
            with open(self.registry_file, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            self.logger.warning("Registry file is corrupt, starting empty", path=self.registry_file)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Dict[str, Any]]):
        directory = os.path.dirname(os.path.abspath(self.registry_file))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".registry-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp_path, self.registry_file)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def register(self, name: str, info: Dict[str, Any]) -> ServiceRecord:
        """Register (or replace) the single live address for ``name``."""
        record = ServiceRecord(name=name, **info)
        with self._lock:
            data = self._load()
            data[name] = record.model_dump()
            self._save(data)
        self.logger.info("Service registered", name=name, url=record.url)
        return record

    def unregister(self, name: str) -> bool:
        with self._lock:
            data = self._load()
            removed = data.pop(name, None) is not None
            if removed:
                self._save(data)
        if removed:
            self.logger.info("Service unregistered", name=name)
        return removed

    def discover(self, name: str) -> ServiceRecord:
        """Return the live record for ``name`` or fail fast."""
        raw = self._load().get(name)
        if raw is None:
            raise ServiceNotFoundError(name)
        record = ServiceRecord(**raw)
        if not record.healthy:
            raise ServiceUnhealthyError(name)
        return record

    def list_services(self) -> Dict[str, ServiceRecord]:
        return {name: ServiceRecord(**raw) for name, raw in self._load().items()}

    def update_health(self, name: str, healthy: bool) -> bool:
        with self._lock:
            data = self._load()
            if name not in data:
                return False
            previous = data[name].get("healthy")
            data[name]["healthy"] = healthy
            data[name]["last_health_check"] = _utcnow()
            self._save(data)
        if previous != healthy:
            self.logger.info("Service health changed", name=name, healthy=healthy)
        return True

    # Event-loop entry points; file I/O runs on a worker thread

    async def lookup(self, name: str) -> ServiceRecord:
        return await asyncio.to_thread(self.discover, name)

    async def snapshot(self) -> Dict[str, ServiceRecord]:
        return await asyncio.to_thread(self.list_services)

    async def heartbeat(self, name: str, info: Dict[str, Any]) -> bool:
        """Mark ``name`` healthy, registering it again if its record was lost.

        Another process writing the file at the same moment can drop a fresh
        registration; returns True when the record had to be restored.
        """
        if await asyncio.to_thread(self.update_health, name, True):
            return False
        self.logger.warning("Registration missing, registering again", name=name)
        await asyncio.to_thread(self.register, name, info)
        return True

    async def _probe(self, client: httpx.AsyncClient, record: ServiceRecord) -> bool:
        try:
            response = await client.get(f"{record.url}/health")
        except httpx.HTTPError as e:
            self.logger.warning("Health probe failed", name=record.name, error=str(e))
            return False
        return response.status_code == 200

    async def perform_health_checks(self) -> Dict[str, bool]:
        """Probe every registered service and record the outcome."""
        services = await self.snapshot()
        if not services:
            return {}

        async with httpx.AsyncClient(timeout=self.probe_timeout, transport=self._transport) as client:
            outcomes = await asyncio.gather(
                *(self._probe(client, record) for record in services.values())
            )

        results = dict(zip(services.keys(), outcomes))
        for name, healthy in results.items():
            await asyncio.to_thread(self.update_health, name, healthy)

        self.logger.debug("Health checks completed",
                          healthy=sum(results.values()), total=len(results))
        return results

    def get_stats(self) -> Dict[str, Any]:
        services = self.list_services()
        healthy = sum(1 for record in services.values() if record.healthy)
        return {
            "total": len(services),
            "healthy": healthy,
            "unhealthy": len(services) - healthy,
            "registry_file": self.registry_file,
        }
