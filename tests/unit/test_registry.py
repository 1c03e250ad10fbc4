"""
Unit tests for the file-backed service registry.
"""

import httpx
import pytest

from shared.registry import ServiceNotFoundError, ServiceRegistry, ServiceUnhealthyError


@pytest.fixture
def registry_file(tmp_path):
    return str(tmp_path / "registry" / "services.json")


class TestServiceRegistry:

    def test_register_and_discover(self, registry_file):
        registry = ServiceRegistry(registry_file)
        registry.register("item-service", {"url": "http://localhost:3003", "endpoints": ["/items"]})

        record = registry.discover("item-service")
        assert record.url == "http://localhost:3003"
        assert record.healthy

    def test_shared_between_processes(self, registry_file):
        ServiceRegistry(registry_file).register("list-service", {"url": "http://localhost:3002"})
        assert ServiceRegistry(registry_file).discover("list-service").url == "http://localhost:3002"

    def test_reregistration_replaces(self, registry_file):
        registry = ServiceRegistry(registry_file)
        registry.register("user-service", {"url": "http://old:3001"})
        registry.register("user-service", {"url": "http://new:3001"})
        assert registry.discover("user-service").url == "http://new:3001"
        assert len(registry.list_services()) == 1

    def test_discover_unknown(self, registry_file):
        with pytest.raises(ServiceNotFoundError) as exc_info:
            ServiceRegistry(registry_file).discover("ghost")
        assert exc_info.value.service == "ghost"

    def test_discover_unhealthy(self, registry_file):
        registry = ServiceRegistry(registry_file)
        registry.register("item-service", {"url": "http://localhost:3003"})
        registry.update_health("item-service", False)

        with pytest.raises(ServiceUnhealthyError):
            registry.discover("item-service")
        assert registry.get_stats()["unhealthy"] == 1

    def test_unregister(self, registry_file):
        registry = ServiceRegistry(registry_file)
        registry.register("item-service", {"url": "http://localhost:3003"})
        assert registry.unregister("item-service")
        assert not registry.unregister("item-service")
        assert registry.list_services() == {}

    def test_update_health_unknown(self, registry_file):
        assert not ServiceRegistry(registry_file).update_health("ghost", True)

    @pytest.mark.asyncio
    async def test_health_sweep(self, registry_file):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "up":
                return httpx.Response(200, json={"status": "healthy"})
            raise httpx.ConnectError("refused", request=request)

        registry = ServiceRegistry(registry_file, transport=httpx.MockTransport(handler))
        registry.register("user-service", {"url": "http://up:3001"})
        registry.register("item-service", {"url": "http://down:3003"})

        results = await registry.perform_health_checks()

        assert results == {"user-service": True, "item-service": False}
        assert registry.list_services()["item-service"].healthy is False

        # Recovery flips the flag back on the next sweep
        registry.update_health("item-service", True)
        assert registry.discover("item-service").healthy

    @pytest.mark.asyncio
    async def test_lookup_and_snapshot(self, registry_file):
        registry = ServiceRegistry(registry_file)
        registry.register("item-service", {"url": "http://localhost:3003"})

        assert (await registry.lookup("item-service")).url == "http://localhost:3003"
        assert list(await registry.snapshot()) == ["item-service"]
        with pytest.raises(ServiceNotFoundError):
            await registry.lookup("ghost")

    @pytest.mark.asyncio
    async def test_heartbeat_restores_lost_registration(self, registry_file):
        mine = ServiceRegistry(registry_file)
        theirs = ServiceRegistry(registry_file)
        info = {"url": "http://localhost:3003"}
        mine.register("item-service", info)

        # Another process saves a copy of the file read before our registration
        theirs._save({"list-service": {"name": "list-service", "url": "http://localhost:3002"}})
        assert not mine.update_health("item-service", True)

        assert await mine.heartbeat("item-service", info)
        assert mine.discover("item-service").url == "http://localhost:3003"
        assert mine.discover("list-service").url == "http://localhost:3002"

        assert not await mine.heartbeat("item-service", info)
