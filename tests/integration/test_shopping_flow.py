"""
Integration test for the whole mesh running in one process.

Every service is a real application; HTTP between them goes through ASGI
transports keyed by host name and events go through an in-memory AMQP fake.
"""

import httpx
import pytest
import pytest_asyncio

from shared.messaging import MessageBroker
from shared.registry import ServiceRegistry
from shared.test_helpers import FakeAmqpServer
from service_gateway.app.main import GatewayService
from service_items.app.main import ItemService
from service_lists.app.main import ListService
from service_users.app.main import UserService
from service_worker.app.main import WorkerService


class HostRouter(httpx.AsyncBaseTransport):
    """Dispatches each request to the ASGI app registered for its host."""

    def __init__(self):
        self.apps = {}

    def mount(self, host, app):
        self.apps[host] = httpx.ASGITransport(app=app)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        transport = self.apps.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError(f"no route to {request.url.host}", request=request)
        return await transport.handle_async_request(request)


@pytest_asyncio.fixture
async def mesh(tmp_path):
    amqp = FakeAmqpServer()
    registry = ServiceRegistry(str(tmp_path / "registry.json"))
    router = HostRouter()

    def broker():
        return MessageBroker("amqp://test", connector=amqp.connect)

    users = UserService(data_dir=str(tmp_path / "users"), registry=registry, broker=broker(),
                        service_url="http://users", password_hash_rounds=4)
    items = ItemService(data_dir=str(tmp_path / "items"), registry=registry, broker=broker(),
                        service_url="http://items", auth_transport=router)
    lists = ListService(data_dir=str(tmp_path / "lists"), registry=registry, broker=broker(),
                        service_url="http://lists", auth_transport=router, catalog_transport=router)
    worker = WorkerService(registry=registry, broker=broker())
    gateway = GatewayService(registry=registry, client=httpx.AsyncClient(transport=router))

    router.mount("users", users.app)
    router.mount("items", items.app)
    router.mount("lists", lists.app)

    services = [users, items, lists, worker]
    for service in services:
        await service.start()

    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=gateway.app), base_url="http://gateway")
    yield {"client": client, "amqp": amqp, "registry": registry, "worker": worker, "users": users}

    await client.aclose()
    await gateway.proxy.close()
    for service in reversed(services):
        await service.stop()


async def login(client) -> dict:
    response = await client.post("/api/auth/login", json={"identifier": "admin", "password": "admin123"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


class TestShoppingFlow:

    @pytest.mark.asyncio
    async def test_services_register(self, mesh):
        names = set(mesh["registry"].list_services())
        assert names == {"user-service", "item-service", "list-service"}

        response = await mesh["client"].get("/registry")
        assert response.json()["count"] == 3

    @pytest.mark.asyncio
    async def test_price_change_reaches_lists_and_checkout_reaches_worker(self, mesh):
        client = mesh["client"]
        auth = await login(client)

        catalog = await client.get("/api/items", params={"search": "leite"})
        item = catalog.json()["data"][0]

        created = await client.post("/api/lists", json={"name": "Semana"}, headers=auth)
        assert created.status_code == 201
        list_id = created.json()["data"]["id"]

        added = await client.post(f"/api/lists/{list_id}/items", headers=auth,
                                  json={"itemId": item["id"], "quantity": 2})
        assert added.status_code == 201
        assert added.json()["data"]["items"][0]["cachedPrice"] == 4.59

        updated = await client.put(f"/api/items/{item['id']}", headers=auth,
                                   json={"name": "Leite Desnatado", "averagePrice": 5.0})
        assert updated.status_code == 200

        record = (await client.get(f"/api/lists/{list_id}", headers=auth)).json()["data"]
        assert record["items"][0]["cachedName"] == "Leite Desnatado"
        assert record["items"][0]["cachedPrice"] == 5.0
        assert record["summary"]["estimatedTotal"] == pytest.approx(10.0)

        checkout = await client.post(f"/api/lists/{list_id}/checkout", headers=auth)
        assert checkout.status_code == 202
        assert mesh["worker"].analytics.snapshot() == {"checkouts": 1, "volume": 10.0, "items": 1}
        assert mesh["worker"].notifications.sent == 1

    @pytest.mark.asyncio
    async def test_dashboard_and_search(self, mesh):
        client = mesh["client"]
        auth = await login(client)
        await client.post("/api/lists", json={"name": "Café da manhã"}, headers=auth)

        dashboard = (await client.get("/api/dashboard", headers=auth)).json()["data"]
        assert dashboard["users"]["available"] is True
        assert dashboard["lists"]["available"] is True
        assert dashboard["items"]["available"] is True
        assert len(dashboard["lists"]["data"]) == 1

        search = (await client.get("/api/search", params={"q": "cafe"}, headers=auth)).json()["data"]
        assert [r["name"] for r in search["lists"]["results"]] == ["Café da manhã"]
        assert search["items"]["available"] is True
        assert search["users"]["available"] is True

    @pytest.mark.asyncio
    async def test_stopped_service_degrades_dashboard(self, mesh):
        client = mesh["client"]
        auth = await login(client)
        mesh["registry"].update_health("item-service", False)

        dashboard = (await client.get("/api/dashboard", headers=auth)).json()["data"]

        assert dashboard["items"] == {"available": False, "data": None}
        assert dashboard["lists"]["available"] is True

        response = await client.get("/api/items")
        assert response.status_code == 503
        assert response.json()["service"] == "item-service"
