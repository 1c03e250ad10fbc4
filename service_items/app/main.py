"""
Catalog service: the authoritative owner of item data.

Changes to an item's name, average price or active flag are announced on
``item_events`` so services holding cached copies can repair them.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.auth import AuthClient
from shared.base_service import BaseService, envelope
from shared.document_store import JsonDocumentStore
from shared.errors import NotFoundError, ValidationError
from shared.messaging import ITEM_EVENTS, ITEM_UPDATED

SAMPLE_ITEMS = [
    {"name": "Arroz Branco Tipo 1", "category": "Grãos", "brand": "Tio João", "unit": "kg",
     "averagePrice": 28.90, "barcode": "7891234567890", "description": "Pacote de 5kg"},
    {"name": "Leite Integral", "category": "Laticínios", "brand": "Itambé", "unit": "litro",
     "averagePrice": 4.59, "barcode": "7899876543210", "description": "Caixa 1L"},
    {"name": "Sabão em Pó", "category": "Limpeza", "brand": "Omo", "unit": "kg",
     "averagePrice": 18.50, "barcode": "7891112223334", "description": "Caixa 1.6kg"},
    {"name": "Refrigerante Cola", "category": "Bebidas", "brand": "Coca-Cola", "unit": "un",
     "averagePrice": 8.99, "barcode": "7895556667778", "description": "Garrafa PET 2L"},
]

# Fields whose change invalidates cached copies elsewhere
ANNOUNCED_FIELDS = ("name", "averagePrice", "active")


class ItemCreateRequest(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    brand: str = ""
    unit: str = "un"
    averagePrice: Optional[float] = None
    barcode: str = ""
    description: str = ""
    active: bool = True


class ItemUpdateRequest(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    unit: Optional[str] = None
    averagePrice: Optional[float] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    active: Optional[bool] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_active(active: str) -> Optional[bool]:
    """``true``/``false`` filter on the active flag; ``all`` disables it."""
    if active == "all":
        return None
    return active == "true"


class ItemService(BaseService):
    """Catalog service implementation."""

    endpoints = ["/health", "/items", "/categories", "/search"]

    def __init__(self, data_dir: Optional[str] = None,
                 auth_transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        self._data_dir = data_dir
        self._auth_transport = auth_transport
        super().__init__("item-service", 3003, **kwargs)

    def _setup_service_routes(self):
        self.items_db = JsonDocumentStore(self._data_dir or f"{self.config.data_dir}/items", "items")
        self.auth = AuthClient(self.registry, timeout=self.config.auth_timeout,
                               transport=self._auth_transport)

        async def current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
            return await self.auth.validate(authorization)

        @self.app.get("/")
        async def root():
            return {
                "service": "Item Service",
                "version": self.version,
                "description": "Catalog of items and products",
                "endpoints": ["GET /items", "GET /items/{id}", "POST /items", "PUT /items/{id}",
                              "GET /categories", "GET /search"],
            }

        @self.app.get("/categories")
        async def get_categories():
            items = await self.items_db.find({"active": True})
            return envelope(sorted({item["category"] for item in items if item.get("category")}))

        @self.app.get("/search")
        async def search_items(q: Optional[str] = None):
            if not q:
                raise ValidationError('Search parameter "q" is required', field="q")
            matches = await self.items_db.search(q, ["name", "brand", "barcode", "description"])
            results = [item for item in matches if item.get("active")]
            return envelope({"query": q, "results": results, "total": len(results)})

        catalog = APIRouter()

        @catalog.get("")
        async def get_items(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                            category: Optional[str] = None, search: Optional[str] = None,
                            active: str = "true"):
            return await self.list_items(page, limit, category, search, active)

        @catalog.post("")
        async def create_item(body: ItemCreateRequest, user: Dict[str, Any] = Depends(current_user)):
            return await self.create_item(body)

        members = APIRouter()

        @members.get("/{item_id}")
        async def get_item(item_id: str):
            item = await self.items_db.find_by_id(item_id)
            if not item:
                raise NotFoundError("Item not found")
            return envelope(item)

        @members.put("/{item_id}")
        async def update_item(item_id: str, body: ItemUpdateRequest,
                              user: Dict[str, Any] = Depends(current_user)):
            return await self.update_item(item_id, body)

        self.app.include_router(catalog, prefix="/items")
        self.app.include_router(members, prefix="/items")
        # Gateway-relative aliases: the router strips /api/items from member paths
        self.app.include_router(members, include_in_schema=False)

    async def list_items(self, page: int, limit: int, category: Optional[str],
                         search: Optional[str], active: str) -> Dict[str, Any]:
        skip = (page - 1) * limit
        active_flag = parse_active(active)

        query: Dict[str, Any] = {}
        if active_flag is not None:
            query["active"] = active_flag
        if category:
            query["category"] = category

        if search:
            found: List[Dict[str, Any]] = [
                item for item in await self.items_db.search(search, ["name", "brand", "barcode"])
                if (not category or item.get("category") == category)
                and (active_flag is None or item.get("active") == active_flag)
            ]
            total = len(found)
            items = found[skip:skip + limit]
        else:
            items = await self.items_db.find(query, sort={"createdAt": -1}, skip=skip, limit=limit)
            total = await self.items_db.count(query)

        return envelope(items, pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "pages": -(-total // limit) or 1,
        })

    async def create_item(self, body: ItemCreateRequest):
        if not body.name or not body.category:
            raise ValidationError("Name and category are required",
                                  field="name" if not body.name else "category")

        item = await self.items_db.create({
            "id": str(uuid.uuid4()),
            "name": body.name,
            "category": body.category,
            "brand": body.brand,
            "unit": body.unit or "un",
            "averagePrice": body.averagePrice or 0.0,
            "barcode": body.barcode,
            "description": body.description,
            "active": body.active,
            "createdAt": _now(),
        })
        self.metrics.record_business_event("item_created")
        return JSONResponse(status_code=201, content=envelope(item, message="Item created"))

    async def update_item(self, item_id: str, body: ItemUpdateRequest):
        if not await self.items_db.find_by_id(item_id):
            raise NotFoundError("Item not found")

        updates = body.model_dump(exclude_none=True)
        updates["updatedAt"] = _now()
        item = await self.items_db.update(item_id, updates)

        if any(field in updates for field in ANNOUNCED_FIELDS):
            self.logger.info("Announcing item change", item_id=item_id)
            await self.broker.publish(ITEM_EVENTS, ITEM_UPDATED, {
                "itemId": item["id"],
                "name": item["name"],
                "averagePrice": item.get("averagePrice"),
                "active": item.get("active"),
                "updatedAt": item["updatedAt"],
            })
            self.metrics.record_business_event("item_updated")

        return envelope(item, message="Item updated")

    async def seed_initial_data(self):
        if await self.items_db.count():
            return
        now = _now()
        for sample in SAMPLE_ITEMS:
            await self.items_db.create({"id": str(uuid.uuid4()), **sample, "active": True, "createdAt": now})
        self.logger.info("Catalog seeded", count=len(SAMPLE_ITEMS))

    async def on_startup(self):
        await self.seed_initial_data()

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {"database": {"type": "JSON-NoSQL", "itemCount": await self.items_db.count()}}


def create_app(**kwargs):
    """Create FastAPI application."""
    return ItemService(**kwargs).app


if __name__ == "__main__":
    ItemService().run()
