"""
Shopping-list service.

Owns lists and their entries. Entries embed a snapshot of catalog data that
the ``ItemUpdateReconciler`` keeps eventually consistent.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.auth import AuthClient
from shared.base_service import BaseService, envelope
from shared.document_store import JsonDocumentStore
from shared.errors import NotFoundError, RevisionConflictError, ValidationError
from shared.messaging import CHECKOUT_COMPLETED, ITEM_EVENTS, ITEM_UPDATED, SHOPPING_EVENTS
from service_lists.app.catalog import CatalogClient
from service_lists.app.reconciler import QUEUE_NAME, ItemUpdateReconciler
from service_lists.app.summary import calculate_summary, empty_summary, new_entry

# Attempts for a read-modify-write that loses a race with another writer
MUTATION_ATTEMPTS = 3


class ListCreateRequest(BaseModel):
    name: Optional[str] = None
    description: str = ""
    status: str = "active"


class ListUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None


class EntryCreateRequest(BaseModel):
    itemId: Optional[str] = None
    quantity: float = 1
    notes: Optional[str] = None
    itemName: Optional[str] = None
    estimatedPrice: Optional[float] = None


class EntryUpdateRequest(BaseModel):
    quantity: Optional[float] = None
    purchased: Optional[bool] = None
    estimatedPrice: Optional[float] = None
    notes: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ListService(BaseService):
    """Shopping-list service implementation."""

    endpoints = ["/health", "/lists", "/search"]

    def __init__(self, data_dir: Optional[str] = None,
                 auth_transport: Optional[httpx.AsyncBaseTransport] = None,
                 catalog_transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        self._data_dir = data_dir
        self._auth_transport = auth_transport
        self._catalog_transport = catalog_transport
        super().__init__("list-service", 3002, **kwargs)

    def _response_headers(self) -> Dict[str, str]:
        return {**super()._response_headers(), "X-Database": "JSON-NoSQL"}

    def _setup_service_routes(self):
        self.lists_db = JsonDocumentStore(self._data_dir or f"{self.config.data_dir}/lists", "lists")
        self.auth = AuthClient(self.registry, timeout=self.config.auth_timeout,
                               transport=self._auth_transport)
        self.catalog = CatalogClient(self.registry, timeout=self.config.lookup_timeout,
                                     transport=self._catalog_transport)
        self.reconciler = ItemUpdateReconciler(self.lists_db, metrics=self.metrics)

        async def current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
            return await self.auth.validate(authorization)

        @self.app.get("/")
        async def root():
            return {
                "service": "List Service",
                "version": self.version,
                "description": "Shopping list management",
                "endpoints": ["GET /lists", "POST /lists", "GET /lists/{id}", "PUT /lists/{id}",
                              "DELETE /lists/{id}", "GET /lists/{id}/summary",
                              "POST /lists/{id}/checkout", "POST /lists/{id}/items",
                              "PUT /lists/{id}/items/{itemId}", "DELETE /lists/{id}/items/{itemId}",
                              "GET /search"],
            }

        @self.app.get("/search")
        async def search_lists(q: Optional[str] = None, user: Dict[str, Any] = Depends(current_user)):
            if not q:
                raise ValidationError('Search parameter "q" is required', field="q")
            found = await self.lists_db.search(q, ["name", "description"])
            results = [record for record in found if record.get("userId") == user["id"]]
            return envelope({"query": q, "results": results, "total": len(results)})

        collection = APIRouter()

        @collection.get("")
        async def get_lists(status: Optional[str] = None, limit: Optional[int] = None,
                            user: Dict[str, Any] = Depends(current_user)):
            query = {"userId": user["id"]}
            if status:
                query["status"] = status
            return envelope(await self.lists_db.find(query, sort={"updatedAt": -1}, limit=limit))

        @collection.post("")
        async def create_list(body: ListCreateRequest, user: Dict[str, Any] = Depends(current_user)):
            return await self.create_list(user, body)

        members = APIRouter()

        @members.get("/{list_id}")
        async def get_list(list_id: str, user: Dict[str, Any] = Depends(current_user)):
            return envelope(await self._owned(list_id, user))

        @members.put("/{list_id}")
        async def update_list(list_id: str, body: ListUpdateRequest,
                              user: Dict[str, Any] = Depends(current_user)):
            updates = body.model_dump(exclude_none=True)
            record = await self._mutate(list_id, user, lambda current: updates)
            return envelope(record, message="List updated")

        @members.delete("/{list_id}")
        async def delete_list(list_id: str, user: Dict[str, Any] = Depends(current_user)):
            await self._owned(list_id, user)
            await self.lists_db.delete(list_id)
            return envelope(message="List deleted")

        @members.get("/{list_id}/summary")
        async def get_summary(list_id: str, user: Dict[str, Any] = Depends(current_user)):
            record = await self._owned(list_id, user)
            return envelope(record.get("summary") or empty_summary())

        @members.post("/{list_id}/checkout")
        async def checkout(list_id: str, user: Dict[str, Any] = Depends(current_user)):
            return await self.checkout(list_id, user)

        @members.post("/{list_id}/items")
        async def add_entry(list_id: str, body: EntryCreateRequest,
                            user: Dict[str, Any] = Depends(current_user)):
            return await self.add_entry(list_id, user, body)

        @members.put("/{list_id}/items/{item_id}")
        async def update_entry(list_id: str, item_id: str, body: EntryUpdateRequest,
                               user: Dict[str, Any] = Depends(current_user)):
            record = await self._mutate_entries(list_id, user,
                                                lambda entries: self._patch_entry(entries, item_id, body))
            return envelope(record, message="Item updated")

        @members.delete("/{list_id}/items/{item_id}")
        async def remove_entry(list_id: str, item_id: str, user: Dict[str, Any] = Depends(current_user)):
            record = await self._mutate_entries(
                list_id, user, lambda entries: [e for e in entries if e.get("itemId") != item_id]
            )
            return envelope(record, message="Item removed")

        self.app.include_router(collection, prefix="/lists")
        self.app.include_router(members, prefix="/lists")
        # Gateway-relative aliases: the router strips /api/lists from member paths
        self.app.include_router(members, include_in_schema=False)

    async def _owned(self, list_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """The list if ``user`` owns it; other users' lists are reported as missing."""
        record = await self.lists_db.find_by_id(list_id)
        if not record or record.get("userId") != user["id"]:
            raise NotFoundError("List not found")
        return record

    async def _mutate(self, list_id: str, user: Dict[str, Any],
                      compute: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any]:
        """Read-modify-write guarded by the record revision."""
        for attempt in range(1, MUTATION_ATTEMPTS + 1):
            record = await self._owned(list_id, user)
            updates = dict(compute(record), updatedAt=_now())
            try:
                return await self.lists_db.update(list_id, updates, expected_revision=record.get("_rev"))
            except RevisionConflictError:
                if attempt == MUTATION_ATTEMPTS:
                    raise
                self.logger.info("List changed concurrently, retrying", list_id=list_id, attempt=attempt)

    async def _mutate_entries(self, list_id: str, user: Dict[str, Any],
                              change: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]) -> Dict[str, Any]:

        def compute(record: Dict[str, Any]) -> Dict[str, Any]:
            entries = change([dict(entry) for entry in record.get("items", [])])
            return {"items": entries, "summary": calculate_summary(entries)}

        return await self._mutate(list_id, user, compute)

    @staticmethod
    def _patch_entry(entries: List[Dict[str, Any]], item_id: str,
                     body: EntryUpdateRequest) -> List[Dict[str, Any]]:
        for entry in entries:
            if entry.get("itemId") == item_id:
                break
        else:
            raise NotFoundError("Item not found in list")

        if body.quantity is not None:
            entry["quantity"] = body.quantity
        if body.purchased is not None:
            entry["purchased"] = body.purchased
        if body.estimatedPrice is not None:
            entry["cachedPrice"] = body.estimatedPrice
        if body.notes is not None:
            entry["notes"] = body.notes
        return entries

    async def create_list(self, user: Dict[str, Any], body: ListCreateRequest):
        if not body.name:
            raise ValidationError("List name is required", field="name")

        now = _now()
        record = await self.lists_db.create({
            "id": str(uuid.uuid4()),
            "userId": user["id"],
            "name": body.name,
            "description": body.description,
            "status": body.status,
            "items": [],
            "summary": empty_summary(),
            "createdAt": now,
            "updatedAt": now,
        })
        return JSONResponse(status_code=201, content=envelope(record, message="List created"))

    async def add_entry(self, list_id: str, user: Dict[str, Any], body: EntryCreateRequest):
        await self._owned(list_id, user)

        if body.itemId:
            item = await self.catalog.lookup(body.itemId)
            if item is not None:
                entry = new_entry(body.itemId, item.get("name", body.itemName or "Unknown item"),
                                  item.get("unit") or "un", item.get("averagePrice") or 0,
                                  body.quantity, body.notes)
            else:
                entry = new_entry(body.itemId, body.itemName or "Unknown item", "un",
                                  body.estimatedPrice or 0, body.quantity, body.notes)
        else:
            entry = new_entry(str(uuid.uuid4()), body.itemName or "Custom item", "un",
                              body.estimatedPrice or 0, body.quantity, body.notes)

        record = await self._mutate_entries(list_id, user, lambda entries: entries + [entry])
        return JSONResponse(status_code=201, content=envelope(record, message="Item added"))

    async def checkout(self, list_id: str, user: Dict[str, Any]):
        record = await self._owned(list_id, user)
        if record.get("status") == "completed":
            raise ValidationError("List already completed", field="status")

        def complete(current: Dict[str, Any]) -> Dict[str, Any]:
            if current.get("status") == "completed":
                raise ValidationError("List already completed", field="status")
            return {"status": "completed"}

        record = await self._mutate(list_id, user, complete)
        summary = record.get("summary") or empty_summary()

        await self.broker.publish(SHOPPING_EVENTS, CHECKOUT_COMPLETED, {
            "listId": record["id"],
            "userId": user["id"],
            "userEmail": user.get("email"),
            "total": summary["estimatedTotal"],
            "itemsCount": summary["totalItems"],
            "timestamp": _now(),
        })
        self.metrics.record_business_event("list_checkout")

        return JSONResponse(status_code=202, content=envelope(
            {"listId": list_id, "status": "processing"},
            message="Checkout started. A confirmation will follow.",
        ))

    async def on_startup(self):
        await self.broker.subscribe(ITEM_EVENTS, ITEM_UPDATED, QUEUE_NAME, self.reconciler)

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {"database": {"type": "JSON-NoSQL", "listCount": await self.lists_db.count()}}


def create_app(**kwargs):
    """Create FastAPI application."""
    return ListService(**kwargs).app


if __name__ == "__main__":
    ListService().run()
