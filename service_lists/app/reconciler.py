"""
Repairs catalog snapshots cached inside list entries.

On ``item.updated`` every list referencing the item gets its cached name and
price overwritten and its summary recomputed. Writes carry the revision they
were computed from; a concurrent edit makes the write fail and the repair is
recomputed from a fresh read.
"""

from datetime import datetime, timezone
from numbers import Number
from typing import Any, Dict, List, Optional

from shared.document_store import JsonDocumentStore
from shared.errors import NotFoundError, RevisionConflictError
from shared.logging import get_logger
from shared.messaging import MessageHandler
from shared.metrics import MetricsCollector
from shared.results import Err, ErrorKind, Ok, Result
from service_lists.app.summary import calculate_summary

QUEUE_NAME = "list_service_price_updates"


def parse_item_event(payload: Any) -> Optional[Dict[str, Any]]:
    """Validated ``{itemId, name, averagePrice?, ...}`` or None."""
    if not isinstance(payload, dict):
        return None
    item_id = payload.get("itemId")
    name = payload.get("name")
    if not isinstance(item_id, str) or not item_id or not isinstance(name, str):
        return None
    price = payload.get("averagePrice")
    if price is not None and (isinstance(price, bool) or not isinstance(price, Number)):
        return None
    return {"itemId": item_id, "name": name, "averagePrice": price, "active": payload.get("active")}


def entries_of(record: Any) -> Optional[List[Dict[str, Any]]]:
    """The record's entry list, or None when the record is not shaped like a list."""
    if not isinstance(record, dict) or not isinstance(record.get("id"), str):
        return None
    entries = record.get("items", [])
    if not isinstance(entries, list) or not all(isinstance(entry, dict) for entry in entries):
        return None
    return entries


def apply_item_event(entries: List[Dict[str, Any]], event: Dict[str, Any]) -> List[Dict[str, Any]]:
    patched = []
    for entry in entries:
        if isinstance(entry, dict) and entry.get("itemId") == event["itemId"]:
            entry = dict(entry, cachedName=event["name"])
            if event["averagePrice"] is not None:
                entry["cachedPrice"] = float(event["averagePrice"])
        patched.append(entry)
    return patched


class ItemUpdateReconciler(MessageHandler):
    """Consumer of ``item.updated`` for the list service."""

    name = QUEUE_NAME

    def __init__(self, store: JsonDocumentStore, metrics: Optional[MetricsCollector] = None,
                 max_attempts: int = 3):
        self.store = store
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.logger = get_logger("reconciler")

    async def lists_referencing(self, item_id: str) -> List[Dict[str, Any]]:
        """Lists holding ``item_id``; malformed records are logged and skipped."""
        # Full scan; an indexed store can answer this directly.
        found = []
        for record in await self.store.find():
            entries = entries_of(record)
            if entries is None:
                self.logger.warning("Skipping malformed list record",
                                    list_id=record.get("id") if isinstance(record, dict) else None)
                self._count("skipped")
                continue
            if any(entry.get("itemId") == item_id for entry in entries):
                found.append(record)
        return found

    async def on_message(self, payload: Any) -> Result:
        event = parse_item_event(payload)
        if event is None:
            self.logger.error("Malformed item event dropped", payload=payload)
            return Ok()

        try:
            affected = await self.lists_referencing(event["itemId"])
        except (OSError, ValueError) as e:
            self.logger.error("Could not read lists", item_id=event["itemId"], error=str(e))
            return Err(ErrorKind.FAILED, str(e))

        repaired = 0
        for record in affected:
            try:
                outcome = await self._repair(record, event)
            except Exception as e:
                self.logger.error("List repair failed", list_id=record.get("id"),
                                  item_id=event["itemId"], error=str(e))
                outcome = "failed"

            if outcome == "repaired":
                repaired += 1
            self._count(outcome)

        self.logger.info("Item update reconciled", item_id=event["itemId"],
                         name=event["name"], lists=repaired)
        return Ok(repaired)

    async def _repair(self, record: Dict[str, Any], event: Dict[str, Any]) -> str:
        for _ in range(self.max_attempts):
            entries = entries_of(record)
            if entries is None:
                self.logger.warning("List became malformed during repair", list_id=record.get("id"))
                return "skipped"
            items = apply_item_event(entries, event)
            try:
                await self.store.update(record["id"], {
                    "items": items,
                    "summary": calculate_summary(items),
                    "updatedAt": datetime.now(timezone.utc).isoformat(),
                }, expected_revision=record.get("_rev"))
                return "repaired"
            except RevisionConflictError:
                self.logger.info("List changed during repair, retrying", list_id=record["id"])
            except NotFoundError:
                return "gone"

            record = await self.store.find_by_id(record["id"])
            if record is None:
                return "gone"

        self.logger.warning("List repair abandoned after conflicts", list_id=record["id"])
        return "conflict"

    def _count(self, outcome: str):
        if self.metrics is not None:
            self.metrics.increment_counter("reconciled_lists_total", outcome=outcome)
