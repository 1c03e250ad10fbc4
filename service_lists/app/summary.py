"""
List entries and the summary derived from them.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional


def calculate_summary(entries: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals over ``entries``; never stored independently of them."""
    summary = {"totalItems": 0, "purchasedItems": 0, "estimatedTotal": 0.0}
    for entry in entries:
        summary["totalItems"] += 1
        if entry.get("purchased"):
            summary["purchasedItems"] += 1
        summary["estimatedTotal"] += float(entry.get("cachedPrice") or 0) * float(entry.get("quantity") or 0)
    return summary


def empty_summary() -> Dict[str, Any]:
    return calculate_summary([])


def new_entry(item_id: str, name: str, unit: str, price: float,
              quantity: float = 1, notes: Optional[str] = None) -> Dict[str, Any]:
    return {
        "itemId": item_id,
        "cachedName": name,
        "cachedUnit": unit,
        "cachedPrice": float(price),
        "quantity": float(quantity),
        "purchased": False,
        "notes": notes or "",
        "addedAt": datetime.now(timezone.utc).isoformat(),
    }
