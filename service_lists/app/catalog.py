"""
Read-only client for the catalog service.
"""

from typing import Any, Dict, Optional

import httpx

from shared.errors import ServiceUnavailableError
from shared.logging import get_logger
from shared.registry import ServiceRegistry
from shared.results import decode_envelope

CATALOG_SERVICE = "item-service"


class CatalogClient:
    """Looks up item details when an entry is added to a list."""

    def __init__(self, registry: ServiceRegistry, timeout: float = 3.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.registry = registry
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("catalog_client")

    async def lookup(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Return the catalog record for ``item_id``, or None when it can't be had."""
        try:
            service = await self.registry.lookup(CATALOG_SERVICE)
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{service.url}/items/{item_id}")
            result = decode_envelope(CATALOG_SERVICE, response.status_code, response.json())
        except (ServiceUnavailableError, httpx.HTTPError, ValueError) as e:
            self.logger.warning("Catalog lookup failed", item_id=item_id, error=str(e))
            return None

        if not result.ok or not isinstance(result.value, dict):
            self.logger.warning("Catalog lookup rejected", item_id=item_id, detail=getattr(result, "detail", None))
            return None
        return result.value
