"""
Fan-out/fan-in over the service proxy.

Branches run concurrently; each is reported as available or not and a failed
branch never fails the aggregate.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.registry import ServiceRegistry
from service_gateway.app.proxy import ServiceProxy


@dataclass
class BranchRequest:
    service: str
    path: str
    auth_header: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BranchOutcome:
    available: bool
    data: Any = None
    error: Optional[str] = None

    def as_data(self) -> Dict[str, Any]:
        return {"available": self.available, "data": self.data}

    def as_results(self) -> Dict[str, Any]:
        results = []
        if self.available and isinstance(self.data, dict):
            results = self.data.get("results") or []
        return {"available": self.available, "results": results}


class Aggregator:
    """Merges best-effort answers from several services into one response."""

    def __init__(self,
                 proxy: ServiceProxy,
                 registry: ServiceRegistry,
                 timeout: float = 5.0,
                 metrics: Optional[MetricsCollector] = None):
        self.proxy = proxy
        self.registry = registry
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("gateway.aggregator")

    async def gather(self, branches: Dict[str, BranchRequest], endpoint: str = "aggregate") -> Dict[str, BranchOutcome]:
        names = list(branches)
        settled = await asyncio.gather(
            *(
                self.proxy.call_service(
                    branch.service,
                    branch.path,
                    auth_header=branch.auth_header,
                    params=branch.params,
                    timeout=self.timeout,
                )
                for branch in branches.values()
            ),
            return_exceptions=True,
        )

        outcomes: Dict[str, BranchOutcome] = {}
        for name, result in zip(names, settled):
            if isinstance(result, Exception):
                self.logger.error("Aggregation branch raised", branch=name, error=str(result))
                outcome = BranchOutcome(available=False, error=str(result))
            elif result.ok:
                outcome = BranchOutcome(available=True, data=result.value)
            else:
                self.logger.warning("Aggregation branch unavailable", branch=name,
                                    service=result.service, detail=result.detail)
                outcome = BranchOutcome(available=False, error=result.detail)

            outcomes[name] = outcome
            if self.metrics is not None:
                self.metrics.increment_counter("aggregation_branches_total", endpoint=endpoint,
                                               branch=name, available=str(outcome.available).lower())
        return outcomes

    async def dashboard(self, auth_header: str) -> Dict[str, Any]:
        outcomes = await self.gather({
            "users": BranchRequest("user-service", "/users", auth_header, {"limit": 5}),
            "lists": BranchRequest("list-service", "/lists", auth_header, {"limit": 5}),
            "items": BranchRequest("item-service", "/items"),
        }, endpoint="dashboard")

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services_status": {
                name: record.model_dump()
                for name, record in (await self.registry.snapshot()).items()
            },
            **{name: outcome.as_data() for name, outcome in outcomes.items()},
        }

    async def search(self, query: str, auth_header: Optional[str] = None) -> Dict[str, Any]:
        branches = {
            "lists": BranchRequest("list-service", "/search", auth_header, {"q": query}),
            "items": BranchRequest("item-service", "/search", None, {"q": query}),
        }
        if auth_header:
            branches["users"] = BranchRequest("user-service", "/search", auth_header,
                                              {"q": query, "limit": 5})

        outcomes = await self.gather(branches, endpoint="search")
        return {
            "query": query,
            **{name: outcome.as_results() for name, outcome in outcomes.items()},
        }
