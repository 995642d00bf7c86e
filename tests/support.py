"""
Test helpers.

Upstream services are simulated with ``httpx.MockTransport``; circuit
timing runs on a manual clock and retry backoff does not sleep.
"""

import asyncio
import copy
from typing import Any, Callable, Dict, List, Tuple

import httpx

from bff_aggregator.config import Settings
from bff_aggregator.core.runtime import AggregationRuntime
from bff_aggregator.schemas.catalog import Catalog
from bff_aggregator.services.catalog_service import CatalogService
from bff_aggregator.services.fault_policy import FaultPolicyController


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


Handler = Callable[[httpx.Request], Any]


class UpstreamStub:
    """
    Fake upstream services keyed by (host, path).

    Handlers may be plain or async callables returning ``httpx.Response``.
    Every request is recorded.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.requests: List[httpx.Request] = []

    def add(self, host: str, path: str, handler: Handler) -> None:
        self.routes[(host, path)] = handler

    def json(self, host: str, path: str, body: Any, status_code: int = 200) -> None:
        self.add(host, path, lambda request: httpx.Response(status_code, json=body))

    def hang(self, host: str, path: str, started: asyncio.Event | None = None,
             cancelled: asyncio.Event | None = None) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            if started is not None:
                started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                if cancelled is not None:
                    cancelled.set()
                raise
            return httpx.Response(200, json={})

        self.add(host, path, handler)

    def calls_to(self, host: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.host == host]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.url.host, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"detail": "no route"})
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


BASE_CATALOG: Dict[str, Any] = {
    "services": [
        {"id": "users", "base_url": "http://users"},
        {"id": "orders", "base_url": "http://orders"},
        {"id": "recs", "base_url": "http://recs"},
    ],
    "retry_policies": {
        "default": {"max_retries": 2, "backoff_initial_ms": 1, "backoff_max_ms": 5, "jitter_ms": 0},
    },
    "profiles": [
        {"id": "web", "timeout_budget_ms": 2000},
        {
            "id": "mobile",
            "timeout_budget_ms": 2000,
            "field_inclusion_rules": {
                "users": {"allow": ["name", "user_id"]},
                "*": {"deny": ["internal_note"]},
            },
        },
    ],
    "plans": [
        {
            "operation": "home",
            "calls": [
                {
                    "id": "profile",
                    "service": "users",
                    "operation": "GET /users/{user_id}",
                    "required": True,
                    "inputs": {"user_id": {"source": "request", "path": "user_id"}},
                    "fields": [
                        {"source": "id", "target": "user_id", "type": "string"},
                        {"source": "display_name", "target": "name", "type": "string"},
                        {"source": "email", "target": "email", "type": "string", "required": False},
                    ],
                },
                {
                    "id": "orders",
                    "service": "orders",
                    "operation": "GET /orders",
                    "required": False,
                    "inputs": {"customer": {"source": "request", "path": "user_id"}},
                    "fields": [
                        {"source": "total", "target": "order_count", "type": "integer"},
                    ],
                },
            ],
        },
    ],
}


def make_catalog(**overrides: Any) -> Catalog:
    """Validated copy of the base catalog with top-level keys replaced."""
    data = copy.deepcopy(BASE_CATALOG)
    data.update(overrides)
    return Catalog.model_validate(data)


def make_plan_catalog(calls: List[Dict[str, Any]], operation: str = "op", **plan: Any) -> Catalog:
    """Base services and profiles with a single default plan."""
    return make_catalog(plans=[{"operation": operation, "calls": calls, **plan}])


def build_runtime(
    catalog: Catalog,
    stub: UpstreamStub,
    clock: ManualClock | None = None,
    settings: Settings | None = None,
    **settings_overrides: Any,
) -> AggregationRuntime:
    settings = settings or Settings(**settings_overrides)
    controller_kwargs: Dict[str, Any] = {"sleep": no_sleep}
    if clock is not None:
        controller_kwargs["clock"] = clock
    controller = FaultPolicyController(
        CatalogService(catalog),
        default_timeout_ms=settings.default_timeout_ms,
        **controller_kwargs,
    )
    return AggregationRuntime.build(catalog, settings, transport=stub.transport, controller=controller)
