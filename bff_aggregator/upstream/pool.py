"""
Upstream client pool.

Owns one long-lived ``httpx.AsyncClient`` per upstream service and
executes single upstream calls through the fault policy controller.
"""

import asyncio
import re
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping
from urllib.parse import quote

import httpx
import structlog

from bff_aggregator.core.exceptions import (
    BindingError,
    CallFailure,
    ConnectionFailure,
    Overloaded,
    UpstreamError,
    UpstreamTimeout,
)
from bff_aggregator.schemas.catalog import ServiceConfig, UpstreamCall
from bff_aggregator.services.catalog_service import CatalogService
from bff_aggregator.services.fault_policy import FaultPolicyController, Permit

logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Methods whose leftover parameters travel in the query string
_QUERY_METHODS = frozenset({"GET", "HEAD", "DELETE", "OPTIONS"})


class AdmissionGate:
    """Bounds the number of in-flight attempts against one service."""

    def __init__(self, service_id: str, max_in_flight: int, wait_seconds: float):
        self.service_id = service_id
        self.max_in_flight = max_in_flight
        self.wait_seconds = wait_seconds
        self.in_flight = 0
        self._semaphore = asyncio.Semaphore(max_in_flight)

    @asynccontextmanager
    async def admit(self) -> AsyncIterator[None]:
        """
        Hold one slot for the duration of the block.

        Raises:
            Overloaded: If no slot frees up within the admission wait
        """
        if self.wait_seconds <= 0 and self._semaphore.locked():
            raise Overloaded(self.service_id, self.max_in_flight)
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=max(self.wait_seconds, 0.001))
        except asyncio.TimeoutError:
            raise Overloaded(self.service_id, self.max_in_flight)

        self.in_flight += 1
        try:
            yield
        finally:
            self.in_flight -= 1
            self._semaphore.release()


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite JSON number {name}")


def render_request(call: UpstreamCall, params: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Build httpx request arguments from the operation template.

    Path placeholders consume their parameters; the rest go to the query
    string or to the JSON body depending on the method.
    """
    remaining = dict(params)

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in remaining or remaining[name] is None:
            raise BindingError(name, f"needed by path of '{call.operation}'")
        return quote(str(remaining.pop(name)), safe="")

    path = _PLACEHOLDER.sub(substitute, call.path_template)
    request: Dict[str, Any] = {"method": call.method, "url": path}
    if remaining:
        if call.method in _QUERY_METHODS:
            request["params"] = {k: v for k, v in remaining.items() if v is not None}
        else:
            request["json"] = remaining
    return request


class UpstreamClientPool:
    """
    Executes upstream calls against the services in the catalog.

    Attributes:
        catalog: Catalog lookups (service base URLs, limits)
        controller: Fault policy controller governing every attempt
    """

    def __init__(
        self,
        catalog: CatalogService,
        controller: FaultPolicyController,
        transport: httpx.AsyncBaseTransport | None = None,
        default_max_in_flight: int = 64,
        default_admission_wait_ms: int = 250,
    ):
        """
        Initialize the pool.

        Args:
            catalog: Catalog lookups
            controller: Fault policy controller
            transport: Optional httpx transport shared by every client
                (tests pass an ``httpx.MockTransport``)
            default_max_in_flight: Limit for services that do not set one
            default_admission_wait_ms: Admission wait for services that do not set one
        """
        self.catalog = catalog
        self.controller = controller
        self._transport = transport
        self._default_max_in_flight = default_max_in_flight
        self._default_admission_wait_ms = default_admission_wait_ms
        self._clients: Dict[str, httpx.AsyncClient] = {}
        self._gates: Dict[str, AdmissionGate] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Resources
    # ─────────────────────────────────────────────────────────────────────────

    def _max_in_flight(self, service: ServiceConfig) -> int:
        return service.max_in_flight or self._default_max_in_flight

    def client(self, service_id: str) -> httpx.AsyncClient:
        client = self._clients.get(service_id)
        if client is None:
            service = self.catalog.get_service(service_id)
            limit = self._max_in_flight(service)
            client = httpx.AsyncClient(
                base_url=service.base_url,
                headers=service.headers,
                limits=httpx.Limits(max_connections=limit, max_keepalive_connections=limit),
                transport=self._transport,
            )
            self._clients[service_id] = client
        return client

    def gate(self, service_id: str) -> AdmissionGate:
        gate = self._gates.get(service_id)
        if gate is None:
            service = self.catalog.get_service(service_id)
            wait_ms = service.admission_wait_ms
            if wait_ms is None:
                wait_ms = self._default_admission_wait_ms
            gate = AdmissionGate(service_id, self._max_in_flight(service), wait_ms / 1000)
            self._gates[service_id] = gate
        return gate

    def in_flight(self) -> Dict[str, Dict[str, int]]:
        return {
            service.id: {
                "in_flight": self._gates[service.id].in_flight if service.id in self._gates else 0,
                "max_in_flight": self._max_in_flight(service),
            }
            for service in self.catalog.services
        }

    async def aclose(self) -> None:
        """Close every upstream client."""
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.aclose()

    # ─────────────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────────────

    async def call(
        self,
        call: UpstreamCall,
        params: Mapping[str, Any],
        budget: float,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """
        Execute one upstream call with retries, circuit breaking and timeouts.

        Args:
            call: Call descriptor
            params: Bound parameters
            budget: Seconds available for the call including retries
            headers: Headers forwarded from the inbound request

        Returns:
            Decoded JSON payload

        Raises:
            CallFailure: Typed failure of the call
        """
        request = render_request(call, params)
        if headers:
            request["headers"] = dict(headers)

        async def attempt(permit: Permit) -> Any:
            return await self._attempt(call, request, permit)

        return await self.controller.execute(call, attempt, budget=budget)

    async def _attempt(self, call: UpstreamCall, request: Dict[str, Any], permit: Permit) -> Any:
        gate = self.gate(call.service)
        client = self.client(call.service)
        timeout = self.controller.attempt_timeout(call)
        started = time.perf_counter()

        try:
            async with gate.admit():
                payload = await self._send(client, call, request, timeout)
        except CallFailure as failure:
            latency = time.perf_counter() - started
            self.controller.record_outcome(permit, latency, failure)
            logger.debug(
                "upstream_attempt_failed",
                call=call.id,
                service=call.service,
                failure=failure.kind,
                latency_ms=round(latency * 1000, 1),
            )
            raise

        latency = time.perf_counter() - started
        self.controller.record_outcome(permit, latency)
        logger.debug(
            "upstream_attempt_succeeded",
            call=call.id,
            service=call.service,
            latency_ms=round(latency * 1000, 1),
        )
        return payload

    async def _send(
        self,
        client: httpx.AsyncClient,
        call: UpstreamCall,
        request: Dict[str, Any],
        timeout: float,
    ) -> Any:
        try:
            response = await asyncio.wait_for(
                client.request(**request, timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise UpstreamTimeout(call.service, f"no response within {timeout * 1000:.0f}ms")
        except httpx.TransportError as exc:
            raise ConnectionFailure(call.service, f"{type(exc).__name__}: {exc}")

        if response.status_code >= 400:
            raise UpstreamError(call.service, response.status_code)

        if not response.content:
            return {}
        try:
            return response.json(parse_constant=_reject_constant)
        except ValueError:
            raise UpstreamError(call.service, 502, "upstream returned a non-JSON body")
