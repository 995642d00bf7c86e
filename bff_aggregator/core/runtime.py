"""
Runtime container.

Builds the component graph once per process:

    CatalogService -> FaultPolicyController -> UpstreamClientPool
                   -> ResponseNormalizer -> AggregationEngine -> BFFRequestRouter
"""

from dataclasses import dataclass

import httpx

from bff_aggregator.config import Settings
from bff_aggregator.schemas.catalog import Catalog
from bff_aggregator.services.aggregation_engine import AggregationEngine
from bff_aggregator.services.catalog_service import CatalogService
from bff_aggregator.services.fault_policy import FaultPolicyController
from bff_aggregator.services.normalizer import ResponseNormalizer
from bff_aggregator.services.request_router import BFFRequestRouter
from bff_aggregator.upstream.pool import UpstreamClientPool


@dataclass
class AggregationRuntime:
    """Process-wide components shared by every request."""

    catalog: CatalogService
    controller: FaultPolicyController
    pool: UpstreamClientPool
    engine: AggregationEngine
    router: BFFRequestRouter

    @classmethod
    def build(
        cls,
        catalog: Catalog,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        controller: FaultPolicyController | None = None,
    ) -> "AggregationRuntime":
        """
        Wire every component for a catalog.

        Args:
            catalog: Validated catalog
            settings: Application settings (defaults, header names)
            transport: Optional httpx transport for every upstream client
            controller: Optional pre-built controller (e.g. with a test clock)
        """
        catalog_service = CatalogService(catalog)
        if controller is None:
            controller = FaultPolicyController(
                catalog_service,
                default_timeout_ms=settings.default_timeout_ms,
            )
        pool = UpstreamClientPool(
            catalog_service,
            controller,
            transport=transport,
            default_max_in_flight=settings.default_max_in_flight,
            default_admission_wait_ms=settings.default_admission_wait_ms,
        )
        engine = AggregationEngine(pool, ResponseNormalizer(), controller)
        router = BFFRequestRouter(
            catalog_service,
            engine,
            profile_header=settings.client_profile_header,
            default_profile=settings.default_profile,
            forward_headers=settings.forward_headers,
        )
        return cls(
            catalog=catalog_service,
            controller=controller,
            pool=pool,
            engine=engine,
            router=router,
        )

    async def aclose(self) -> None:
        await self.pool.aclose()
