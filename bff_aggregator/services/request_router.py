"""
BFF request router.

Binds each inbound request to exactly one client profile and one
aggregation plan, then hands it to the aggregation engine.
"""

from typing import Dict, Iterable

import structlog

from bff_aggregator.core.exceptions import UnknownClientProfile, UnknownOperation
from bff_aggregator.schemas.bff.requests import InboundRequest
from bff_aggregator.schemas.bff.responses import AggregatedResponse
from bff_aggregator.schemas.catalog import AggregationPlan, ClientProfile
from bff_aggregator.services.aggregation_engine import AggregationEngine
from bff_aggregator.services.catalog_service import CatalogService

logger = structlog.get_logger(__name__)


class BFFRequestRouter:
    """
    Resolves (profile, plan) for a request.

    Holds no per-request state; safe to share across concurrent requests.
    """

    def __init__(
        self,
        catalog: CatalogService,
        engine: AggregationEngine,
        profile_header: str = "X-Client-Profile",
        default_profile: str | None = None,
        forward_headers: Iterable[str] = (),
    ):
        """
        Initialize the router.

        Args:
            catalog: Catalog lookups
            engine: Aggregation engine that executes resolved plans
            profile_header: Header naming the client profile
            default_profile: Profile used when the request names none
            forward_headers: Inbound headers passed on to upstream services
        """
        self.catalog = catalog
        self.engine = engine
        self.profile_header = profile_header.lower()
        self.default_profile = default_profile
        self.forward_headers = tuple(h.lower() for h in forward_headers)

    def identify_profile(self, request: InboundRequest) -> str | None:
        """Explicit id first, then the profile header, then the default."""
        return request.profile_id or request.header(self.profile_header) or self.default_profile

    def resolve_profile(self, profile_id: str | None) -> ClientProfile:
        """
        Raises:
            UnknownClientProfile: If no profile has this exact id
        """
        profile = self.catalog.get_profile(profile_id) if profile_id else None
        if profile is None:
            raise UnknownClientProfile(identifier=profile_id or "<none>")
        return profile

    def resolve_plan(self, operation: str, profile: ClientProfile) -> AggregationPlan:
        """
        Profile-specific plan, else the operation's default plan.

        Raises:
            UnknownOperation: If neither exists
        """
        plan = self.catalog.get_plan(operation, profile.id)
        if plan is None:
            plan = self.catalog.get_plan(operation, None)
        if plan is None:
            raise UnknownOperation(operation, profile.id)
        return plan

    def upstream_headers(self, request: InboundRequest) -> Dict[str, str]:
        return {
            name: value
            for name, value in request.headers.items()
            if name.lower() in self.forward_headers
        }

    async def dispatch(self, request: InboundRequest) -> AggregatedResponse:
        """
        Route one request.

        Raises:
            UnknownClientProfile: Before any upstream work
            UnknownOperation: Before any upstream work
            AggregationFailed: Propagated from the engine
            PayloadBudgetExceeded: Propagated from the engine
        """
        profile = self.resolve_profile(self.identify_profile(request))
        plan = self.resolve_plan(request.operation, profile)

        logger.debug(
            "request_routed",
            operation=request.operation,
            profile=profile.id,
            plan_profile=plan.profile,
            calls=[call.id for call in plan.calls],
        )
        return await self.engine.execute(
            plan,
            profile,
            request.params,
            headers=self.upstream_headers(request),
        )
