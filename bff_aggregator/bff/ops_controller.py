"""
Operational controller.

Read-only views for operators:
- Circuit breaker state and in-flight counts per upstream service
- Loaded catalog (profiles, operations, services)
"""

from typing import List

from fastapi import APIRouter

from bff_aggregator.core.dependencies import Runtime
from bff_aggregator.core.runtime import AggregationRuntime
from bff_aggregator.schemas.bff.responses import (
    CatalogSummary,
    CircuitSnapshot,
    OperationSummary,
    ProfileSummary,
)

router = APIRouter()


class OpsController:
    """Builds operational views from the runtime."""

    def __init__(self, runtime: AggregationRuntime):
        self.runtime = runtime

    def circuits(self) -> List[CircuitSnapshot]:
        in_flight = self.runtime.pool.in_flight()
        return [
            CircuitSnapshot(**snapshot, **in_flight.get(snapshot["service_id"], {}))
            for snapshot in self.runtime.controller.snapshots()
        ]

    def catalog(self) -> CatalogSummary:
        catalog = self.runtime.catalog
        return CatalogSummary(
            profiles=[
                ProfileSummary(
                    id=profile.id,
                    description=profile.description,
                    max_payload_bytes=profile.max_payload_bytes,
                    timeout_budget_ms=profile.timeout_budget_ms,
                )
                for profile in catalog.profiles
            ],
            operations=[
                OperationSummary(
                    operation=plan.operation,
                    profile=plan.profile,
                    calls=[call.id for call in plan.calls],
                )
                for plan in catalog.plans
            ],
            services=[service.id for service in catalog.services],
        )


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTE HANDLERS
# ═══════════════════════════════════════════════════════════════════════════════


@router.get(
    "/circuits",
    response_model=List[CircuitSnapshot],
    summary="Circuit Breakers",
    description="State of every upstream circuit breaker with in-flight counts.",
)
async def get_circuits(runtime: Runtime) -> List[CircuitSnapshot]:
    return OpsController(runtime).circuits()


@router.get(
    "/catalog",
    response_model=CatalogSummary,
    summary="Loaded Catalog",
    description="Client profiles, operations and services known to this instance.",
)
async def get_catalog(runtime: Runtime) -> CatalogSummary:
    return OpsController(runtime).catalog()
