"""Services: catalog, normalization, fault policy, aggregation, routing."""

from bff_aggregator.services.aggregation_engine import AggregationEngine
from bff_aggregator.services.catalog_service import CatalogService, load_catalog
from bff_aggregator.services.fault_policy import (
    CircuitBreaker,
    CircuitState,
    FaultPolicyController,
)
from bff_aggregator.services.normalizer import ResponseNormalizer
from bff_aggregator.services.request_router import BFFRequestRouter

__all__ = [
    "AggregationEngine",
    "BFFRequestRouter",
    "CatalogService",
    "CircuitBreaker",
    "CircuitState",
    "FaultPolicyController",
    "ResponseNormalizer",
    "load_catalog",
]
