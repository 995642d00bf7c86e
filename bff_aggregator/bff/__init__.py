"""
Backend for Frontend (BFF) HTTP layer.

Aggregate endpoints fan out to upstream services according to the
catalog; operational endpoints expose circuit and catalog state.
"""

from bff_aggregator.bff.aggregate_controller import AggregateController
from bff_aggregator.bff.ops_controller import OpsController
from bff_aggregator.bff.router import operations_router, router

__all__ = [
    "router",
    "operations_router",
    "AggregateController",
    "OpsController",
]
