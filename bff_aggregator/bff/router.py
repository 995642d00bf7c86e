"""
BFF router configuration.

Aggregates the BFF endpoints into the routers mounted by the main
application.
"""

from fastapi import APIRouter

from bff_aggregator.bff.aggregate_controller import router as aggregate_router
from bff_aggregator.bff.ops_controller import router as ops_router

# Aggregate endpoints
router = APIRouter(
    tags=["BFF"],
    responses={
        404: {"description": "Not Found"},
        422: {"description": "Validation Error"},
        500: {"description": "Internal Server Error"},
    },
)

router.include_router(aggregate_router)

# Operational endpoints
operations_router = APIRouter(tags=["Operations"])

operations_router.include_router(ops_router)
