"""
BFF-specific schemas.

Inbound requests are normalized into ``InboundRequest``; aggregated
results and operational views are returned as the response schemas.
"""

from bff_aggregator.schemas.bff.requests import InboundRequest
from bff_aggregator.schemas.bff.responses import (
    AggregatedResponse,
    CatalogSummary,
    CircuitSnapshot,
    OperationSummary,
    ProfileSummary,
)

__all__ = [
    # Requests
    "InboundRequest",
    # Responses
    "AggregatedResponse",
    "CatalogSummary",
    "CircuitSnapshot",
    "OperationSummary",
    "ProfileSummary",
]
