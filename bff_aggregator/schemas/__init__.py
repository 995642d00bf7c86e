"""Pydantic schemas for the catalog and the BFF endpoints."""

from bff_aggregator.schemas.base import BaseSchema, ConfigSchema, ErrorResponse
from bff_aggregator.schemas.catalog import (
    AggregationPlan,
    BindingSource,
    Catalog,
    CircuitPolicy,
    ClientProfile,
    EntityRule,
    FieldMapping,
    FieldType,
    ParameterBinding,
    RetryPolicy,
    ServiceConfig,
    UpstreamCall,
)

__all__ = [
    # Base
    "BaseSchema",
    "ConfigSchema",
    "ErrorResponse",
    # Catalog
    "AggregationPlan",
    "BindingSource",
    "Catalog",
    "CircuitPolicy",
    "ClientProfile",
    "EntityRule",
    "FieldMapping",
    "FieldType",
    "ParameterBinding",
    "RetryPolicy",
    "ServiceConfig",
    "UpstreamCall",
]
