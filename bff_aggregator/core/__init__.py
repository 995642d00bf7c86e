"""Core modules for the application."""

from bff_aggregator.core.exceptions import (
    AggregationFailed,
    AppException,
    CallFailure,
    NotFoundException,
    PayloadBudgetExceeded,
    UnknownClientProfile,
    UnknownOperation,
)

__all__ = [
    "AggregationFailed",
    "AppException",
    "CallFailure",
    "NotFoundException",
    "PayloadBudgetExceeded",
    "UnknownClientProfile",
    "UnknownOperation",
]
