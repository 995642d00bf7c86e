"""
BFF Response Schemas

Payloads returned by the aggregate and operational endpoints.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, computed_field


class BFFBaseResponse(BaseModel):
    """Base response schema for BFF endpoints."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION RESPONSES
# ═══════════════════════════════════════════════════════════════════════════════


class AggregatedResponse(BFFBaseResponse):
    """
    Merged result of one aggregation plan.

    ``data`` keeps the plan's merge order. ``partial`` is set when an
    optional call (or an optional field) failed; the affected canonical
    fields are listed in ``degradedFields``.
    """

    operation: str = Field(json_schema_extra={"example": "home"})
    profile: str = Field(json_schema_extra={"example": "mobile"})

    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Canonical fields in deterministic merge order",
        json_schema_extra={"example": {"name": "Ada", "unread": 3}},
    )

    partial: bool = Field(
        default=False,
        description="True when at least one optional call or field failed",
    )

    degraded_fields: List[str] = Field(
        default_factory=list,
        alias="degradedFields",
        description="Fields omitted because their source failed",
    )

    trimmed_fields: List[str] = Field(
        default_factory=list,
        alias="trimmedFields",
        description="Fields dropped to respect the profile's payload budget",
    )


# ═══════════════════════════════════════════════════════════════════════════════
# OPERATIONAL RESPONSES
# ═══════════════════════════════════════════════════════════════════════════════


class CircuitSnapshot(BFFBaseResponse):
    """Point-in-time view of one service's circuit breaker and pool."""

    service_id: str
    state: str = Field(json_schema_extra={"example": "closed"})
    window_calls: int = 0
    window_failures: int = 0
    reopen_count: int = 0
    cooldown_remaining_ms: float = 0.0
    last_latency_ms: float | None = None
    in_flight: int = 0
    max_in_flight: int | None = None

    @computed_field
    @property
    def failure_ratio(self) -> float:
        """Failure ratio over the current sliding window."""
        if not self.window_calls:
            return 0.0
        return round(self.window_failures / self.window_calls, 4)


class ProfileSummary(BFFBaseResponse):
    id: str
    description: str | None = None
    max_payload_bytes: int | None = None
    timeout_budget_ms: int


class OperationSummary(BFFBaseResponse):
    operation: str
    profile: str | None = Field(
        default=None,
        description="Null for the profile-agnostic default plan",
    )
    calls: List[str] = Field(default_factory=list)


class CatalogSummary(BFFBaseResponse):
    profiles: List[ProfileSummary] = Field(default_factory=list)
    operations: List[OperationSummary] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
