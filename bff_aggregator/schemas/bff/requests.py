"""
BFF Request Schemas

The HTTP layer reduces every aggregate call (query string, JSON body,
header or path-prefixed profile) to a single ``InboundRequest``.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class BFFBaseRequest(BaseModel):
    """Base request schema for BFF endpoints."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        use_enum_values=True,
        populate_by_name=True,
    )


class InboundRequest(BFFBaseRequest):
    """
    A request for one logical operation on behalf of one client.

    ``profile_id`` is set when the route names the profile explicitly;
    otherwise the router looks at ``headers``.
    """

    operation: str = Field(
        min_length=1,
        max_length=200,
        description="Logical operation name",
        json_schema_extra={"example": "home"},
    )

    profile_id: str | None = Field(
        default=None,
        description="Explicit client profile id",
        json_schema_extra={"example": "mobile"},
    )

    params: Dict[str, Any] = Field(
        default_factory=dict,
        description="Request parameters available to input bindings",
        json_schema_extra={"example": {"user_id": "42"}},
    )

    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Inbound headers, lower-cased names",
    )

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())
