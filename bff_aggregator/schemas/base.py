"""
Base Pydantic schemas and common types
"""

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )


class ConfigSchema(BaseModel):
    """
    Base for catalog records.

    Catalog records are loaded once and shared by every request,
    so they are frozen and reject unknown keys.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
    )


class ErrorResponse(BaseSchema):
    """Error response schema."""

    success: bool = Field(default=False)
    detail: str = Field(description="Error detail message")
    status_code: int = Field(description="HTTP status code")
    error_code: str | None = Field(default=None, description="Error code")
