"""
FastAPI dependencies for dependency injection
"""

import uuid
from typing import Annotated

import structlog
from fastapi import Depends, Request, Response

from bff_aggregator.config import Settings, settings as default_settings
from bff_aggregator.core.exceptions import AppException
from bff_aggregator.core.runtime import AggregationRuntime


def get_app_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return getattr(request.app.state, "settings", default_settings)


def get_runtime(request: Request) -> AggregationRuntime:
    """Runtime attached to the application by the lifespan or the factory."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise AppException(status_code=503, detail="Catalog not loaded")
    return runtime


async def get_request_id(
    request: Request,
    response: Response,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> str:
    """
    Inbound request id, or a fresh one.

    Echoed on the response and bound into the structlog context so every
    log line of the request carries it.
    """
    request_id = request.headers.get(settings.request_id_header) or uuid.uuid4().hex
    request.state.request_id = request_id
    response.headers[settings.request_id_header] = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


# Type aliases for common dependencies
Runtime = Annotated[AggregationRuntime, Depends(get_runtime)]
RequestId = Annotated[str, Depends(get_request_id)]
