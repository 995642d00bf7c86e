"""
Aggregate controller.

Handles the aggregate endpoints:
- Profile from the X-Client-Profile header (GET query string or POST body)
- Profile from the path prefix (/profiles/{profile_id}/...)
"""

from typing import Annotated, Any, Dict

import structlog
from fastapi import APIRouter, Body, Path, Request

from bff_aggregator.core.dependencies import RequestId, Runtime
from bff_aggregator.core.runtime import AggregationRuntime
from bff_aggregator.schemas.base import ErrorResponse
from bff_aggregator.schemas.bff.requests import InboundRequest
from bff_aggregator.schemas.bff.responses import AggregatedResponse

logger = structlog.get_logger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Unknown operation or client profile"},
    413: {"model": ErrorResponse, "description": "Required fields exceed the payload budget"},
    502: {"model": ErrorResponse, "description": "A required upstream call failed"},
    503: {"model": ErrorResponse, "description": "Upstream circuit open or overloaded"},
}


def query_params(request: Request) -> Dict[str, Any]:
    """Query string as a dict; repeated keys become lists."""
    params: Dict[str, Any] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        params[key] = values[0] if len(values) == 1 else values
    return params


class AggregateController:
    """
    Controller for aggregate operations.

    Converts HTTP input into an ``InboundRequest`` and delegates to the
    BFF request router.
    """

    def __init__(self, runtime: AggregationRuntime):
        """
        Initialize controller with the runtime.

        Args:
            runtime: Process-wide aggregation components
        """
        self.runtime = runtime

    async def aggregate(
        self,
        request: Request,
        operation: str,
        params: Dict[str, Any],
        profile_id: str | None = None,
    ) -> AggregatedResponse:
        """
        Run one aggregation.

        Args:
            request: Inbound HTTP request (headers are forwarded upstream)
            operation: Logical operation name
            params: Parameters available to input bindings
            profile_id: Explicit profile id from the path, if any

        Returns:
            Aggregated response for the resolved profile
        """
        headers = {name.lower(): value for name, value in request.headers.items()}
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            headers.setdefault(request.app.state.settings.request_id_header.lower(), request_id)

        inbound = InboundRequest(
            operation=operation,
            profile_id=profile_id,
            params=params,
            headers=headers,
        )
        structlog.contextvars.bind_contextvars(operation=operation)

        result = await self.runtime.router.dispatch(inbound)

        logger.info(
            "aggregation_completed",
            operation=operation,
            profile=result.profile,
            partial=result.partial,
            degraded=result.degraded_fields,
            trimmed=result.trimmed_fields,
        )
        return result


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTE HANDLERS
# ═══════════════════════════════════════════════════════════════════════════════


@router.get(
    "/profiles/{profile_id}/{operation}",
    response_model=AggregatedResponse,
    responses=ERROR_RESPONSES,
    summary="Aggregate (profile in path)",
    description="Run an operation for the client profile named in the path. "
                "Query parameters feed the plan's input bindings.",
)
async def aggregate_for_profile(
    request: Request,
    profile_id: Annotated[str, Path(description="Client profile id", max_length=100)],
    operation: Annotated[str, Path(description="Logical operation", max_length=200)],
    runtime: Runtime,
    request_id: RequestId,
) -> AggregatedResponse:
    controller = AggregateController(runtime)
    return await controller.aggregate(
        request,
        operation=operation,
        params=query_params(request),
        profile_id=profile_id,
    )


@router.post(
    "/profiles/{profile_id}/{operation}",
    response_model=AggregatedResponse,
    responses=ERROR_RESPONSES,
    summary="Aggregate with body (profile in path)",
    description="Run an operation for the client profile named in the path. "
                "The JSON body feeds the plan's input bindings.",
)
async def aggregate_for_profile_with_body(
    request: Request,
    profile_id: Annotated[str, Path(description="Client profile id", max_length=100)],
    operation: Annotated[str, Path(description="Logical operation", max_length=200)],
    runtime: Runtime,
    request_id: RequestId,
    params: Annotated[Dict[str, Any] | None, Body()] = None,
) -> AggregatedResponse:
    controller = AggregateController(runtime)
    return await controller.aggregate(
        request,
        operation=operation,
        params=params or {},
        profile_id=profile_id,
    )


@router.get(
    "/{operation}",
    response_model=AggregatedResponse,
    responses=ERROR_RESPONSES,
    summary="Aggregate",
    description="Run an operation for the client profile named by the "
                "X-Client-Profile header. Query parameters feed the plan's input bindings.",
)
async def aggregate(
    request: Request,
    operation: Annotated[str, Path(description="Logical operation", max_length=200)],
    runtime: Runtime,
    request_id: RequestId,
) -> AggregatedResponse:
    """
    Aggregate for a header-identified client.

    Returns the merged fields, the partial flag and the degraded fields.
    """
    controller = AggregateController(runtime)
    return await controller.aggregate(request, operation=operation, params=query_params(request))


@router.post(
    "/{operation}",
    response_model=AggregatedResponse,
    responses=ERROR_RESPONSES,
    summary="Aggregate with body",
    description="Run an operation for the client profile named by the "
                "X-Client-Profile header. The JSON body feeds the plan's input bindings.",
)
async def aggregate_with_body(
    request: Request,
    operation: Annotated[str, Path(description="Logical operation", max_length=200)],
    runtime: Runtime,
    request_id: RequestId,
    params: Annotated[Dict[str, Any] | None, Body()] = None,
) -> AggregatedResponse:
    controller = AggregateController(runtime)
    return await controller.aggregate(request, operation=operation, params=params or {})
