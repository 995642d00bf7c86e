"""
Aggregation engine.

Executes an aggregation plan for one request: launches every upstream
call as its own task (a call waits only on its declared predecessors),
merges the canonical fields in plan order and shapes the result for the
client profile.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Tuple

import structlog

from bff_aggregator.core.exceptions import (
    AggregationFailed,
    BindingError,
    CallFailure,
    DependencyFailed,
    PayloadBudgetExceeded,
    UpstreamTimeout,
)
from bff_aggregator.schemas.bff.responses import AggregatedResponse
from bff_aggregator.schemas.catalog import (
    AggregationPlan,
    BindingSource,
    ClientProfile,
    UpstreamCall,
)
from bff_aggregator.services.fault_policy import FaultPolicyController
from bff_aggregator.services.normalizer import MISSING, ResponseNormalizer, extract

if TYPE_CHECKING:
    from bff_aggregator.upstream.pool import UpstreamClientPool

logger = structlog.get_logger(__name__)


@dataclass
class CallOutcome:
    """Result of one upstream call within a request."""

    call: UpstreamCall
    fields: Dict[str, Any] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)
    failure: CallFailure | None = None


@dataclass(frozen=True)
class FieldOrigin:
    """Where a merged field came from; drives inclusion rules and trimming."""

    entity: str
    priority: int
    required: bool
    position: int


def payload_size(data: Mapping[str, Any]) -> int:
    """Size in bytes of the compact JSON encoding of ``data``."""
    return len(json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8"))


def _consume_result(task: asyncio.Task) -> None:
    # Abandoned tasks are never awaited; fetch their outcome so asyncio
    # does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


class AggregationEngine:
    """
    Runs aggregation plans.

    Stateless between requests; everything a request touches lives in
    local variables of ``execute``.
    """

    def __init__(
        self,
        pool: "UpstreamClientPool",
        normalizer: ResponseNormalizer,
        controller: FaultPolicyController,
    ):
        self.pool = pool
        self.normalizer = normalizer
        self.controller = controller

    @staticmethod
    def request_budget(plan: AggregationPlan, profile: ClientProfile) -> float:
        """Overall latency budget in seconds for one request."""
        budget_ms = profile.timeout_budget_ms
        if plan.timeout_budget_ms is not None:
            budget_ms = min(budget_ms, plan.timeout_budget_ms)
        return budget_ms / 1000

    async def execute(
        self,
        plan: AggregationPlan,
        profile: ClientProfile,
        params: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> AggregatedResponse:
        """
        Execute a plan and build the aggregated response.

        Args:
            plan: Plan resolved for the request
            profile: Client profile resolved for the request
            params: Request parameters available to input bindings
            headers: Headers forwarded to every upstream call

        Returns:
            Merged and shaped response (possibly partial)

        Raises:
            AggregationFailed: A required call failed; other calls were cancelled
            PayloadBudgetExceeded: Required fields alone exceed the profile budget
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_budget(plan, profile)
        headers = dict(headers or {})

        tasks: Dict[str, asyncio.Task] = {}
        for call_id in plan.execution_order:
            call = plan.get_call(call_id)
            tasks[call_id] = asyncio.create_task(
                self._run_call(call, tasks, params, headers, deadline),
                name=f"bff:{plan.operation}:{call_id}",
            )
        call_ids = {task: call_id for call_id, task in tasks.items()}

        outcomes: Dict[str, CallOutcome] = {}
        pending = set(tasks.values())
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending,
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    outcomes[call_ids[task]] = task.result()
                self._raise_for_required(plan, outcomes)

            if pending:
                logger.warning(
                    "request_budget_exhausted",
                    operation=plan.operation,
                    profile=profile.id,
                    unfinished=sorted(call_ids[task] for task in pending),
                )
                self._abandon(pending)
                pending = set()
                for call in plan.calls:
                    if call.id not in outcomes:
                        outcomes[call.id] = CallOutcome(
                            call,
                            failure=UpstreamTimeout(call.service, "request budget exhausted"),
                        )
                self._raise_for_required(plan, outcomes)
        except BaseException:
            self._abandon(pending)
            raise

        return self._assemble(plan, profile, outcomes)

    # ─────────────────────────────────────────────────────────────────────────
    # Per-call execution
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_call(
        self,
        call: UpstreamCall,
        tasks: Mapping[str, asyncio.Task],
        params: Mapping[str, Any],
        headers: Mapping[str, str],
        deadline: float,
    ) -> CallOutcome:
        loop = asyncio.get_running_loop()
        try:
            upstream: Dict[str, Dict[str, Any]] = {}
            for dependency in call.dependencies:
                outcome = await tasks[dependency]
                if outcome.failure is not None:
                    raise DependencyFailed(dependency, outcome.failure)
                upstream[dependency] = outcome.fields

            bound = self._bind(call, params, upstream)
            budget = self.controller.call_budget(call, deadline - loop.time())
            payload = await self.pool.call(call, bound, budget=budget, headers=headers)
            normalized = self.normalizer.normalize(payload, call.mappings, call.is_field_required)
        except CallFailure as failure:
            if not call.required:
                logger.info(
                    "optional_call_degraded",
                    call=call.id,
                    service=call.service,
                    failure=failure.kind,
                    detail=failure.message,
                )
            return CallOutcome(call, failure=failure)

        return CallOutcome(call, fields=normalized.values, degraded=normalized.degraded)

    @staticmethod
    def _bind(
        call: UpstreamCall,
        params: Mapping[str, Any],
        upstream: Mapping[str, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """Resolve the call's input bindings into concrete parameters."""
        bound: Dict[str, Any] = {}
        for name, binding in call.inputs.items():
            if binding.source == BindingSource.LITERAL:
                value = binding.value
            elif binding.source == BindingSource.REQUEST:
                value = extract(params, binding.path)
            else:
                value = extract(upstream[binding.call], binding.path)

            if value is MISSING or value is None:
                if binding.required:
                    raise BindingError(name, f"no value for {binding.source.value} '{binding.path}'")
                continue
            bound[name] = value
        return bound

    # ─────────────────────────────────────────────────────────────────────────
    # Failure handling
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _raise_for_required(plan: AggregationPlan, outcomes: Mapping[str, CallOutcome]) -> None:
        # Plan order decides which failure is reported when several are known
        for call in plan.calls:
            outcome = outcomes.get(call.id)
            if outcome is not None and outcome.failure is not None and call.required:
                logger.warning(
                    "aggregation_failed",
                    operation=plan.operation,
                    call=call.id,
                    service=call.service,
                    failure=outcome.failure.kind,
                    detail=outcome.failure.message,
                )
                raise AggregationFailed(call.id, outcome.failure)

    @staticmethod
    def _abandon(tasks) -> None:
        """Signal cancellation without waiting for the tasks to unwind."""
        for task in tasks:
            task.cancel()
            task.add_done_callback(_consume_result)

    # ─────────────────────────────────────────────────────────────────────────
    # Merge and shaping
    # ─────────────────────────────────────────────────────────────────────────

    def _assemble(
        self,
        plan: AggregationPlan,
        profile: ClientProfile,
        outcomes: Mapping[str, CallOutcome],
    ) -> AggregatedResponse:
        merged: Dict[str, Any] = {}
        origins: Dict[str, FieldOrigin] = {}
        degraded: Dict[str, str] = {}
        partial = False
        position = 0

        for call in plan.calls:
            outcome = outcomes[call.id]
            if outcome.failure is not None:
                partial = True
                for mapping in call.mappings:
                    degraded.setdefault(mapping.target, call.entity_type)
                continue

            if outcome.degraded:
                partial = True
                for name in outcome.degraded:
                    degraded.setdefault(name, call.entity_type)

            mappings = {mapping.target: mapping for mapping in call.mappings}
            for name, value in outcome.fields.items():
                mapping = mappings[name]
                # Later calls in plan order win
                merged[name] = value
                origins[name] = FieldOrigin(
                    entity=call.entity_type,
                    priority=mapping.priority,
                    required=call.is_field_required(mapping),
                    position=position,
                )
                position += 1

        data = {
            name: value
            for name, value in merged.items()
            if profile.permits(origins[name].entity, name)
        }
        degraded_fields = [
            name
            for name, entity in degraded.items()
            if name not in merged and profile.permits(entity, name)
        ]

        data, trimmed = self._fit_budget(profile, data, origins)

        return AggregatedResponse(
            operation=plan.operation,
            profile=profile.id,
            data=data,
            partial=partial,
            degraded_fields=degraded_fields,
            trimmed_fields=trimmed,
        )

    @staticmethod
    def _fit_budget(
        profile: ClientProfile,
        data: Dict[str, Any],
        origins: Mapping[str, FieldOrigin],
    ) -> Tuple[Dict[str, Any], List[str]]:
        """
        Drop optional fields, lowest priority first, until ``data`` fits.

        Ties on priority drop the field merged last first.
        """
        budget = profile.max_payload_bytes
        if budget is None:
            return data, []

        size = payload_size(data)
        if size <= budget:
            return data, []

        candidates = sorted(
            (name for name in data if not origins[name].required),
            key=lambda name: (origins[name].priority, -origins[name].position),
        )
        data = dict(data)
        trimmed: List[str] = []
        for name in candidates:
            if size <= budget:
                break
            del data[name]
            trimmed.append(name)
            size = payload_size(data)

        if size > budget:
            raise PayloadBudgetExceeded(profile.id, size, budget)

        logger.info(
            "payload_trimmed",
            profile=profile.id,
            trimmed=trimmed,
            size=size,
            budget=budget,
        )
        return data, trimmed
