"""
Catalog Schemas - Client Profiles, Aggregation Plans and Upstream Services

The catalog is the configuration surface of the BFF. It is loaded from a
JSON document at startup, validated once, and then shared read-only by
every request.
"""

from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, Tuple

from pydantic import Field, field_validator, model_validator

from bff_aggregator.schemas.base import ConfigSchema

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})
HTTP_METHODS = IDEMPOTENT_METHODS | {"POST", "PATCH"}

# Rule key applied to entity types that have no rule of their own
ANY_ENTITY = "*"


class FieldType(str, Enum):
    """Canonical field types supported by the normalizer."""

    ANY = "any"
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class BindingSource(str, Enum):
    """Where an upstream call parameter takes its value from."""

    REQUEST = "request"
    CALL = "call"
    LITERAL = "literal"


# ═══════════════════════════════════════════════════════════════════════════════
# CLIENT PROFILES
# ═══════════════════════════════════════════════════════════════════════════════


class EntityRule(ConfigSchema):
    """Allow/deny lists for the fields of one entity type."""

    allow: Tuple[str, ...] | None = Field(
        default=None,
        description="Fields kept for this entity type; null keeps every field",
    )
    deny: Tuple[str, ...] = Field(
        default=(),
        description="Fields always stripped for this entity type",
    )

    def permits(self, field: str) -> bool:
        if field in self.deny:
            return False
        return self.allow is None or field in self.allow


class ClientProfile(ConfigSchema):
    """
    A consuming frontend (mobile, web, tv, ...).

    Decides which fields reach the client, how large the payload may be,
    and how long the whole aggregation may take.
    """

    id: str = Field(min_length=1, json_schema_extra={"example": "mobile"})
    description: str | None = Field(default=None)
    max_payload_bytes: int | None = Field(
        default=None,
        gt=0,
        description="Upper bound on the serialized data payload; null is unlimited",
    )
    timeout_budget_ms: int = Field(
        default=3000,
        gt=0,
        description="Overall latency budget for one aggregated request",
    )
    field_inclusion_rules: Dict[str, EntityRule] = Field(
        default_factory=dict,
        description="Rules per entity type; '*' covers entity types without a rule",
    )

    def permits(self, entity: str, field: str) -> bool:
        """Whether ``field`` produced for ``entity`` may be sent to this client."""
        rule = self.field_inclusion_rules.get(entity)
        if rule is None:
            rule = self.field_inclusion_rules.get(ANY_ENTITY)
        if rule is None:
            return True
        return rule.permits(field)


# ═══════════════════════════════════════════════════════════════════════════════
# FAULT POLICIES
# ═══════════════════════════════════════════════════════════════════════════════


class RetryPolicy(ConfigSchema):
    """Retry schedule for transient failures of idempotent calls."""

    max_retries: int = Field(default=2, ge=0, le=10)
    backoff_initial_ms: int = Field(default=50, ge=0)
    backoff_max_ms: int = Field(default=1000, ge=0)
    jitter_ms: int = Field(default=50, ge=0)


class CircuitPolicy(ConfigSchema):
    """Thresholds of a per-service circuit breaker."""

    failure_ratio_threshold: float = Field(default=0.5, gt=0, le=1)
    window_seconds: float = Field(default=30.0, gt=0)
    minimum_calls: int = Field(default=5, ge=1)
    cooldown_ms: int = Field(default=5000, gt=0)
    cooldown_multiplier: float = Field(default=2.0, ge=1)
    max_cooldown_ms: int = Field(default=60000, gt=0)

    @model_validator(mode="after")
    def check_cooldown_cap(self) -> "CircuitPolicy":
        if self.max_cooldown_ms < self.cooldown_ms:
            raise ValueError("max_cooldown_ms must be >= cooldown_ms")
        return self


class ServiceConfig(ConfigSchema):
    """An upstream core service."""

    id: str = Field(min_length=1, json_schema_extra={"example": "users"})
    base_url: str = Field(json_schema_extra={"example": "http://users.internal:8080"})
    max_in_flight: int | None = Field(default=None, ge=1)
    admission_wait_ms: int | None = Field(default=None, ge=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    circuit: CircuitPolicy = Field(default_factory=CircuitPolicy)


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION PLANS
# ═══════════════════════════════════════════════════════════════════════════════


class ParameterBinding(ConfigSchema):
    """
    How one parameter of an upstream call gets its value.

    - ``request``: ``path`` into the inbound request params
    - ``call``: ``path`` into the canonical fields of an earlier ``call``
    - ``literal``: the fixed ``value``
    """

    source: BindingSource
    path: str | None = None
    call: str | None = None
    value: Any = None
    required: bool = True

    @model_validator(mode="after")
    def check_source_fields(self) -> "ParameterBinding":
        if self.source in (BindingSource.REQUEST, BindingSource.CALL) and not self.path:
            raise ValueError(f"'{self.source.value}' bindings need a path")
        if self.source == BindingSource.CALL and not self.call:
            raise ValueError("'call' bindings need the id of the call they read from")
        return self


class FieldMapping(ConfigSchema):
    """Maps one location of an upstream payload to a canonical field."""

    source: str = Field(default="", description="Dotted path; empty for the whole payload")
    target: str = Field(min_length=1)
    type: FieldType = FieldType.ANY
    required: bool | None = Field(
        default=None,
        description="Defaults to the required flag of the owning call",
    )
    priority: int = Field(
        default=0,
        description="Lower priorities are dropped first when over the payload budget",
    )


class UpstreamCall(ConfigSchema):
    """A single request to one upstream service within a plan."""

    id: str = Field(min_length=1)
    service: str = Field(min_length=1)
    operation: str = Field(json_schema_extra={"example": "GET /users/{user_id}"})
    required: bool = True
    depends_on: Tuple[str, ...] = ()
    inputs: Dict[str, ParameterBinding] = Field(default_factory=dict)
    field_mappings: Tuple[FieldMapping, ...] = Field(default=(), alias="fields")
    entity: str | None = Field(
        default=None,
        description="Entity type used by inclusion rules; defaults to the service id",
    )
    timeout_ms: int | None = Field(default=None, gt=0)
    retry_policy: str = "default"
    idempotent: bool | None = None

    @field_validator("operation")
    @classmethod
    def check_operation(cls, v: str) -> str:
        parts = v.split(None, 1)
        if len(parts) != 2 or parts[0].upper() not in HTTP_METHODS or not parts[1].startswith("/"):
            raise ValueError("operation must look like 'GET /path/{param}'")
        return f"{parts[0].upper()} {parts[1]}"

    @property
    def method(self) -> str:
        return self.operation.split(" ", 1)[0]

    @property
    def path_template(self) -> str:
        return self.operation.split(" ", 1)[1]

    @property
    def is_idempotent(self) -> bool:
        if self.idempotent is not None:
            return self.idempotent
        return self.method in IDEMPOTENT_METHODS

    @property
    def entity_type(self) -> str:
        return self.entity or self.service

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Declared dependencies plus every call an input binding reads from."""
        deps = list(self.depends_on)
        for binding in self.inputs.values():
            if binding.source == BindingSource.CALL and binding.call not in deps:
                deps.append(binding.call)
        return tuple(deps)

    @property
    def mappings(self) -> Tuple[FieldMapping, ...]:
        """Field mappings; a call without mappings exposes its payload under its id."""
        if self.field_mappings:
            return self.field_mappings
        return (FieldMapping(source="", target=self.id),)

    def is_field_required(self, mapping: FieldMapping) -> bool:
        return self.required if mapping.required is None else mapping.required


class AggregationPlan(ConfigSchema):
    """
    Upstream calls to make for one (operation, profile) pair.

    ``profile`` is null for the default plan of an operation.
    """

    operation: str = Field(min_length=1)
    profile: str | None = None
    timeout_budget_ms: int | None = Field(default=None, gt=0)
    calls: Tuple[UpstreamCall, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def check_graph(self) -> "AggregationPlan":
        ids = [call.id for call in self.calls]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate call ids in plan '{self.operation}': {duplicates}")

        known = set(ids)
        for call in self.calls:
            for dep in call.dependencies:
                if dep == call.id:
                    raise ValueError(f"call '{call.id}' depends on itself")
                if dep not in known:
                    raise ValueError(f"call '{call.id}' depends on unknown call '{dep}'")

        try:
            tuple(self._sorter().static_order())
        except CycleError as exc:
            raise ValueError(f"plan '{self.operation}' has a dependency cycle: {exc.args[1]}")
        return self

    def _sorter(self) -> TopologicalSorter:
        sorter = TopologicalSorter()
        for call in self.calls:
            sorter.add(call.id, *call.dependencies)
        return sorter

    @property
    def execution_order(self) -> Tuple[str, ...]:
        """Call ids in an order where every call follows its dependencies."""
        return tuple(self._sorter().static_order())

    def get_call(self, call_id: str) -> UpstreamCall:
        for call in self.calls:
            if call.id == call_id:
                return call
        raise KeyError(call_id)


class Catalog(ConfigSchema):
    """The full configuration surface."""

    services: Tuple[ServiceConfig, ...] = ()
    retry_policies: Dict[str, RetryPolicy] = Field(default_factory=dict, validate_default=True)
    profiles: Tuple[ClientProfile, ...] = ()
    plans: Tuple[AggregationPlan, ...] = ()

    @field_validator("retry_policies")
    @classmethod
    def ensure_default_policy(cls, v: Dict[str, RetryPolicy]) -> Dict[str, RetryPolicy]:
        if "default" not in v:
            v = {**v, "default": RetryPolicy()}
        return v

    @model_validator(mode="after")
    def check_references(self) -> "Catalog":
        for label, items in (("service", self.services), ("profile", self.profiles)):
            ids = [item.id for item in items]
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(f"duplicate {label} ids: {duplicates}")

        service_ids = {s.id for s in self.services}
        profile_ids = {p.id for p in self.profiles}
        seen = set()
        for plan in self.plans:
            key = (plan.operation, plan.profile)
            if key in seen:
                raise ValueError(
                    f"plan for operation '{plan.operation}' and profile "
                    f"'{plan.profile}' is defined twice"
                )
            seen.add(key)
            if plan.profile is not None and plan.profile not in profile_ids:
                raise ValueError(
                    f"plan '{plan.operation}' references unknown profile '{plan.profile}'"
                )
            for call in plan.calls:
                if call.service not in service_ids:
                    raise ValueError(
                        f"call '{call.id}' in plan '{plan.operation}' references "
                        f"unknown service '{call.service}'"
                    )
                if call.retry_policy not in self.retry_policies:
                    raise ValueError(
                        f"call '{call.id}' in plan '{plan.operation}' references "
                        f"unknown retry policy '{call.retry_policy}'"
                    )
        return self
