"""
Response normalizer.

Turns a raw upstream payload into canonical fields according to the
call's declarative field mappings. Normalization is a pure function of
(payload, mappings): no I/O, no shared state.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence

from bff_aggregator.core.exceptions import NormalizationError
from bff_aggregator.schemas.catalog import FieldMapping, FieldType

MISSING = object()

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off"})


class CoercionError(ValueError):
    """A value cannot be represented as the requested canonical type."""


@dataclass
class NormalizedFields:
    """Canonical fields of one call plus the optional fields that failed coercion."""

    values: Dict[str, Any] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)


def extract(payload: Any, path: str) -> Any:
    """
    Follow a dotted path into a payload.

    Integer segments index into lists. Returns ``MISSING`` when any
    segment does not resolve.
    """
    if not path:
        return payload

    current = payload
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list):
            try:
                index = int(segment)
            except ValueError:
                return MISSING
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise CoercionError(f"cannot convert {type(value).__name__} to string")


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise CoercionError("booleans are not integers")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        raise CoercionError(f"{value!r} is not integral")
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise CoercionError(f"{value!r} is not numeric")
        if math.isfinite(number) and number.is_integer():
            return int(number)
        raise CoercionError(f"{value!r} is not integral")
    raise CoercionError(f"cannot convert {type(value).__name__} to integer")


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise CoercionError("booleans are not numbers")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise CoercionError(f"{value!r} is not numeric")
    elif isinstance(value, float):
        number = value
    else:
        raise CoercionError(f"cannot convert {type(value).__name__} to number")
    if not math.isfinite(number):
        raise CoercionError(f"{value!r} is not a finite number")
    return number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise CoercionError(f"{value!r} is not a boolean")


def _to_array(value: Any) -> list:
    if isinstance(value, list):
        return value
    raise CoercionError(f"cannot convert {type(value).__name__} to array")


def _to_object(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    raise CoercionError(f"cannot convert {type(value).__name__} to object")


COERCERS: Dict[FieldType, Callable[[Any], Any]] = {
    FieldType.ANY: lambda value: value,
    FieldType.STRING: _to_string,
    FieldType.INTEGER: _to_integer,
    FieldType.NUMBER: _to_number,
    FieldType.BOOLEAN: _to_boolean,
    FieldType.ARRAY: _to_array,
    FieldType.OBJECT: _to_object,
}


class ResponseNormalizer:
    """Applies field mappings to upstream payloads."""

    def normalize(
        self,
        payload: Any,
        mappings: Sequence[FieldMapping],
        required: Callable[[FieldMapping], bool] = lambda mapping: bool(mapping.required),
    ) -> NormalizedFields:
        """
        Map a payload to canonical fields.

        Args:
            payload: Decoded upstream body
            mappings: Field mappings in declaration order
            required: Decides whether a mapping is required (callers pass
                the owning call's resolution)

        Returns:
            Canonical values in mapping order and the degraded optional fields

        Raises:
            NormalizationError: If a required field cannot be coerced
        """
        result = NormalizedFields()

        for mapping in mappings:
            value = extract(payload, mapping.source)
            # Missing and null both mean "absent"
            if value is MISSING or value is None:
                continue

            try:
                result.values[mapping.target] = COERCERS[FieldType(mapping.type)](value)
            except CoercionError as exc:
                if required(mapping):
                    raise NormalizationError(mapping.target, str(exc)) from exc
                result.degraded.append(mapping.target)

        return result
