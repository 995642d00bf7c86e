import pytest

from bff_aggregator.core.exceptions import NormalizationError
from bff_aggregator.schemas.catalog import FieldMapping
from bff_aggregator.services.normalizer import MISSING, ResponseNormalizer, extract


def mapping(source, target, type="any", required=None, priority=0):
    return FieldMapping(source=source, target=target, type=type, required=required, priority=priority)


def always_required(_mapping):
    return True


def never_required(_mapping):
    return False


class TestExtract:
    def test_dotted_path(self):
        assert extract({"a": {"b": {"c": 3}}}, "a.b.c") == 3

    def test_list_index(self):
        payload = {"items": [{"id": "x"}, {"id": "y"}]}

        assert extract(payload, "items.1.id") == "y"
        assert extract(payload, "items.-1.id") == "y"

    def test_missing_segments(self):
        payload = {"items": [1], "name": "n"}

        assert extract(payload, "nope") is MISSING
        assert extract(payload, "items.5") is MISSING
        assert extract(payload, "items.first") is MISSING
        assert extract(payload, "name.length") is MISSING

    def test_empty_path_is_whole_payload(self):
        payload = {"a": 1}

        assert extract(payload, "") is payload


class TestResponseNormalizer:
    normalizer = ResponseNormalizer()

    def test_maps_and_coerces_in_mapping_order(self):
        payload = {"id": 42, "stats": {"count": "7", "ratio": "0.5", "active": "yes"}}
        result = self.normalizer.normalize(
            payload,
            [
                mapping("stats.active", "active", "boolean"),
                mapping("id", "user_id", "string"),
                mapping("stats.count", "count", "integer"),
                mapping("stats.ratio", "ratio", "number"),
            ],
            always_required,
        )

        assert list(result.values) == ["active", "user_id", "count", "ratio"]
        assert result.values == {"active": True, "user_id": "42", "count": 7, "ratio": 0.5}
        assert result.degraded == []

    def test_missing_and_null_fields_are_absent(self):
        result = self.normalizer.normalize(
            {"name": None},
            [mapping("name", "name", "string"), mapping("email", "email", "string")],
            always_required,
        )

        assert result.values == {}
        assert result.degraded == []

    def test_required_coercion_failure_raises(self):
        with pytest.raises(NormalizationError, match="field 'count'"):
            self.normalizer.normalize({"count": "many"}, [mapping("count", "count", "integer")], always_required)

    def test_optional_coercion_failure_degrades(self):
        result = self.normalizer.normalize(
            {"count": "many", "name": "Ada"},
            [mapping("count", "count", "integer"), mapping("name", "name", "string")],
            never_required,
        )

        assert result.values == {"name": "Ada"}
        assert result.degraded == ["count"]

    def test_mapping_flag_used_without_resolver(self):
        result = self.normalizer.normalize(
            {"count": "many"},
            [mapping("count", "count", "integer", required=False)],
        )

        assert result.degraded == ["count"]

    @pytest.mark.parametrize(
        "type_, value",
        [
            ("integer", True),
            ("integer", 1.5),
            ("number", False),
            ("number", "nan"),
            ("number", "inf"),
            ("number", "-Infinity"),
            ("number", float("nan")),
            ("integer", "infinity"),
            ("integer", float("inf")),
            ("boolean", "maybe"),
            ("boolean", 2),
            ("array", {"a": 1}),
            ("object", [1]),
            ("string", {"a": 1}),
        ],
    )
    def test_rejected_coercions(self, type_, value):
        result = self.normalizer.normalize({"v": value}, [mapping("v", "v", type_)], never_required)

        assert result.degraded == ["v"]

    def test_whole_payload_mapping(self):
        payload = [{"id": 1}]
        result = self.normalizer.normalize(payload, [mapping("", "items", "array")], always_required)

        assert result.values == {"items": payload}
