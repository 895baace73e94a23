"""Tests for the execution variable resolver."""

import pytest

from automation_engine.core.conditions import MISSING
from automation_engine.core.exceptions import ValidationError, VariableNotFoundError
from automation_engine.core.variables import VariableResolver, infer_data_type
from automation_engine.models.core import VariableDataType


@pytest.fixture
def resolver():
    return VariableResolver(
        "exec_1",
        trigger_data={"email": "ada@example.com", "items": [1, 2, 3], "contact": {"name": "Ada"}},
        variables={"threshold": 10},
        node_outputs={"query": {"count": 2, "results": [{"id": 1}, {"id": 2}]}},
    )


class TestInferDataType:
    @pytest.mark.parametrize("value,expected", [
        (None, VariableDataType.NULL),
        (True, VariableDataType.BOOLEAN),
        (3.5, VariableDataType.NUMBER),
        ("x", VariableDataType.STRING),
        ([1], VariableDataType.ARRAY),
        ({"a": 1}, VariableDataType.OBJECT),
    ])
    def test_infer(self, value, expected):
        assert infer_data_type(value) == expected


class TestVariableResolver:
    """Variable storage and typed access."""

    def test_set_infers_type_and_source(self, resolver):
        assert resolver.set("count", 5, source="query") == VariableDataType.NUMBER
        assert resolver.data_type("count") == VariableDataType.NUMBER
        assert resolver.source("count") == "query"

    def test_get_missing_raises(self, resolver):
        with pytest.raises(VariableNotFoundError):
            resolver.get("nope")

    def test_get_with_expected_type(self, resolver):
        assert resolver.get("threshold", VariableDataType.NUMBER) == 10
        with pytest.raises(ValidationError):
            resolver.get("threshold", "string")

    def test_resolve_typed_checks_path_value(self, resolver):
        assert resolver.resolve_typed("payload.items", VariableDataType.ARRAY) == [1, 2, 3]
        assert resolver.resolve_typed("nodes.query.count", "number") == 2
        assert resolver.resolve_typed("payload.missing", VariableDataType.ARRAY) is MISSING
        with pytest.raises(ValidationError) as exc_info:
            resolver.resolve_typed("contact.name", VariableDataType.ARRAY)
        assert exc_info.value.context["field"] == "contact.name"
        assert "has type string, expected array" in exc_info.value.message

    def test_empty_name_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolver.set("", 1)

    def test_pop_changes_reports_only_new_writes(self, resolver):
        resolver.merge({"a": 1, "b": [1]}, source="node")
        changes = resolver.pop_changes()

        assert set(changes) == {"a", "b"}
        assert changes["b"]["data_type"] == "array"
        assert resolver.pop_changes() == {}

    def test_child_bindings_do_not_leak(self, resolver):
        child = resolver.child({"item": {"email": "bob@example.com"}, "index": 0})

        assert child.resolve_path("item.email") == "bob@example.com"
        child.set("scratch", True)
        assert not resolver.has("scratch")
        assert not resolver.has("item")


class TestPathResolution:
    """Scoped dot-path lookups."""

    def test_payload_scope(self, resolver):
        assert resolver.resolve_path("payload.email") == "ada@example.com"
        assert resolver.resolve_path("trigger.contact.name") == "Ada"

    def test_node_scope(self, resolver):
        assert resolver.resolve_path("nodes.query.count") == 2
        assert resolver.resolve_path("nodes.query.results.1.id") == 2

    def test_variable_then_payload_fallback(self, resolver):
        assert resolver.resolve_path("threshold") == 10
        assert resolver.resolve_path("variables.threshold") == 10
        assert resolver.resolve_path("email") == "ada@example.com"

    def test_missing_path(self, resolver):
        assert resolver.resolve_path("payload.phone") is MISSING
        assert resolver.resolve_path("") is MISSING


class TestInterpolation:
    """{{placeholder}} substitution."""

    def test_whole_placeholder_keeps_raw_value(self, resolver):
        assert resolver.interpolate("{{payload.items}}") == [1, 2, 3]

    def test_embedded_placeholders(self, resolver):
        assert resolver.interpolate("Hi {{payload.contact.name}}, {{nodes.query.count}} found") == "Hi Ada, 2 found"

    def test_unresolved_placeholder_is_empty(self, resolver):
        assert resolver.interpolate("Dear {{payload.missing}}!") == "Dear !"
        assert resolver.interpolate("{{payload.missing}}") == ""

    def test_recursive_structures(self, resolver):
        result = resolver.interpolate({"to": "{{payload.email}}", "cc": ["{{threshold}}"], "n": 3})
        assert result == {"to": "ada@example.com", "cc": [10], "n": 3}
