"""Tests for node config schemas."""

import pytest

from automation_engine.core.exceptions import ValidationError
from automation_engine.core.node_config import (
    LoopConfig,
    QueryConfig,
    normalize_node_config,
    parse_node_config,
    validate_node_config,
)
from automation_engine.models.core import NodeType


class TestValidateNodeConfig:
    """Schema validation per node type."""

    def test_trigger_and_action_always_pass(self):
        """Types without a schema accept any config."""
        assert validate_node_config(NodeType.TRIGGER, {"anything": 1}).is_valid
        assert validate_node_config(NodeType.ACTION, None).is_valid

    def test_query_requires_model(self):
        """A QUERY config without a model is rejected with a field error."""
        result = validate_node_config(NodeType.QUERY, {"filters": []})

        assert not result.is_valid
        assert any("model" in error for error in result.errors)

    def test_query_limit_bounds(self):
        """QUERY limit must be between 1 and 1000."""
        assert validate_node_config(NodeType.QUERY, {"model": "contacts", "limit": 1000}).is_valid
        assert not validate_node_config(NodeType.QUERY, {"model": "contacts", "limit": 0}).is_valid
        assert not validate_node_config(NodeType.QUERY, {"model": "contacts", "limit": 1001}).is_valid

    def test_loop_requires_a_source(self):
        """LOOP needs dataSource or sourceKey."""
        assert not validate_node_config(NodeType.LOOP, {"maxIterations": 5}).is_valid
        assert validate_node_config(NodeType.LOOP, {"sourceKey": "contacts"}).is_valid
        assert validate_node_config(NodeType.LOOP, {"dataSource": "payload.items"}).is_valid

    def test_filter_requires_source_key(self):
        result = validate_node_config(NodeType.FILTER, {"conditions": []})
        assert not result.is_valid

    def test_between_requires_value_to(self):
        """The between operator needs both bounds."""
        config = {"conditions": [{"field": "amount", "operator": "between", "value": 10}]}
        result = validate_node_config(NodeType.CONDITION, config)

        assert not result.is_valid
        assert any("valueTo" in error for error in result.errors)

    def test_in_requires_list(self):
        config = {"conditions": [{"field": "status", "operator": "in", "value": "lead"}]}
        assert not validate_node_config(NodeType.CONDITION, config).is_valid

        config["conditions"][0]["value"] = ["lead", "customer"]
        assert validate_node_config(NodeType.CONDITION, config).is_valid

    def test_unknown_operator_rejected(self):
        config = {"conditions": [{"field": "status", "operator": "matches_regex", "value": "x"}]}
        assert not validate_node_config(NodeType.CONDITION, config).is_valid

    def test_delay_bounds(self):
        """DELAY accepts zero up to seven days."""
        assert validate_node_config(NodeType.DELAY, {"delayMs": 0}).is_valid
        assert validate_node_config(NodeType.DELAY, {"delayMs": 7 * 24 * 60 * 60 * 1000}).is_valid
        assert not validate_node_config(NodeType.DELAY, {"delayMs": -1}).is_valid
        assert not validate_node_config(NodeType.DELAY, {"delayMs": 7 * 24 * 60 * 60 * 1000 + 1}).is_valid

    def test_schedule_needs_exactly_one_of_cron_or_frequency(self):
        assert validate_node_config(NodeType.SCHEDULE, {"cron": "0 9 * * 1"}).is_valid
        assert validate_node_config(NodeType.SCHEDULE, {"frequency": "daily"}).is_valid
        assert not validate_node_config(NodeType.SCHEDULE, {}).is_valid
        assert not validate_node_config(NodeType.SCHEDULE, {"cron": "0 9 * * 1", "frequency": "DAILY"}).is_valid

    def test_schedule_rejects_bad_cron_and_zone(self):
        assert not validate_node_config(NodeType.SCHEDULE, {"cron": "not a cron"}).is_valid
        assert not validate_node_config(NodeType.SCHEDULE, {"cron": "0 9 * * *", "timezone": "Mars/Olympus"}).is_valid

    def test_schedule_window_order(self):
        config = {"cron": "0 9 * * *", "startAt": "2026-02-01T00:00:00Z", "endAt": "2026-01-01T00:00:00Z"}
        assert not validate_node_config(NodeType.SCHEDULE, config).is_valid

    def test_non_object_config(self):
        result = validate_node_config(NodeType.QUERY, ["model"])
        assert not result.is_valid
        assert result.errors == ["config must be an object"]


class TestParseNodeConfig:
    """Typed parsing and normalization."""

    def test_parse_applies_defaults(self):
        cfg = parse_node_config(NodeType.LOOP, {"sourceKey": "contacts"})

        assert isinstance(cfg, LoopConfig)
        assert cfg.item_variable == "item"
        assert cfg.index_variable == "index"
        assert cfg.max_iterations == 100
        assert cfg.failure_policy == "fail_fast"

    def test_parse_expands_filter_mapping(self):
        """A {field: value} mapping becomes equality leaves."""
        cfg = parse_node_config(NodeType.QUERY, {"model": "deals", "filters": {"stage": "won"}})

        assert isinstance(cfg, QueryConfig)
        assert cfg.filters[0].as_leaf()["field"] == "stage"
        assert cfg.filters[0].operator == "equals"

    def test_parse_normalizes_operator_aliases(self):
        cfg = parse_node_config(NodeType.CONDITION, {"conditions": [{"field": "amount", "operator": ">=", "value": 5}]})
        assert cfg.conditions[0].operator == "gte"

    def test_parse_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_node_config(NodeType.QUERY, {})
        assert exc_info.value.validation_errors

    def test_normalize_trims_and_keeps_aliases(self):
        normalized = normalize_node_config(NodeType.FILTER, {"sourceKey": "  contacts  ", "logicalOperator": "or"})

        assert normalized["sourceKey"] == "contacts"
        assert normalized["logicalOperator"] == "OR"

    def test_normalize_passes_action_config_through(self):
        config = {"actionType": "email", "emailAction": {"subject": "Hi"}}
        assert normalize_node_config(NodeType.ACTION, config) == config
