"""Tests for the built-in node handlers, called directly."""

from datetime import datetime, timedelta

import pytest
import requests

from automation_engine.core.delivery import (
    ActionPayload,
    AdapterRegistry,
    RecordingAdapter,
    StaticTemplateResolver,
    WebhookDeliveryAdapter,
)
from automation_engine.core.exceptions import (
    ConfigurationError,
    DeliveryError,
    NodeExecutionError,
    ValidationError,
)
from automation_engine.core.variables import VariableResolver
from automation_engine.handlers import (
    ActionHandler,
    ConditionHandler,
    DelayHandler,
    FilterHandler,
    HandlerContext,
    HandlerRegistry,
    LoopHandler,
    NodeResult,
    NodeResultStatus,
    QueryHandler,
    ScheduleHandler,
    TriggerHandler,
    create_default_registry,
)
from automation_engine.handlers.actions import strip_html
from automation_engine.handlers.data import InMemoryDataSource
from automation_engine.models.core import NodeSnapshot, NodeType

from helpers import email_action, sms_action

NOW = datetime(2026, 3, 2, 8, 30)


def make_context(node_type, config=None, key="node", trigger_data=None, run_node=None, organization_id="org-1"):
    return HandlerContext(
        execution_id="exec_1",
        workflow_id="wf-1",
        organization_id=organization_id,
        node=NodeSnapshot(id=f"id-{key}", node_key=key, type=node_type, name=key, config=config or {}),
        trigger_data=trigger_data or {},
        now=NOW,
        run_node=run_node,
    )


def make_variables(trigger_data=None, variables=None, node_outputs=None):
    return VariableResolver(
        "exec_1",
        trigger_data=trigger_data or {},
        variables=variables,
        node_outputs=node_outputs,
    )


class TestHandlerRegistry:
    """Every node type must have exactly one handler."""

    def test_default_registry_covers_all_types(self):
        registry = create_default_registry()

        for node_type in NodeType:
            assert registry.get(node_type).node_type == node_type

    def test_missing_handler_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            HandlerRegistry([TriggerHandler()])

    def test_duplicate_handler_is_a_configuration_error(self):
        handlers = [
            TriggerHandler(), TriggerHandler(), QueryHandler(), FilterHandler(), ConditionHandler(),
            LoopHandler(), DelayHandler(), ScheduleHandler(), ActionHandler(),
        ]
        with pytest.raises(ConfigurationError):
            HandlerRegistry(handlers)

    def test_validate_delegates_to_schema(self):
        registry = create_default_registry()
        assert not registry.validate(NodeType.QUERY, {}).is_valid


class TestTriggerHandler:
    def test_passes_trigger_data_through(self):
        data = {"email": "ada@example.com"}
        result = TriggerHandler().execute({}, make_variables(data), make_context(NodeType.TRIGGER, trigger_data=data))

        assert result.status == NodeResultStatus.COMPLETED
        assert result.output == data


class TestQueryHandler:
    """Declarative queries against a data source."""

    @pytest.fixture
    def source(self):
        source = InMemoryDataSource()
        source.add(
            "contacts",
            {"id": 1, "status": "lead", "score": 30, "organizationId": "org-1"},
            {"id": 2, "status": "lead", "score": 90, "organizationId": "org-1"},
            {"id": 3, "status": "customer", "score": 50, "organizationId": "org-1"},
            {"id": 4, "status": "lead", "score": 70, "organizationId": "org-2"},
        )
        return source

    def test_filters_interpolate_and_scope_by_org(self, source):
        config = {
            "model": "contacts",
            "filters": [{"field": "status", "operator": "equals", "value": "{{payload.status}}"}],
            "orderBy": {"field": "score", "direction": "desc"},
            "resultKey": "leads",
        }
        variables = make_variables({"status": "lead"})

        result = QueryHandler(source).execute(config, variables, make_context(NodeType.QUERY, config))

        assert result.output["count"] == 2
        assert [row["id"] for row in result.output["results"]] == [2, 1]
        assert result.branch == "true"
        assert result.variable_updates["leads"][0]["id"] == 2

    def test_empty_result_uses_fallback_key(self, source):
        config = {
            "model": "contacts",
            "filters": {"status": "churned"},
            "resultKey": "leads",
            "fallbackKey": "nobody",
        }

        result = QueryHandler(source).execute(config, make_variables(), make_context(NodeType.QUERY, config))

        assert result.output == {"model": "contacts", "count": 0, "results": []}
        assert result.branch == "false"
        assert result.variable_updates == {"nobody": []}

    def test_select_limit_offset(self, source):
        config = {"model": "contacts", "orderBy": [{"field": "id"}], "limit": 1, "offset": 1, "select": ["id"]}

        result = QueryHandler(source).execute(config, make_variables(), make_context(NodeType.QUERY, config))

        assert result.output["results"] == [{"id": 2}]

    def test_data_source_failure_becomes_node_error(self):
        class BrokenSource:
            def query(self, **kwargs):
                raise RuntimeError("connection refused")

        config = {"model": "contacts"}
        with pytest.raises(NodeExecutionError) as exc_info:
            QueryHandler(BrokenSource()).execute(config, make_variables(), make_context(NodeType.QUERY, config))
        assert "connection refused" in exc_info.value.message


class TestFilterHandler:
    """In-memory filtering of arrays held in variables."""

    def test_partitions_items(self):
        config = {
            "sourceKey": "deals",
            "conditions": [{"field": "amount", "operator": "gte", "value": "{{threshold}}"}],
            "resultKey": "bigDeals",
        }
        variables = make_variables(variables={
            "threshold": 100,
            "deals": [{"amount": 50}, {"amount": 150}, {"amount": 300}],
        })

        result = FilterHandler().execute(config, variables, make_context(NodeType.FILTER, config))

        assert result.output["matched"] == 2
        assert result.output["rejected"] == 1
        assert result.variable_updates == {"bigDeals": [{"amount": 150}, {"amount": 300}]}

    def test_no_survivors_writes_rejected_to_fallback(self):
        config = {
            "sourceKey": "deals",
            "conditions": [{"field": "amount", "operator": "gt", "value": 1000}],
            "fallbackKey": "smallDeals",
        }
        variables = make_variables(variables={"deals": [{"amount": 5}]})

        result = FilterHandler().execute(config, variables, make_context(NodeType.FILTER, config))

        assert result.branch == "false"
        assert result.variable_updates == {"smallDeals": [{"amount": 5}]}

    def test_non_array_source_fails(self):
        config = {"sourceKey": "deals", "conditions": []}
        variables = make_variables(variables={"deals": "not a list"})

        with pytest.raises(NodeExecutionError) as exc_info:
            FilterHandler().execute(config, variables, make_context(NodeType.FILTER, config))
        assert "has type string, expected array" in exc_info.value.message
        assert exc_info.value.recoverable is False

    def test_missing_source_fails(self):
        config = {"sourceKey": "deals", "conditions": []}

        with pytest.raises(NodeExecutionError) as exc_info:
            FilterHandler().execute(config, make_variables(), make_context(NodeType.FILTER, config))
        assert "does not exist" in exc_info.value.message


class TestConditionHandler:
    def test_reads_node_outputs(self):
        config = {
            "conditions": [{"field": "nodes.query.count", "operator": "gt", "value": 0}],
            "resultKey": "hasLeads",
        }
        variables = make_variables(node_outputs={"query": {"count": 3}})

        result = ConditionHandler().execute(config, variables, make_context(NodeType.CONDITION, config))

        assert result.branch == "true"
        assert result.output["result"] is True
        assert result.output["conditions"][0]["actualValue"] == 3
        assert result.variable_updates == {"hasLeads": True}

    def test_empty_conditions_are_false(self):
        result = ConditionHandler().execute({}, make_variables(), make_context(NodeType.CONDITION))

        assert result.branch == "false"


class TestLoopHandler:
    """Iteration over arrays with optional body nodes."""

    def test_bindings_without_body(self):
        config = {"dataSource": "payload.items", "maxIterations": 2}
        variables = make_variables({"items": ["a", "b", "c"]})

        result = LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config))

        assert result.output["iterations"] == 2
        assert result.output["totalItems"] == 3
        assert result.output["results"] == [{"index": 0, "item": "a"}, {"index": 1, "item": "b"}]

    def test_body_runs_per_item(self):
        calls = []

        def run_node(node_key, scope, iteration):
            calls.append((node_key, iteration, scope.resolve_path("item.email")))
            return NodeResult.completed({"sent": scope.resolve_path("item.email")})

        config = {"dataSource": "payload.contacts", "loopBodyNodeId": "send", "resultKey": "sent"}
        variables = make_variables({"contacts": [{"email": "a@example.com"}, {"email": "b@example.com"}]})

        result = LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config, run_node=run_node))

        assert calls == [("send", 0, "a@example.com"), ("send", 1, "b@example.com")]
        assert result.variable_updates["sent"] == [{"sent": "a@example.com"}, {"sent": "b@example.com"}]
        assert not variables.has("item")

    def test_break_condition_stops_before_item(self):
        config = {
            "dataSource": "payload.numbers",
            "breakCondition": {"field": "item", "operator": "gt", "value": 2},
        }
        variables = make_variables({"numbers": [1, 2, 3, 4]})

        result = LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config))

        assert result.output["iterations"] == 2
        assert result.output["broken"] is True

    def test_continue_policy_collects_failures(self):
        def run_node(node_key, scope, iteration):
            if iteration == 1:
                raise NodeExecutionError("boom")
            return NodeResult.completed(iteration)

        config = {"dataSource": "payload.items", "loopBodyNodeId": "body", "failurePolicy": "continue"}
        variables = make_variables({"items": [1, 2, 3]})

        result = LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config, run_node=run_node))

        assert result.output["failures"] == [{"index": 1, "error": "boom"}]
        assert result.output["results"][0] == 0
        assert result.output["results"][2] == 2

    def test_fail_fast_raises(self):
        def run_node(node_key, scope, iteration):
            raise NodeExecutionError("boom")

        config = {"dataSource": "payload.items", "loopBodyNodeId": "body"}
        variables = make_variables({"items": [1, 2]})

        with pytest.raises(NodeExecutionError):
            LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config, run_node=run_node))

    def test_concurrent_iterations_keep_order(self):
        def run_node(node_key, scope, iteration):
            return NodeResult.completed(scope.resolve_path("item") * 10)

        config = {"dataSource": "payload.items", "loopBodyNodeId": "body", "concurrency": 4}
        variables = make_variables({"items": [1, 2, 3, 4, 5]})

        result = LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config, run_node=run_node))

        assert result.output["results"] == [10, 20, 30, 40, 50]

    def test_missing_source(self):
        config = {"dataSource": "payload.items"}
        with pytest.raises(NodeExecutionError):
            LoopHandler().execute(config, make_variables(), make_context(NodeType.LOOP, config))

        config["emptyPathHandle"] = "skip"
        result = LoopHandler().execute(config, make_variables(), make_context(NodeType.LOOP, config))
        assert result.output["iterations"] == 0

    def test_non_array_source_runs_no_iterations(self):
        config = {"dataSource": "payload.items"}
        variables = make_variables({"items": {"not": "a list"}})

        result = LoopHandler().execute(config, variables, make_context(NodeType.LOOP, config))

        assert result.output["iterations"] == 0
        assert result.output["totalItems"] == 0

    def test_completed_iterations_are_not_rerun(self):
        calls, recorded = [], {}

        def run_node(node_key, scope, iteration):
            calls.append(iteration)
            return NodeResult.completed(scope.resolve_path("item") * 10)

        config = {"dataSource": "payload.items", "loopBodyNodeId": "body"}
        context = make_context(NodeType.LOOP, config, run_node=run_node)
        context.completed_iterations = {0: 10, 1: 20}
        context.record_iteration = recorded.__setitem__

        result = LoopHandler().execute(config, make_variables({"items": [1, 2, 3]}), context)

        assert calls == [2]
        assert recorded == {2: 30}
        assert result.output["results"] == [10, 20, 30]


class TestDelayHandler:
    def test_waits_until_resume_time(self):
        config = {"delayMs": 60_000}

        result = DelayHandler().execute(config, make_variables(), make_context(NodeType.DELAY, config))

        assert result.status == NodeResultStatus.WAITING
        assert result.resume_at == NOW + timedelta(minutes=1)

    def test_zero_delay_completes(self):
        config = {"delayMs": 0}

        result = DelayHandler().execute(config, make_variables(), make_context(NodeType.DELAY, config))

        assert result.status == NodeResultStatus.COMPLETED


class TestScheduleHandler:
    """Waiting for the next cron or frequency occurrence."""

    def test_waits_for_next_cron_run(self):
        config = {"cron": "0 9 * * *"}

        result = ScheduleHandler().execute(config, make_variables(), make_context(NodeType.SCHEDULE, config))

        assert result.status == NodeResultStatus.WAITING
        assert result.resume_at == datetime(2026, 3, 2, 9, 0)
        assert result.output["scheduled"] is True

    def test_frequency_and_timezone(self):
        config = {"frequency": "daily", "timezone": "America/New_York"}

        result = ScheduleHandler().execute(config, make_variables(), make_context(NodeType.SCHEDULE, config))

        # Midnight in New York during standard time is 05:00 UTC
        assert result.resume_at == datetime(2026, 3, 3, 5, 0)

    def test_start_at_occurrence_counts(self):
        config = {"cron": "0 * * * *", "startAt": "2026-03-05T12:00:00Z"}

        result = ScheduleHandler().execute(config, make_variables(), make_context(NodeType.SCHEDULE, config))

        assert result.resume_at == datetime(2026, 3, 5, 12, 0)

    def test_inactive_completes(self):
        config = {"cron": "0 9 * * *", "isActive": False}

        result = ScheduleHandler().execute(config, make_variables(), make_context(NodeType.SCHEDULE, config))

        assert result.status == NodeResultStatus.COMPLETED
        assert result.output["scheduled"] is False
        assert result.output["reason"] == "inactive"

    def test_past_end_completes(self):
        config = {"cron": "0 9 * * *", "endAt": "2026-03-01T00:00:00Z"}

        result = ScheduleHandler().execute(config, make_variables(), make_context(NodeType.SCHEDULE, config))

        assert result.output["reason"] == "ended"


class TestActionHandler:
    """Channel payload construction and delivery."""

    @pytest.fixture
    def adapter(self):
        return RecordingAdapter()

    @pytest.fixture
    def handler(self, adapter):
        return ActionHandler(AdapterRegistry(default=adapter))

    def test_email_from_payload(self, handler, adapter):
        config = email_action()
        data = {"name": "Ada", "customer": {"email": "ada@example.com"}}

        result = handler.execute(config, make_variables(data), make_context(NodeType.ACTION, config, key="send"))

        assert result.output["sent"] is True
        assert result.output["recipient"] == "ada@example.com"
        assert result.output["subject"] == "Welcome Ada"
        payload = adapter.sent[0]
        assert payload.idempotency_key == "exec_1:send"
        assert payload.body == "<p>Hello Ada</p>"
        assert payload.metadata["workflowId"] == "wf-1"

    def test_explicit_recipient_wins(self, handler, adapter):
        config = email_action(to="{{payload.manager}}")
        data = {"email": "ada@example.com", "manager": "boss@example.com"}

        handler.execute(config, make_variables(data), make_context(NodeType.ACTION, config))

        assert adapter.sent[0].recipient == "boss@example.com"

    def test_missing_email_is_not_recoverable(self, handler, adapter):
        config = email_action()

        with pytest.raises(DeliveryError) as exc_info:
            handler.execute(config, make_variables({"name": "Ada"}), make_context(NodeType.ACTION, config))
        assert exc_info.value.recoverable is False
        assert adapter.call_count == 0

    def test_sms_strips_html(self, handler, adapter):
        config = sms_action("<b>Hi</b>&nbsp;{{payload.name}}")
        data = {"name": "Ada", "contact": {"phone": "+15550100"}}

        result = handler.execute(config, make_variables(data), make_context(NodeType.ACTION, config))

        assert result.output["body"] == "Hi Ada"
        assert result.output["recipient"] == "+15550100"
        assert result.output["subject"] is None

    def test_missing_sub_config_skips(self, handler, adapter):
        result = handler.execute({"actionType": "email"}, make_variables(), make_context(NodeType.ACTION))

        assert result.status == NodeResultStatus.SKIPPED
        assert adapter.call_count == 0

    def test_unsupported_type(self, handler):
        with pytest.raises(ValidationError):
            handler.execute({"actionType": "fax", "faxAction": {}}, make_variables(), make_context(NodeType.ACTION))

    def test_failed_delivery_raises(self, adapter):
        adapter.fail_with = "mailbox full"
        handler = ActionHandler(AdapterRegistry(default=adapter))
        config = email_action(to="ada@example.com")

        with pytest.raises(DeliveryError) as exc_info:
            handler.execute(config, make_variables(), make_context(NodeType.ACTION, config))
        assert exc_info.value.recoverable is True
        assert "mailbox full" in exc_info.value.message

    def test_channel_specific_adapter(self, adapter):
        slack = RecordingAdapter("slack")
        registry = AdapterRegistry(default=adapter)
        registry.register("slack", slack)
        config = {"actionType": "slack", "slackAction": {"channel": "#sales", "message": "New lead"}}

        ActionHandler(registry).execute(config, make_variables(), make_context(NodeType.ACTION, config))

        assert slack.sent[0].recipient == "#sales"
        assert adapter.call_count == 0

    def test_calendar_attendees(self, handler, adapter):
        config = {
            "actionType": "calendar",
            "calendarAction": {"title": "Kickoff", "attendees": "a@example.com, b@example.com", "durationMinutes": 30},
        }

        result = handler.execute(config, make_variables(), make_context(NodeType.ACTION, config))

        assert result.output["subject"] == "Kickoff"
        assert adapter.sent[0].data["attendees"] == ["a@example.com", "b@example.com"]

    def test_template_mode(self, adapter):
        templates = StaticTemplateResolver()
        templates.add("welcome", {"subject": "Hello {{payload.name}}", "body": "Body"}, organization_id="org-1")
        handler = ActionHandler(AdapterRegistry(default=adapter), templates)
        config = email_action(subject="Inline", to="ada@example.com", mode="TEMPLATE", templateId="welcome")

        result = handler.execute(config, make_variables({"name": "Ada"}), make_context(NodeType.ACTION, config))

        assert result.output["subject"] == "Hello Ada"

    def test_strip_html(self):
        assert strip_html("<p>Tom &amp; Jerry</p>\n<br/>") == "Tom & Jerry"
        assert strip_html(None) == ""


class TestWebhookDeliveryAdapter:
    """HTTP delivery through a requests session."""

    class FakeResponse:
        def __init__(self, status_code=200, body=None):
            self.status_code = status_code
            self._body = body
            self.content = b"{}" if body is not None else b""

        def raise_for_status(self):
            if self.status_code >= 400:
                raise requests.HTTPError(f"{self.status_code} error")

        def json(self):
            return self._body

    class FakeSession:
        def __init__(self, response):
            self.response = response
            self.calls = []

        def post(self, url, json=None, headers=None, timeout=None):
            self.calls.append({"url": url, "json": json, "headers": headers})
            return self.response

    def _payload(self):
        return ActionPayload(
            channel="email", execution_id="exec_1", node_key="send",
            idempotency_key="exec_1:send", recipient="ada@example.com"
        )

    def test_posts_payload_with_idempotency_key(self):
        session = self.FakeSession(self.FakeResponse(body={"id": "msg-1"}))
        adapter = WebhookDeliveryAdapter("https://gateway.test/send", session=session)

        result = adapter.send(self._payload())

        assert result.success
        assert result.provider_id == "msg-1"
        assert session.calls[0]["headers"] == {"Idempotency-Key": "exec_1:send"}
        assert session.calls[0]["json"]["recipient"] == "ada@example.com"

    def test_http_error_becomes_delivery_error(self):
        session = self.FakeSession(self.FakeResponse(status_code=502))
        adapter = WebhookDeliveryAdapter("https://gateway.test/send", session=session)

        with pytest.raises(DeliveryError):
            adapter.send(self._payload())
