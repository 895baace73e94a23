"""Tests for workflow graph storage and validation."""

from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from automation_engine.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from automation_engine.core.permissions import RequestContext, StaticPermissionChecker
from automation_engine.models.core import (
    ConnectionInput,
    ConnectionSnapshot,
    GraphSnapshot,
    NodeInput,
    NodeSnapshot,
    NodeType,
    NodeUpdate,
    TriggerInput,
    TriggerType,
    WorkflowCreate,
    WorkflowStatus,
    WorkflowUpdate,
)

from helpers import edge, email_action, node


def _snapshot(keys, connections, orders=None):
    orders = orders or {}
    return GraphSnapshot(
        nodes=[
            NodeSnapshot(id=key, node_key=key, type=NodeType.ACTION, name=key, execution_order=orders.get(key, 0))
            for key in keys
        ],
        connections=[
            ConnectionSnapshot(edge_id=f"{s}-{t}", source=s, target=t)
            for s, t in connections
        ],
    )


class TestWorkflowCrud:
    """Workflow lifecycle operations."""

    def test_create_and_get(self, graph_store, context):
        created = graph_store.create_workflow(WorkflowCreate(name="  Lead follow-up  "), context)

        assert created.name == "Lead follow-up"
        assert created.status == WorkflowStatus.DRAFT
        assert created.version == 1
        assert created.organization_id == "org-1"

        fetched = graph_store.get_workflow(created.id, context)
        assert fetched.id == created.id

    def test_update_bumps_version(self, graph_store, context):
        workflow = graph_store.create_workflow(WorkflowCreate(name="Flow"), context)

        updated = graph_store.update_workflow(
            workflow.id, WorkflowUpdate(status=WorkflowStatus.ACTIVE), context
        )

        assert updated.status == WorkflowStatus.ACTIVE
        assert updated.version == 2

    def test_list_filters_by_org_and_status(self, graph_store, context, other_context):
        graph_store.create_workflow(WorkflowCreate(name="Draft"), context)
        graph_store.create_workflow(WorkflowCreate(name="Live", status=WorkflowStatus.ACTIVE), context)
        graph_store.create_workflow(WorkflowCreate(name="Elsewhere"), other_context)

        assert {w.name for w in graph_store.list_workflows(context)} == {"Draft", "Live"}
        assert [w.name for w in graph_store.list_workflows(context, WorkflowStatus.ACTIVE)] == ["Live"]

    def test_delete_removes_workflow(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])

        assert graph_store.delete_workflow(workflow.id, context)
        with pytest.raises(NotFoundError):
            graph_store.get_workflow(workflow.id, context)

    def test_unknown_workflow(self, graph_store, context):
        with pytest.raises(NotFoundError):
            graph_store.get_workflow("missing", context)

    def test_other_organization_is_rejected(self, graph_store, make_workflow, other_context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])

        with pytest.raises(ValidationError):
            graph_store.get_workflow(workflow.id, other_context)
        with pytest.raises(ValidationError):
            graph_store.delete_workflow(workflow.id, other_context)

    def test_permission_checker_denies(self, graph_store):
        denied = RequestContext(
            organization_id="org-1",
            user_id="intruder",
            permission_checker=StaticPermissionChecker()
        )
        with pytest.raises(ForbiddenError):
            graph_store.create_workflow(WorkflowCreate(name="Nope"), denied)

    def test_permission_checker_grants(self, graph_store):
        checker = StaticPermissionChecker()
        checker.grant("org-1", "editor", user_id="user-1")
        allowed = RequestContext(organization_id="org-1", user_id="user-1", permission_checker=checker)

        workflow = graph_store.create_workflow(WorkflowCreate(name="Granted"), allowed)

        assert workflow.organization_id == "org-1"
        assert allowed.role == "editor"


class TestNodes:
    """Node add, update, delete and sync."""

    def test_add_node_normalizes_config(self, graph_store, make_workflow, context):
        workflow = make_workflow([])

        view = graph_store.add_node(
            workflow.id,
            NodeInput(**node("query", NodeType.QUERY, {"model": " contacts "})),
            context
        )

        assert view.config["model"] == "contacts"
        assert view.config["limit"] == 100
        assert graph_store.get_workflow(workflow.id, context).version == 2

    def test_duplicate_node_key_conflicts(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])

        with pytest.raises(ConflictError):
            graph_store.add_node(workflow.id, NodeInput(**node("start", NodeType.ACTION)), context)

    def test_invalid_config_rejected(self, graph_store, make_workflow, context):
        workflow = make_workflow([])

        with pytest.raises(ValidationError) as exc_info:
            graph_store.add_node(workflow.id, NodeInput(**node("loop", NodeType.LOOP, {})), context)
        assert "loop" in exc_info.value.message
        assert graph_store.list_nodes(workflow.id, context) == []

    def test_update_node(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("wait", NodeType.DELAY, {"delayMs": 1000})])

        updated = graph_store.update_node(
            workflow.id, "wait", NodeUpdate(config={"delayMs": 5000}, is_optional=True), context
        )

        assert updated.config["delayMs"] == 5000
        assert updated.is_optional is True

    def test_update_node_validates_config(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("wait", NodeType.DELAY, {"delayMs": 1000})])

        with pytest.raises(ValidationError):
            graph_store.update_node(workflow.id, "wait", NodeUpdate(config={"delayMs": -5}), context)

    def test_delete_node_drops_its_connections(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [node("start", NodeType.TRIGGER), node("send", NodeType.ACTION, email_action())],
            [edge("start", "send")]
        )

        graph_store.delete_node(workflow.id, "send", context)

        assert [n.node_id for n in graph_store.list_nodes(workflow.id, context)] == ["start"]
        assert graph_store.list_connections(workflow.id, context) == []

    def test_sync_nodes_removes_missing_and_their_edges(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [
                node("start", NodeType.TRIGGER),
                node("send", NodeType.ACTION, email_action()),
                node("wait", NodeType.DELAY, {"delayMs": 10}),
            ],
            [edge("start", "send"), edge("send", "wait")]
        )

        synced = graph_store.sync_nodes(
            workflow.id,
            [
                NodeInput(**node("start", NodeType.TRIGGER, name="Renamed start")),
                NodeInput(**node("wait", NodeType.DELAY, {"delayMs": 20})),
            ],
            context
        )

        assert {n.node_id for n in synced} == {"start", "wait"}
        assert next(n for n in synced if n.node_id == "start").name == "Renamed start"
        assert graph_store.list_connections(workflow.id, context) == []

    def test_sync_nodes_rejects_duplicate_keys(self, graph_store, make_workflow, context):
        workflow = make_workflow([])

        with pytest.raises(ConflictError):
            graph_store.sync_nodes(
                workflow.id,
                [NodeInput(**node("a", NodeType.TRIGGER)), NodeInput(**node("a", NodeType.ACTION))],
                context
            )


class TestConnections:
    """Edges between nodes."""

    def test_add_and_list(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [node("start", NodeType.TRIGGER), node("send", NodeType.ACTION, email_action())],
            [edge("start", "send", source_handle="true")]
        )

        connections = graph_store.list_connections(workflow.id, context)

        assert len(connections) == 1
        assert connections[0].source_node_id == "start"
        assert connections[0].target_node_id == "send"
        assert connections[0].source_handle == "true"

    def test_self_loop_rejected_by_model(self):
        with pytest.raises(PydanticValidationError):
            ConnectionInput(**edge("a", "a"))

    def test_unknown_endpoint(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])

        with pytest.raises(NotFoundError):
            graph_store.add_connection(workflow.id, ConnectionInput(**edge("start", "ghost")), context)

    def test_cannot_target_trigger(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [node("send", NodeType.ACTION, email_action()), node("start", NodeType.TRIGGER)]
        )

        with pytest.raises(ValidationError):
            graph_store.add_connection(workflow.id, ConnectionInput(**edge("send", "start")), context)

    def test_duplicate_edge_conflicts(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [node("start", NodeType.TRIGGER), node("send", NodeType.ACTION, email_action())],
            [edge("start", "send")]
        )

        with pytest.raises(ConflictError):
            graph_store.add_connection(workflow.id, ConnectionInput(**edge("start", "send")), context)

    def test_sync_connections(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [
                node("start", NodeType.TRIGGER),
                node("a", NodeType.ACTION, email_action()),
                node("b", NodeType.ACTION, email_action()),
            ],
            [edge("start", "a")]
        )

        synced = graph_store.sync_connections(
            workflow.id, [ConnectionInput(**edge("start", "b"))], context
        )

        assert [c.edge_id for c in synced] == ["start-b"]

    def test_delete_connection(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [node("start", NodeType.TRIGGER), node("send", NodeType.ACTION, email_action())],
            [edge("start", "send")]
        )

        assert graph_store.delete_connection(workflow.id, "start-send", context)
        with pytest.raises(NotFoundError):
            graph_store.delete_connection(workflow.id, "start-send", context)


class TestTriggers:
    """Trigger definitions."""

    def test_event_trigger_requires_module(self):
        with pytest.raises(PydanticValidationError):
            TriggerInput(name="No module", type=TriggerType.EVENT)

    def test_schedule_trigger_gets_next_run(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])

        trigger = graph_store.add_trigger(
            workflow.id,
            TriggerInput(name="Nightly", type=TriggerType.SCHEDULE, cron="0 2 * * *"),
            context
        )

        assert trigger.next_run_at is not None
        assert trigger.next_run_at > datetime.utcnow()
        assert trigger.next_run_at.hour == 2

    def test_update_and_delete_trigger(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])
        trigger = graph_store.add_trigger(
            workflow.id, TriggerInput(name="Created", module="CRM", event_type="created"), context
        )

        updated = graph_store.update_trigger(
            workflow.id,
            trigger.id,
            TriggerInput(name="Updated", module="CRM", event_type="updated", is_active=False),
            context
        )
        assert updated.event_type == "updated"
        assert updated.is_active is False

        graph_store.delete_trigger(workflow.id, trigger.id, context)
        assert graph_store.list_triggers(workflow.id, context) == []


class TestGraphValidation:
    """Structural checks on stored and in-memory graphs."""

    def test_valid_workflow(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [node("start", NodeType.TRIGGER), node("send", NodeType.ACTION, email_action())],
            [edge("start", "send")]
        )

        result = graph_store.validate_workflow(workflow.id, context)

        assert result.is_valid
        assert result.errors == []

    def test_cycle_is_an_error(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [
                node("start", NodeType.TRIGGER),
                node("a", NodeType.ACTION, email_action()),
                node("b", NodeType.ACTION, email_action()),
            ],
            [edge("start", "a"), edge("a", "b"), edge("b", "a")]
        )

        result = graph_store.validate_workflow(workflow.id, context)

        assert not result.is_valid
        assert any("cycle" in error for error in result.errors)

    def test_missing_trigger_is_a_warning(self, graph_store, make_workflow, context):
        workflow = make_workflow([node("send", NodeType.ACTION, email_action())])

        result = graph_store.validate_workflow(workflow.id, context)

        assert result.is_valid
        assert any("no TRIGGER" in warning for warning in result.warnings)

    def test_unproduced_source_key_warns(self, graph_store, make_workflow, context):
        workflow = make_workflow(
            [
                node("start", NodeType.TRIGGER),
                node("filter", NodeType.FILTER, {"sourceKey": "contacts", "conditions": []}),
            ],
            [edge("start", "filter")]
        )

        assert graph_store.validate_workflow(workflow.id, context).warnings
        declared = graph_store.validate_workflow(workflow.id, context, declared_variables=["contacts"])
        assert not any("sourceKey" in warning for warning in declared.warnings)

    def test_unknown_branch_target(self, graph_store, make_workflow, context):
        workflow = make_workflow([
            node("start", NodeType.TRIGGER),
            node("check", NodeType.CONDITION, {
                "conditions": [{"field": "payload.x", "operator": "equals", "value": 1}],
                "trueBranch": ["nowhere"],
            }),
        ])

        result = graph_store.validate_workflow(workflow.id, context)

        assert not result.is_valid

    def test_topological_order_tie_break(self):
        """Ready nodes are ordered by execution order, then node key."""
        snapshot = _snapshot(
            ["root", "c", "b", "a", "end"],
            [("root", "a"), ("root", "b"), ("root", "c"), ("a", "end"), ("b", "end"), ("c", "end")],
            orders={"c": -1}
        )

        assert [n.node_key for n in snapshot.topological_order()] == ["root", "c", "a", "b", "end"]

    def test_topological_order_raises_on_cycle(self):
        snapshot = _snapshot(["a", "b"], [("a", "b"), ("b", "a")])

        assert snapshot.find_cycle() is not None
        with pytest.raises(ValidationError):
            snapshot.topological_order()
