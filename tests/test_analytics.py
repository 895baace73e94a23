"""Tests for execution analytics and rollups."""

import uuid
from datetime import datetime, timedelta

import pytest

from automation_engine.core.analytics import (
    bucket_start,
    duration_stats,
    next_bucket,
    normalize_error,
    percentile_nearest_rank,
)
from automation_engine.core.exceptions import ForbiddenError, ValidationError
from automation_engine.core.permissions import RequestContext, StaticPermissionChecker
from automation_engine.models.core import (
    ExecutionStatusEnum,
    NodeType,
    RollupGranularity,
    TrendGranularity,
    WorkflowStatus,
)
from automation_engine.storage import database
from automation_engine.storage.models import NodeExecutionModel, WorkflowExecutionModel

from helpers import node

BASE = datetime(2026, 3, 2, 10, 0)  # a Monday
SNAPSHOT = {"nodes": [{"node_key": "send", "name": "Send email", "type": "ACTION"}], "connections": []}


def insert_execution(workflow, status, duration=None, created_at=BASE, error=None, node_runs=()):
    """Store a finished execution row directly, bypassing the engine."""
    execution_id = f"exec_{uuid.uuid4().hex}"
    with database.session_scope() as db:
        db.add(WorkflowExecutionModel(
            id=execution_id,
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            status=status.value,
            graph_snapshot=SNAPSHOT,
            duration=duration,
            error=error,
            created_at=created_at,
            failed_at=created_at if status == ExecutionStatusEnum.FAILED else None,
        ))
        db.flush()
        for node_status, node_duration in node_runs:
            db.add(NodeExecutionModel(
                id=str(uuid.uuid4()),
                workflow_execution_id=execution_id,
                node_key="send",
                node_type=NodeType.ACTION.value,
                status=node_status,
                duration=node_duration,
            ))
    return execution_id


@pytest.fixture
def workflow(make_workflow):
    return make_workflow([node("start", NodeType.TRIGGER)], name="Onboarding")


@pytest.fixture
def mixed_history(workflow):
    """Five executions: three completed, one failed, one still running."""
    rows = [
        (ExecutionStatusEnum.COMPLETED, 10, None),
        (ExecutionStatusEnum.COMPLETED, 20, None),
        (ExecutionStatusEnum.FAILED, 30, "Node 'send' timed out after 30 seconds"),
        (ExecutionStatusEnum.RUNNING, None, None),
        (ExecutionStatusEnum.COMPLETED, 40, None),
    ]
    return [
        insert_execution(workflow, status, duration, BASE + timedelta(hours=index), error)
        for index, (status, duration, error) in enumerate(rows)
    ]


class TestHelpers:
    def test_percentile_nearest_rank(self):
        assert percentile_nearest_rank([]) == 0
        assert percentile_nearest_rank([7]) == 7
        assert percentile_nearest_rank(list(range(1, 11))) == 10
        assert percentile_nearest_rank([40, 10, 30, 20]) == 40

    def test_duration_stats_ignore_missing_values(self):
        stats = duration_stats([10, None, 20])
        assert (stats.count, stats.average, stats.minimum, stats.maximum) == (2, 15.0, 10, 20)
        assert duration_stats([None]).count == 0

    def test_normalize_error(self):
        assert normalize_error("Node 'send' timed out after 30 seconds") == "Node <value> timed out after <n> seconds"
        assert normalize_error("Recipient ada@example.com rejected") == "Recipient <email> rejected"
        assert normalize_error(None) == "Unknown error"
        assert len(normalize_error("x" * 500)) == 200

    def test_buckets(self):
        thursday = datetime(2026, 3, 5, 17, 45)
        assert bucket_start(thursday, TrendGranularity.HOUR) == datetime(2026, 3, 5, 17)
        assert bucket_start(thursday, TrendGranularity.DAY) == datetime(2026, 3, 5)
        assert bucket_start(thursday, TrendGranularity.WEEK) == datetime(2026, 3, 2)
        assert bucket_start(thursday, TrendGranularity.MONTH) == datetime(2026, 3, 1)
        assert next_bucket(datetime(2026, 12, 1), TrendGranularity.MONTH) == datetime(2027, 1, 1)


class TestWorkflowAnalytics:
    """Per-workflow overview, trends and errors."""

    def test_overview(self, analytics, workflow, mixed_history):
        report = analytics.get_workflow_analytics(
            workflow.id, date_from=BASE - timedelta(days=1), date_to=BASE + timedelta(days=1)
        )

        overview = report.overview
        assert overview.total_executions == 5
        assert overview.status_counts["COMPLETED"] == 3
        assert overview.status_counts["RUNNING"] == 1
        assert overview.status_counts["CANCELLED"] == 0
        assert overview.success_rate == 60.0
        assert overview.error_rate == 20.0
        assert overview.duration.count == 4
        assert overview.duration.average == 25.0
        assert (overview.duration.minimum, overview.duration.maximum, overview.duration.p95) == (10, 40, 40)

    def test_trends_and_recent(self, analytics, workflow, mixed_history):
        report = analytics.get_workflow_analytics(
            workflow.id,
            date_from=BASE - timedelta(days=1),
            date_to=BASE + timedelta(days=1),
            granularity=TrendGranularity.DAY
        )

        assert [point.period_start for point in report.trends] == [
            datetime(2026, 3, 1), datetime(2026, 3, 2), datetime(2026, 3, 3)
        ]
        busy = report.trends[1]
        assert (busy.total, busy.successful, busy.failed, busy.average_duration) == (5, 3, 1, 25.0)
        assert report.trends[0].total == 0

        assert report.recent_executions[0].id == mixed_history[-1]
        assert report.error_analysis[0].message == "Node <value> timed out after <n> seconds"
        assert report.error_analysis[0].percentage == 100.0

    def test_empty_range_is_zeroed(self, analytics, workflow):
        report = analytics.get_workflow_analytics(workflow.id)

        assert report.overview.total_executions == 0
        assert report.overview.success_rate == 0.0
        assert report.overview.duration.count == 0
        assert report.recent_executions == []

    def test_rejects_inverted_range(self, analytics, workflow):
        with pytest.raises(ValidationError):
            analytics.get_workflow_analytics(workflow.id, date_from=BASE, date_to=BASE - timedelta(days=1))

    def test_enforces_ownership(self, analytics, workflow, other_context):
        with pytest.raises(ValidationError):
            analytics.get_workflow_analytics(workflow.id, context=other_context)


class TestNodePerformance:
    def test_groups_runs_by_node(self, analytics, workflow):
        insert_execution(workflow, ExecutionStatusEnum.COMPLETED, 500, node_runs=[("COMPLETED", 100), ("COMPLETED", 300)])
        insert_execution(workflow, ExecutionStatusEnum.FAILED, 50, node_runs=[("FAILED", None), ("SKIPPED", None)])

        report = analytics.get_node_performance(
            workflow.id, date_from=BASE - timedelta(days=1), date_to=BASE + timedelta(days=1)
        )

        assert len(report) == 1
        send = report[0]
        assert send.name == "Send email"
        assert send.node_type == NodeType.ACTION
        assert send.total_runs == 4
        assert send.status_counts == {"COMPLETED": 2, "FAILED": 1, "SKIPPED": 1}
        assert send.success_rate == 66.67
        assert (send.duration.count, send.duration.average, send.duration.p95) == (2, 200.0, 300)


class TestOrganizationAnalytics:
    """Error and usage reports across an organization."""

    def test_error_analytics(self, analytics, make_workflow, context, other_context):
        billing = make_workflow([node("start", NodeType.TRIGGER)], name="Billing")
        onboarding = make_workflow([node("start", NodeType.TRIGGER)], name="Onboarding")
        foreign = make_workflow([node("start", NodeType.TRIGGER)], name="Foreign", owner=other_context)
        insert_execution(billing, ExecutionStatusEnum.FAILED, error="Recipient ada@example.com rejected")
        insert_execution(billing, ExecutionStatusEnum.FAILED, error="Recipient bob@example.com rejected")
        insert_execution(onboarding, ExecutionStatusEnum.FAILED, error="Node 'send' timed out after 5 seconds")
        insert_execution(onboarding, ExecutionStatusEnum.COMPLETED, 10)
        insert_execution(foreign, ExecutionStatusEnum.FAILED, error="Recipient eve@example.com rejected")

        report = analytics.get_error_analytics(
            "org-1", date_from=BASE - timedelta(days=1), date_to=BASE + timedelta(days=1), context=context
        )

        assert report.total_errors == 3
        assert report.average_errors_per_day == 1.5
        assert [(e.workflow_name, e.error_count) for e in report.errors_by_workflow] == [("Billing", 2), ("Onboarding", 1)]
        assert report.common_errors[0].message == "Recipient <email> rejected"
        assert report.common_errors[0].count == 2
        assert report.common_errors[0].percentage == 66.67

    def test_error_analytics_requires_permission(self, analytics):
        checker = StaticPermissionChecker()
        checker.grant("org-1", "viewer")
        caller = RequestContext(organization_id="org-1", user_id="user-1", permission_checker=checker)

        with pytest.raises(ForbiddenError):
            analytics.get_error_analytics("org-2", context=caller)

    def test_organization_analytics(self, analytics, make_workflow):
        busy = make_workflow([node("start", NodeType.TRIGGER)], name="Busy")
        quiet = make_workflow([node("start", NodeType.TRIGGER)], name="Quiet", status=WorkflowStatus.DRAFT)
        for duration in (10, 20, 30):
            insert_execution(busy, ExecutionStatusEnum.COMPLETED, duration)
        insert_execution(quiet, ExecutionStatusEnum.FAILED, 5, error="boom")

        report = analytics.get_organization_analytics(
            "org-1", date_from=BASE - timedelta(days=1), date_to=BASE + timedelta(days=1)
        )

        assert report.total_workflows == 2
        assert report.active_workflows == 1
        assert report.overview.total_executions == 4
        assert report.overview.success_rate == 75.0
        assert [(w.workflow_name, w.total_executions, w.success_rate) for w in report.top_workflows] == [
            ("Busy", 3, 100.0), ("Quiet", 1, 0.0)
        ]


class TestRollups:
    def test_rollup_is_upserted_per_period(self, analytics, workflow):
        insert_execution(workflow, ExecutionStatusEnum.COMPLETED, 100, created_at=datetime(2026, 3, 3, 9))
        insert_execution(workflow, ExecutionStatusEnum.FAILED, 300, created_at=datetime(2026, 3, 4, 9), error="boom")

        first = analytics.create_rollup(workflow.id, datetime(2026, 3, 5, 15), RollupGranularity.WEEKLY)

        assert first.period_start == datetime(2026, 3, 2)
        assert first.period_end == datetime(2026, 3, 9)
        assert (first.total_executions, first.successful_executions, first.failed_executions) == (2, 1, 1)
        assert first.avg_execution_time == 200.0
        assert first.error_rate == 50.0
        assert first.common_errors[0]["message"] == "boom"

        insert_execution(workflow, ExecutionStatusEnum.COMPLETED, 200, created_at=datetime(2026, 3, 6, 9))
        second = analytics.create_rollup(workflow.id, datetime(2026, 3, 2), RollupGranularity.WEEKLY)

        assert second.id == first.id
        assert second.total_executions == 3

        stored = analytics.get_stored_analytics(
            workflow.id, RollupGranularity.WEEKLY, date_from=datetime(2026, 3, 1), date_to=datetime(2026, 3, 31)
        )
        assert [rollup.id for rollup in stored] == [first.id]

    def test_empty_period_has_no_duration_stats(self, analytics, workflow):
        rollup = analytics.create_rollup(workflow.id, datetime(2026, 1, 15), RollupGranularity.MONTHLY)

        assert rollup.period_start == datetime(2026, 1, 1)
        assert rollup.total_executions == 0
        assert rollup.avg_execution_time is None
