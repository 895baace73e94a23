"""Aggregated analytics over execution history."""

import math
import re
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, ContextManager, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import (
    DurationStats,
    ErrorAnalyticsReport,
    ErrorFrequency,
    ExecutionOverview,
    ExecutionStatusEnum,
    ExecutionSummary,
    NodePerformance,
    NodeType,
    OrganizationAnalyticsReport,
    RollupGranularity,
    RollupView,
    TrendGranularity,
    TrendPoint,
    WorkflowAnalyticsReport,
    WorkflowErrorCount,
    WorkflowStatus,
    WorkflowUsage,
)
from ..storage import database
from ..storage.models import (
    NodeExecutionModel,
    WorkflowAnalyticsModel,
    WorkflowExecutionModel,
    WorkflowModel,
)
from .exceptions import ConflictError, NotFoundError, StorageError, ValidationError, WorkflowEngineError
from .logging import get_logger
from .permissions import RequestContext
from .scheduler import utcnow

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 200
TOP_WORKFLOW_ERRORS = 5
TOP_ORGANIZATION_ERRORS = 10
RECENT_EXECUTIONS = 10
TOP_WORKFLOWS = 5

# Applied in order; specific shapes before the generic number rule
_ERROR_PATTERNS = [
    (re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"), "<uuid>"),
    (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "<email>"),
    (re.compile(r"\bexec_\d+_\w+\b"), "<id>"),
    (re.compile(r"\b(?=\w*\d)[A-Za-z0-9_]{16,}\b"), "<id>"),
    (re.compile(r"'[^']*'|\"[^\"]*\""), "<value>"),
    (re.compile(r"\b\d+(?:\.\d+)?\b"), "<n>"),
    (re.compile(r"\s+"), " "),
]


def normalize_error(message: Optional[str]) -> str:
    """Collapse an error message into a groupable shape."""
    if not message:
        return "Unknown error"
    normalized = str(message)
    for pattern, replacement in _ERROR_PATTERNS:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip()[:MAX_ERROR_LENGTH]


def percentile_nearest_rank(values: List[int], percentile: float = 0.95) -> int:
    """Nearest-rank percentile: sorted[ceil(p * n) - 1]."""
    if not values:
        return 0
    ordered = sorted(values)
    rank = max(1, math.ceil(percentile * len(ordered)))
    return ordered[rank - 1]


def duration_stats(durations: Iterable[Optional[int]]) -> DurationStats:
    """Duration aggregates over the non-null values only."""
    values = [int(d) for d in durations if d is not None]
    if not values:
        return DurationStats()
    return DurationStats(
        count=len(values),
        average=round(sum(values) / len(values), 2),
        minimum=min(values),
        maximum=max(values),
        p95=percentile_nearest_rank(values),
    )


def _rate(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def build_overview(rows: List[Tuple[str, Optional[int]]]) -> ExecutionOverview:
    """Overview from (status, duration) pairs; every row counts toward status totals."""
    counts = Counter(status for status, _ in rows)
    total = len(rows)
    successful = counts.get(ExecutionStatusEnum.COMPLETED.value, 0)
    failed = counts.get(ExecutionStatusEnum.FAILED.value, 0)
    return ExecutionOverview(
        total_executions=total,
        status_counts={status.value: counts.get(status.value, 0) for status in ExecutionStatusEnum},
        successful_executions=successful,
        failed_executions=failed,
        success_rate=_rate(successful, total),
        error_rate=_rate(failed, total),
        duration=duration_stats(duration for _, duration in rows),
    )


def top_errors(errors: List[Tuple[Optional[str], Optional[datetime]]], limit: int) -> List[ErrorFrequency]:
    """Most frequent normalized errors with their share and last occurrence."""
    counts: Counter = Counter()
    last_seen: Dict[str, datetime] = {}
    for message, seen_at in errors:
        key = normalize_error(message)
        counts[key] += 1
        if seen_at and (key not in last_seen or seen_at > last_seen[key]):
            last_seen[key] = seen_at
    total = sum(counts.values())
    return [
        ErrorFrequency(message=key, count=count, percentage=_rate(count, total), last_seen=last_seen.get(key))
        for key, count in counts.most_common(limit)
    ]


def bucket_start(moment: datetime, granularity: TrendGranularity) -> datetime:
    if granularity == TrendGranularity.HOUR:
        return moment.replace(minute=0, second=0, microsecond=0)
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == TrendGranularity.DAY:
        return day
    if granularity == TrendGranularity.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def _add_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


def next_bucket(start: datetime, granularity: TrendGranularity) -> datetime:
    if granularity == TrendGranularity.HOUR:
        return start + timedelta(hours=1)
    if granularity == TrendGranularity.DAY:
        return start + timedelta(days=1)
    if granularity == TrendGranularity.WEEK:
        return start + timedelta(weeks=1)
    return _add_month(start)


ROLLUP_TREND = {
    RollupGranularity.DAILY: TrendGranularity.DAY,
    RollupGranularity.WEEKLY: TrendGranularity.WEEK,
    RollupGranularity.MONTHLY: TrendGranularity.MONTH,
}


class AnalyticsAggregator:
    """Computes workflow, node, error and organization analytics."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], ContextManager[Session]]] = None,
        default_days: int = 30,
        error_default_days: int = 7
    ):
        self._session_factory = session_factory
        self.default_days = default_days
        self.error_default_days = error_default_days

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        factory = self._session_factory or database.session_scope
        try:
            with factory() as db:
                yield db
        except WorkflowEngineError:
            raise
        except IntegrityError as e:
            logger.error(f"Integrity error during {operation}: {str(e)}")
            raise ConflictError(f"Failed to {operation}: conflicting keys")
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table="workflow_analytics")

    @staticmethod
    def _range(date_from: Optional[datetime], date_to: Optional[datetime], days: int) -> Tuple[datetime, datetime]:
        date_to = date_to or utcnow()
        date_from = date_from or date_to - timedelta(days=days)
        if date_from > date_to:
            raise ValidationError("date_from must not be after date_to", field="date_from")
        return date_from, date_to

    @staticmethod
    def _load_workflow(db: Session, workflow_id: str, context: Optional[RequestContext]) -> WorkflowModel:
        workflow = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).first()
        if not workflow:
            raise NotFoundError(f"Workflow '{workflow_id}' not found", resource_type="workflow", resource_id=workflow_id)
        if context is not None:
            context.require()
            if workflow.organization_id != context.organization_id:
                raise ValidationError(
                    f"Workflow '{workflow_id}' does not belong to organization '{context.organization_id}'",
                    field="workflow_id"
                )
        return workflow

    @staticmethod
    def _executions(db: Session, date_from: datetime, date_to: datetime, **filters):
        query = db.query(WorkflowExecutionModel).filter(
            WorkflowExecutionModel.created_at >= date_from,
            WorkflowExecutionModel.created_at <= date_to
        )
        for column, value in filters.items():
            query = query.filter(getattr(WorkflowExecutionModel, column) == value)
        return query

    # Workflow analytics

    def get_workflow_analytics(
        self,
        workflow_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        granularity: TrendGranularity = TrendGranularity.DAY,
        context: Optional[RequestContext] = None
    ) -> WorkflowAnalyticsReport:
        """
        Overview, trends, top errors and recent executions for one workflow.

        Args:
            workflow_id: Workflow to analyse
            date_from: Range start, defaults to date_to minus the default window
            date_to: Range end, defaults to now
            granularity: Trend bucket size
            context: Caller identity; when given, ownership is enforced

        Returns:
            WorkflowAnalyticsReport: Zeroed aggregates when there is no data
        """
        granularity = TrendGranularity(granularity)
        date_from, date_to = self._range(date_from, date_to, self.default_days)
        with self._session("compute workflow analytics") as db:
            self._load_workflow(db, workflow_id, context)
            executions = self._executions(db, date_from, date_to, workflow_id=workflow_id).order_by(
                WorkflowExecutionModel.created_at.desc(), WorkflowExecutionModel.id.desc()
            ).all()
            rows = [(execution.status, execution.duration) for execution in executions]
            errors = [
                (execution.error, execution.failed_at or execution.updated_at)
                for execution in executions
                if execution.status == ExecutionStatusEnum.FAILED.value
            ]
            recent = [ExecutionSummary.model_validate(execution) for execution in executions[:RECENT_EXECUTIONS]]
            trends = self._trends(executions, date_from, date_to, granularity)

        return WorkflowAnalyticsReport(
            workflow_id=workflow_id,
            date_from=date_from,
            date_to=date_to,
            granularity=granularity,
            overview=build_overview(rows),
            trends=trends,
            error_analysis=top_errors(errors, TOP_WORKFLOW_ERRORS),
            recent_executions=recent,
        )

    @staticmethod
    def _trends(
        executions: List[WorkflowExecutionModel],
        date_from: datetime,
        date_to: datetime,
        granularity: TrendGranularity
    ) -> List[TrendPoint]:
        buckets: Dict[datetime, List[WorkflowExecutionModel]] = {}
        for execution in executions:
            buckets.setdefault(bucket_start(execution.created_at, granularity), []).append(execution)

        points = []
        current = bucket_start(date_from, granularity)
        while current <= date_to:
            members = buckets.get(current, [])
            durations = [e.duration for e in members if e.duration is not None]
            points.append(TrendPoint(
                period_start=current,
                total=len(members),
                successful=sum(1 for e in members if e.status == ExecutionStatusEnum.COMPLETED.value),
                failed=sum(1 for e in members if e.status == ExecutionStatusEnum.FAILED.value),
                average_duration=round(sum(durations) / len(durations), 2) if durations else 0.0,
            ))
            current = next_bucket(current, granularity)
        return points

    def get_node_performance(
        self,
        workflow_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        context: Optional[RequestContext] = None
    ) -> List[NodePerformance]:
        """Per-node run counts, success rate and duration stats."""
        date_from, date_to = self._range(date_from, date_to, self.default_days)
        with self._session("compute node performance") as db:
            self._load_workflow(db, workflow_id, context)
            rows = db.query(NodeExecutionModel, WorkflowExecutionModel.graph_snapshot).join(
                WorkflowExecutionModel, WorkflowExecutionModel.id == NodeExecutionModel.workflow_execution_id
            ).filter(
                WorkflowExecutionModel.workflow_id == workflow_id,
                WorkflowExecutionModel.created_at >= date_from,
                WorkflowExecutionModel.created_at <= date_to
            ).all()

            grouped: Dict[str, List[NodeExecutionModel]] = {}
            names: Dict[str, Optional[str]] = {}
            for node_execution, snapshot in rows:
                grouped.setdefault(node_execution.node_key, []).append(node_execution)
                if node_execution.node_key not in names:
                    names[node_execution.node_key] = next(
                        (n.get("name") for n in (snapshot or {}).get("nodes", []) if n.get("node_key") == node_execution.node_key),
                        None
                    )

            report = []
            for node_key, runs in sorted(grouped.items()):
                counts = Counter(run.status for run in runs)
                finished = counts.get("COMPLETED", 0) + counts.get("FAILED", 0)
                report.append(NodePerformance(
                    node_key=node_key,
                    node_type=NodeType(runs[0].node_type),
                    name=names.get(node_key),
                    total_runs=len(runs),
                    status_counts=dict(counts),
                    success_rate=_rate(counts.get("COMPLETED", 0), finished),
                    duration=duration_stats(run.duration for run in runs),
                ))
        return report

    # Organization analytics

    def get_error_analytics(
        self,
        organization_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        context: Optional[RequestContext] = None
    ) -> ErrorAnalyticsReport:
        """Failed executions across an organization, grouped by workflow and message."""
        if context is not None:
            context.require(organization_id)
        date_from, date_to = self._range(date_from, date_to, self.error_default_days)
        with self._session("compute error analytics") as db:
            failures = db.query(WorkflowExecutionModel, WorkflowModel.name).join(
                WorkflowModel, WorkflowModel.id == WorkflowExecutionModel.workflow_id
            ).filter(
                WorkflowExecutionModel.organization_id == organization_id,
                WorkflowExecutionModel.status == ExecutionStatusEnum.FAILED.value,
                WorkflowExecutionModel.created_at >= date_from,
                WorkflowExecutionModel.created_at <= date_to
            ).all()
            per_workflow: Counter = Counter()
            workflow_names: Dict[str, str] = {}
            errors = []
            for execution, name in failures:
                per_workflow[execution.workflow_id] += 1
                workflow_names[execution.workflow_id] = name
                errors.append((execution.error, execution.failed_at or execution.updated_at))

        days = max(1.0, (date_to - date_from).total_seconds() / 86400)
        return ErrorAnalyticsReport(
            organization_id=organization_id,
            date_from=date_from,
            date_to=date_to,
            total_errors=len(errors),
            average_errors_per_day=round(len(errors) / days, 2),
            errors_by_workflow=[
                WorkflowErrorCount(workflow_id=workflow_id, workflow_name=workflow_names.get(workflow_id), error_count=count)
                for workflow_id, count in per_workflow.most_common()
            ],
            common_errors=top_errors(errors, TOP_ORGANIZATION_ERRORS),
        )

    def get_organization_analytics(
        self,
        organization_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        context: Optional[RequestContext] = None
    ) -> OrganizationAnalyticsReport:
        """Totals across an organization's workflows and its busiest workflows."""
        if context is not None:
            context.require(organization_id)
        date_from, date_to = self._range(date_from, date_to, self.default_days)
        with self._session("compute organization analytics") as db:
            workflows = db.query(WorkflowModel).filter(WorkflowModel.organization_id == organization_id).all()
            names = {workflow.id: workflow.name for workflow in workflows}
            executions = self._executions(db, date_from, date_to, organization_id=organization_id).all()
            rows = [(execution.status, execution.duration) for execution in executions]
            per_workflow: Dict[str, List[str]] = {}
            for execution in executions:
                per_workflow.setdefault(execution.workflow_id, []).append(execution.status)

        busiest = sorted(per_workflow.items(), key=lambda item: (-len(item[1]), names.get(item[0], "")))
        return OrganizationAnalyticsReport(
            organization_id=organization_id,
            date_from=date_from,
            date_to=date_to,
            total_workflows=len(workflows),
            active_workflows=sum(1 for workflow in workflows if workflow.status == WorkflowStatus.ACTIVE.value),
            overview=build_overview(rows),
            top_workflows=[
                WorkflowUsage(
                    workflow_id=workflow_id,
                    workflow_name=names.get(workflow_id, workflow_id),
                    total_executions=len(statuses),
                    success_rate=_rate(statuses.count(ExecutionStatusEnum.COMPLETED.value), len(statuses)),
                )
                for workflow_id, statuses in busiest[:TOP_WORKFLOWS]
            ],
        )

    # Rollups

    def create_rollup(
        self,
        workflow_id: str,
        period_start: datetime,
        granularity: RollupGranularity = RollupGranularity.DAILY
    ) -> RollupView:
        """
        Compute and upsert the rollup for one workflow period.

        The period start is aligned to the granularity, so recomputing the
        same period updates the existing row.
        """
        granularity = RollupGranularity(granularity)
        trend = ROLLUP_TREND[granularity]
        start = bucket_start(period_start, trend)
        end = next_bucket(start, trend)

        with self._session("create analytics rollup") as db:
            workflow = self._load_workflow(db, workflow_id, None)
            executions = db.query(WorkflowExecutionModel).filter(
                WorkflowExecutionModel.workflow_id == workflow_id,
                WorkflowExecutionModel.created_at >= start,
                WorkflowExecutionModel.created_at < end
            ).all()
            overview = build_overview([(e.status, e.duration) for e in executions])
            errors = top_errors(
                [(e.error, e.failed_at) for e in executions if e.status == ExecutionStatusEnum.FAILED.value],
                TOP_WORKFLOW_ERRORS
            )

            rollup = db.query(WorkflowAnalyticsModel).filter(
                WorkflowAnalyticsModel.workflow_id == workflow_id,
                WorkflowAnalyticsModel.period_start == start,
                WorkflowAnalyticsModel.granularity == granularity.value
            ).first()
            if rollup is None:
                rollup = WorkflowAnalyticsModel(
                    id=str(uuid.uuid4()),
                    workflow_id=workflow_id,
                    organization_id=workflow.organization_id,
                    period_start=start,
                    granularity=granularity.value,
                )
                db.add(rollup)

            has_durations = overview.duration.count > 0
            rollup.period_end = end
            rollup.total_executions = overview.total_executions
            rollup.successful_executions = overview.successful_executions
            rollup.failed_executions = overview.failed_executions
            rollup.avg_execution_time = overview.duration.average if has_durations else None
            rollup.min_execution_time = overview.duration.minimum if has_durations else None
            rollup.max_execution_time = overview.duration.maximum if has_durations else None
            rollup.p95_execution_time = overview.duration.p95 if has_durations else None
            rollup.error_rate = overview.error_rate
            rollup.common_errors = [error.model_dump(mode="json") for error in errors]
            db.flush()
            view = RollupView.model_validate(rollup)

        logger.info(f"Stored {granularity.value} rollup for workflow {workflow_id} starting {start.isoformat()}")
        return view

    def get_stored_analytics(
        self,
        workflow_id: str,
        granularity: RollupGranularity = RollupGranularity.DAILY,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        context: Optional[RequestContext] = None
    ) -> List[RollupView]:
        date_from, date_to = self._range(date_from, date_to, self.default_days)
        with self._session("read analytics rollups") as db:
            self._load_workflow(db, workflow_id, context)
            rows = db.query(WorkflowAnalyticsModel).filter(
                WorkflowAnalyticsModel.workflow_id == workflow_id,
                WorkflowAnalyticsModel.granularity == RollupGranularity(granularity).value,
                WorkflowAnalyticsModel.period_start >= bucket_start(date_from, ROLLUP_TREND[RollupGranularity(granularity)]),
                WorkflowAnalyticsModel.period_start <= date_to
            ).order_by(WorkflowAnalyticsModel.period_start).all()
            return [RollupView.model_validate(row) for row in rows]
