"""Durable execution state: executions, node executions, variables and logs."""

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import (
    ExecutionDetail,
    ExecutionLogView,
    ExecutionStatusEnum,
    ExecutionSummary,
    ExecutionVariableView,
    GraphSnapshot,
    LogCategory,
    LogLevelEnum,
    NodeExecutionStatus,
    NodeExecutionView,
    TERMINAL_EXECUTION_STATUSES,
)
from ..storage import database
from ..storage.models import (
    ExecutionLogModel,
    ExecutionVariableModel,
    NodeExecutionModel,
    WorkflowExecutionModel,
    WorkflowModel,
)
from .error_recovery import RetryConfig, with_retry
from .exceptions import (
    ConflictError,
    NotFoundError,
    StorageError,
    TransientError,
    ValidationError,
    WorkflowEngineError,
)
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.05, retryable_exceptions=[StorageError, TransientError])

RESOLVED_NODE_STATUSES = {NodeExecutionStatus.COMPLETED, NodeExecutionStatus.SKIPPED}
OPEN_NODE_STATUSES = {NodeExecutionStatus.PENDING, NodeExecutionStatus.RUNNING, NodeExecutionStatus.WAITING}


def _duration_ms(started_at: Optional[datetime], finished_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    return max(0, int((finished_at - started_at).total_seconds() * 1000))


def to_jsonable(value: Any) -> Any:
    """Coerce values such as datetimes into what a JSON column can hold."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def _values(statuses: Iterable) -> List[str]:
    return [getattr(status, "value", status) for status in statuses]


class NodeState:
    """In-memory view of one NodeExecution row."""

    def __init__(
        self,
        node_key: str,
        status: NodeExecutionStatus,
        output: Any = None,
        branch: Optional[str] = None,
        retry_count: int = 0,
        max_retries: int = 0,
        resume_at: Optional[datetime] = None,
        error: Optional[str] = None,
        record_id: Optional[str] = None,
        checkpoint: Optional[Dict[str, Any]] = None
    ):
        self.node_key = node_key
        self.status = status
        self.output = output
        self.branch = branch
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.resume_at = resume_at
        self.error = error
        self.record_id = record_id
        self.checkpoint = checkpoint or {}

    @property
    def resolved(self) -> bool:
        return self.status in RESOLVED_NODE_STATUSES


class ExecutionState:
    """Everything the walk needs to resume an execution."""

    def __init__(
        self,
        execution_id: str,
        workflow_id: str,
        organization_id: str,
        status: ExecutionStatusEnum,
        snapshot: GraphSnapshot,
        trigger_data: Dict[str, Any],
        nodes: Dict[str, NodeState],
        variables: Dict[str, Any],
        progress: float = 0.0,
        retry_count: int = 0,
        max_retries: int = 0,
        started_at: Optional[datetime] = None,
        scheduled_for: Optional[datetime] = None
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.organization_id = organization_id
        self.status = status
        self.snapshot = snapshot
        self.trigger_data = trigger_data
        self.nodes = nodes
        self.variables = variables
        self.progress = progress
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.started_at = started_at
        self.scheduled_for = scheduled_for

    def node_outputs(self) -> Dict[str, Any]:
        return {key: node.output for key, node in self.nodes.items() if node.status == NodeExecutionStatus.COMPLETED}


class ExecutionStateManager:
    """Persists execution state transitions.

    Status changes are compare-and-set updates on the status column, so two
    callers racing on the same execution cannot both win.
    """

    def __init__(self, session_factory: Optional[Callable[[], ContextManager[Session]]] = None):
        self._session_factory = session_factory
        logger.info("ExecutionStateManager initialized")

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
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table="workflow_executions")

    @staticmethod
    def _load(db: Session, execution_id: str, organization_id: Optional[str] = None) -> WorkflowExecutionModel:
        execution = db.query(WorkflowExecutionModel).filter(WorkflowExecutionModel.id == execution_id).first()
        if not execution:
            raise NotFoundError(
                f"Execution '{execution_id}' not found",
                resource_type="execution",
                resource_id=execution_id
            )
        if organization_id is not None and execution.organization_id != organization_id:
            raise ValidationError(
                f"Execution '{execution_id}' does not belong to organization '{organization_id}'",
                field="execution_id"
            )
        return execution

    @staticmethod
    def _node_query(db: Session, execution_id: str, node_key: str):
        return db.query(NodeExecutionModel).filter(
            NodeExecutionModel.workflow_execution_id == execution_id,
            NodeExecutionModel.node_key == node_key
        )

    # Creation

    @with_retry(STORAGE_RETRY)
    def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        organization_id: str,
        snapshot: GraphSnapshot,
        trigger_id: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Dict[str, Any]]] = None,
        priority: int = 0,
        max_retries: int = 3,
        scheduled_for: Optional[datetime] = None
    ) -> None:
        """
        Create a PENDING execution with one PENDING node execution per node.

        Args:
            execution_id: New execution id
            workflow_id: Workflow being run
            organization_id: Owning organization
            snapshot: Nodes and connections captured at trigger time
            trigger_id: Trigger that fired, if any
            trigger_data: Event payload
            variables: Initial variables as {name: {value, data_type, source}}
            priority: Queue priority
            max_retries: Execution-level retry limit
            scheduled_for: Earliest start, for delayed triggers

        Raises:
            StorageError: If the rows cannot be written
        """
        set_logging_context(execution_id=execution_id, workflow_id=workflow_id)
        try:
            with self._session("create execution") as db:
                db.add(WorkflowExecutionModel(
                    id=execution_id,
                    workflow_id=workflow_id,
                    trigger_id=trigger_id,
                    organization_id=organization_id,
                    status=ExecutionStatusEnum.PENDING.value,
                    priority=priority,
                    trigger_data=to_jsonable(trigger_data or {}),
                    graph_snapshot=snapshot.model_dump(mode="json"),
                    progress=0.0,
                    retry_count=0,
                    max_retries=max_retries,
                    scheduled_for=scheduled_for,
                ))
                for node in snapshot.nodes:
                    db.add(NodeExecutionModel(
                        id=str(uuid.uuid4()),
                        workflow_execution_id=execution_id,
                        node_id=node.id,
                        node_key=node.node_key,
                        node_type=node.type.value,
                        execution_order=node.execution_order,
                        status=NodeExecutionStatus.PENDING.value,
                        retry_count=0,
                        max_retries=node.retry_limit,
                    ))
                for name, variable in (variables or {}).items():
                    db.add(ExecutionVariableModel(
                        id=str(uuid.uuid4()),
                        workflow_execution_id=execution_id,
                        name=name,
                        value=to_jsonable(variable.get("value")),
                        data_type=variable["data_type"],
                        source=variable.get("source"),
                    ))
                db.add(ExecutionLogModel(
                    workflow_execution_id=execution_id,
                    level=LogLevelEnum.INFO.value,
                    category=LogCategory.EXECUTION.value,
                    message="Execution created",
                    details={"nodes": len(snapshot.nodes), "triggerId": trigger_id},
                ))
            logger.info(f"Created execution {execution_id} with {len(snapshot.nodes)} node executions")
        finally:
            clear_logging_context()

    # Reads

    def load(self, execution_id: str) -> ExecutionState:
        """Load an execution with its node states and variables."""
        with self._session("load execution") as db:
            execution = self._load(db, execution_id)
            nodes = {
                row.node_key: NodeState(
                    node_key=row.node_key,
                    status=NodeExecutionStatus(row.status),
                    output=row.output,
                    branch=row.branch,
                    retry_count=row.retry_count or 0,
                    max_retries=row.max_retries or 0,
                    resume_at=row.resume_at,
                    error=row.error,
                    record_id=row.id,
                    checkpoint=row.checkpoint,
                )
                for row in execution.node_executions
            }
            return ExecutionState(
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                organization_id=execution.organization_id,
                status=ExecutionStatusEnum(execution.status),
                snapshot=GraphSnapshot.model_validate(execution.graph_snapshot or {}),
                trigger_data=execution.trigger_data or {},
                nodes=nodes,
                variables={variable.name: variable.value for variable in execution.variables},
                progress=execution.progress or 0.0,
                retry_count=execution.retry_count or 0,
                max_retries=execution.max_retries or 0,
                started_at=execution.started_at,
                scheduled_for=execution.scheduled_for,
            )

    def get_status(self, execution_id: str) -> ExecutionStatusEnum:
        with self._session("read execution status") as db:
            status = db.query(WorkflowExecutionModel.status).filter(
                WorkflowExecutionModel.id == execution_id
            ).scalar()
        if status is None:
            raise NotFoundError(f"Execution '{execution_id}' not found", resource_type="execution", resource_id=execution_id)
        return ExecutionStatusEnum(status)

    def get_summary(self, execution_id: str, organization_id: Optional[str] = None) -> ExecutionSummary:
        with self._session("read execution") as db:
            return ExecutionSummary.model_validate(self._load(db, execution_id, organization_id))

    def get_detail(self, execution_id: str, organization_id: Optional[str] = None) -> ExecutionDetail:
        """Execution with node executions, variables and logs."""
        with self._session("read execution") as db:
            execution = self._load(db, execution_id, organization_id)
            detail = ExecutionDetail.model_validate(execution)
            detail.node_executions = [NodeExecutionView.model_validate(row) for row in execution.node_executions]
            detail.variables = [
                ExecutionVariableView.model_validate(row)
                for row in sorted(execution.variables, key=lambda v: v.name)
            ]
            detail.logs = [ExecutionLogView.model_validate(row) for row in execution.logs]
            return detail

    def list_executions(
        self,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatusEnum] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[ExecutionSummary]:
        with self._session("list executions") as db:
            query = db.query(WorkflowExecutionModel)
            if organization_id is not None:
                query = query.filter(WorkflowExecutionModel.organization_id == organization_id)
            if workflow_id is not None:
                query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
            if status is not None:
                query = query.filter(WorkflowExecutionModel.status == ExecutionStatusEnum(status).value)
            if date_from is not None:
                query = query.filter(WorkflowExecutionModel.created_at >= date_from)
            if date_to is not None:
                query = query.filter(WorkflowExecutionModel.created_at <= date_to)
            rows = query.order_by(
                WorkflowExecutionModel.created_at.desc(), WorkflowExecutionModel.id.desc()
            ).offset(offset).limit(limit).all()
            return [ExecutionSummary.model_validate(row) for row in rows]

    def list_logs(
        self,
        execution_id: str,
        level: Optional[LogLevelEnum] = None,
        organization_id: Optional[str] = None
    ) -> List[ExecutionLogView]:
        with self._session("list execution logs") as db:
            self._load(db, execution_id, organization_id)
            query = db.query(ExecutionLogModel).filter(ExecutionLogModel.workflow_execution_id == execution_id)
            if level is not None:
                query = query.filter(ExecutionLogModel.level == LogLevelEnum(level).value)
            return [ExecutionLogView.model_validate(row) for row in query.order_by(ExecutionLogModel.id).all()]

    # Execution transitions

    @with_retry(STORAGE_RETRY)
    def transition(
        self,
        execution_id: str,
        from_statuses: Iterable[ExecutionStatusEnum],
        to_status: ExecutionStatusEnum,
        **values
    ) -> bool:
        """
        Compare-and-set the execution status.

        Args:
            execution_id: Execution to update
            from_statuses: Statuses the row must currently be in
            to_status: New status
            **values: Extra columns to write in the same update

        Returns:
            bool: True if this caller won the transition
        """
        values.update(status=ExecutionStatusEnum(to_status).value, updated_at=datetime.utcnow())
        with self._session("transition execution") as db:
            updated = db.query(WorkflowExecutionModel).filter(
                WorkflowExecutionModel.id == execution_id,
                WorkflowExecutionModel.status.in_(_values(from_statuses))
            ).update(values, synchronize_session=False)
        if updated:
            logger.debug(f"Execution {execution_id} -> {ExecutionStatusEnum(to_status).value}")
        return updated == 1

    def update_progress(self, execution_id: str, progress: float) -> None:
        """Raise progress while RUNNING; lower values are ignored."""
        progress = max(0.0, min(100.0, round(progress, 2)))
        with self._session("update progress") as db:
            db.query(WorkflowExecutionModel).filter(
                WorkflowExecutionModel.id == execution_id,
                WorkflowExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
                WorkflowExecutionModel.progress < progress
            ).update({"progress": progress}, synchronize_session=False)

    def finish_execution(
        self,
        execution_id: str,
        to_status: ExecutionStatusEnum,
        error: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Move a RUNNING execution to COMPLETED or FAILED and stamp its timings.

        A PAUSED execution can still fail: a node that was already running
        when the pause landed reports its error here instead of losing it.
        """
        now = datetime.utcnow()
        with self._session("read execution timing") as db:
            started_at = db.query(WorkflowExecutionModel.started_at).filter(
                WorkflowExecutionModel.id == execution_id
            ).scalar()
        values: Dict[str, Any] = {"completed_at": now, "duration": _duration_ms(started_at, now)}
        if to_status == ExecutionStatusEnum.COMPLETED:
            values["progress"] = 100.0
        else:
            values.update(failed_at=now, error=error, error_details=to_jsonable(error_details))
        sources = [ExecutionStatusEnum.RUNNING]
        if to_status == ExecutionStatusEnum.FAILED:
            sources.append(ExecutionStatusEnum.PAUSED)
        return self.transition(execution_id, sources, to_status, **values)

    # Node transitions

    def start_node(self, execution_id: str, node_key: str, node_input: Any = None) -> None:
        now = datetime.utcnow()
        with self._session("start node") as db:
            self._node_query(db, execution_id, node_key).update({
                "status": NodeExecutionStatus.RUNNING.value,
                "input": to_jsonable(node_input),
                "started_at": now,
                "error": None,
            }, synchronize_session=False)

    def record_node_retry(self, execution_id: str, node_key: str, retry_count: int, error: str) -> None:
        with self._session("record node retry") as db:
            self._node_query(db, execution_id, node_key).update({
                "retry_count": retry_count,
                "error": error,
            }, synchronize_session=False)

    def save_checkpoint(self, execution_id: str, node_key: str, checkpoint: Dict[str, Any]) -> None:
        """Replace a node's checkpoint; retries and reset_failed_nodes leave it in place."""
        with self._session("save node checkpoint") as db:
            self._node_query(db, execution_id, node_key).update({
                "checkpoint": to_jsonable(checkpoint),
            }, synchronize_session=False)

    def finish_node(
        self,
        execution_id: str,
        node_key: str,
        status: NodeExecutionStatus,
        output: Any = None,
        branch: Optional[str] = None,
        error: Optional[str] = None,
        resume_at: Optional[datetime] = None
    ) -> None:
        """Record a node's outcome. WAITING keeps completed_at empty until resumed."""
        now = datetime.utcnow()
        status = NodeExecutionStatus(status)
        with self._session("finish node") as db:
            row = self._node_query(db, execution_id, node_key).first()
            if row is None:
                raise NotFoundError(
                    f"Node execution '{node_key}' not found in execution '{execution_id}'",
                    resource_type="node_execution",
                    resource_id=node_key
                )
            row.status = status.value
            row.output = to_jsonable(output)
            row.branch = branch
            row.error = error
            row.resume_at = resume_at
            if status != NodeExecutionStatus.WAITING:
                row.completed_at = now
                row.duration = _duration_ms(row.started_at, now)

    def complete_due_waits(self, execution_id: str, now: datetime) -> List[str]:
        """Mark WAITING nodes whose resume_at has passed COMPLETED."""
        resumed = []
        with self._session("resume waiting nodes") as db:
            rows = db.query(NodeExecutionModel).filter(
                NodeExecutionModel.workflow_execution_id == execution_id,
                NodeExecutionModel.status == NodeExecutionStatus.WAITING.value,
                NodeExecutionModel.resume_at <= now
            ).all()
            for row in rows:
                row.status = NodeExecutionStatus.COMPLETED.value
                row.completed_at = now
                row.duration = _duration_ms(row.started_at, now)
                resumed.append(row.node_key)
        return resumed

    def cancel_open_nodes(self, execution_id: str) -> int:
        now = datetime.utcnow()
        with self._session("cancel node executions") as db:
            return db.query(NodeExecutionModel).filter(
                NodeExecutionModel.workflow_execution_id == execution_id,
                NodeExecutionModel.status.in_(_values(OPEN_NODE_STATUSES))
            ).update({
                "status": NodeExecutionStatus.CANCELLED.value,
                "completed_at": now,
                "resume_at": None,
            }, synchronize_session=False)

    def reset_failed_nodes(self, execution_id: str) -> int:
        """Put FAILED and CANCELLED nodes back to PENDING; resolved nodes are kept."""
        with self._session("reset node executions") as db:
            return db.query(NodeExecutionModel).filter(
                NodeExecutionModel.workflow_execution_id == execution_id,
                NodeExecutionModel.status.in_(_values([NodeExecutionStatus.FAILED, NodeExecutionStatus.CANCELLED]))
            ).update({
                "status": NodeExecutionStatus.PENDING.value,
                "retry_count": 0,
                "error": None,
                "output": None,
                "branch": None,
                "duration": None,
                "resume_at": None,
                "started_at": None,
                "completed_at": None,
            }, synchronize_session=False)

    # Variables and logs

    @with_retry(STORAGE_RETRY)
    def save_variables(self, execution_id: str, changes: Dict[str, Dict[str, Any]]) -> None:
        """Upsert changed variables by (execution, name)."""
        if not changes:
            return
        with self._session("save variables") as db:
            existing = {
                row.name: row
                for row in db.query(ExecutionVariableModel).filter(
                    ExecutionVariableModel.workflow_execution_id == execution_id,
                    ExecutionVariableModel.name.in_(list(changes))
                ).all()
            }
            for name, change in changes.items():
                row = existing.get(name)
                if row is None:
                    row = ExecutionVariableModel(id=str(uuid.uuid4()), workflow_execution_id=execution_id, name=name)
                    db.add(row)
                row.value = to_jsonable(change.get("value"))
                row.data_type = change["data_type"]
                row.source = change.get("source")
        logger.debug(f"Persisted {len(changes)} variables for execution {execution_id}")

    def append_log(
        self,
        execution_id: str,
        level: LogLevelEnum,
        category: LogCategory,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        node_execution_id: Optional[str] = None
    ) -> None:
        with self._session("append execution log") as db:
            db.add(ExecutionLogModel(
                workflow_execution_id=execution_id,
                node_execution_id=node_execution_id,
                level=LogLevelEnum(level).value,
                category=LogCategory(category).value,
                message=message,
                details=details,
            ))

    # Workflow counters

    def record_workflow_outcome(self, workflow_id: str, succeeded: bool) -> None:
        column = WorkflowModel.successful_executions if succeeded else WorkflowModel.failed_executions
        with self._session("update workflow counters") as db:
            db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).update({
                WorkflowModel.total_executions: WorkflowModel.total_executions + 1,
                column: column + 1,
                WorkflowModel.last_executed_at: datetime.utcnow(),
            }, synchronize_session=False)

    def recompute_workflow_counters(self, workflow_id: str) -> Dict[str, int]:
        """Rebuild a workflow's counters from its finished executions."""
        with self._session("recompute workflow counters") as db:
            rows = db.query(WorkflowExecutionModel.status, func.count(WorkflowExecutionModel.id)).filter(
                WorkflowExecutionModel.workflow_id == workflow_id,
                WorkflowExecutionModel.status.in_([ExecutionStatusEnum.COMPLETED.value, ExecutionStatusEnum.FAILED.value])
            ).group_by(WorkflowExecutionModel.status).all()
            counts = {status: count for status, count in rows}
            last = db.query(func.max(WorkflowExecutionModel.completed_at)).filter(
                WorkflowExecutionModel.workflow_id == workflow_id
            ).scalar()
            successful = counts.get(ExecutionStatusEnum.COMPLETED.value, 0)
            failed = counts.get(ExecutionStatusEnum.FAILED.value, 0)
            db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id).update({
                "total_executions": successful + failed,
                "successful_executions": successful,
                "failed_executions": failed,
                "last_executed_at": last,
            }, synchronize_session=False)
        return {"total_executions": successful + failed, "successful_executions": successful, "failed_executions": failed}

    # Wake-up queries

    def find_due_waits(self, now: datetime) -> List[str]:
        """RUNNING executions with at least one WAITING node due by now."""
        with self._session("find due waits") as db:
            rows = db.query(NodeExecutionModel.workflow_execution_id).join(
                WorkflowExecutionModel, WorkflowExecutionModel.id == NodeExecutionModel.workflow_execution_id
            ).filter(
                WorkflowExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
                NodeExecutionModel.status == NodeExecutionStatus.WAITING.value,
                NodeExecutionModel.resume_at <= now
            ).distinct().all()
        return [row[0] for row in rows]

    def find_due_pending(self, now: datetime, include_unscheduled: bool = False) -> List[str]:
        """PENDING executions whose scheduled start has passed, highest priority first."""
        with self._session("find due executions") as db:
            condition = WorkflowExecutionModel.scheduled_for <= now
            if include_unscheduled:
                condition = condition | WorkflowExecutionModel.scheduled_for.is_(None)
            rows = db.query(WorkflowExecutionModel.id).filter(
                WorkflowExecutionModel.status == ExecutionStatusEnum.PENDING.value,
                condition
            ).order_by(WorkflowExecutionModel.priority.desc(), WorkflowExecutionModel.created_at).all()
        return [row[0] for row in rows]

    def find_running_not_waiting(self) -> List[str]:
        with self._session("find running executions") as db:
            waiting = select(NodeExecutionModel.workflow_execution_id).where(
                NodeExecutionModel.status == NodeExecutionStatus.WAITING.value
            )
            rows = db.query(WorkflowExecutionModel.id).filter(
                WorkflowExecutionModel.status == ExecutionStatusEnum.RUNNING.value,
                ~WorkflowExecutionModel.id.in_(waiting)
            ).all()
        return [row[0] for row in rows]

    # Deletion

    def delete_execution(self, execution_id: str, organization_id: Optional[str] = None) -> bool:
        """Delete a finished execution and its children."""
        with self._session("delete execution") as db:
            execution = self._load(db, execution_id, organization_id)
            if ExecutionStatusEnum(execution.status) not in TERMINAL_EXECUTION_STATUSES:
                raise ValidationError(
                    f"Cannot delete execution '{execution_id}' in status {execution.status}",
                    field="status"
                )
            db.delete(execution)
        logger.info(f"Deleted execution {execution_id}")
        return True
