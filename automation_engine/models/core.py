"""Core Pydantic models for the automation engine."""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.exceptions import ValidationError


class WorkflowStatus(str, Enum):
    """Lifecycle of a workflow definition."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class NodeType(str, Enum):
    """Node variants; every member must have a registered handler."""
    TRIGGER = "TRIGGER"
    ACTION = "ACTION"
    QUERY = "QUERY"
    LOOP = "LOOP"
    FILTER = "FILTER"
    CONDITION = "CONDITION"
    DELAY = "DELAY"
    SCHEDULE = "SCHEDULE"


class TriggerType(str, Enum):
    EVENT = "EVENT"
    SCHEDULE = "SCHEDULE"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"


class ExecutionStatusEnum(str, Enum):
    """Execution state machine states."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_EXECUTION_STATUSES = {
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.CANCELLED,
}

CANCELLABLE_EXECUTION_STATUSES = {
    ExecutionStatusEnum.PENDING,
    ExecutionStatusEnum.RUNNING,
    ExecutionStatusEnum.PAUSED,
}


class NodeExecutionStatus(str, Enum):
    """States of a single node within one execution."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


class LogLevelEnum(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogCategory(str, Enum):
    EXECUTION = "EXECUTION"
    NODE = "NODE"
    TRIGGER = "TRIGGER"
    VARIABLE = "VARIABLE"
    SYSTEM = "SYSTEM"


class VariableDataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"


class BulkAction(str, Enum):
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"


class TrendGranularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RollupGranularity(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ValidationResult(BaseModel):
    """Result of config or graph validation."""
    is_valid: bool = Field(..., description="Whether the input is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


# Workflow definitions

class WorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()


class WorkflowUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[WorkflowStatus] = None


class WorkflowView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus
    version: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    last_executed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NodeInput(BaseModel):
    """A node as the editor sends it, keyed by its canvas id."""
    node_id: str = Field(..., min_length=1, description="Canvas (React Flow) node id")
    type: NodeType
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    position: Dict[str, float] = Field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    config: Dict[str, Any] = Field(default_factory=dict)
    template: Optional[Dict[str, Any]] = None
    execution_order: int = 0
    is_optional: bool = False
    retry_limit: int = Field(3, ge=0, le=10)
    timeout: int = Field(300, ge=1, description="Timeout in seconds")
    conditions: Optional[Any] = None


class NodeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    position: Optional[Dict[str, float]] = None
    config: Optional[Dict[str, Any]] = None
    template: Optional[Dict[str, Any]] = None
    execution_order: Optional[int] = None
    is_optional: Optional[bool] = None
    retry_limit: Optional[int] = Field(None, ge=0, le=10)
    timeout: Optional[int] = Field(None, ge=1)
    conditions: Optional[Any] = None


class NodeView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    node_id: str
    type: NodeType
    name: str
    description: Optional[str] = None
    position: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    template: Optional[Dict[str, Any]] = None
    execution_order: int
    is_optional: bool
    retry_limit: int
    timeout: int
    conditions: Optional[Any] = None


class ConnectionInput(BaseModel):
    """An edge as the editor sends it; endpoints are canvas node ids."""
    edge_id: str = Field(..., min_length=1)
    source_node_id: str = Field(..., min_length=1)
    target_node_id: str = Field(..., min_length=1)
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    conditions: Optional[Any] = None
    style: Optional[Dict[str, Any]] = None
    animated: bool = False
    execution_order: int = 1

    @model_validator(mode='after')
    def validate_edge(self):
        if self.source_node_id == self.target_node_id:
            raise ValueError("Self-referencing connections are not allowed")
        return self


class ConnectionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    edge_id: str
    source_node_id: str
    target_node_id: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    conditions: Optional[Any] = None
    style: Optional[Dict[str, Any]] = None
    animated: bool
    execution_order: int


class TriggerInput(BaseModel):
    name: str = Field(..., min_length=1)
    type: TriggerType = TriggerType.EVENT
    module: Optional[str] = None
    event_type: Optional[str] = None
    entity_type: Optional[str] = None
    conditions: Optional[Any] = None
    delay: int = Field(0, ge=0, le=604_800_000, description="Start delay in milliseconds")
    is_active: bool = True
    cron: Optional[str] = None
    timezone: str = "UTC"

    @model_validator(mode='after')
    def validate_trigger_shape(self):
        if self.type == TriggerType.EVENT and not self.module:
            raise ValueError("Event triggers require a module")
        if self.type == TriggerType.SCHEDULE and not self.cron:
            raise ValueError("Schedule triggers require a cron expression")
        return self


class TriggerView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    name: str
    type: TriggerType
    module: Optional[str] = None
    event_type: Optional[str] = None
    entity_type: Optional[str] = None
    conditions: Optional[Any] = None
    delay: int
    is_active: bool
    cron: Optional[str] = None
    timezone: str
    next_run_at: Optional[datetime] = None
    last_triggered: Optional[datetime] = None
    trigger_count: int


# Graph snapshot used by the orchestrator

class NodeSnapshot(BaseModel):
    """Frozen copy of a node taken when an execution is created."""
    id: str
    node_key: str
    type: NodeType
    name: str
    config: Dict[str, Any] = Field(default_factory=dict)
    template: Optional[Dict[str, Any]] = None
    execution_order: int = 0
    is_optional: bool = False
    retry_limit: int = 0
    timeout: int = 300


class ConnectionSnapshot(BaseModel):
    edge_id: str
    source: str = Field(..., description="Source node key")
    target: str = Field(..., description="Target node key")
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    conditions: Optional[Any] = None
    execution_order: int = 1


class GraphSnapshot(BaseModel):
    """The node graph an execution runs against."""
    nodes: List[NodeSnapshot] = Field(default_factory=list)
    connections: List[ConnectionSnapshot] = Field(default_factory=list)

    def node(self, node_key: str) -> NodeSnapshot:
        for node in self.nodes:
            if node.node_key == node_key:
                return node
        raise KeyError(node_key)

    def incoming(self, node_key: str) -> List[ConnectionSnapshot]:
        return [c for c in self.connections if c.target == node_key]

    def outgoing(self, node_key: str) -> List[ConnectionSnapshot]:
        return sorted(
            (c for c in self.connections if c.source == node_key),
            key=lambda c: c.execution_order
        )

    def validate_structure(self) -> ValidationResult:
        """Check references and acyclicity without raising."""
        errors = []
        keys = [node.node_key for node in self.nodes]
        if len(keys) != len(set(keys)):
            errors.append("Node keys must be unique within a workflow")
        key_set = set(keys)
        for connection in self.connections:
            if connection.source not in key_set:
                errors.append(f"Connection {connection.edge_id} references non-existent source node: '{connection.source}'")
            if connection.target not in key_set:
                errors.append(f"Connection {connection.edge_id} references non-existent target node: '{connection.target}'")
        if not errors:
            cycle = self.find_cycle()
            if cycle:
                errors.append(f"Workflow graph contains a cycle: {' -> '.join(cycle)}")
        return ValidationResult(is_valid=not errors, errors=errors)

    def find_cycle(self) -> Optional[List[str]]:
        """Return the node keys of one cycle, or None when the graph is a DAG."""
        adjacency: Dict[str, List[str]] = {node.node_key: [] for node in self.nodes}
        for connection in self.connections:
            adjacency.setdefault(connection.source, []).append(connection.target)

        white, grey, black = 0, 1, 2
        color = {key: white for key in adjacency}
        parent: Dict[str, Optional[str]] = {}

        for start in adjacency:
            if color[start] != white:
                continue
            stack = [(start, iter(adjacency[start]))]
            color[start] = grey
            parent[start] = None
            while stack:
                current, children = stack[-1]
                advanced = False
                for child in children:
                    if color.get(child, white) == white:
                        color[child] = grey
                        parent[child] = current
                        stack.append((child, iter(adjacency.get(child, []))))
                        advanced = True
                        break
                    if color.get(child) == grey:
                        cycle = [child]
                        walker = current
                        while walker is not None and walker != child:
                            cycle.append(walker)
                            walker = parent.get(walker)
                        cycle.append(child)
                        return list(reversed(cycle))
                if not advanced:
                    color[current] = black
                    stack.pop()
        return None

    def topological_order(self) -> List[NodeSnapshot]:
        """Kahn's algorithm, ties broken by execution order then node key.

        Raises:
            ValidationError: If the connections form a cycle
        """
        in_degree = {node.node_key: 0 for node in self.nodes}
        for connection in self.connections:
            if connection.target in in_degree and connection.source in in_degree:
                in_degree[connection.target] += 1

        by_key = {node.node_key: node for node in self.nodes}

        def sort_key(key: str):
            node = by_key[key]
            return (node.execution_order, node.node_key)

        ready = deque(sorted((k for k, d in in_degree.items() if d == 0), key=sort_key))
        ordered: List[NodeSnapshot] = []
        while ready:
            key = ready.popleft()
            ordered.append(by_key[key])
            released = []
            for connection in self.outgoing(key):
                if connection.target not in in_degree:
                    continue
                in_degree[connection.target] -= 1
                if in_degree[connection.target] == 0:
                    released.append(connection.target)
            for target in sorted(released, key=sort_key):
                ready.append(target)

        if len(ordered) != len(self.nodes):
            cycle = self.find_cycle() or sorted(k for k, d in in_degree.items() if d > 0)
            raise ValidationError(
                f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
                validation_errors=["cyclic connections"]
            )
        return ordered

    def reachable_from(self, start_keys: Set[str]) -> Set[str]:
        reachable = set(start_keys)
        queue = deque(start_keys)
        while queue:
            current = queue.popleft()
            for connection in self.outgoing(current):
                if connection.target not in reachable:
                    reachable.add(connection.target)
                    queue.append(connection.target)
        return reachable


# Events and executions

class DomainEvent(BaseModel):
    """A domain event offered to the trigger evaluator."""
    module: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    organization_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ExecutionVariableInput(BaseModel):
    name: str = Field(..., min_length=1)
    value: Any = None
    data_type: Optional[VariableDataType] = None
    source: str = "input"


class TriggerExecutionRequest(BaseModel):
    trigger_id: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    variables: List[ExecutionVariableInput] = Field(default_factory=list)
    priority: int = Field(0, ge=0, le=10)
    delay_ms: int = Field(0, ge=0, le=604_800_000)


class TriggerExecutionResponse(BaseModel):
    execution_id: str
    status: ExecutionStatusEnum


class NodeExecutionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    node_id: Optional[str] = None
    node_key: str
    node_type: NodeType
    execution_order: int
    status: NodeExecutionStatus
    retry_count: int
    max_retries: int
    duration: Optional[int] = None
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    branch: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    resume_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExecutionVariableView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    value: Any = None
    data_type: VariableDataType
    source: Optional[str] = None


class ExecutionLogView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    node_execution_id: Optional[str] = None
    level: LogLevelEnum
    category: LogCategory
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime


class ExecutionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    trigger_id: Optional[str] = None
    organization_id: str
    status: ExecutionStatusEnum
    priority: int
    progress: float
    retry_count: int
    max_retries: int
    duration: Optional[int] = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class ExecutionDetail(ExecutionSummary):
    trigger_data: Optional[Dict[str, Any]] = None
    node_executions: List[NodeExecutionView] = Field(default_factory=list)
    variables: List[ExecutionVariableView] = Field(default_factory=list)
    logs: List[ExecutionLogView] = Field(default_factory=list)


class BulkUpdateRequest(BaseModel):
    execution_ids: List[str] = Field(..., min_length=1, max_length=100)
    action: BulkAction


class BulkUpdateItem(BaseModel):
    execution_id: str
    success: bool
    status: Optional[ExecutionStatusEnum] = None
    error: Optional[str] = None


class BulkUpdateResult(BaseModel):
    action: BulkAction
    results: List[BulkUpdateItem]
    succeeded: int
    failed: int


# Analytics

class DurationStats(BaseModel):
    count: int = 0
    average: float = 0.0
    minimum: int = 0
    maximum: int = 0
    p95: int = 0


class ExecutionOverview(BaseModel):
    total_executions: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    duration: DurationStats = Field(default_factory=DurationStats)


class TrendPoint(BaseModel):
    period_start: datetime
    total: int = 0
    successful: int = 0
    failed: int = 0
    average_duration: float = 0.0


class ErrorFrequency(BaseModel):
    message: str
    count: int
    percentage: float = 0.0
    last_seen: Optional[datetime] = None


class WorkflowAnalyticsReport(BaseModel):
    workflow_id: str
    date_from: datetime
    date_to: datetime
    granularity: TrendGranularity
    overview: ExecutionOverview
    trends: List[TrendPoint] = Field(default_factory=list)
    error_analysis: List[ErrorFrequency] = Field(default_factory=list)
    recent_executions: List[ExecutionSummary] = Field(default_factory=list)


class NodePerformance(BaseModel):
    node_key: str
    node_type: NodeType
    name: Optional[str] = None
    total_runs: int = 0
    status_counts: Dict[str, int] = Field(default_factory=dict)
    success_rate: float = 0.0
    duration: DurationStats = Field(default_factory=DurationStats)


class WorkflowErrorCount(BaseModel):
    workflow_id: str
    workflow_name: Optional[str] = None
    error_count: int


class ErrorAnalyticsReport(BaseModel):
    organization_id: str
    date_from: datetime
    date_to: datetime
    total_errors: int = 0
    average_errors_per_day: float = 0.0
    errors_by_workflow: List[WorkflowErrorCount] = Field(default_factory=list)
    common_errors: List[ErrorFrequency] = Field(default_factory=list)


class RollupView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    period_start: datetime
    period_end: datetime
    granularity: RollupGranularity
    total_executions: int
    successful_executions: int
    failed_executions: int
    avg_execution_time: Optional[float] = None
    min_execution_time: Optional[int] = None
    max_execution_time: Optional[int] = None
    p95_execution_time: Optional[int] = None
    error_rate: float
    common_errors: Optional[List[Dict[str, Any]]] = None


class WorkflowUsage(BaseModel):
    workflow_id: str
    workflow_name: str
    total_executions: int
    success_rate: float


class OrganizationAnalyticsReport(BaseModel):
    organization_id: str
    date_from: datetime
    date_to: datetime
    total_workflows: int = 0
    active_workflows: int = 0
    overview: ExecutionOverview = Field(default_factory=ExecutionOverview)
    top_workflows: List[WorkflowUsage] = Field(default_factory=list)
