"""FastAPI REST endpoints for the automation engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ..core.analytics import AnalyticsAggregator
from ..core.exceptions import (
    ValidationError,
    WorkflowEngineError,
    create_error_response,
    get_status_code_for_error,
)
from ..core.execution_engine import ExecutionEngine
from ..core.graph_store import GraphStore
from ..core.logging import get_logger
from ..core.node_config import validate_node_config
from ..core.permissions import AllowAllPermissionChecker, PermissionChecker, RequestContext
from ..core.trigger_evaluator import TriggerEvaluator
from ..models.core import (
    BulkUpdateRequest,
    BulkUpdateResult,
    ConnectionInput,
    ConnectionView,
    DomainEvent,
    ErrorAnalyticsReport,
    ExecutionDetail,
    ExecutionLogView,
    ExecutionStatusEnum,
    ExecutionSummary,
    LogLevelEnum,
    NodeInput,
    NodePerformance,
    NodeType,
    NodeUpdate,
    NodeView,
    OrganizationAnalyticsReport,
    RollupGranularity,
    RollupView,
    TrendGranularity,
    TriggerExecutionRequest,
    TriggerExecutionResponse,
    TriggerInput,
    TriggerView,
    ValidationResult,
    WorkflowAnalyticsReport,
    WorkflowCreate,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowView,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["automation"])

# Wired by the application factory
_graph_store: Optional[GraphStore] = None
_execution_engine: Optional[ExecutionEngine] = None
_trigger_evaluator: Optional[TriggerEvaluator] = None
_analytics: Optional[AnalyticsAggregator] = None
_websocket_manager = None
_permission_checker: PermissionChecker = AllowAllPermissionChecker()


def init_dependencies(
    graph_store: GraphStore,
    execution_engine: ExecutionEngine,
    trigger_evaluator: TriggerEvaluator,
    analytics: AnalyticsAggregator,
    websocket_manager=None,
    permission_checker: Optional[PermissionChecker] = None
):
    """Initialize the module-level dependencies."""
    global _graph_store, _execution_engine, _trigger_evaluator, _analytics, _websocket_manager, _permission_checker
    _graph_store = graph_store
    _execution_engine = execution_engine
    _trigger_evaluator = trigger_evaluator
    _analytics = analytics
    _websocket_manager = websocket_manager
    _permission_checker = permission_checker or AllowAllPermissionChecker()


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_graph_store() -> GraphStore:
    return _require(_graph_store, "Graph store")


def get_execution_engine() -> ExecutionEngine:
    return _require(_execution_engine, "Execution engine")


def get_trigger_evaluator() -> TriggerEvaluator:
    return _require(_trigger_evaluator, "Trigger evaluator")


def get_analytics() -> AnalyticsAggregator:
    return _require(_analytics, "Analytics aggregator")


def get_request_context(
    x_organization_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None)
) -> RequestContext:
    """Build the caller identity from the X-Organization-Id and X-User-Id headers."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "MissingOrganization", "message": "X-Organization-Id header is required"}
        )
    return RequestContext(
        organization_id=x_organization_id,
        user_id=x_user_id,
        permission_checker=_permission_checker
    )


def _http_error(error: WorkflowEngineError, operation: str) -> HTTPException:
    """Translate an engine error into the HTTP error the API reports."""
    status_code = get_status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Failed to {operation}: {error.message}")
    else:
        logger.warning(f"Failed to {operation}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


class DeleteResponse(BaseModel):
    deleted: bool


class EventDispatchResponse(BaseModel):
    execution_ids: List[str] = Field(default_factory=list)


class NodeConfigValidationRequest(BaseModel):
    type: NodeType
    config: Dict[str, Any] = Field(default_factory=dict)


class RollupRequest(BaseModel):
    period_start: datetime
    granularity: RollupGranularity = RollupGranularity.DAILY


# Workflows

@router.post("/workflows", response_model=WorkflowView, status_code=status.HTTP_201_CREATED)
def create_workflow(
    data: WorkflowCreate,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> WorkflowView:
    try:
        return graph_store.create_workflow(data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "create workflow")


@router.get("/workflows", response_model=List[WorkflowView])
def list_workflows(
    workflow_status: Optional[WorkflowStatus] = Query(None, alias="status"),
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> List[WorkflowView]:
    try:
        return graph_store.list_workflows(context, workflow_status)
    except WorkflowEngineError as e:
        raise _http_error(e, "list workflows")


@router.get("/workflows/{workflow_id}", response_model=WorkflowView)
def get_workflow(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> WorkflowView:
    try:
        return graph_store.get_workflow(workflow_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "get workflow")


@router.patch("/workflows/{workflow_id}", response_model=WorkflowView)
def update_workflow(
    workflow_id: str,
    data: WorkflowUpdate,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> WorkflowView:
    try:
        return graph_store.update_workflow(workflow_id, data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "update workflow")


@router.delete("/workflows/{workflow_id}", response_model=DeleteResponse)
def delete_workflow(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> DeleteResponse:
    try:
        return DeleteResponse(deleted=graph_store.delete_workflow(workflow_id, context))
    except WorkflowEngineError as e:
        raise _http_error(e, "delete workflow")


@router.post("/workflows/{workflow_id}/validate", response_model=ValidationResult)
def validate_workflow(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> ValidationResult:
    try:
        return graph_store.validate_workflow(workflow_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "validate workflow")


@router.post("/workflows/{workflow_id}/recompute-counters", response_model=WorkflowView)
def recompute_workflow_counters(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> WorkflowView:
    """Rebuild total, successful and failed execution counts from execution history."""
    try:
        return execution_engine.recompute_workflow_counters(workflow_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "recompute workflow counters")


# Nodes

@router.get("/workflows/{workflow_id}/nodes", response_model=List[NodeView])
def list_nodes(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> List[NodeView]:
    try:
        return graph_store.list_nodes(workflow_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "list nodes")


@router.post("/workflows/{workflow_id}/nodes", response_model=NodeView, status_code=status.HTTP_201_CREATED)
def add_node(
    workflow_id: str,
    data: NodeInput,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> NodeView:
    try:
        return graph_store.add_node(workflow_id, data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "add node")


@router.put("/workflows/{workflow_id}/nodes", response_model=List[NodeView])
def sync_nodes(
    workflow_id: str,
    nodes: List[NodeInput],
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> List[NodeView]:
    """
    Replace all nodes of a workflow.

    Nodes are matched by their canvas id; nodes missing from the payload
    are deleted and the rest are upserted in one transaction.
    """
    try:
        return graph_store.sync_nodes(workflow_id, nodes, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "sync nodes")


@router.patch("/workflows/{workflow_id}/nodes/{node_key}", response_model=NodeView)
def update_node(
    workflow_id: str,
    node_key: str,
    data: NodeUpdate,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> NodeView:
    try:
        return graph_store.update_node(workflow_id, node_key, data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "update node")


@router.delete("/workflows/{workflow_id}/nodes/{node_key}", response_model=DeleteResponse)
def delete_node(
    workflow_id: str,
    node_key: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> DeleteResponse:
    try:
        return DeleteResponse(deleted=graph_store.delete_node(workflow_id, node_key, context))
    except WorkflowEngineError as e:
        raise _http_error(e, "delete node")


@router.post("/nodes/validate-config", response_model=ValidationResult)
def validate_config(request: NodeConfigValidationRequest) -> ValidationResult:
    """Validate a node configuration without storing it."""
    return validate_node_config(request.type, request.config)


# Connections

@router.get("/workflows/{workflow_id}/connections", response_model=List[ConnectionView])
def list_connections(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> List[ConnectionView]:
    try:
        return graph_store.list_connections(workflow_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "list connections")


@router.post("/workflows/{workflow_id}/connections", response_model=ConnectionView, status_code=status.HTTP_201_CREATED)
def add_connection(
    workflow_id: str,
    data: ConnectionInput,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> ConnectionView:
    try:
        return graph_store.add_connection(workflow_id, data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "add connection")


@router.put("/workflows/{workflow_id}/connections", response_model=List[ConnectionView])
def sync_connections(
    workflow_id: str,
    connections: List[ConnectionInput],
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> List[ConnectionView]:
    try:
        return graph_store.sync_connections(workflow_id, connections, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "sync connections")


@router.delete("/workflows/{workflow_id}/connections/{edge_id}", response_model=DeleteResponse)
def delete_connection(
    workflow_id: str,
    edge_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> DeleteResponse:
    try:
        return DeleteResponse(deleted=graph_store.delete_connection(workflow_id, edge_id, context))
    except WorkflowEngineError as e:
        raise _http_error(e, "delete connection")


# Triggers

@router.get("/workflows/{workflow_id}/triggers", response_model=List[TriggerView])
def list_triggers(
    workflow_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> List[TriggerView]:
    try:
        return graph_store.list_triggers(workflow_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "list triggers")


@router.post("/workflows/{workflow_id}/triggers", response_model=TriggerView, status_code=status.HTTP_201_CREATED)
def add_trigger(
    workflow_id: str,
    data: TriggerInput,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> TriggerView:
    try:
        return graph_store.add_trigger(workflow_id, data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "add trigger")


@router.put("/workflows/{workflow_id}/triggers/{trigger_id}", response_model=TriggerView)
def update_trigger(
    workflow_id: str,
    trigger_id: str,
    data: TriggerInput,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> TriggerView:
    try:
        return graph_store.update_trigger(workflow_id, trigger_id, data, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "update trigger")


@router.delete("/workflows/{workflow_id}/triggers/{trigger_id}", response_model=DeleteResponse)
def delete_trigger(
    workflow_id: str,
    trigger_id: str,
    context: RequestContext = Depends(get_request_context),
    graph_store: GraphStore = Depends(get_graph_store)
) -> DeleteResponse:
    try:
        return DeleteResponse(deleted=graph_store.delete_trigger(workflow_id, trigger_id, context))
    except WorkflowEngineError as e:
        raise _http_error(e, "delete trigger")


# Executions

@router.post(
    "/workflows/{workflow_id}/execute",
    response_model=TriggerExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow execution"
)
def execute_workflow(
    workflow_id: str,
    request: TriggerExecutionRequest,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> TriggerExecutionResponse:
    """
    Start a workflow execution.

    Args:
        workflow_id: Workflow to run
        request: Trigger data, initial variables, priority and optional delay
        context: Caller identity from the request headers
        execution_engine: Execution engine dependency

    Returns:
        The new execution id and its status

    Raises:
        HTTPException: 400 for invalid graphs or inactive workflows, 404 for
            unknown workflows, 503 when the execution queue is full
    """
    try:
        response = execution_engine.trigger_execution(workflow_id, request, context)
        logger.info(f"Started execution {response.execution_id} for workflow {workflow_id}")
        return response
    except WorkflowEngineError as e:
        raise _http_error(e, "start execution")


@router.get("/executions", response_model=List[ExecutionSummary])
def list_executions(
    workflow_id: Optional[str] = None,
    execution_status: Optional[ExecutionStatusEnum] = Query(None, alias="status"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionSummary]:
    try:
        return execution_engine.list_executions(
            context,
            workflow_id=workflow_id,
            status=execution_status,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
    except WorkflowEngineError as e:
        raise _http_error(e, "list executions")


@router.post("/executions/bulk", response_model=BulkUpdateResult)
def bulk_update_executions(
    request: BulkUpdateRequest,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> BulkUpdateResult:
    """Cancel, pause or resume several executions; each id reports its own outcome."""
    try:
        return execution_engine.bulk_update(request.execution_ids, request.action, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "bulk update executions")


@router.get("/executions/{execution_id}", response_model=ExecutionDetail)
def get_execution(
    execution_id: str,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionDetail:
    try:
        return execution_engine.get_execution(execution_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "get execution")


@router.get("/executions/{execution_id}/logs", response_model=List[ExecutionLogView])
def get_execution_logs(
    execution_id: str,
    level: Optional[LogLevelEnum] = None,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionLogView]:
    try:
        return execution_engine.get_execution_logs(execution_id, level, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "get execution logs")


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionSummary)
def cancel_execution(
    execution_id: str,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionSummary:
    try:
        return execution_engine.cancel_execution(execution_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "cancel execution")


@router.post("/executions/{execution_id}/retry", response_model=ExecutionSummary)
def retry_execution(
    execution_id: str,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionSummary:
    try:
        return execution_engine.retry_execution(execution_id, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "retry execution")


@router.delete("/executions/{execution_id}", response_model=DeleteResponse)
def delete_execution(
    execution_id: str,
    context: RequestContext = Depends(get_request_context),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> DeleteResponse:
    try:
        return DeleteResponse(deleted=execution_engine.delete_execution(execution_id, context))
    except WorkflowEngineError as e:
        raise _http_error(e, "delete execution")


# Domain events

@router.post("/events", response_model=EventDispatchResponse, status_code=status.HTTP_202_ACCEPTED)
def dispatch_event(
    event: DomainEvent,
    context: RequestContext = Depends(get_request_context),
    trigger_evaluator: TriggerEvaluator = Depends(get_trigger_evaluator)
) -> EventDispatchResponse:
    """Offer a domain event to the trigger evaluator and report the executions it started."""
    try:
        context.require()
        if event.organization_id != context.organization_id:
            raise ValidationError(
                f"Event organization '{event.organization_id}' does not match the caller's organization",
                field="organization_id"
            )
        return EventDispatchResponse(execution_ids=trigger_evaluator.dispatch_event(event))
    except WorkflowEngineError as e:
        raise _http_error(e, "dispatch event")


# Analytics

@router.get("/workflows/{workflow_id}/analytics", response_model=WorkflowAnalyticsReport)
def get_workflow_analytics(
    workflow_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    granularity: TrendGranularity = TrendGranularity.DAY,
    context: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics)
) -> WorkflowAnalyticsReport:
    try:
        return analytics.get_workflow_analytics(workflow_id, date_from, date_to, granularity, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "compute workflow analytics")


@router.get("/workflows/{workflow_id}/analytics/nodes", response_model=List[NodePerformance])
def get_node_performance(
    workflow_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    context: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics)
) -> List[NodePerformance]:
    try:
        return analytics.get_node_performance(workflow_id, date_from, date_to, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "compute node performance")


@router.get("/workflows/{workflow_id}/analytics/rollups", response_model=List[RollupView])
def get_stored_analytics(
    workflow_id: str,
    granularity: RollupGranularity = RollupGranularity.DAILY,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    context: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics)
) -> List[RollupView]:
    try:
        return analytics.get_stored_analytics(workflow_id, granularity, date_from, date_to, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "read analytics rollups")


@router.post("/workflows/{workflow_id}/analytics/rollups", response_model=RollupView)
def create_rollup(
    workflow_id: str,
    request: RollupRequest,
    context: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics),
    graph_store: GraphStore = Depends(get_graph_store)
) -> RollupView:
    try:
        graph_store.get_workflow(workflow_id, context)
        return analytics.create_rollup(workflow_id, request.period_start, request.granularity)
    except WorkflowEngineError as e:
        raise _http_error(e, "create analytics rollup")


@router.get("/analytics/errors", response_model=ErrorAnalyticsReport)
def get_error_analytics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    context: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics)
) -> ErrorAnalyticsReport:
    try:
        return analytics.get_error_analytics(context.organization_id, date_from, date_to, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "compute error analytics")


@router.get("/analytics/organization", response_model=OrganizationAnalyticsReport)
def get_organization_analytics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    context: RequestContext = Depends(get_request_context),
    analytics: AnalyticsAggregator = Depends(get_analytics)
) -> OrganizationAnalyticsReport:
    try:
        return analytics.get_organization_analytics(context.organization_id, date_from, date_to, context)
    except WorkflowEngineError as e:
        raise _http_error(e, "compute organization analytics")


# Monitoring

@router.get("/system/queue")
def get_queue_status(execution_engine: ExecutionEngine = Depends(get_execution_engine)) -> Dict[str, Any]:
    return execution_engine.get_execution_queue_status()


@router.get("/ws/connections")
def get_websocket_connections() -> Dict[str, Any]:
    if not _websocket_manager:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="WebSocket monitoring not available"
        )
    return _websocket_manager.get_connection_info()


@router.websocket("/ws/executions")
async def websocket_executions(websocket: WebSocket, organization_id: Optional[str] = None):
    """
    Stream execution events.

    Client messages:
        {"action": "subscribe" | "unsubscribe" | "ping", "execution_id": "..."}

    Server messages:
        {"event_type": ..., "execution_id": ..., "timestamp": ..., "data": {...}}

    Subscriptions are limited to executions of the organization given in the
    ``organization_id`` query parameter.
    """
    if not _websocket_manager or not _execution_engine:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return
    if not organization_id:
        await websocket.close(code=1008, reason="organization_id is required")
        return

    context = RequestContext(organization_id=organization_id, permission_checker=_permission_checker)

    def authorize(execution_id: str) -> bool:
        try:
            _execution_engine.get_execution(execution_id, context)
            return True
        except WorkflowEngineError:
            return False

    connection_id = await _websocket_manager.connect(websocket, organization_id)
    if connection_id is None:
        return
    try:
        while True:
            raw = await websocket.receive_text()
            await _websocket_manager.handle_message(connection_id, raw, authorize)
    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    finally:
        await _websocket_manager.disconnect(connection_id)
