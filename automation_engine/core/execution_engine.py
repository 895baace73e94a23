"""Execution engine: triggers executions and walks their node graphs."""

import itertools
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta
from queue import Empty, Full, PriorityQueue
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (
    BulkAction,
    BulkUpdateItem,
    BulkUpdateResult,
    CANCELLABLE_EXECUTION_STATUSES,
    ConnectionSnapshot,
    ExecutionDetail,
    ExecutionLogView,
    ExecutionStatusEnum,
    ExecutionSummary,
    LogCategory,
    LogLevelEnum,
    NodeExecutionStatus,
    NodeSnapshot,
    NodeType,
    TERMINAL_EXECUTION_STATUSES,
    TriggerExecutionRequest,
    TriggerExecutionResponse,
    WorkflowStatus,
    WorkflowView,
)
from ..handlers import HandlerRegistry, create_default_registry
from ..handlers.base import HandlerContext, NodeResult, NodeResultStatus
from .conditions import matches
from .exceptions import (
    ExecutionTimeoutError,
    NodeExecutionError,
    NotFoundError,
    ResourceExhaustionError,
    RetryLimitExceededError,
    ValidationError,
    WorkflowEngineError,
)
from .graph_store import GraphStore, validate_graph_snapshot
from .logging import ErrorRecoveryLogger, clear_logging_context, get_logger, logging_context, set_logging_context
from .permissions import RequestContext
from .scheduler import utcnow
from .state_manager import ExecutionState, ExecutionStateManager, NodeState
from .variables import VariableResolver, infer_data_type

logger = get_logger(__name__)

# Connection condition keys that are not part of a condition tree
EDGE_META_KEYS = ("branch", "onStatus")
TREE_KEYS = ("and", "or", "not", "conditions", "field")


def generate_execution_id() -> str:
    return f"exec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class ExecutionEngine:
    """Runs workflow executions on a worker pool.

    Triggering only creates the execution rows and enqueues the id. A queue
    processor thread hands ids to the pool, and each execution is walked
    under its own lock so steps of one execution never interleave.
    """

    def __init__(
        self,
        graph_store: GraphStore,
        state_manager: Optional[ExecutionStateManager] = None,
        handler_registry: Optional[HandlerRegistry] = None,
        max_concurrent_executions: int = 10,
        queue_size: int = 100,
        node_retry_base_delay: float = 1.0,
        loop_max_concurrency: int = 4,
        execution_max_retries: int = 3,
        websocket_manager=None,
        run_inline: bool = False
    ):
        """
        Initialize the ExecutionEngine.

        Args:
            graph_store: Source of workflow graphs
            state_manager: Durable execution state
            handler_registry: Handler per node type
            max_concurrent_executions: Worker pool size
            queue_size: Pending execution queue bound
            node_retry_base_delay: Seconds before the first node retry, doubled per attempt
            loop_max_concurrency: Upper bound on LOOP iteration concurrency
            execution_max_retries: How many times a failed execution may be retried
            websocket_manager: Optional broadcaster for execution events
            run_inline: Walk executions on the caller's thread instead of the pool
        """
        self.graph_store = graph_store
        self.state_manager = state_manager or ExecutionStateManager()
        self.handler_registry = handler_registry or create_default_registry()
        self.websocket_manager = websocket_manager
        self.node_retry_base_delay = node_retry_base_delay
        self.loop_max_concurrency = loop_max_concurrency
        self.execution_max_retries = execution_max_retries
        self.run_inline = run_inline

        self._max_concurrent_executions = max_concurrent_executions
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_executions, thread_name_prefix="execution")
        self._node_executor = ThreadPoolExecutor(max_workers=max_concurrent_executions * 2, thread_name_prefix="node")
        self._active_executions: Dict[str, Future] = {}
        self._active_lock = threading.RLock()

        self._execution_queue: PriorityQueue = PriorityQueue(maxsize=queue_size)
        self._sequence = itertools.count()
        self._queue_processor_running = False
        self._queue_processor_thread: Optional[threading.Thread] = None

        self._execution_locks: Dict[str, threading.RLock] = {}
        self._lock_manager = threading.RLock()
        # Handler calls that outlived their timeout, keyed by (execution_id, node_key)
        self._inflight: Dict[Tuple[str, str], Future] = {}
        self._recovery_logger = ErrorRecoveryLogger("node_execution")

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    # Lifecycle

    def start(self) -> None:
        """Start the queue processor thread."""
        if not self._queue_processor_running:
            self._queue_processor_running = True
            self._queue_processor_thread = threading.Thread(
                target=self._process_execution_queue,
                daemon=True,
                name="ExecutionQueueProcessor"
            )
            self._queue_processor_thread.start()
            logger.info("Execution queue processor started")

    def shutdown(self, wait: bool = False) -> None:
        self._queue_processor_running = False
        if self._queue_processor_thread and self._queue_processor_thread.is_alive():
            self._queue_processor_thread.join(timeout=2.0)
        self._executor.shutdown(wait=wait)
        self._node_executor.shutdown(wait=wait)
        logger.info("Execution engine shut down")

    @property
    def is_running(self) -> bool:
        return self._queue_processor_running

    # Triggering

    def trigger_execution(
        self,
        workflow_id: str,
        request: TriggerExecutionRequest,
        context: RequestContext
    ) -> TriggerExecutionResponse:
        """
        Create a PENDING execution of a workflow and enqueue it.

        Args:
            workflow_id: Workflow to run
            request: Trigger data, initial variables, priority and start delay
            context: Caller identity and permission checker

        Returns:
            TriggerExecutionResponse: The new execution id and its status

        Raises:
            ForbiddenError: If the caller lacks permission
            NotFoundError: If the workflow or trigger does not exist
            ValidationError: If the workflow belongs to another organization,
                is archived, has no nodes, or its graph or configs are invalid
        """
        context.require()
        workflow = self.graph_store.get_workflow(workflow_id, context)
        if workflow.status == WorkflowStatus.ARCHIVED:
            raise ValidationError(f"Workflow '{workflow_id}' is archived", field="status")

        if request.trigger_id:
            trigger_ids = {trigger.id for trigger in self.graph_store.list_triggers(workflow_id)}
            if request.trigger_id not in trigger_ids:
                raise NotFoundError(
                    f"Trigger '{request.trigger_id}' not found",
                    resource_type="trigger",
                    resource_id=request.trigger_id
                )

        snapshot = self.graph_store.snapshot(workflow_id)
        if not snapshot.nodes:
            raise ValidationError(f"Workflow '{workflow_id}' has no nodes", field="nodes")
        validation = validate_graph_snapshot(snapshot, [variable.name for variable in request.variables])
        if not validation.is_valid:
            raise ValidationError(
                f"Workflow '{workflow_id}' failed validation",
                validation_errors=validation.errors
            )

        variables = self._initial_variables(request)
        execution_id = generate_execution_id()
        scheduled_for = utcnow() + timedelta(milliseconds=request.delay_ms) if request.delay_ms else None

        self.state_manager.create_execution(
            execution_id=execution_id,
            workflow_id=workflow_id,
            organization_id=workflow.organization_id,
            snapshot=snapshot,
            trigger_id=request.trigger_id,
            trigger_data=request.trigger_data,
            variables=variables,
            priority=request.priority,
            max_retries=self.execution_max_retries,
            scheduled_for=scheduled_for,
        )
        self._broadcast(execution_id, "execution_created", {"workflow_id": workflow_id, "status": "PENDING"})

        if scheduled_for is not None:
            logger.info(f"Execution {execution_id} scheduled for {scheduled_for.isoformat()}")
            return TriggerExecutionResponse(execution_id=execution_id, status=ExecutionStatusEnum.PENDING)

        self._dispatch(execution_id, request.priority)
        status = self.state_manager.get_status(execution_id) if self.run_inline else ExecutionStatusEnum.PENDING
        return TriggerExecutionResponse(execution_id=execution_id, status=status)

    @staticmethod
    def _initial_variables(request: TriggerExecutionRequest) -> Dict[str, Dict[str, Any]]:
        variables = {}
        for variable in request.variables:
            inferred = infer_data_type(variable.value)
            data_type = variable.data_type or inferred
            if variable.value is not None and data_type != inferred:
                raise ValidationError(
                    f"Variable '{variable.name}' declared as {variable.data_type.value} but value is {inferred.value}",
                    field=variable.name
                )
            variables[variable.name] = {
                "value": variable.value,
                "data_type": data_type.value,
                "source": variable.source,
            }
        return variables

    # Dispatch

    def _dispatch(self, execution_id: str, priority: int = 0) -> None:
        if self.run_inline:
            self.process_execution(execution_id)
            return
        if not self._queue_processor_running:
            logger.debug(f"Queue processor not running, execution {execution_id} left for recovery")
            return
        try:
            self._execution_queue.put_nowait((-priority, next(self._sequence), execution_id))
        except Full:
            raise ResourceExhaustionError(
                "Execution queue is full",
                resource_type="execution_queue",
                current_usage=self._execution_queue.qsize(),
                limit=self._execution_queue.maxsize
            )
        logger.debug(f"Queued execution {execution_id} with priority {priority}")

    def _process_execution_queue(self) -> None:
        """Hand queued execution ids to the worker pool."""
        while self._queue_processor_running:
            try:
                try:
                    _, _, execution_id = self._execution_queue.get(timeout=0.5)
                except Empty:
                    continue
                future = self._executor.submit(self._run_queued, execution_id)
                with self._active_lock:
                    self._active_executions[execution_id] = future
                future.add_done_callback(lambda _, eid=execution_id: self._forget_active(eid))
            except RuntimeError as e:
                # Executor shut down while the processor was still draining
                logger.warning(f"Execution queue processor stopping: {str(e)}")
                self._queue_processor_running = False
            except Exception as e:
                logger.error(f"Error in execution queue processor: {str(e)}")
                time.sleep(1.0)

    def _forget_active(self, execution_id: str) -> None:
        with self._active_lock:
            self._active_executions.pop(execution_id, None)

    def _run_queued(self, execution_id: str) -> None:
        try:
            self.process_execution(execution_id)
        except Exception as e:
            logger.error(f"Execution {execution_id} crashed: {str(e)}", exc_info=True)
            try:
                state = self.state_manager.load(execution_id)
                self._fail_execution(state, e)
            except Exception as finalize_error:
                logger.error(f"Failed to finalize crashed execution {execution_id}: {str(finalize_error)}")

    def _get_execution_lock(self, execution_id: str) -> threading.RLock:
        with self._lock_manager:
            if execution_id not in self._execution_locks:
                self._execution_locks[execution_id] = threading.RLock()
            return self._execution_locks[execution_id]

    def _cleanup_execution_lock(self, execution_id: str) -> None:
        with self._lock_manager:
            self._execution_locks.pop(execution_id, None)

    def _forget_inflight(self, execution_id: str) -> None:
        with self._lock_manager:
            for key in [key for key in self._inflight if key[0] == execution_id]:
                del self._inflight[key]

    # Walk

    def process_execution(self, execution_id: str) -> ExecutionStatusEnum:
        """
        Advance an execution as far as it can go.

        Starts a due PENDING execution, then runs nodes in topological order
        until the graph is finished, a node waits, a non-optional node fails,
        or the execution is cancelled or paused.

        Returns:
            ExecutionStatusEnum: Status after this pass
        """
        set_logging_context(execution_id=execution_id)
        try:
            with self._get_execution_lock(execution_id):
                status = self._walk(execution_id)
            if status in TERMINAL_EXECUTION_STATUSES:
                self._cleanup_execution_lock(execution_id)
            if status in (ExecutionStatusEnum.COMPLETED, ExecutionStatusEnum.CANCELLED):
                # FAILED keeps them for retry_execution
                self._forget_inflight(execution_id)
            return status
        finally:
            clear_logging_context()

    def _walk(self, execution_id: str) -> ExecutionStatusEnum:
        state = self.state_manager.load(execution_id)
        set_logging_context(execution_id=execution_id, workflow_id=state.workflow_id)

        if state.status == ExecutionStatusEnum.PENDING:
            if state.scheduled_for and state.scheduled_for > utcnow():
                logger.debug(f"Execution {execution_id} not due until {state.scheduled_for.isoformat()}")
                return state.status
            if not self._start(state):
                return self.state_manager.get_status(execution_id)
        elif state.status != ExecutionStatusEnum.RUNNING:
            logger.info(f"Execution {execution_id} is {state.status.value}, nothing to do")
            return state.status

        snapshot = state.snapshot
        try:
            order = snapshot.topological_order()
        except ValidationError as e:
            self._fail_execution(state, e)
            return ExecutionStatusEnum.FAILED

        resolver = VariableResolver(execution_id, state.trigger_data, state.variables, state.node_outputs())
        body_keys = self._loop_body_keys(snapshot)
        has_trigger_nodes = any(node.type == NodeType.TRIGGER for node in snapshot.nodes)
        self._update_progress(state)

        for node in order:
            node_state = state.nodes.get(node.node_key)
            if node_state is None or self._is_settled(node, node_state) or node.node_key in body_keys:
                continue

            current = self.state_manager.get_status(execution_id)
            if current != ExecutionStatusEnum.RUNNING:
                logger.info(f"Execution {execution_id} is {current.value}, stopping walk")
                return current

            if node_state.status == NodeExecutionStatus.WAITING:
                logger.debug(f"Node {node.node_key} still waiting until {node_state.resume_at}")
                return ExecutionStatusEnum.RUNNING

            if node_state.status in (NodeExecutionStatus.FAILED, NodeExecutionStatus.CANCELLED):
                # Only retry_execution puts these back to PENDING
                self._fail_execution(state, NodeExecutionError(
                    node_state.error or f"Node {node.node_key} is {node_state.status.value}",
                    node_id=node.node_key,
                    execution_id=execution_id
                ), node)
                return ExecutionStatusEnum.FAILED

            if node.type == NodeType.TRIGGER:
                self._settle(state, node, NodeExecutionStatus.COMPLETED, resolver, output=dict(state.trigger_data))
                continue

            if not self._has_live_input(node, state, resolver, has_trigger_nodes):
                self._skip(state, node, resolver, "No live incoming connection")
                continue

            result, error = self._run_node(state, node, resolver)
            if error is not None:
                if node.is_optional:
                    logger.warning(f"Optional node {node.node_key} failed, continuing: {str(error)}")
                    self._update_progress(state)
                    continue
                self._fail_execution(state, error, node)
                return ExecutionStatusEnum.FAILED
            if result.status == NodeResultStatus.WAITING:
                return ExecutionStatusEnum.RUNNING

        return self._complete_execution(state)

    def _start(self, state: ExecutionState) -> bool:
        values = {"started_at": utcnow()} if state.started_at is None else {}
        if not self.state_manager.transition(
            state.execution_id, [ExecutionStatusEnum.PENDING], ExecutionStatusEnum.RUNNING, **values
        ):
            return False
        state.status = ExecutionStatusEnum.RUNNING
        self.state_manager.append_log(
            state.execution_id, LogLevelEnum.INFO, LogCategory.EXECUTION, "Execution started",
            {"retryCount": state.retry_count}
        )
        self._broadcast(state.execution_id, "execution_started", {"workflow_id": state.workflow_id})
        logger.info(f"Started execution {state.execution_id} of workflow {state.workflow_id}")
        return True

    @staticmethod
    def _is_settled(node: NodeSnapshot, node_state: NodeState) -> bool:
        return node_state.resolved or (node_state.status == NodeExecutionStatus.FAILED and node.is_optional)

    @staticmethod
    def _loop_body_keys(snapshot) -> Dict[str, str]:
        """Map LOOP body node key to the LOOP node key that drives it."""
        bodies = {}
        for node in snapshot.nodes:
            if node.type == NodeType.LOOP and node.config.get("loopBodyNodeId"):
                bodies[node.config["loopBodyNodeId"]] = node.node_key
        return bodies

    # Edge evaluation

    def _has_live_input(
        self,
        node: NodeSnapshot,
        state: ExecutionState,
        resolver: VariableResolver,
        has_trigger_nodes: bool
    ) -> bool:
        incoming = state.snapshot.incoming(node.node_key)
        if not incoming:
            # Roots only start when no TRIGGER node marks the entry point
            return not has_trigger_nodes
        return any(self._edge_live(connection, state, resolver) for connection in incoming)

    def _edge_live(self, connection: ConnectionSnapshot, state: ExecutionState, resolver: VariableResolver) -> bool:
        source_state = state.nodes.get(connection.source)
        if source_state is None:
            return False
        source = state.snapshot.node(connection.source)
        passed = source_state.status == NodeExecutionStatus.COMPLETED or (
            source_state.status == NodeExecutionStatus.FAILED and source.is_optional
        )
        if not passed:
            return False

        marker = self._branch_marker(connection, source)
        if marker is not None and marker != source_state.branch:
            return False

        conditions = connection.conditions
        if isinstance(conditions, dict):
            on_status = conditions.get("onStatus")
            if on_status:
                allowed = [on_status] if isinstance(on_status, str) else list(on_status)
                if source_state.status.value not in {str(s).upper() for s in allowed}:
                    return False
            if any(key in conditions for key in TREE_KEYS):
                tree = {key: value for key, value in conditions.items() if key not in EDGE_META_KEYS}
                return matches(tree, resolver.lookup)
            return True
        if isinstance(conditions, list) and conditions:
            return matches(conditions, resolver.lookup)
        return True

    @staticmethod
    def _branch_marker(connection: ConnectionSnapshot, source: NodeSnapshot) -> Optional[str]:
        handle = (connection.source_handle or "").strip().lower()
        if handle in ("true", "false"):
            return handle
        if isinstance(connection.conditions, dict) and connection.conditions.get("branch") is not None:
            return str(connection.conditions["branch"]).strip().lower()
        if source.type == NodeType.CONDITION:
            if connection.target in (source.config.get("trueBranch") or []):
                return "true"
            if connection.target in (source.config.get("falseBranch") or []):
                return "false"
        return None

    # Node execution

    def execute_node(self, execution_id: str, node_key: str) -> NodeResult:
        """
        Run one node of an execution.

        A node that is already COMPLETED or SKIPPED returns its stored result
        without invoking the handler, so side effects happen at most once.

        Raises:
            NotFoundError: If the execution or node does not exist
            ValidationError: If the execution is finished
            WorkflowEngineError: The node's failure once retries are exhausted
        """
        with self._get_execution_lock(execution_id):
            state = self.state_manager.load(execution_id)
            node_state = state.nodes.get(node_key)
            if node_state is None:
                raise NotFoundError(
                    f"Node '{node_key}' not found in execution '{execution_id}'",
                    resource_type="node_execution",
                    resource_id=node_key
                )
            if node_state.resolved:
                logger.debug(f"Node {node_key} already {node_state.status.value}, returning stored result")
                return NodeResult(
                    status=NodeResultStatus(node_state.status.value),
                    output=node_state.output,
                    branch=node_state.branch
                )
            if state.status in TERMINAL_EXECUTION_STATUSES:
                raise ValidationError(
                    f"Execution '{execution_id}' is {state.status.value}; its nodes cannot run",
                    field="status"
                )

            resolver = VariableResolver(execution_id, state.trigger_data, state.variables, state.node_outputs())
            result, error = self._run_node(state, state.snapshot.node(node_key), resolver)
            if error is not None:
                raise error
            return result

    def _run_node(
        self,
        state: ExecutionState,
        node: NodeSnapshot,
        resolver: VariableResolver
    ) -> Tuple[Optional[NodeResult], Optional[Exception]]:
        """Invoke a node's handler with retries and record the outcome."""
        with logging_context(node_key=node.node_key):
            return self._attempt_node(state, node, resolver)

    def _attempt_node(
        self,
        state: ExecutionState,
        node: NodeSnapshot,
        resolver: VariableResolver
    ) -> Tuple[Optional[NodeResult], Optional[Exception]]:
        node_state = state.nodes[node.node_key]
        handler = self.handler_registry.get(node.type)
        context = self._handler_context(state, node)
        self._broadcast(state.execution_id, "node_started", {"node_key": node.node_key, "node_type": node.type.value})

        while True:
            self.state_manager.start_node(state.execution_id, node.node_key, {"config": node.config})
            node_state.status = NodeExecutionStatus.RUNNING
            try:
                result = self._call_with_timeout(handler, node, resolver, context)
                break
            except Exception as e:
                recoverable = e.recoverable if isinstance(e, WorkflowEngineError) else True
                if recoverable and node_state.retry_count < node_state.max_retries:
                    node_state.retry_count += 1
                    self.state_manager.record_node_retry(
                        state.execution_id, node.node_key, node_state.retry_count, str(e)
                    )
                    self.state_manager.append_log(
                        state.execution_id, LogLevelEnum.WARN, LogCategory.NODE,
                        f"Node {node.node_key} failed, retrying ({node_state.retry_count}/{node_state.max_retries})",
                        {"error": str(e)}, node_execution_id=node_state.record_id
                    )
                    delay = self.node_retry_base_delay * (2 ** (node_state.retry_count - 1))
                    self._recovery_logger.log_recovery_attempt(
                        node.node_key, e, node_state.retry_count, node_state.max_retries, delay
                    )
                    if delay > 0:
                        time.sleep(delay)
                    continue
                self._record_node_failure(state, node, e)
                return None, e

        self._apply_result(state, node, result, resolver)
        return result, None

    def _handler_context(self, state: ExecutionState, node: NodeSnapshot, iteration: Optional[int] = None) -> HandlerContext:
        def run_body(body_key: str, scope: VariableResolver, index: int) -> NodeResult:
            return self._run_loop_body(state, body_key, scope, index)

        completed: Dict[int, Any] = {}
        record_iteration = None
        node_state = state.nodes.get(node.node_key)
        if node.type == NodeType.LOOP and iteration is None and node_state is not None:
            completed = {int(index): output for index, output in (node_state.checkpoint.get("iterations") or {}).items()}
            checkpoint_lock = threading.Lock()

            def record_iteration(index: int, output: Any) -> None:
                with checkpoint_lock:
                    completed[index] = output
                    node_state.checkpoint = {"iterations": {str(i): value for i, value in completed.items()}}
                    self.state_manager.save_checkpoint(state.execution_id, node.node_key, node_state.checkpoint)

        return HandlerContext(
            execution_id=state.execution_id,
            workflow_id=state.workflow_id,
            organization_id=state.organization_id,
            node=node,
            trigger_data=state.trigger_data,
            now=utcnow(),
            run_node=run_body,
            loop_max_concurrency=self.loop_max_concurrency,
            iteration=iteration,
            completed_iterations=completed,
            record_iteration=record_iteration,
        )

    def _call_with_timeout(self, handler, node: NodeSnapshot, resolver: VariableResolver, context: HandlerContext) -> NodeResult:
        """
        Run the handler on the node pool and wait at most ``node.timeout`` seconds.

        A call that times out keeps running, since a thread cannot be
        interrupted. Its future is kept and the next attempt of the same node
        waits on it again instead of invoking the handler a second time.
        """
        key = (context.execution_id, node.node_key)
        with self._lock_manager:
            future = self._inflight.pop(key, None)
        if future is None:
            future = self._node_executor.submit(handler.execute, node.config, resolver, context)
        else:
            logger.info(f"Node {node.node_key} is still running from an earlier attempt, waiting on it")
        try:
            return future.result(timeout=node.timeout)
        except FuturesTimeoutError:
            if not future.cancel():
                with self._lock_manager:
                    self._inflight[key] = future
            raise ExecutionTimeoutError(
                f"Node '{node.node_key}' timed out after {node.timeout} seconds",
                timeout=node.timeout,
                node_id=node.node_key,
                execution_id=context.execution_id
            )

    def _run_loop_body(self, state: ExecutionState, body_key: str, scope: VariableResolver, index: int) -> NodeResult:
        # Runs on the loop's own thread; the LOOP node's timeout covers all iterations
        try:
            body = state.snapshot.node(body_key)
        except KeyError:
            raise NodeExecutionError(f"LOOP body node '{body_key}' does not exist", execution_id=state.execution_id)
        if body.type in (NodeType.TRIGGER, NodeType.LOOP):
            raise NodeExecutionError(
                f"LOOP body node '{body_key}' cannot be a {body.type.value} node",
                node_id=body_key,
                execution_id=state.execution_id,
                recoverable=False
            )
        handler = self.handler_registry.get(body.type)
        return handler.execute(body.config, scope, self._handler_context(state, body, iteration=index))

    def _apply_result(self, state: ExecutionState, node: NodeSnapshot, result: NodeResult, resolver: VariableResolver) -> None:
        """Merge variable updates and persist the node's outcome."""
        execution_id = state.execution_id
        resolver.merge(result.variable_updates, source=node.node_key)
        self.state_manager.save_variables(execution_id, resolver.pop_changes())

        node_state = state.nodes[node.node_key]
        if result.status == NodeResultStatus.WAITING:
            self.state_manager.finish_node(
                execution_id, node.node_key, NodeExecutionStatus.WAITING,
                output=result.output, branch=result.branch, resume_at=result.resume_at
            )
            node_state.status = NodeExecutionStatus.WAITING
            node_state.resume_at = result.resume_at
            self.state_manager.append_log(
                execution_id, LogLevelEnum.INFO, LogCategory.NODE,
                f"Node {node.node_key} waiting until {result.resume_at.isoformat() if result.resume_at else 'resume'}",
                node_execution_id=node_state.record_id
            )
            self._broadcast(execution_id, "node_waiting", {
                "node_key": node.node_key,
                "resume_at": result.resume_at.isoformat() if result.resume_at else None,
            })
            return

        status = NodeExecutionStatus(result.status.value)
        self._settle(state, node, status, resolver, output=result.output, branch=result.branch)

        if node.type == NodeType.LOOP and node.config.get("loopBodyNodeId") in state.nodes:
            body_key = node.config["loopBodyNodeId"]
            body = state.snapshot.node(body_key)
            iterations = (result.output or {}).get("iterations", 0) if isinstance(result.output, dict) else 0
            if status == NodeExecutionStatus.COMPLETED and iterations:
                self._settle(state, body, NodeExecutionStatus.COMPLETED, resolver, output={
                    "iterations": iterations,
                    "results": result.output.get("results"),
                })
            else:
                self._skip(state, body, resolver, "LOOP ran no iterations")

    def _settle(
        self,
        state: ExecutionState,
        node: NodeSnapshot,
        status: NodeExecutionStatus,
        resolver: VariableResolver,
        output: Any = None,
        branch: Optional[str] = None
    ) -> None:
        self.state_manager.finish_node(state.execution_id, node.node_key, status, output=output, branch=branch)
        node_state = state.nodes[node.node_key]
        node_state.status = status
        node_state.output = output
        node_state.branch = branch
        if status == NodeExecutionStatus.COMPLETED:
            resolver.set_node_output(node.node_key, output)

        self.state_manager.append_log(
            state.execution_id, LogLevelEnum.INFO, LogCategory.NODE,
            f"Node {node.node_key} {status.value.lower()}",
            {"nodeType": node.type.value, "branch": branch},
            node_execution_id=node_state.record_id
        )
        self._broadcast(state.execution_id, "node_completed" if status == NodeExecutionStatus.COMPLETED else "node_skipped", {
            "node_key": node.node_key,
            "status": status.value,
            "branch": branch,
        })
        self._update_progress(state)

    def _skip(self, state: ExecutionState, node: NodeSnapshot, resolver: VariableResolver, reason: str) -> None:
        self._settle(state, node, NodeExecutionStatus.SKIPPED, resolver, output={"skipped": True, "reason": reason})
        if node.type == NodeType.LOOP and node.config.get("loopBodyNodeId") in state.nodes:
            body_key = node.config["loopBodyNodeId"]
            if not state.nodes[body_key].resolved:
                self._skip(state, state.snapshot.node(body_key), resolver, "LOOP was skipped")

    def _record_node_failure(self, state: ExecutionState, node: NodeSnapshot, error: Exception) -> None:
        details = error.to_dict() if isinstance(error, WorkflowEngineError) else {
            "exception_type": type(error).__name__,
            "message": str(error),
        }
        self.state_manager.finish_node(
            state.execution_id, node.node_key, NodeExecutionStatus.FAILED,
            output={"errorDetails": details}, error=str(error)
        )
        node_state = state.nodes[node.node_key]
        node_state.status = NodeExecutionStatus.FAILED
        node_state.error = str(error)
        self.state_manager.append_log(
            state.execution_id, LogLevelEnum.ERROR, LogCategory.NODE,
            f"Node {node.node_key} failed: {str(error)}",
            details, node_execution_id=node_state.record_id
        )
        self._recovery_logger.log_recovery_failure(node.node_key, error, node_state.retry_count + 1)
        self._broadcast(state.execution_id, "node_failed", {"node_key": node.node_key, "error": str(error)})

    def _update_progress(self, state: ExecutionState) -> None:
        total = len(state.snapshot.nodes)
        if not total:
            return
        done = sum(
            1 for node in state.snapshot.nodes
            if node.node_key in state.nodes and self._is_settled(node, state.nodes[node.node_key])
        )
        self.state_manager.update_progress(state.execution_id, done / total * 100)

    # Finishing

    def _complete_execution(self, state: ExecutionState) -> ExecutionStatusEnum:
        if not self.state_manager.finish_execution(state.execution_id, ExecutionStatusEnum.COMPLETED):
            return self.state_manager.get_status(state.execution_id)
        self.state_manager.record_workflow_outcome(state.workflow_id, succeeded=True)
        self.state_manager.append_log(
            state.execution_id, LogLevelEnum.INFO, LogCategory.EXECUTION, "Execution completed"
        )
        self._broadcast(state.execution_id, "execution_completed", {"status": "COMPLETED", "progress": 100.0})
        logger.info(f"Execution {state.execution_id} completed")
        return ExecutionStatusEnum.COMPLETED

    def _fail_execution(self, state: ExecutionState, error: Exception, node: Optional[NodeSnapshot] = None) -> None:
        details = error.to_dict() if isinstance(error, WorkflowEngineError) else {
            "exception_type": type(error).__name__,
            "message": str(error),
        }
        if node is not None:
            details["node_key"] = node.node_key
        message = str(error)
        if not self.state_manager.finish_execution(
            state.execution_id, ExecutionStatusEnum.FAILED, error=message, error_details=details
        ):
            logger.warning(f"Execution {state.execution_id} had already finished when it failed: {message}")
            return
        self.state_manager.cancel_open_nodes(state.execution_id)
        self.state_manager.record_workflow_outcome(state.workflow_id, succeeded=False)
        self.state_manager.append_log(
            state.execution_id, LogLevelEnum.ERROR, LogCategory.EXECUTION, f"Execution failed: {message}", details
        )
        if self.websocket_manager:
            self.websocket_manager.queue_error(state.execution_id, message, details)
        logger.error(f"Execution {state.execution_id} failed: {message}")

    # Operations on existing executions

    def _check_access(self, execution_id: str, context: Optional[RequestContext]) -> ExecutionSummary:
        organization_id = None
        if context is not None:
            context.require()
            organization_id = context.organization_id
        return self.state_manager.get_summary(execution_id, organization_id)

    def cancel_execution(self, execution_id: str, context: Optional[RequestContext] = None) -> ExecutionSummary:
        """
        Cancel a PENDING, RUNNING or PAUSED execution.

        No handler runs as part of cancellation; a walk in progress stops at
        its next node step.

        Raises:
            ValidationError: If the execution is already finished
        """
        summary = self._check_access(execution_id, context)
        if not self.state_manager.transition(
            execution_id, CANCELLABLE_EXECUTION_STATUSES, ExecutionStatusEnum.CANCELLED, completed_at=utcnow()
        ):
            current = self.state_manager.get_status(execution_id)
            raise ValidationError(
                f"Cannot cancel execution '{execution_id}' in status {current.value}",
                field="status"
            )
        cancelled_nodes = self.state_manager.cancel_open_nodes(execution_id)
        self.state_manager.append_log(
            execution_id, LogLevelEnum.INFO, LogCategory.EXECUTION, "Execution cancelled",
            {"previousStatus": summary.status.value, "cancelledNodes": cancelled_nodes}
        )
        self._broadcast(execution_id, "execution_cancelled", {"status": "CANCELLED"})
        logger.info(f"Cancelled execution {execution_id}")
        return self.state_manager.get_summary(execution_id)

    def retry_execution(self, execution_id: str, context: Optional[RequestContext] = None) -> ExecutionSummary:
        """
        Re-run a FAILED execution from its failed nodes.

        Completed nodes keep their results and are not executed again.

        Raises:
            ValidationError: If the execution is not FAILED
            RetryLimitExceededError: If retry_count has reached max_retries
        """
        summary = self._check_access(execution_id, context)
        if summary.status != ExecutionStatusEnum.FAILED:
            raise ValidationError(
                f"Only FAILED executions can be retried; '{execution_id}' is {summary.status.value}",
                field="status"
            )
        if summary.retry_count >= summary.max_retries:
            raise RetryLimitExceededError(
                f"Execution '{execution_id}' has reached its retry limit",
                retry_count=summary.retry_count,
                max_retries=summary.max_retries
            )

        if not self.state_manager.transition(
            execution_id, [ExecutionStatusEnum.FAILED], ExecutionStatusEnum.PENDING,
            retry_count=summary.retry_count + 1,
            progress=0.0,
            error=None,
            error_details=None,
            failed_at=None,
            completed_at=None,
            duration=None,
            scheduled_for=None,
        ):
            raise ValidationError(f"Execution '{execution_id}' changed status before retry", field="status")

        reset = self.state_manager.reset_failed_nodes(execution_id)
        self.state_manager.append_log(
            execution_id, LogLevelEnum.INFO, LogCategory.EXECUTION,
            f"Execution retry {summary.retry_count + 1}/{summary.max_retries}",
            {"resetNodes": reset}
        )
        self._broadcast(execution_id, "execution_retried", {"retry_count": summary.retry_count + 1})
        self._dispatch(execution_id, summary.priority)
        return self.state_manager.get_summary(execution_id)

    def bulk_update(
        self,
        execution_ids: List[str],
        action: BulkAction,
        context: Optional[RequestContext] = None
    ) -> BulkUpdateResult:
        """Apply cancel, pause or resume to each id independently."""
        results = []
        for execution_id in execution_ids:
            try:
                status = self._apply_bulk_action(execution_id, BulkAction(action), context)
                results.append(BulkUpdateItem(execution_id=execution_id, success=True, status=status))
            except WorkflowEngineError as e:
                results.append(BulkUpdateItem(execution_id=execution_id, success=False, error=e.message))
        succeeded = sum(1 for item in results if item.success)
        logger.info(f"Bulk {BulkAction(action).value}: {succeeded} succeeded, {len(results) - succeeded} failed")
        return BulkUpdateResult(action=action, results=results, succeeded=succeeded, failed=len(results) - succeeded)

    def _apply_bulk_action(
        self,
        execution_id: str,
        action: BulkAction,
        context: Optional[RequestContext]
    ) -> ExecutionStatusEnum:
        if action == BulkAction.CANCEL:
            return self.cancel_execution(execution_id, context).status

        self._check_access(execution_id, context)
        if action == BulkAction.PAUSE:
            source, target = ExecutionStatusEnum.RUNNING, ExecutionStatusEnum.PAUSED
        else:
            source, target = ExecutionStatusEnum.PAUSED, ExecutionStatusEnum.RUNNING

        if not self.state_manager.transition(execution_id, [source], target):
            current = self.state_manager.get_status(execution_id)
            raise ValidationError(
                f"Cannot {action.value} execution '{execution_id}' in status {current.value}",
                field="status"
            )
        self.state_manager.append_log(
            execution_id, LogLevelEnum.INFO, LogCategory.EXECUTION, f"Execution {target.value.lower()}"
        )
        self._broadcast(execution_id, f"execution_{target.value.lower()}", {"status": target.value})
        if action == BulkAction.RESUME:
            self._dispatch(execution_id)
        return target

    def recompute_workflow_counters(self, workflow_id: str, context: RequestContext) -> WorkflowView:
        """
        Rebuild a workflow's execution counters from its finished executions.

        The counters are bumped incrementally as executions finish; this
        repairs them after executions are deleted or an update was lost.

        Raises:
            NotFoundError: If the workflow does not exist
            ValidationError: If it belongs to another organization
        """
        context.require()
        self.graph_store.get_workflow(workflow_id, context)
        counters = self.state_manager.recompute_workflow_counters(workflow_id)
        logger.info(f"Recomputed counters for workflow {workflow_id}: {counters}")
        return self.graph_store.get_workflow(workflow_id, context)

    # Queries

    def get_execution(self, execution_id: str, context: Optional[RequestContext] = None) -> ExecutionDetail:
        organization_id = None
        if context is not None:
            context.require()
            organization_id = context.organization_id
        return self.state_manager.get_detail(execution_id, organization_id)

    def list_executions(
        self,
        context: RequestContext,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatusEnum] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[ExecutionSummary]:
        context.require()
        if workflow_id is not None:
            self.graph_store.get_workflow(workflow_id, context)
        return self.state_manager.list_executions(
            organization_id=context.organization_id,
            workflow_id=workflow_id,
            status=status,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )

    def get_execution_logs(
        self,
        execution_id: str,
        level: Optional[LogLevelEnum] = None,
        context: Optional[RequestContext] = None
    ) -> List[ExecutionLogView]:
        organization_id = None
        if context is not None:
            context.require()
            organization_id = context.organization_id
        return self.state_manager.list_logs(execution_id, level, organization_id)

    def delete_execution(self, execution_id: str, context: Optional[RequestContext] = None) -> bool:
        organization_id = None
        if context is not None:
            context.require()
            organization_id = context.organization_id
        deleted = self.state_manager.delete_execution(execution_id, organization_id)
        self._cleanup_execution_lock(execution_id)
        self._forget_inflight(execution_id)
        return deleted

    # Wake-up

    def resume_due_executions(self, now: Optional[datetime] = None) -> List[str]:
        """Complete WAITING nodes whose resume time has passed and re-dispatch their executions."""
        now = now or utcnow()
        resumed = []
        for execution_id in self.state_manager.find_due_waits(now):
            with self._get_execution_lock(execution_id):
                node_keys = self.state_manager.complete_due_waits(execution_id, now)
            if not node_keys:
                continue
            self.state_manager.append_log(
                execution_id, LogLevelEnum.INFO, LogCategory.NODE,
                f"Resumed waiting nodes: {', '.join(node_keys)}"
            )
            self._broadcast(execution_id, "execution_resumed", {"node_keys": node_keys})
            resumed.append(execution_id)
            self._dispatch(execution_id)
        return resumed

    def start_due_executions(self, now: Optional[datetime] = None) -> List[str]:
        """Start delayed PENDING executions whose scheduled time has passed."""
        now = now or utcnow()
        started = []
        for execution_id in self.state_manager.find_due_pending(now):
            state = self.state_manager.load(execution_id)
            with self._get_execution_lock(execution_id):
                if not self._start(state):
                    continue
            started.append(execution_id)
            self._dispatch(execution_id)
        return started

    def recover_executions(self) -> List[str]:
        """Re-dispatch executions interrupted by a restart."""
        running = self.state_manager.find_running_not_waiting()
        pending = self.state_manager.find_due_pending(utcnow(), include_unscheduled=True)
        recovered = running + [execution_id for execution_id in pending if execution_id not in running]
        for execution_id in recovered:
            self._dispatch(execution_id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} executions")
        return recovered

    # Monitoring

    def _broadcast(self, execution_id: str, event_type: str, data: Dict[str, Any]) -> None:
        if self.websocket_manager:
            self.websocket_manager.queue_execution_event(execution_id, event_type, data)

    def get_active_executions(self) -> List[str]:
        with self._active_lock:
            return [execution_id for execution_id, future in self._active_executions.items() if not future.done()]

    def get_execution_queue_status(self) -> Dict[str, Any]:
        return {
            "queue_size": self._execution_queue.qsize(),
            "max_queue_size": self._execution_queue.maxsize,
            "active_executions": len(self.get_active_executions()),
            "max_concurrent_executions": self._max_concurrent_executions,
            "queue_processor_running": self._queue_processor_running,
            "execution_locks": len(self._execution_locks),
        }
