"""Graph Store for workflow, node, connection and trigger definitions."""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, ContextManager, Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import (
    ConnectionInput,
    ConnectionSnapshot,
    ConnectionView,
    GraphSnapshot,
    NodeInput,
    NodeSnapshot,
    NodeType,
    NodeUpdate,
    NodeView,
    TriggerInput,
    TriggerType,
    TriggerView,
    ValidationResult,
    WorkflowCreate,
    WorkflowStatus,
    WorkflowUpdate,
    WorkflowView,
)
from ..storage import database
from ..storage.models import (
    WorkflowConnectionModel,
    WorkflowModel,
    WorkflowNodeModel,
    WorkflowTriggerModel,
)
from .exceptions import (
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
    WorkflowEngineError,
)
from .logging import get_logger
from .node_config import normalize_node_config, validate_node_config
from .permissions import RequestContext
from .scheduler import next_cron_run

logger = get_logger(__name__)

SOURCE_KEY_READERS = (NodeType.FILTER, NodeType.LOOP)


def _new_id() -> str:
    return str(uuid.uuid4())


def node_view(node: WorkflowNodeModel) -> NodeView:
    return NodeView.model_validate(node)


def connection_view(connection: WorkflowConnectionModel) -> ConnectionView:
    return ConnectionView(
        id=connection.id,
        workflow_id=connection.workflow_id,
        edge_id=connection.edge_id,
        source_node_id=connection.source_node.node_id,
        target_node_id=connection.target_node.node_id,
        source_handle=connection.source_handle,
        target_handle=connection.target_handle,
        label=connection.label,
        conditions=connection.conditions,
        style=connection.style,
        animated=connection.animated,
        execution_order=connection.execution_order,
    )


def validate_graph_snapshot(
    snapshot: GraphSnapshot,
    declared_variables: Optional[Iterable[str]] = None
) -> ValidationResult:
    """
    Validate a workflow graph for structural and configuration correctness.

    Args:
        snapshot: Nodes and connections keyed by node key
        declared_variables: Variable names supplied at trigger time

    Returns:
        ValidationResult: Errors block execution; warnings are advisory
    """
    structure = snapshot.validate_structure()
    errors = list(structure.errors)
    warnings = list(structure.warnings)
    keys = {node.node_key for node in snapshot.nodes}

    for node in snapshot.nodes:
        result = validate_node_config(node.type, node.config)
        errors.extend(f"Node '{node.node_key}' ({node.type.value}): {error}" for error in result.errors)

    for connection in snapshot.connections:
        if connection.target in keys and snapshot.node(connection.target).type == NodeType.TRIGGER:
            errors.append(f"Connection {connection.edge_id} targets TRIGGER node '{connection.target}'")

    for node in snapshot.nodes:
        config = node.config or {}
        if node.type == NodeType.LOOP and config.get("loopBodyNodeId"):
            if config["loopBodyNodeId"] not in keys:
                errors.append(f"LOOP node '{node.node_key}' references unknown body node '{config['loopBodyNodeId']}'")
        if node.type == NodeType.CONDITION:
            for branch in ("trueBranch", "falseBranch"):
                targets = config.get(branch) or []
                if isinstance(targets, str):
                    targets = [targets]
                for target in targets:
                    if target not in keys:
                        errors.append(f"CONDITION node '{node.node_key}' {branch} references unknown node '{target}'")

    if not errors:
        warnings.extend(_source_key_warnings(snapshot, set(declared_variables or [])))

    if snapshot.nodes and not any(node.type == NodeType.TRIGGER for node in snapshot.nodes):
        warnings.append("Workflow has no TRIGGER node; root nodes start the execution")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _source_key_warnings(snapshot: GraphSnapshot, declared: Set[str]) -> List[str]:
    """Report FILTER and LOOP sourceKeys that nothing upstream produces."""
    parents: Dict[str, Set[str]] = {node.node_key: set() for node in snapshot.nodes}
    for connection in snapshot.connections:
        parents.setdefault(connection.target, set()).add(connection.source)

    def ancestors(key: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(parents.get(key, ()))
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(parents.get(current, ()))
        return seen

    warnings = []
    for node in snapshot.nodes:
        if node.type not in SOURCE_KEY_READERS:
            continue
        source_key = (node.config or {}).get("sourceKey")
        if not source_key:
            continue
        root = source_key.split(".")[0]
        produced = set()
        for ancestor in ancestors(node.node_key):
            config = snapshot.node(ancestor).config or {}
            produced.update(k for k in (config.get("resultKey"), config.get("fallbackKey")) if k)
        if root not in produced and root not in declared:
            warnings.append(
                f"{node.type.value} node '{node.node_key}' reads sourceKey '{source_key}' "
                "which no upstream node produces"
            )
    return warnings


class GraphStore:
    """Manages workflow definitions and their node graphs."""

    def __init__(self, session_factory: Optional[Callable[[], ContextManager[Session]]] = None):
        """Initialize GraphStore with an optional transactional session factory."""
        self._session_factory = session_factory

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
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation)

    def _load_workflow(self, db: Session, workflow_id: str, context: Optional[RequestContext]) -> WorkflowModel:
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

    def _load_node(self, db: Session, workflow_id: str, node_key: str) -> WorkflowNodeModel:
        node = db.query(WorkflowNodeModel).filter(
            WorkflowNodeModel.workflow_id == workflow_id,
            WorkflowNodeModel.node_id == node_key
        ).first()
        if not node:
            raise NotFoundError(f"Node '{node_key}' not found in workflow '{workflow_id}'", resource_type="node", resource_id=node_key)
        return node

    @staticmethod
    def _normalized_config(node_key: str, node_type: NodeType, config: Optional[dict]) -> dict:
        """Validate a node config and return it trimmed and defaulted for storage."""
        try:
            return normalize_node_config(node_type, config)
        except ValidationError as e:
            raise ValidationError(
                f"Invalid config for node '{node_key}': {'; '.join(e.validation_errors)}",
                validation_errors=e.validation_errors,
                field="config"
            )

    def _node_values(self, data: NodeInput) -> dict:
        values = data.model_dump(mode="json")
        values["config"] = self._normalized_config(data.node_id, data.type, data.config)
        return values

    @staticmethod
    def _touch(workflow: WorkflowModel):
        workflow.version = (workflow.version or 1) + 1
        workflow.updated_at = datetime.utcnow()

    # Workflows

    def create_workflow(self, data: WorkflowCreate, context: RequestContext) -> WorkflowView:
        """
        Create a workflow owned by the caller's organization.

        Args:
            data: Workflow name, description and initial status
            context: Caller identity and permission capability

        Returns:
            WorkflowView: The stored workflow

        Raises:
            ForbiddenError: If the caller lacks permission
            StorageError: If storage operation fails
        """
        context.require()
        logger.info(f"Creating workflow '{data.name}' for organization {context.organization_id}")
        with self._session("create workflow") as db:
            workflow = WorkflowModel(
                id=_new_id(),
                organization_id=context.organization_id,
                name=data.name,
                description=data.description,
                status=data.status.value,
                version=1,
                total_executions=0,
                successful_executions=0,
                failed_executions=0,
                created_at=datetime.utcnow(),
            )
            db.add(workflow)
            db.flush()
            return WorkflowView.model_validate(workflow)

    def get_workflow(self, workflow_id: str, context: Optional[RequestContext] = None) -> WorkflowView:
        with self._session("get workflow") as db:
            return WorkflowView.model_validate(self._load_workflow(db, workflow_id, context))

    def list_workflows(self, context: RequestContext, status: Optional[WorkflowStatus] = None) -> List[WorkflowView]:
        context.require()
        with self._session("list workflows") as db:
            query = db.query(WorkflowModel).filter(WorkflowModel.organization_id == context.organization_id)
            if status:
                query = query.filter(WorkflowModel.status == WorkflowStatus(status).value)
            return [WorkflowView.model_validate(w) for w in query.order_by(WorkflowModel.created_at.desc()).all()]

    def update_workflow(self, workflow_id: str, data: WorkflowUpdate, context: RequestContext) -> WorkflowView:
        with self._session("update workflow") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            if data.name is not None:
                workflow.name = data.name
            if data.description is not None:
                workflow.description = data.description
            if data.status is not None:
                workflow.status = data.status.value
            self._touch(workflow)
            db.flush()
            logger.info(f"Updated workflow {workflow_id} to version {workflow.version}")
            return WorkflowView.model_validate(workflow)

    def delete_workflow(self, workflow_id: str, context: RequestContext) -> bool:
        with self._session("delete workflow") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            db.delete(workflow)
            logger.info(f"Deleted workflow {workflow_id}")
            return True

    # Nodes

    def list_nodes(self, workflow_id: str, context: Optional[RequestContext] = None) -> List[NodeView]:
        with self._session("list nodes") as db:
            self._load_workflow(db, workflow_id, context)
            nodes = db.query(WorkflowNodeModel).filter(
                WorkflowNodeModel.workflow_id == workflow_id
            ).order_by(WorkflowNodeModel.execution_order, WorkflowNodeModel.node_id).all()
            return [node_view(node) for node in nodes]

    def add_node(self, workflow_id: str, data: NodeInput, context: RequestContext) -> NodeView:
        """
        Add a node to a workflow.

        Raises:
            ConflictError: If the node key already exists in the workflow
            ValidationError: If the node config is invalid
        """
        values = self._node_values(data)
        with self._session("add node") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            existing = db.query(WorkflowNodeModel).filter(
                WorkflowNodeModel.workflow_id == workflow_id,
                WorkflowNodeModel.node_id == data.node_id
            ).first()
            if existing:
                raise ConflictError(f"Node '{data.node_id}' already exists in workflow '{workflow_id}'", key=data.node_id)
            node = WorkflowNodeModel(id=_new_id(), workflow_id=workflow_id, **values)
            db.add(node)
            self._touch(workflow)
            db.flush()
            logger.info(f"Added {data.type.value} node '{data.node_id}' to workflow {workflow_id}")
            return node_view(node)

    def update_node(self, workflow_id: str, node_key: str, data: NodeUpdate, context: RequestContext) -> NodeView:
        with self._session("update node") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            node = self._load_node(db, workflow_id, node_key)
            changes = data.model_dump(mode="json", exclude_unset=True)
            if "config" in changes:
                changes["config"] = self._normalized_config(node_key, NodeType(node.type), changes["config"])
            for field_name, value in changes.items():
                setattr(node, field_name, value)
            self._touch(workflow)
            db.flush()
            return node_view(node)

    def delete_node(self, workflow_id: str, node_key: str, context: RequestContext) -> bool:
        """Delete a node and every connection touching it."""
        with self._session("delete node") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            node = self._load_node(db, workflow_id, node_key)
            db.query(WorkflowConnectionModel).filter(
                WorkflowConnectionModel.workflow_id == workflow_id,
                (WorkflowConnectionModel.source_node_id == node.id) | (WorkflowConnectionModel.target_node_id == node.id)
            ).delete(synchronize_session=False)
            db.delete(node)
            self._touch(workflow)
            logger.info(f"Deleted node '{node_key}' from workflow {workflow_id}")
            return True

    def sync_nodes(self, workflow_id: str, nodes: List[NodeInput], context: RequestContext) -> List[NodeView]:
        """
        Replace a workflow's nodes, matched by node key, in one transaction.

        Nodes absent from the input are deleted together with their
        connections; the rest are updated in place or inserted.

        Args:
            workflow_id: Workflow to sync
            nodes: The complete desired node set
            context: Caller identity and permission capability

        Returns:
            List[NodeView]: The workflow's nodes after the sync

        Raises:
            ConflictError: If the input repeats a node key
            ValidationError: If any node config is invalid
        """
        seen: Set[str] = set()
        desired: Dict[str, dict] = {}
        for data in nodes:
            if data.node_id in seen:
                raise ConflictError(f"Duplicate node key '{data.node_id}' in sync payload", key=data.node_id)
            seen.add(data.node_id)
            desired[data.node_id] = self._node_values(data)

        with self._session("sync nodes") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            existing = {
                node.node_id: node
                for node in db.query(WorkflowNodeModel).filter(WorkflowNodeModel.workflow_id == workflow_id).all()
            }

            removed = [node for key, node in existing.items() if key not in seen]
            if removed:
                removed_ids = [node.id for node in removed]
                db.query(WorkflowConnectionModel).filter(
                    WorkflowConnectionModel.workflow_id == workflow_id,
                    WorkflowConnectionModel.source_node_id.in_(removed_ids)
                    | WorkflowConnectionModel.target_node_id.in_(removed_ids)
                ).delete(synchronize_session=False)
                for node in removed:
                    db.delete(node)

            for data in nodes:
                values = desired[data.node_id]
                node = existing.get(data.node_id)
                if node is None:
                    db.add(WorkflowNodeModel(id=_new_id(), workflow_id=workflow_id, **values))
                else:
                    for field_name, value in values.items():
                        setattr(node, field_name, value)

            self._touch(workflow)
            db.flush()
            logger.info(
                f"Synced workflow {workflow_id} nodes: {len(nodes)} kept, {len(removed)} removed"
            )
            synced = db.query(WorkflowNodeModel).filter(
                WorkflowNodeModel.workflow_id == workflow_id
            ).order_by(WorkflowNodeModel.execution_order, WorkflowNodeModel.node_id).all()
            return [node_view(node) for node in synced]

    # Connections

    def _node_ids_by_key(self, db: Session, workflow_id: str) -> Dict[str, WorkflowNodeModel]:
        return {
            node.node_id: node
            for node in db.query(WorkflowNodeModel).filter(WorkflowNodeModel.workflow_id == workflow_id).all()
        }

    @staticmethod
    def _resolve_endpoints(data: ConnectionInput, nodes: Dict[str, WorkflowNodeModel]):
        source = nodes.get(data.source_node_id)
        target = nodes.get(data.target_node_id)
        if source is None:
            raise NotFoundError(
                f"Connection '{data.edge_id}' references unknown source node '{data.source_node_id}'",
                resource_type="node", resource_id=data.source_node_id
            )
        if target is None:
            raise NotFoundError(
                f"Connection '{data.edge_id}' references unknown target node '{data.target_node_id}'",
                resource_type="node", resource_id=data.target_node_id
            )
        if target.type == NodeType.TRIGGER.value:
            raise ValidationError(
                f"Connection '{data.edge_id}' cannot target TRIGGER node '{data.target_node_id}'",
                field="target_node_id"
            )
        return source, target

    @staticmethod
    def _connection_values(data: ConnectionInput, source: WorkflowNodeModel, target: WorkflowNodeModel) -> dict:
        values = data.model_dump(mode="json", exclude={"source_node_id", "target_node_id"})
        values["source_node_id"] = source.id
        values["target_node_id"] = target.id
        return values

    def list_connections(self, workflow_id: str, context: Optional[RequestContext] = None) -> List[ConnectionView]:
        with self._session("list connections") as db:
            self._load_workflow(db, workflow_id, context)
            connections = db.query(WorkflowConnectionModel).filter(
                WorkflowConnectionModel.workflow_id == workflow_id
            ).order_by(WorkflowConnectionModel.execution_order, WorkflowConnectionModel.edge_id).all()
            return [connection_view(c) for c in connections]

    def add_connection(self, workflow_id: str, data: ConnectionInput, context: RequestContext) -> ConnectionView:
        """
        Connect two nodes of a workflow.

        Raises:
            NotFoundError: If either endpoint node key is unknown
            ConflictError: If the edge key already exists
            ValidationError: If the edge targets a TRIGGER node
        """
        with self._session("add connection") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            nodes = self._node_ids_by_key(db, workflow_id)
            source, target = self._resolve_endpoints(data, nodes)
            existing = db.query(WorkflowConnectionModel).filter(
                WorkflowConnectionModel.workflow_id == workflow_id,
                WorkflowConnectionModel.edge_id == data.edge_id
            ).first()
            if existing:
                raise ConflictError(f"Connection '{data.edge_id}' already exists in workflow '{workflow_id}'", key=data.edge_id)
            connection = WorkflowConnectionModel(
                id=_new_id(), workflow_id=workflow_id, **self._connection_values(data, source, target)
            )
            db.add(connection)
            self._touch(workflow)
            db.flush()
            db.refresh(connection)
            return connection_view(connection)

    def delete_connection(self, workflow_id: str, edge_id: str, context: RequestContext) -> bool:
        with self._session("delete connection") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            connection = db.query(WorkflowConnectionModel).filter(
                WorkflowConnectionModel.workflow_id == workflow_id,
                WorkflowConnectionModel.edge_id == edge_id
            ).first()
            if not connection:
                raise NotFoundError(f"Connection '{edge_id}' not found", resource_type="connection", resource_id=edge_id)
            db.delete(connection)
            self._touch(workflow)
            return True

    def sync_connections(self, workflow_id: str, connections: List[ConnectionInput], context: RequestContext) -> List[ConnectionView]:
        """
        Replace a workflow's connections, matched by edge key, in one transaction.

        Raises:
            ConflictError: If the input repeats an edge key
            NotFoundError: If a connection references an unknown node key
            ValidationError: If a connection targets a TRIGGER node
        """
        seen: Set[str] = set()
        for data in connections:
            if data.edge_id in seen:
                raise ConflictError(f"Duplicate edge key '{data.edge_id}' in sync payload", key=data.edge_id)
            seen.add(data.edge_id)

        with self._session("sync connections") as db:
            workflow = self._load_workflow(db, workflow_id, context)
            nodes = self._node_ids_by_key(db, workflow_id)
            resolved = [(data, *self._resolve_endpoints(data, nodes)) for data in connections]

            existing = {
                c.edge_id: c
                for c in db.query(WorkflowConnectionModel).filter(WorkflowConnectionModel.workflow_id == workflow_id).all()
            }
            removed = [c for key, c in existing.items() if key not in seen]
            for connection in removed:
                db.delete(connection)

            for data, source, target in resolved:
                values = self._connection_values(data, source, target)
                connection = existing.get(data.edge_id)
                if connection is None:
                    db.add(WorkflowConnectionModel(id=_new_id(), workflow_id=workflow_id, **values))
                else:
                    for field_name, value in values.items():
                        setattr(connection, field_name, value)

            self._touch(workflow)
            db.flush()
            logger.info(
                f"Synced workflow {workflow_id} connections: {len(connections)} kept, {len(removed)} removed"
            )
            synced = db.query(WorkflowConnectionModel).filter(
                WorkflowConnectionModel.workflow_id == workflow_id
            ).order_by(WorkflowConnectionModel.execution_order, WorkflowConnectionModel.edge_id).all()
            return [connection_view(c) for c in synced]

    # Triggers

    @staticmethod
    def _apply_trigger(trigger: WorkflowTriggerModel, data: TriggerInput):
        for field_name, value in data.model_dump(mode="json").items():
            setattr(trigger, field_name, value)
        if data.type == TriggerType.SCHEDULE and data.cron:
            try:
                trigger.next_run_at = next_cron_run(data.cron, data.timezone, datetime.utcnow())
            except ValueError as e:
                raise ValidationError(str(e), field="cron")
        else:
            trigger.next_run_at = None

    def list_triggers(self, workflow_id: str, context: Optional[RequestContext] = None) -> List[TriggerView]:
        with self._session("list triggers") as db:
            self._load_workflow(db, workflow_id, context)
            triggers = db.query(WorkflowTriggerModel).filter(WorkflowTriggerModel.workflow_id == workflow_id).all()
            return [TriggerView.model_validate(t) for t in triggers]

    def add_trigger(self, workflow_id: str, data: TriggerInput, context: RequestContext) -> TriggerView:
        with self._session("add trigger") as db:
            self._load_workflow(db, workflow_id, context)
            trigger = WorkflowTriggerModel(id=_new_id(), workflow_id=workflow_id, trigger_count=0)
            self._apply_trigger(trigger, data)
            db.add(trigger)
            db.flush()
            logger.info(f"Added {data.type.value} trigger '{data.name}' to workflow {workflow_id}")
            return TriggerView.model_validate(trigger)

    def update_trigger(self, workflow_id: str, trigger_id: str, data: TriggerInput, context: RequestContext) -> TriggerView:
        with self._session("update trigger") as db:
            self._load_workflow(db, workflow_id, context)
            trigger = self._load_trigger(db, workflow_id, trigger_id)
            self._apply_trigger(trigger, data)
            db.flush()
            return TriggerView.model_validate(trigger)

    def delete_trigger(self, workflow_id: str, trigger_id: str, context: RequestContext) -> bool:
        with self._session("delete trigger") as db:
            self._load_workflow(db, workflow_id, context)
            db.delete(self._load_trigger(db, workflow_id, trigger_id))
            return True

    @staticmethod
    def _load_trigger(db: Session, workflow_id: str, trigger_id: str) -> WorkflowTriggerModel:
        trigger = db.query(WorkflowTriggerModel).filter(
            WorkflowTriggerModel.workflow_id == workflow_id,
            WorkflowTriggerModel.id == trigger_id
        ).first()
        if not trigger:
            raise NotFoundError(f"Trigger '{trigger_id}' not found", resource_type="trigger", resource_id=trigger_id)
        return trigger

    # Graph

    def snapshot(self, workflow_id: str, db: Optional[Session] = None) -> GraphSnapshot:
        """Copy a workflow's nodes and connections, keyed by node key."""
        if db is None:
            with self._session("snapshot workflow") as session:
                return self.snapshot(workflow_id, session)

        nodes = db.query(WorkflowNodeModel).filter(WorkflowNodeModel.workflow_id == workflow_id).all()
        by_id = {node.id: node for node in nodes}
        connections = db.query(WorkflowConnectionModel).filter(
            WorkflowConnectionModel.workflow_id == workflow_id
        ).all()
        return GraphSnapshot(
            nodes=[
                NodeSnapshot(
                    id=node.id,
                    node_key=node.node_id,
                    type=NodeType(node.type),
                    name=node.name,
                    config=node.config or {},
                    template=node.template,
                    execution_order=node.execution_order or 0,
                    is_optional=bool(node.is_optional),
                    retry_limit=node.retry_limit or 0,
                    timeout=node.timeout or 300,
                )
                for node in nodes
            ],
            connections=[
                ConnectionSnapshot(
                    edge_id=c.edge_id,
                    source=by_id[c.source_node_id].node_id,
                    target=by_id[c.target_node_id].node_id,
                    source_handle=c.source_handle,
                    target_handle=c.target_handle,
                    conditions=c.conditions,
                    execution_order=c.execution_order or 1,
                )
                for c in connections
                if c.source_node_id in by_id and c.target_node_id in by_id
            ],
        )

    def validate_workflow(
        self,
        workflow_id: str,
        context: Optional[RequestContext] = None,
        declared_variables: Optional[Iterable[str]] = None
    ) -> ValidationResult:
        """
        Validate a stored workflow graph.

        Args:
            workflow_id: Workflow to validate
            context: Caller identity; when given, ownership is enforced
            declared_variables: Variable names the caller will supply

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        with self._session("validate workflow") as db:
            self._load_workflow(db, workflow_id, context)
            snapshot = self.snapshot(workflow_id, db)
        result = validate_graph_snapshot(snapshot, declared_variables)
        logger.debug(
            f"Workflow {workflow_id} validation completed. Valid: {result.is_valid}, "
            f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}"
        )
        return result
