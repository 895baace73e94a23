"""SQLAlchemy database models for the automation engine."""

from datetime import datetime
from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """A workflow definition owned by an organization."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(String, nullable=False, default="DRAFT")  # DRAFT, ACTIVE, INACTIVE, ARCHIVED
    version = Column(Integer, nullable=False, default=1)
    total_executions = Column(Integer, nullable=False, default=0)
    successful_executions = Column(Integer, nullable=False, default=0)
    failed_executions = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    nodes = relationship("WorkflowNodeModel", back_populates="workflow", cascade="all, delete-orphan")
    connections = relationship("WorkflowConnectionModel", back_populates="workflow", cascade="all, delete-orphan")
    triggers = relationship("WorkflowTriggerModel", back_populates="workflow", cascade="all, delete-orphan")
    executions = relationship("WorkflowExecutionModel", back_populates="workflow", cascade="all, delete-orphan")


class WorkflowNodeModel(Base):
    """A node on the workflow canvas, keyed externally by node_id."""
    __tablename__ = "workflow_nodes"
    __table_args__ = (UniqueConstraint("workflow_id", "node_id", name="uq_workflow_node_key"),)

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)  # React Flow node id
    type = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    position = Column(JSON)
    config = Column(JSON)
    template = Column(JSON)
    execution_order = Column(Integer, nullable=False, default=0)
    is_optional = Column(Boolean, nullable=False, default=False)
    retry_limit = Column(Integer, nullable=False, default=3)
    timeout = Column(Integer, nullable=False, default=300)  # seconds
    conditions = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="nodes")


class WorkflowConnectionModel(Base):
    """A directed edge between two nodes of the same workflow."""
    __tablename__ = "workflow_connections"
    __table_args__ = (UniqueConstraint("workflow_id", "edge_id", name="uq_workflow_edge_key"),)

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    edge_id = Column(String, nullable=False)
    source_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False)
    target_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False)
    source_handle = Column(String)
    target_handle = Column(String)
    label = Column(String)
    conditions = Column(JSON)
    style = Column(JSON)
    animated = Column(Boolean, nullable=False, default=False)
    execution_order = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="connections")
    source_node = relationship("WorkflowNodeModel", foreign_keys=[source_node_id])
    target_node = relationship("WorkflowNodeModel", foreign_keys=[target_node_id])


class WorkflowTriggerModel(Base):
    """Binds a workflow to a domain event class or a schedule."""
    __tablename__ = "workflow_triggers"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="EVENT")  # EVENT, SCHEDULE, MANUAL, WEBHOOK
    module = Column(String)
    event_type = Column(String)
    entity_type = Column(String)
    conditions = Column(JSON)
    delay = Column(Integer, nullable=False, default=0)  # milliseconds
    is_active = Column(Boolean, nullable=False, default=True)
    cron = Column(String)
    timezone = Column(String, nullable=False, default="UTC")
    next_run_at = Column(DateTime)
    last_triggered = Column(DateTime)
    trigger_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="triggers")


class WorkflowExecutionModel(Base):
    """One run of a workflow, with the node graph it was started against."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)  # exec_<epoch-ms>_<random>
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    trigger_id = Column(String, ForeignKey("workflow_triggers.id", ondelete="SET NULL"))
    organization_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="PENDING")
    priority = Column(Integer, nullable=False, default=0)
    trigger_data = Column(JSON)
    graph_snapshot = Column(JSON, nullable=False)
    progress = Column(Float, nullable=False, default=0.0)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    duration = Column(Integer)  # milliseconds
    error = Column(Text)
    error_details = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    scheduled_for = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    failed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowModel", back_populates="executions")
    node_executions = relationship(
        "NodeExecutionModel", back_populates="execution",
        cascade="all, delete-orphan", order_by="NodeExecutionModel.execution_order"
    )
    variables = relationship("ExecutionVariableModel", back_populates="execution", cascade="all, delete-orphan")
    logs = relationship(
        "ExecutionLogModel", back_populates="execution",
        cascade="all, delete-orphan", order_by="ExecutionLogModel.id"
    )


class NodeExecutionModel(Base):
    """Execution record of a single node within one execution."""
    __tablename__ = "node_executions"
    __table_args__ = (
        UniqueConstraint("workflow_execution_id", "node_key", name="uq_node_execution"),
    )

    id = Column(String, primary_key=True)
    workflow_execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False, index=True)
    node_id = Column(String, ForeignKey("workflow_nodes.id", ondelete="SET NULL"))
    node_key = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    execution_order = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="PENDING")
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=0)
    duration = Column(Integer)  # milliseconds
    input = Column(JSON)
    output = Column(JSON)
    error = Column(Text)
    branch = Column(String)  # "true" / "false" outcome of CONDITION, FILTER and QUERY nodes
    checkpoint = Column(JSON)  # LOOP: outputs of finished iterations by index, kept across retries
    resume_at = Column(DateTime)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    execution = relationship("WorkflowExecutionModel", back_populates="node_executions")


class ExecutionVariableModel(Base):
    """A typed value scoped to one execution."""
    __tablename__ = "execution_variables"
    __table_args__ = (
        UniqueConstraint("workflow_execution_id", "name", name="uq_execution_variable"),
    )

    id = Column(String, primary_key=True)
    workflow_execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    value = Column(JSON)
    data_type = Column(String, nullable=False)
    source = Column(String)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    execution = relationship("WorkflowExecutionModel", back_populates="variables")


class ExecutionLogModel(Base):
    """Append-only log line of an execution."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False)
    node_execution_id = Column(String)
    level = Column(String, nullable=False)  # DEBUG, INFO, WARN, ERROR
    category = Column(String, nullable=False)  # EXECUTION, NODE, TRIGGER, VARIABLE, SYSTEM
    message = Column(Text, nullable=False)
    details = Column(JSON)
    timestamp = Column(DateTime, default=datetime.utcnow)

    execution = relationship("WorkflowExecutionModel", back_populates="logs")


class WorkflowAnalyticsModel(Base):
    """Persisted analytics rollup for one workflow and period."""
    __tablename__ = "workflow_analytics"
    __table_args__ = (
        UniqueConstraint("workflow_id", "period_start", "granularity", name="uq_workflow_analytics_period"),
        Index("idx_workflow_analytics_lookup", "workflow_id", "granularity", "period_start"),
    )

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    organization_id = Column(String, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    granularity = Column(String, nullable=False)  # DAILY, WEEKLY, MONTHLY
    total_executions = Column(Integer, nullable=False, default=0)
    successful_executions = Column(Integer, nullable=False, default=0)
    failed_executions = Column(Integer, nullable=False, default=0)
    avg_execution_time = Column(Float)
    min_execution_time = Column(Integer)
    max_execution_time = Column(Integer)
    p95_execution_time = Column(Integer)
    error_rate = Column(Float, nullable=False, default=0.0)
    common_errors = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
