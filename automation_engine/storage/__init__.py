"""Database models and storage layer."""

from .database import Base, session_scope, create_tables, drop_tables, configure_database
from .models import (
    WorkflowModel,
    WorkflowNodeModel,
    WorkflowConnectionModel,
    WorkflowTriggerModel,
    WorkflowExecutionModel,
    NodeExecutionModel,
    ExecutionVariableModel,
    ExecutionLogModel,
    WorkflowAnalyticsModel,
)

__all__ = [
    "Base",
    "session_scope",
    "create_tables",
    "drop_tables",
    "configure_database",
    "WorkflowModel",
    "WorkflowNodeModel",
    "WorkflowConnectionModel",
    "WorkflowTriggerModel",
    "WorkflowExecutionModel",
    "NodeExecutionModel",
    "ExecutionVariableModel",
    "ExecutionLogModel",
    "WorkflowAnalyticsModel",
]
