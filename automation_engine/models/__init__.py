"""Data models for the automation engine."""

from .core import (
    WorkflowStatus,
    NodeType,
    TriggerType,
    ExecutionStatusEnum,
    NodeExecutionStatus,
    ValidationResult,
    NodeSnapshot,
    ConnectionSnapshot,
    GraphSnapshot,
    DomainEvent,
)

__all__ = [
    "WorkflowStatus",
    "NodeType",
    "TriggerType",
    "ExecutionStatusEnum",
    "NodeExecutionStatus",
    "ValidationResult",
    "NodeSnapshot",
    "ConnectionSnapshot",
    "GraphSnapshot",
    "DomainEvent",
]
