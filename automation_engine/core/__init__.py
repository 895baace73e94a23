"""Core automation engine components."""

from .exceptions import (
    WorkflowEngineError,
    ValidationError,
    VariableNotFoundError,
    NotFoundError,
    ConflictError,
    ForbiddenError,
    NodeExecutionError,
    ExecutionTimeoutError,
    DeliveryError,
    RetryLimitExceededError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "ValidationError",
    "VariableNotFoundError",
    "NotFoundError",
    "ConflictError",
    "ForbiddenError",
    "NodeExecutionError",
    "ExecutionTimeoutError",
    "DeliveryError",
    "RetryLimitExceededError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
