"""Exception hierarchy for the automation engine.

Each error class declares, as class attributes, the HTTP status the API
maps it to, its severity and category, whether the operation may be
retried, and which keyword arguments it accepts. Keywords listed in
``context_fields`` describe *where* the error happened (node, execution,
resource); ``detail_fields`` describe *what* happened (limits, counts,
timings). Both end up in the error body.
"""

import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    SECURITY = "security"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    status_code: int = 500
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    category: ErrorCategory = ErrorCategory.EXECUTION
    recoverable: bool = False
    retry_after: Optional[int] = None
    context_fields: Tuple[str, ...] = ()
    detail_fields: Tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        retry_after: Optional[int] = None,
        **fields
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        self.context = dict(context or {})
        if recoverable is not None:
            self.recoverable = recoverable
        if retry_after is not None:
            self.retry_after = retry_after
        self.timestamp = datetime.utcnow()
        self.traceback_info = traceback.format_stack()

        for name, value in fields.items():
            if value is None:
                continue
            if name in self.context_fields:
                self.context[name] = value
            elif name in self.detail_fields:
                self.details[name] = value
            else:
                raise TypeError(f"{type(self).__name__} got an unexpected keyword argument '{name}'")

    def add_context(self, **kwargs) -> "WorkflowEngineError":
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs) -> "WorkflowEngineError":
        self.details.update(kwargs)
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Full description for logs and execution log details."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": type(self).__name__,
        }


class ValidationError(WorkflowEngineError):
    """Bad node config, cyclic graph, malformed request or cross-tenant reference."""

    status_code = 400
    category = ErrorCategory.VALIDATION
    context_fields = ("field",)

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = list(validation_errors or [])
        if self.validation_errors:
            self.details["validation_errors"] = self.validation_errors


class VariableNotFoundError(ValidationError):
    def __init__(self, name: str, **kwargs):
        super().__init__(f"Variable '{name}' is not defined", field=name, **kwargs)
        self.variable_name = name


class NotFoundError(WorkflowEngineError):
    status_code = 404
    severity = ErrorSeverity.LOW
    category = ErrorCategory.BUSINESS_LOGIC
    context_fields = ("resource_type", "resource_id")


class ConflictError(WorkflowEngineError):
    """Duplicate natural key (nodeId, edgeId) or a disallowed status transition."""

    status_code = 409
    category = ErrorCategory.BUSINESS_LOGIC
    context_fields = ("key",)


class ForbiddenError(WorkflowEngineError):
    status_code = 403
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.SECURITY
    context_fields = ("organization_id",)


class NodeExecutionError(WorkflowEngineError):
    """A node handler failed; the engine retries it up to the node's maxRetries."""

    severity = ErrorSeverity.HIGH
    recoverable = True
    context_fields = ("node_id", "execution_id")
    detail_fields = ("execution_time",)


class ExecutionTimeoutError(NodeExecutionError):
    detail_fields = NodeExecutionError.detail_fields + ("timeout_seconds",)

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, timeout_seconds=timeout, **kwargs)


class DeliveryError(NodeExecutionError):
    """A delivery adapter could not hand the action payload over."""

    status_code = 502
    category = ErrorCategory.NETWORK
    context_fields = NodeExecutionError.context_fields + ("channel", "provider")


class RetryLimitExceededError(WorkflowEngineError):
    status_code = 409
    category = ErrorCategory.BUSINESS_LOGIC
    detail_fields = ("retry_count", "max_retries")


class StorageError(WorkflowEngineError):
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True
    retry_after = 3
    context_fields = ("operation", "table")


class ResourceExhaustionError(WorkflowEngineError):
    """A bounded resource, such as the execution queue, is full."""

    status_code = 503
    severity = ErrorSeverity.CRITICAL
    category = ErrorCategory.RESOURCE
    recoverable = True
    retry_after = 30
    context_fields = ("resource_type",)
    detail_fields = ("current_usage", "limit")


class TransientError(WorkflowEngineError):
    status_code = 503
    recoverable = True
    retry_after = 5


class ConfigurationError(WorkflowEngineError):
    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION
    context_fields = ("config_key",)


def get_status_code_for_error(error: WorkflowEngineError) -> int:
    return error.status_code


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Body of an API error response; ``error`` is the error class name."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat(),
        },
        "context": error.context,
    }
