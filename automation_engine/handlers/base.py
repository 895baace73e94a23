"""Node handler contract shared by every node type."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from ..models.core import NodeSnapshot, NodeType, ValidationResult
from ..core.node_config import validate_node_config
from ..core.variables import VariableResolver


class NodeResultStatus(str, Enum):
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    WAITING = "WAITING"


class NodeResult(BaseModel):
    """Outcome of one handler invocation. Failures are raised, not returned."""
    status: NodeResultStatus = NodeResultStatus.COMPLETED
    output: Any = None
    variable_updates: Dict[str, Any] = Field(default_factory=dict)
    branch: Optional[str] = None
    resume_at: Optional[datetime] = None

    @classmethod
    def completed(cls, output: Any = None, **kwargs) -> "NodeResult":
        return cls(status=NodeResultStatus.COMPLETED, output=output, **kwargs)

    @classmethod
    def skipped(cls, reason: str, **kwargs) -> "NodeResult":
        return cls(status=NodeResultStatus.SKIPPED, output={"skipped": True, "reason": reason}, **kwargs)

    @classmethod
    def waiting(cls, resume_at: datetime, output: Any = None) -> "NodeResult":
        return cls(status=NodeResultStatus.WAITING, output=output, resume_at=resume_at)


@dataclass
class HandlerContext:
    """Everything a handler may touch besides its config and variables."""
    execution_id: str
    workflow_id: str
    organization_id: str
    node: NodeSnapshot
    trigger_data: Dict[str, Any] = field(default_factory=dict)
    now: datetime = field(default_factory=datetime.utcnow)
    # Runs another node of the same execution (LOOP bodies): run_node(node_key, variables, iteration)
    run_node: Optional[Callable[[str, VariableResolver, int], NodeResult]] = None
    loop_max_concurrency: int = 4
    iteration: Optional[int] = None
    # LOOP progress that survives retries: outputs of finished iterations by index
    completed_iterations: Dict[int, Any] = field(default_factory=dict)
    record_iteration: Optional[Callable[[int, Any], None]] = None

    @property
    def idempotency_key(self) -> str:
        key = f"{self.execution_id}:{self.node.node_key}"
        return key if self.iteration is None else f"{key}:{self.iteration}"


class NodeHandler(ABC):
    """One variant of the node tagged union."""

    node_type: NodeType

    def validate(self, config: Optional[Dict[str, Any]]) -> ValidationResult:
        return validate_node_config(self.node_type, config)

    @abstractmethod
    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        """
        Run the node.

        Args:
            config: The node's stored config
            variables: Resolver scoped to the execution
            context: Execution identity and collaborators

        Returns:
            NodeResult: COMPLETED, SKIPPED or WAITING

        Raises:
            NodeExecutionError: On runtime failure
        """
