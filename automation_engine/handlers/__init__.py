"""Node handlers and the registry that dispatches on node type."""

from typing import Dict, Iterable, Optional, Union

from ..models.core import NodeType, ValidationResult
from ..core.delivery import AdapterRegistry, TemplateResolver
from ..core.exceptions import ConfigurationError
from ..core.logging import get_logger
from .actions import ActionHandler
from .base import HandlerContext, NodeHandler, NodeResult, NodeResultStatus
from .control import DelayHandler, LoopHandler, ScheduleHandler, TriggerHandler
from .data import ConditionHandler, DataSource, FilterHandler, InMemoryDataSource, QueryHandler

logger = get_logger(__name__)


class HandlerRegistry:
    """Maps every NodeType to exactly one handler."""

    def __init__(self, handlers: Iterable[NodeHandler]):
        self._handlers: Dict[NodeType, NodeHandler] = {}
        for handler in handlers:
            if handler.node_type in self._handlers:
                raise ConfigurationError(f"Duplicate handler for node type {handler.node_type.value}")
            self._handlers[handler.node_type] = handler

        missing = [node_type.value for node_type in NodeType if node_type not in self._handlers]
        if missing:
            raise ConfigurationError(
                f"No handler registered for node types: {', '.join(missing)}",
                config_key="handlers"
            )
        logger.debug(f"Handler registry ready for {len(self._handlers)} node types")

    def get(self, node_type: Union[NodeType, str]) -> NodeHandler:
        return self._handlers[NodeType(node_type)]

    def validate(self, node_type: Union[NodeType, str], config) -> ValidationResult:
        return self.get(node_type).validate(config)


def create_default_registry(
    data_source: Optional[DataSource] = None,
    adapters: Optional[AdapterRegistry] = None,
    template_resolver: Optional[TemplateResolver] = None
) -> HandlerRegistry:
    """Build a registry with the built-in handler for every node type."""
    return HandlerRegistry([
        TriggerHandler(),
        QueryHandler(data_source),
        FilterHandler(),
        ConditionHandler(),
        LoopHandler(),
        DelayHandler(),
        ScheduleHandler(),
        ActionHandler(adapters, template_resolver),
    ])


__all__ = [
    "HandlerRegistry",
    "create_default_registry",
    "HandlerContext",
    "NodeHandler",
    "NodeResult",
    "NodeResultStatus",
    "ActionHandler",
    "TriggerHandler",
    "LoopHandler",
    "DelayHandler",
    "ScheduleHandler",
    "QueryHandler",
    "FilterHandler",
    "ConditionHandler",
    "DataSource",
    "InMemoryDataSource",
]
