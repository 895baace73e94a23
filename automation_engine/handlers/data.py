"""QUERY, FILTER and CONDITION node handlers."""

import threading
from typing import Any, Dict, List, Optional, Protocol

from ..models.core import NodeType, VariableDataType
from ..core.conditions import MISSING, evaluate_condition_list, resolve_path
from ..core.exceptions import NodeExecutionError, ValidationError, WorkflowEngineError
from ..core.logging import get_logger
from ..core.node_config import ConditionConfig, FilterConfig, QueryConfig, parse_node_config
from ..core.variables import VariableResolver
from .base import HandlerContext, NodeHandler, NodeResult

logger = get_logger(__name__)


class DataSource(Protocol):
    """Declarative read access to domain records."""

    def query(
        self,
        model: str,
        filters: List[Dict[str, Any]],
        order_by: List[Dict[str, str]],
        limit: int,
        offset: int,
        select: Optional[List[str]] = None,
        include: Optional[List[str]] = None,
        organization_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        ...


class InMemoryDataSource:
    """Records held in memory per model name, scoped by organization when tagged."""

    ORGANIZATION_KEYS = ("organizationId", "organization_id")

    def __init__(self, records: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._records: Dict[str, List[Dict[str, Any]]] = {
            model.lower(): list(rows) for model, rows in (records or {}).items()
        }
        self._lock = threading.Lock()

    def add(self, model: str, *rows: Dict[str, Any]):
        with self._lock:
            self._records.setdefault(model.lower(), []).extend(rows)

    def _visible(self, row: Dict[str, Any], organization_id: Optional[str]) -> bool:
        if organization_id is None:
            return True
        for key in self.ORGANIZATION_KEYS:
            if key in row:
                return row[key] == organization_id
        return True

    def query(
        self,
        model: str,
        filters: List[Dict[str, Any]],
        order_by: List[Dict[str, str]],
        limit: int,
        offset: int,
        select: Optional[List[str]] = None,
        include: Optional[List[str]] = None,
        organization_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self._records.get(model.lower(), []))

        rows = [row for row in rows if self._visible(row, organization_id)]
        if filters:
            rows = [row for row in rows if evaluate_condition_list(filters, row)[0]]

        # Stable sorts applied from the last key to the first
        for order in reversed(order_by or []):
            field_name = order["field"]
            rows.sort(
                key=lambda row: (resolve_path(row, field_name) in (None, MISSING), _sort_value(resolve_path(row, field_name))),
                reverse=order.get("direction") == "desc"
            )

        rows = rows[offset:offset + limit]
        if select:
            rows = [{key: row.get(key) for key in select} for row in rows]
        return rows


def _sort_value(value: Any):
    if value is None or value is MISSING:
        return ""
    if isinstance(value, (int, float)):
        return value
    return str(value)


class QueryHandler(NodeHandler):
    node_type = NodeType.QUERY

    def __init__(self, data_source: Optional[DataSource] = None):
        self.data_source = data_source or InMemoryDataSource()

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        cfg: QueryConfig = parse_node_config(NodeType.QUERY, config)
        filters = []
        for condition in cfg.filters:
            leaf = condition.as_leaf()
            leaf["value"] = variables.interpolate(leaf["value"])
            leaf["valueTo"] = variables.interpolate(leaf["valueTo"])
            filters.append(leaf)

        try:
            results = self.data_source.query(
                model=cfg.model,
                filters=filters,
                order_by=[order.model_dump() for order in cfg.order_by],
                limit=cfg.limit,
                offset=cfg.offset,
                select=cfg.select,
                include=cfg.include,
                organization_id=context.organization_id
            )
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise NodeExecutionError(
                f"Query on '{cfg.model}' failed: {str(e)}",
                node_id=context.node.node_key,
                execution_id=context.execution_id
            )

        results = list(results or [])
        updates = {}
        if results and cfg.result_key:
            updates[cfg.result_key] = results
        elif not results and (cfg.fallback_key or cfg.result_key):
            updates[cfg.fallback_key or cfg.result_key] = []

        logger.debug(f"QUERY {context.node.node_key} returned {len(results)} {cfg.model} records")
        return NodeResult.completed(
            {"model": cfg.model, "count": len(results), "results": results},
            variable_updates=updates,
            branch="true" if results else "false"
        )


class FilterHandler(NodeHandler):
    node_type = NodeType.FILTER

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        cfg: FilterConfig = parse_node_config(NodeType.FILTER, config)
        try:
            items = variables.resolve_typed(cfg.source_key, VariableDataType.ARRAY)
        except ValidationError as e:
            raise NodeExecutionError(
                f"FILTER sourceKey '{cfg.source_key}' does not hold an array: {e.message}",
                node_id=context.node.node_key,
                execution_id=context.execution_id,
                recoverable=False
            ) from e
        if items is MISSING:
            raise NodeExecutionError(
                f"FILTER sourceKey '{cfg.source_key}' does not exist",
                node_id=context.node.node_key,
                execution_id=context.execution_id
            )

        leaves = [condition.as_leaf() for condition in cfg.conditions]
        survivors, rejected = [], []
        for item in items:
            if not leaves:
                survivors.append(item)
                continue
            passed, _ = evaluate_condition_list(
                leaves, item if isinstance(item, dict) else {"value": item},
                cfg.logical_operator, value_resolver=variables.interpolate
            )
            (survivors if passed else rejected).append(item)

        updates = {}
        if survivors:
            if cfg.result_key:
                updates[cfg.result_key] = survivors
        elif cfg.fallback_key:
            updates[cfg.fallback_key] = rejected
        elif cfg.result_key:
            updates[cfg.result_key] = []

        return NodeResult.completed(
            {
                "sourceKey": cfg.source_key,
                "total": len(items),
                "matched": len(survivors),
                "rejected": len(rejected),
                "results": survivors,
            },
            variable_updates=updates,
            branch="true" if survivors else "false"
        )


class ConditionHandler(NodeHandler):
    node_type = NodeType.CONDITION

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        cfg: ConditionConfig = parse_node_config(NodeType.CONDITION, config)
        leaves = [condition.as_leaf() for condition in cfg.conditions]
        result, details = evaluate_condition_list(
            leaves, variables.lookup, cfg.logical_operator, value_resolver=variables.interpolate
        )
        updates = {cfg.result_key: result} if cfg.result_key else {}
        return NodeResult.completed(
            {
                "evaluated": True,
                "result": result,
                "logicalOperator": cfg.logical_operator,
                "conditions": details,
            },
            variable_updates=updates,
            branch="true" if result else "false"
        )
