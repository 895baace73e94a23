"""TRIGGER, LOOP, DELAY and SCHEDULE node handlers."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta, timezone
from typing import Any, Dict, List

from ..models.core import NodeType, VariableDataType
from ..core.conditions import MISSING, matches
from ..core.exceptions import NodeExecutionError, ValidationError, WorkflowEngineError
from ..core.logging import get_logger
from ..core.node_config import DelayConfig, LoopConfig, ScheduleConfig, parse_node_config
from ..core.scheduler import FREQUENCY_CRON, next_cron_run, to_naive_utc
from ..core.variables import VariableResolver
from .base import HandlerContext, NodeHandler, NodeResult, NodeResultStatus

logger = get_logger(__name__)


class TriggerHandler(NodeHandler):
    """Passes the trigger data through as the node output."""

    node_type = NodeType.TRIGGER

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        return NodeResult.completed(dict(context.trigger_data))


class LoopHandler(NodeHandler):
    node_type = NodeType.LOOP

    def _items(self, cfg: LoopConfig, variables: VariableResolver, context: HandlerContext) -> List[Any]:
        path = cfg.data_source or cfg.source_key
        try:
            items = variables.resolve_typed(path, VariableDataType.ARRAY)
        except ValidationError as e:
            logger.info(f"LOOP {context.node.node_key} source {e.message}, running 0 iterations")
            return []
        if items is MISSING:
            if (cfg.empty_path_handle or "").lower() == "skip":
                return []
            raise NodeExecutionError(
                f"LOOP source '{path}' does not exist",
                node_id=context.node.node_key,
                execution_id=context.execution_id
            )
        return items

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        cfg: LoopConfig = parse_node_config(NodeType.LOOP, config)
        items = self._items(cfg, variables, context)
        count = min(len(items), cfg.max_iterations)

        def bindings(index: int) -> Dict[str, Any]:
            return {cfg.item_variable: items[index], cfg.index_variable: index}

        # The break condition is checked before each item is processed
        broken = False
        if cfg.break_condition:
            for index in range(count):
                if matches(cfg.break_condition, variables.child(bindings(index)).lookup):
                    count, broken = index, True
                    break

        # Iterations that finished on an earlier attempt are not run again
        done = dict(context.completed_iterations)

        def run_iteration(index: int) -> Any:
            if index in done:
                return done[index]
            scope = variables.child(bindings(index))
            if not cfg.loop_body_node_id or context.run_node is None:
                return {cfg.index_variable: index, cfg.item_variable: items[index]}
            result = context.run_node(cfg.loop_body_node_id, scope, index)
            if result.status == NodeResultStatus.WAITING:
                raise NodeExecutionError(
                    f"LOOP body node '{cfg.loop_body_node_id}' cannot wait inside an iteration",
                    node_id=context.node.node_key,
                    execution_id=context.execution_id
                )
            if context.record_iteration is not None:
                context.record_iteration(index, result.output)
            return result.output

        results: List[Any] = [None] * count
        failures: List[Dict[str, Any]] = []
        concurrency = max(1, min(cfg.concurrency, context.loop_max_concurrency))

        def record_failure(index: int, error: Exception):
            if cfg.failure_policy == "fail_fast":
                if isinstance(error, WorkflowEngineError):
                    error.add_details(loop_index=index)
                    raise error
                raise NodeExecutionError(
                    f"LOOP iteration {index} failed: {str(error)}",
                    node_id=context.node.node_key,
                    execution_id=context.execution_id
                )
            failures.append({"index": index, "error": str(error)})
            results[index] = {"index": index, "error": str(error)}

        if concurrency == 1 or count <= 1:
            for index in range(count):
                try:
                    results[index] = run_iteration(index)
                except Exception as e:
                    record_failure(index, e)
        else:
            with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="loop") as pool:
                futures = [pool.submit(run_iteration, index) for index in range(count)]
                try:
                    for index, future in enumerate(futures):
                        try:
                            results[index] = future.result()
                        except Exception as e:
                            record_failure(index, e)
                except Exception:
                    for future in futures:
                        future.cancel()
                    raise

        output = {
            "iterations": count,
            "totalItems": len(items),
            "results": results,
            "failures": failures,
            "broken": broken,
        }
        updates = {cfg.result_key: results} if cfg.result_key else {}
        logger.debug(f"LOOP {context.node.node_key} ran {count} iterations with {len(failures)} failures")
        return NodeResult.completed(output, variable_updates=updates)


class DelayHandler(NodeHandler):
    node_type = NodeType.DELAY

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        cfg: DelayConfig = parse_node_config(NodeType.DELAY, config)
        if cfg.delay_ms == 0:
            output = {"delayMs": 0, "resumeAt": context.now.isoformat()}
            return NodeResult.completed(output, variable_updates={cfg.result_key: output} if cfg.result_key else {})

        resume_at = context.now + timedelta(milliseconds=cfg.delay_ms)
        output = {"delayMs": cfg.delay_ms, "resumeAt": resume_at.isoformat()}
        result = NodeResult.waiting(resume_at, output)
        if cfg.result_key:
            result.variable_updates = {cfg.result_key: output}
        return result


class ScheduleHandler(NodeHandler):
    node_type = NodeType.SCHEDULE

    def execute(self, config: Dict[str, Any], variables: VariableResolver, context: HandlerContext) -> NodeResult:
        cfg: ScheduleConfig = parse_node_config(NodeType.SCHEDULE, config)
        now = context.now
        start_at = to_naive_utc(cfg.start_at) if cfg.start_at else None
        end_at = to_naive_utc(cfg.end_at) if cfg.end_at else None

        base = {
            "cron": cfg.cron,
            "frequency": cfg.frequency.value if cfg.frequency else None,
            "timezone": cfg.timezone,
            "metadata": cfg.metadata or {},
        }

        def finish(reason: str) -> NodeResult:
            output = {**base, "scheduled": False, "reason": reason}
            return NodeResult.completed(output, variable_updates={cfg.result_key: output} if cfg.result_key else {})

        if not cfg.is_active:
            return finish("inactive")
        if end_at and now >= end_at:
            return finish("ended")

        cron = cfg.cron or FREQUENCY_CRON[cfg.frequency.value]
        # An occurrence exactly at startAt counts
        reference = max(now, start_at - timedelta(seconds=1)) if start_at else now
        next_run = next_cron_run(cron, cfg.timezone, reference.replace(tzinfo=timezone.utc))
        if end_at and next_run > end_at:
            return finish("ended")

        output = {**base, "scheduled": True, "nextRunAt": next_run.isoformat()}
        result = NodeResult.waiting(next_run, output)
        if cfg.result_key:
            result.variable_updates = {cfg.result_key: output}
        return result
