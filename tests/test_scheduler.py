"""Tests for cron helpers and the wake-up scheduler."""

from datetime import datetime, timedelta, timezone

import pytest

from automation_engine.core.scheduler import (
    SchedulerService,
    next_cron_run,
    next_frequency_run,
    to_naive_utc,
    utcnow,
)
from automation_engine.models.core import (
    ExecutionStatusEnum,
    NodeType,
    TriggerExecutionRequest,
)

from helpers import edge, node


class TestCronHelpers:
    def test_next_cron_run_is_strictly_after(self):
        after = datetime(2026, 1, 5, 9, 0)
        assert next_cron_run("0 9 * * *", "UTC", after) == datetime(2026, 1, 6, 9, 0)

    def test_timezone_is_applied(self):
        after = datetime(2026, 7, 1, 0, 0)
        # 09:00 in Berlin summer time is 07:00 UTC
        assert next_cron_run("0 9 * * *", "Europe/Berlin", after) == datetime(2026, 7, 1, 7, 0)

    def test_invalid_expression(self):
        with pytest.raises(ValueError):
            next_cron_run("61 * * * *", "UTC", utcnow())

    def test_frequency(self):
        after = datetime(2026, 1, 7, 12, 0)  # a Wednesday
        assert next_frequency_run("weekly", "UTC", after) == datetime(2026, 1, 12, 0, 0)
        assert next_frequency_run("MONTHLY", None, after) == datetime(2026, 2, 1, 0, 0)
        with pytest.raises(ValueError):
            next_frequency_run("fortnightly", "UTC", after)

    def test_to_naive_utc(self):
        aware = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_naive_utc(aware) == datetime(2026, 1, 1, 10, 0)


class TestSchedulerService:
    """One wake-up pass over waiting and delayed executions."""

    def test_tick_resumes_waiting_execution(self, execution_engine, trigger_evaluator, make_workflow, context):
        workflow = make_workflow(
            [node("start", NodeType.TRIGGER), node("wait", NodeType.DELAY, {"delayMs": 1000})],
            [edge("start", "wait")]
        )
        execution_id = execution_engine.trigger_execution(workflow.id, TriggerExecutionRequest(), context).execution_id
        execution_engine.process_execution(execution_id)
        scheduler = SchedulerService(execution_engine, trigger_evaluator, poll_interval=60)

        result = scheduler.tick(utcnow() + timedelta(minutes=1))

        assert result == {"resumed": [execution_id], "started": [], "fired": []}
        assert scheduler.last_tick_at is not None
        assert execution_engine.process_execution(execution_id) == ExecutionStatusEnum.COMPLETED

    def test_tick_starts_delayed_execution(self, execution_engine, trigger_evaluator, make_workflow, context):
        workflow = make_workflow([node("start", NodeType.TRIGGER)])
        execution_id = execution_engine.trigger_execution(
            workflow.id, TriggerExecutionRequest(delay_ms=1000), context
        ).execution_id

        result = SchedulerService(execution_engine, trigger_evaluator).tick(utcnow() + timedelta(minutes=1))

        assert result["started"] == [execution_id]
        assert execution_engine.get_execution(execution_id, context).status == ExecutionStatusEnum.RUNNING

    def test_start_and_stop(self, execution_engine, trigger_evaluator):
        scheduler = SchedulerService(execution_engine, trigger_evaluator, poll_interval=60)

        scheduler.start()
        assert scheduler.is_running
        scheduler.stop()
        assert not scheduler.is_running
