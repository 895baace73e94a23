"""Wake-up scheduler for waiting nodes, delayed executions and cron triggers."""

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from croniter import croniter

from .logging import get_logger
from .node_config import resolve_timezone

logger = get_logger(__name__)

FREQUENCY_CRON = {
    "EVERY_MINUTE": "* * * * *",
    "HOURLY": "0 * * * *",
    "DAILY": "0 0 * * *",
    "WEEKLY": "0 0 * * 1",
    "MONTHLY": "0 0 1 * *",
}


def utcnow() -> datetime:
    """Naive UTC now, matching the stored DateTime columns."""
    return datetime.utcnow()


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def next_cron_run(cron: str, timezone_name: Optional[str], after: datetime) -> datetime:
    """
    Next occurrence of a cron expression strictly after `after`.

    Args:
        cron: Five-field cron expression
        timezone_name: IANA zone the expression is evaluated in
        after: Naive UTC or aware reference time

    Returns:
        datetime: Naive UTC time of the next occurrence

    Raises:
        ValueError: If the expression or zone is invalid
    """
    if not croniter.is_valid(cron):
        raise ValueError(f"Invalid cron expression: {cron}")
    zone = resolve_timezone(timezone_name)
    reference = after if after.tzinfo else after.replace(tzinfo=timezone.utc)
    local_reference = reference.astimezone(zone)
    next_local = croniter(cron, local_reference).get_next(datetime)
    return to_naive_utc(next_local)


def next_frequency_run(frequency: str, timezone_name: Optional[str], after: datetime) -> datetime:
    """Next boundary of a fixed frequency (minute, hour, day, Monday, month start)."""
    cron = FREQUENCY_CRON.get(str(frequency).upper())
    if cron is None:
        raise ValueError(f"Unknown schedule frequency: {frequency}")
    return next_cron_run(cron, timezone_name, after)


class SchedulerService:
    """Polls for due work and hands it back to the execution engine."""

    def __init__(self, execution_engine, trigger_evaluator, poll_interval: float = 5.0):
        self.execution_engine = execution_engine
        self.trigger_evaluator = trigger_evaluator
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_tick_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="automation-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with poll interval {self.poll_interval}s")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    def _run(self):
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {str(e)}", exc_info=True)

    def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one wake-up pass.

        Resumes due WAITING nodes, starts delayed PENDING executions and
        fires due schedule triggers.

        Returns:
            Dict with the execution ids touched by each step
        """
        now = to_naive_utc(now) if now else utcnow()
        resumed = self.execution_engine.resume_due_executions(now)
        started = self.execution_engine.start_due_executions(now)
        fired = self.trigger_evaluator.dispatch_schedule_tick(now)
        self.last_tick_at = now
        if resumed or started or fired:
            logger.info(
                f"Scheduler tick: resumed {len(resumed)}, started {len(started)}, fired {len(fired)}"
            )
        return {"resumed": resumed, "started": started, "fired": fired}
