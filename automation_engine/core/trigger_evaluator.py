"""Matches domain events and schedules to workflow triggers."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import (
    DomainEvent,
    ExecutionVariableInput,
    TriggerExecutionRequest,
    TriggerType,
    TriggerView,
    WorkflowStatus,
)
from ..storage import database
from ..storage.models import WorkflowModel, WorkflowTriggerModel
from .conditions import matches
from .exceptions import NotFoundError, StorageError, WorkflowEngineError
from .logging import get_logger, log_with_context
from .permissions import system_context
from .scheduler import next_cron_run, utcnow

logger = get_logger(__name__)

MODULE_ALIASES = {
    "crm": "CRM",
    "hr": "HR",
    "human resources": "HR",
    "finance": "FINANCE",
    "fin": "FINANCE",
    "finances": "FINANCE",
    "projects": "PROJECTS",
    "project": "PROJECTS",
    "pm": "PROJECTS",
    "project management": "PROJECTS",
}

ENTITY_ALIASES = {
    "CRM": {"customer": "contact", "contact": "contact", "deal": "deal", "opportunity": "deal"},
    "HR": {"timeoff": "timeoff", "time_off": "timeoff", "time-off": "timeoff"},
}

EXACT_MATCH_SCORE = 2


def normalize_module(module: Optional[str]) -> str:
    if not module:
        return ""
    key = module.strip().lower()
    return MODULE_ALIASES.get(key, module.strip().upper())


def normalize_entity(entity: Optional[str], module: Optional[str] = None) -> str:
    if not entity:
        return ""
    key = entity.strip().lower()
    return ENTITY_ALIASES.get(normalize_module(module), {}).get(key, key)


def specificity(trigger: TriggerView, event: DomainEvent) -> Optional[int]:
    """
    Score how specifically a trigger matches an event.

    The module must match. A trigger without an event type is a wildcard;
    otherwise the event type must match. Exact entity and event type
    matches add to the score.

    Returns:
        The score, or None when the trigger does not match at all
    """
    if not trigger.module or normalize_module(trigger.module) != normalize_module(event.module):
        return None

    event_exact = bool(trigger.event_type) and trigger.event_type.strip().lower() == event.event_type.strip().lower()
    if trigger.event_type and not event_exact:
        return None

    entity_exact = bool(trigger.entity_type) and (
        normalize_entity(trigger.entity_type, trigger.module) == normalize_entity(event.entity_type, event.module)
    )
    return (EXACT_MATCH_SCORE if entity_exact else 0) + (EXACT_MATCH_SCORE if event_exact else 0)


class TriggerEvaluator:
    """Turns domain events and due schedules into executions."""

    def __init__(
        self,
        execution_engine,
        session_factory: Optional[Callable[[], ContextManager[Session]]] = None
    ):
        self.execution_engine = execution_engine
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        factory = self._session_factory or database.session_scope
        try:
            with factory() as db:
                yield db
        except WorkflowEngineError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table="workflow_triggers")

    # Matching

    def evaluate_conditions(self, tree: Any, payload: Dict[str, Any]) -> bool:
        """Evaluate a trigger condition tree; no conditions always match."""
        if not tree:
            return True
        return matches(tree, payload or {})

    def find_matching_triggers(self, event: DomainEvent) -> List[Tuple[TriggerView, WorkflowStatus]]:
        """
        Find the triggers an event fires, with the status of their workflows.

        Within each workflow only the most specific matching triggers are
        kept, and then their conditions are evaluated against the payload.
        """
        with self._session("find matching triggers") as db:
            rows = db.query(WorkflowTriggerModel, WorkflowModel.status).join(
                WorkflowModel, WorkflowModel.id == WorkflowTriggerModel.workflow_id
            ).filter(
                WorkflowModel.organization_id == event.organization_id,
                WorkflowTriggerModel.is_active.is_(True),
                WorkflowTriggerModel.type.in_([TriggerType.EVENT.value, TriggerType.WEBHOOK.value])
            ).order_by(WorkflowTriggerModel.created_at).all()
            candidates = [(TriggerView.model_validate(trigger), WorkflowStatus(status)) for trigger, status in rows]

        by_workflow: Dict[str, List[Tuple[int, TriggerView, WorkflowStatus]]] = {}
        for trigger, status in candidates:
            score = specificity(trigger, event)
            if score is not None:
                by_workflow.setdefault(trigger.workflow_id, []).append((score, trigger, status))

        matched = []
        for workflow_id, scored in by_workflow.items():
            top = max(score for score, _, _ in scored)
            for score, trigger, status in scored:
                if score != top:
                    continue
                if self.evaluate_conditions(trigger.conditions, event.payload):
                    matched.append((trigger, status))
                else:
                    logger.debug(f"Trigger {trigger.id} conditions did not match event {event.event_type}")
        return matched

    # Dispatch

    def dispatch_event(self, event: DomainEvent) -> List[str]:
        """
        Start one execution per matching trigger on an ACTIVE workflow.

        Events with no match, and matches on inactive workflows, are dropped
        and logged.

        Returns:
            List[str]: Ids of the executions created
        """
        matched = self.find_matching_triggers(event)
        if not matched:
            log_with_context(
                logger, logging.INFO, "No triggers matched event",
                module=event.module, event_type=event.event_type, organization_id=event.organization_id
            )
            return []

        execution_ids = []
        for trigger, workflow_status in matched:
            if workflow_status != WorkflowStatus.ACTIVE:
                logger.info(
                    f"Dropping event {event.module}.{event.event_type} for workflow {trigger.workflow_id} "
                    f"in status {workflow_status.value}"
                )
                continue
            execution_id = self._start(trigger, event.payload, self._event_variables(event), event.organization_id)
            if execution_id:
                execution_ids.append(execution_id)
        return execution_ids

    @staticmethod
    def _event_variables(event: DomainEvent) -> List[ExecutionVariableInput]:
        return [ExecutionVariableInput(
            name="event",
            value={
                "module": event.module,
                "eventType": event.event_type,
                "entityType": event.entity_type,
                "entityId": event.entity_id,
                "userId": event.user_id,
            },
            source="trigger",
        )]

    def _start(
        self,
        trigger: TriggerView,
        trigger_data: Dict[str, Any],
        variables: List[ExecutionVariableInput],
        organization_id: str
    ) -> Optional[str]:
        request = TriggerExecutionRequest(
            trigger_id=trigger.id,
            trigger_data=trigger_data or {},
            variables=variables,
            delay_ms=trigger.delay or 0,
        )
        try:
            response = self.execution_engine.trigger_execution(
                trigger.workflow_id, request, system_context(organization_id)
            )
        except WorkflowEngineError as e:
            logger.error(f"Trigger {trigger.id} could not start workflow {trigger.workflow_id}: {e.message}")
            return None
        self.update_trigger_stats(trigger.id)
        logger.info(f"Trigger {trigger.id} started execution {response.execution_id}")
        return response.execution_id

    def update_trigger_stats(self, trigger_id: str, fired_at: Optional[datetime] = None) -> None:
        """Record a firing: set last_triggered and increment trigger_count by one."""
        with self._session("update trigger stats") as db:
            updated = db.query(WorkflowTriggerModel).filter(WorkflowTriggerModel.id == trigger_id).update({
                WorkflowTriggerModel.last_triggered: fired_at or utcnow(),
                WorkflowTriggerModel.trigger_count: WorkflowTriggerModel.trigger_count + 1,
            }, synchronize_session=False)
        if not updated:
            raise NotFoundError(f"Trigger '{trigger_id}' not found", resource_type="trigger", resource_id=trigger_id)

    def dispatch_schedule_tick(self, now: Optional[datetime] = None) -> List[str]:
        """Fire SCHEDULE triggers whose next run is due and advance them."""
        now = now or utcnow()
        with self._session("find due schedule triggers") as db:
            rows = db.query(WorkflowTriggerModel, WorkflowModel).join(
                WorkflowModel, WorkflowModel.id == WorkflowTriggerModel.workflow_id
            ).filter(
                WorkflowTriggerModel.type == TriggerType.SCHEDULE.value,
                WorkflowTriggerModel.is_active.is_(True),
                WorkflowTriggerModel.next_run_at.isnot(None),
                WorkflowTriggerModel.next_run_at <= now
            ).all()
            due = []
            for trigger, workflow in rows:
                scheduled_at = trigger.next_run_at
                trigger.next_run_at = next_cron_run(trigger.cron, trigger.timezone, now)
                due.append((
                    TriggerView.model_validate(trigger),
                    WorkflowStatus(workflow.status),
                    workflow.organization_id,
                    scheduled_at,
                ))

        execution_ids = []
        for trigger, workflow_status, organization_id, scheduled_at in due:
            if workflow_status != WorkflowStatus.ACTIVE:
                logger.info(f"Skipping schedule trigger {trigger.id}: workflow {trigger.workflow_id} is {workflow_status.value}")
                continue
            trigger_data = {"scheduledAt": scheduled_at.isoformat(), "cron": trigger.cron, "timezone": trigger.timezone}
            execution_id = self._start(trigger, trigger_data, [], organization_id)
            if execution_id:
                execution_ids.append(execution_id)
        return execution_ids
