"""
Escalation & Timeout Scheduler.

The only source of timeout-driven transitions. Each sweep looks at every
in-flight workflow step and every open request without a workflow, applies the
timeout branch to anything past its deadline, and sends reminders for work that
is close to its deadline. Running a sweep twice with the same clock changes
nothing the second time.
"""

import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from . import dao, heartbeat
from .analytics import ReviewAnalyticsService
from .config import ReviewConfiguration, get_analytics_interval, get_analytics_window, get_scheduler_interval
from .errors import IllegalTransition, InvariantViolation, StaleStep
from .invariants import check_request_invariants, check_workflow_invariants
from .notifications import NotificationDispatcher
from .schema import (
    ApprovalStep,
    ApprovalStepStatus,
    ApprovalWorkflow,
    NotificationPayload,
    NotificationType,
    ReviewRequest,
    ReviewStatus,
    WorkflowStatus,
    utcnow,
)
from .store import ReviewRequestStore
from .transitions import OPEN_REVIEW_STATUSES
from .workflow import WorkflowEngine
from ..util.logging import logger

TASK_TIMEOUTS = "review_timeouts"
TASK_REDELIVERY = "notification_redelivery"
TASK_ANALYTICS = "analytics_snapshot"


class TimeoutScheduler:
    """Timeout sweeps, reminders and periodic housekeeping."""

    def __init__(self,
                 config_source: Callable[[], ReviewConfiguration],
                 store: ReviewRequestStore,
                 workflows: WorkflowEngine,
                 dispatcher: NotificationDispatcher,
                 analytics: ReviewAnalyticsService):
        self._config_source = config_source
        self.store = store
        self.workflows = workflows
        self.dispatcher = dispatcher
        self.analytics = analytics

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one timeout pass. Returns counts of what happened."""
        now = now or utcnow()
        config = self._config_source()
        counts = {
            "escalated": 0,
            "expired": 0,
            "skipped": 0,
            "requests_expired": 0,
            "reminders": 0,
            "stale": 0,
            "violations": 0,
        }
        start_time = time.monotonic()

        for workflow in dao.list_workflows([WorkflowStatus.IN_PROGRESS]):
            self._sweep_workflow(workflow, config, now, counts)

        for request in dao.list_requests(statuses=OPEN_REVIEW_STATUSES):
            if request.workflow_id:
                continue
            self._sweep_request(request, config, now, counts)

        logger.log_scheduler_tick(start_time, time.monotonic(), counts)
        return counts

    def _sweep_workflow(self, workflow: ApprovalWorkflow, config: ReviewConfiguration, now: datetime,
                        counts: Dict[str, int]):
        request = dao.get_request(workflow.review_request_id)
        try:
            check_workflow_invariants(workflow, request)
            if request is not None:
                check_request_invariants(request)
        except InvariantViolation as e:
            logger.log_invariant_violation(e.entity, e.entity_id, e.problem)
            counts["violations"] += 1
            return
        if request is None:
            logger.log_invariant_violation("workflow", workflow.id, "owning review is missing")
            counts["violations"] += 1
            return

        step = workflow.current_step
        if step is None or step.status != ApprovalStepStatus.IN_PROGRESS:
            return

        deadline = self.workflows.step_deadline(workflow, step, config)
        if now <= deadline:
            if self._maybe_remind(request, deadline, config, now, workflow, step):
                counts["reminders"] += 1
            return

        try:
            outcome = self.workflows.expire_step(workflow.id, step.id, now=now)
        except StaleStep as e:
            # A reviewer decision got there first
            logger.debug(f"Timeout skipped: {e}")
            counts["stale"] += 1
            return
        except IllegalTransition as e:
            logger.warning(f"Timeout for step {step.id} not applied: {e}")
            counts["stale"] += 1
            return
        if outcome:
            counts[outcome] += 1

    def _sweep_request(self, request: ReviewRequest, config: ReviewConfiguration, now: datetime,
                       counts: Dict[str, int]):
        try:
            check_request_invariants(request)
        except InvariantViolation as e:
            logger.log_invariant_violation(e.entity, e.entity_id, e.problem)
            counts["violations"] += 1
            return

        deadline = request.created_at + config.default_review_timeout
        if now <= deadline:
            if self._maybe_remind(request, deadline, config, now):
                counts["reminders"] += 1
            return

        try:
            self.store.transition(request.id, ReviewStatus.EXPIRED, actor="scheduler",
                                  reason="review timed out", now=now)
            counts["requests_expired"] += 1
        except IllegalTransition as e:
            logger.debug(f"Request expiry skipped: {e}")
            counts["stale"] += 1

    def _maybe_remind(self, request: ReviewRequest, deadline: datetime, config: ReviewConfiguration,
                      now: datetime, workflow: Optional[ApprovalWorkflow] = None,
                      step: Optional[ApprovalStep] = None) -> bool:
        """Remind once per notification interval when the deadline is within that interval."""
        if not config.notifications_enabled:
            return False
        if now < deadline - config.notification_interval:
            return False

        last = dao.last_notification_at(request.id, NotificationType.REVIEW_REMINDER)
        if last is not None and now - last < config.notification_interval:
            return False

        recipients = self._reminder_recipients(request, step)
        if not recipients:
            logger.debug(f"No reminder recipients for review {request.id}")
            return False

        payload = NotificationPayload(
            review_id=request.id,
            workflow_id=workflow.id if workflow else None,
            step_id=step.id if step else None,
            to_status=request.status.value,
            reason=f"due at {deadline.isoformat()}",
        )
        sent = self.dispatcher.notify(request, recipients, NotificationType.REVIEW_REMINDER, payload, now=now)
        return bool(sent)

    def _reminder_recipients(self, request: ReviewRequest, step: Optional[ApprovalStep]) -> List[str]:
        if step is not None:
            if step.assigned_to:
                return [step.assigned_to]
            members = self.workflows.role_members(step.assigned_role)
            if members:
                return members
        return [request.assigned_to] if request.assigned_to else []

    def redeliver(self) -> int:
        delivered = self.dispatcher.redeliver_pending()
        if delivered:
            logger.info(f"Redelivered {delivered} pending notifications")
        return delivered

    def snapshot_analytics(self):
        return self.analytics.snapshot(get_analytics_window())

    def register_tasks(self):
        """Register sweep, redelivery and analytics tasks with the periodic loop."""
        interval = get_scheduler_interval()
        heartbeat.register_task(TASK_TIMEOUTS, interval, self.sweep)
        heartbeat.register_task(TASK_REDELIVERY, interval, self.redeliver)
        heartbeat.register_task(TASK_ANALYTICS, get_analytics_interval(), self.snapshot_analytics)
