"""
Review engine facade.

Wires the request store, workflow engine, feedback channel, notification
dispatcher, analytics and scheduler together and implements the submit flow:
create -> classify -> auto-resolve, or start a workflow.
"""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import dao, heartbeat
from .analytics import ReviewAnalyticsService
from .config import ReviewConfigProvider
from .errors import IllegalTransition, InvalidRequest, NotFound
from .feedback import FeedbackService
from .identity import ConfigRoleDirectory, IdentityProvider
from .notifications import NotificationDispatcher, NotificationTransport
from .scheduler import TimeoutScheduler
from .schema import (
    ApprovalWorkflow,
    HumanFeedback,
    NotificationSettings,
    ReviewAnalytics,
    ReviewNotification,
    ReviewRequest,
    ReviewStatus,
    ValidationIssue,
    utcnow,
)
from .store import AUTO_APPROVE, AUTO_REJECT, ReviewRequestStore, classify
from .transitions import is_terminal_review, is_terminal_workflow
from .workflow import WorkflowEngine
from ..util.logging import logger


class ReviewEngine:
    """Single entry point for review operations."""

    def __init__(self,
                 config_provider: Optional[ReviewConfigProvider] = None,
                 transport: Optional[NotificationTransport] = None,
                 identity: Optional[IdentityProvider] = None):
        self.config_provider = config_provider or ReviewConfigProvider()
        config_source = self.config_provider.get

        self.identity = identity or ConfigRoleDirectory(config_source)
        self.dispatcher = NotificationDispatcher(config_source, transport=transport)
        self.store = ReviewRequestStore(config_source, self.dispatcher, self.identity)
        self.workflows = WorkflowEngine(config_source, self.dispatcher, self.identity)
        self.feedback = FeedbackService(self.store, self.workflows)
        self.analytics = ReviewAnalyticsService()
        self.scheduler = TimeoutScheduler(config_source, self.store, self.workflows, self.dispatcher, self.analytics)

        dao.initialize()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_review(self,
                      original_query: str,
                      generated_sql: str,
                      review_type,
                      requested_by: str,
                      confidence_score: Optional[float] = None,
                      requires_approval: bool = False,
                      priority=None,
                      review_notes: str = "",
                      validation_issues: Optional[List[dict]] = None,
                      now: Optional[datetime] = None) -> ReviewRequest:
        """Create a request and route it by policy. The policy is read once and used for every step."""
        now = now or utcnow()
        config = self.config_provider.get()

        request = self.store.submit(
            original_query=original_query,
            generated_sql=generated_sql,
            review_type=review_type,
            requested_by=requested_by,
            confidence_score=confidence_score,
            requires_approval=requires_approval,
            priority=priority,
            review_notes=review_notes,
            validation_issues=validation_issues,
            config=config,
            now=now,
        )

        decision = classify(request, config)
        logger.log_operation("review.classified", decision.outcome, {
            "review_id": request.id,
            "priority": decision.priority.value,
            "reason": decision.reason,
        })

        if decision.outcome == AUTO_APPROVE:
            return self.store.transition(request.id, ReviewStatus.APPROVED, actor="policy",
                                         reason=decision.reason, auto_resolved=True, now=now)
        if decision.outcome == AUTO_REJECT:
            return self.store.transition(request.id, ReviewStatus.REJECTED, actor="policy",
                                         reason=decision.reason, auto_resolved=True, now=now)

        type_config = config.type_config(request.review_type)
        if type_config.required_roles or type_config.optional_roles:
            self.workflows.start_workflow(request.id, priority=decision.priority, config=config, now=now)
            return self.store.get(request.id)

        # No approval chain configured: ad-hoc review through feedback
        return self.store.transition(request.id, ReviewStatus.IN_REVIEW, actor="policy",
                                     reason=decision.reason, priority=decision.priority, now=now)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_review(self, review_id: str) -> ReviewRequest:
        return self.store.get(review_id)

    def get_workflow(self, review_id: str) -> ApprovalWorkflow:
        self.store.get(review_id)
        workflow = self.workflows.get_for_request(review_id)
        if workflow is None:
            raise NotFound("workflow", review_id)
        return workflow

    def get_review_queue(self, assignee: Optional[str] = None, review_type=None, priority=None,
                         page: int = 1, page_size: int = 20) -> Tuple[List[ReviewRequest], int]:
        try:
            return self.store.queue(assignee, review_type, priority, page, page_size)
        except ValueError as e:
            raise InvalidRequest(str(e))

    # ------------------------------------------------------------------
    # Request-level actions
    # ------------------------------------------------------------------

    def assign(self, review_id: str, assignee: str, actor: str = "system",
               now: Optional[datetime] = None) -> ReviewRequest:
        return self.store.assign(review_id, assignee, actor=actor, now=now)

    def escalate(self, review_id: str, reason: str = "", actor: str = "system",
                 now: Optional[datetime] = None) -> ReviewRequest:
        return self.store.escalate(review_id, reason=reason, actor=actor, now=now)

    def resubmit(self, review_id: str, corrected_sql: Optional[str] = None, actor: str = "system",
                 now: Optional[datetime] = None) -> ReviewRequest:
        return self.workflows.resubmit(review_id, corrected_sql=corrected_sql, actor=actor, now=now)

    def cancel(self, review_id: str, actor: str = "system", reason: str = "",
               now: Optional[datetime] = None) -> ReviewRequest:
        return self.workflows.cancel(review_id, actor=actor, reason=reason, now=now)

    def transition(self, review_id: str, new_status, actor: str = "system", reason: str = "",
                   now: Optional[datetime] = None) -> ReviewRequest:
        """
        Explicit status change. Cancellation and re-entry are routed so the
        workflow stays consistent; verdicts on a workflow review must come
        through its steps.
        """
        try:
            new_status = ReviewStatus(new_status)
        except ValueError:
            raise InvalidRequest(f"unknown status: {new_status}", field="status")

        if new_status == ReviewStatus.CANCELLED:
            return self.cancel(review_id, actor=actor, reason=reason, now=now)
        if new_status == ReviewStatus.IN_REVIEW:
            request = self.store.get(review_id)
            if request.status in (ReviewStatus.REQUIRES_CHANGES, ReviewStatus.ESCALATED):
                return self.resubmit(review_id, actor=actor, now=now)
        if new_status == ReviewStatus.ESCALATED:
            return self.escalate(review_id, reason=reason, actor=actor, now=now)

        request = self.store.get(review_id)
        if request.workflow_id and is_terminal_review(new_status):
            workflow = self.workflows.get(request.workflow_id)
            if not is_terminal_workflow(workflow.status):
                raise IllegalTransition("review", review_id, request.status.value, new_status.value,
                                        reason="this review is decided through its approval workflow")
        return self.store.transition(review_id, new_status, actor=actor, reason=reason, now=now)

    # ------------------------------------------------------------------
    # Issues, decisions and feedback
    # ------------------------------------------------------------------

    def attach_issue(self, review_id: str, issue_type: str, description: str = "", severity="medium",
                     location: Optional[str] = None, suggested_fix: Optional[str] = None) -> ValidationIssue:
        return self.store.attach_issue(review_id, issue_type, description, severity, location, suggested_fix)

    def resolve_issue(self, review_id: str, issue_id: str, resolver: str,
                      now: Optional[datetime] = None) -> ValidationIssue:
        return self.store.resolve_issue(review_id, issue_id, resolver, now=now)

    def record_decision(self, workflow_id: str, step_id: str, action, reviewer: str, comments: str = "",
                        corrected_sql: Optional[str] = None, now: Optional[datetime] = None) -> ApprovalWorkflow:
        return self.workflows.record_decision(workflow_id, step_id, action, reviewer, comments=comments,
                                              corrected_sql=corrected_sql, now=now)

    def submit_feedback(self, review_id: str, reviewer_id: str, action, **kwargs) -> HumanFeedback:
        return self.feedback.submit_feedback(review_id, reviewer_id, action, **kwargs)

    def list_feedback(self, review_id: str) -> List[HumanFeedback]:
        return self.feedback.list_feedback(review_id)

    # ------------------------------------------------------------------
    # Notifications and analytics
    # ------------------------------------------------------------------

    def list_notifications(self, recipient_id: str, unread_only: bool = False,
                           page: int = 1, page_size: int = 20) -> List[ReviewNotification]:
        return self.dispatcher.list_notifications(recipient_id, unread_only, page, page_size)

    def mark_notification_read(self, notification_id: str, now: Optional[datetime] = None) -> ReviewNotification:
        return self.dispatcher.mark_read(notification_id, now=now)

    def get_notification_settings(self, user_id: str) -> NotificationSettings:
        return self.dispatcher.get_settings(user_id)

    def update_notification_settings(self, user_id: str, changes: Dict[str, Any],
                                     now: Optional[datetime] = None) -> NotificationSettings:
        return self.dispatcher.update_settings(user_id, changes, now=now)

    def get_analytics(self, window_start: Optional[datetime] = None, window_end: Optional[datetime] = None,
                      reviewer_id: Optional[str] = None, now: Optional[datetime] = None) -> ReviewAnalytics:
        if window_start and window_end and window_start > window_end:
            raise InvalidRequest("window start is after window end", field="start_date")
        return self.analytics.generate(window_start, window_end, reviewer_id=reviewer_id, now=now)

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def run_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        return self.scheduler.sweep(now=now)

    def start_scheduler(self, background: bool = True):
        """Register the periodic tasks and start the loop."""
        self.scheduler.register_tasks()
        if background:
            return heartbeat.start_background()
        heartbeat.start()
        return None


# Global engine instance
_engine: Optional[ReviewEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> ReviewEngine:
    """Process-wide engine, created on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = ReviewEngine()
        return _engine


def reset_engine(engine: Optional[ReviewEngine] = None):
    """Replace (or drop) the process-wide engine. Used by tests and config reloads."""
    global _engine
    with _engine_lock:
        _engine = engine


def submit_review(**kwargs) -> ReviewRequest:
    """Submit a review through the global engine."""
    return get_engine().submit_review(**kwargs)


def get_review(review_id: str) -> ReviewRequest:
    return get_engine().get_review(review_id)


def record_decision(workflow_id: str, step_id: str, action, reviewer: str, comments: str = "") -> ApprovalWorkflow:
    return get_engine().record_decision(workflow_id, step_id, action, reviewer, comments)


def run_sweep() -> Dict[str, int]:
    return get_engine().run_sweep()
