"""
Human feedback channel.

Feedback is how reviewers act: with a workflow attached, it is routed to
record_decision on the in-flight step; without one, its action maps straight to
a request transition. The feedback record is stored once the action applied.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from . import dao
from .errors import IllegalTransition, InvalidRequest, StaleStep
from .schema import FeedbackAction, FeedbackType, HumanFeedback, ReviewStatus, utcnow
from .store import ReviewRequestStore
from .workflow import WorkflowEngine
from ..util.logging import logger, audit_event

_DIRECT_TRANSITIONS = {
    FeedbackAction.APPROVE: ReviewStatus.APPROVED,
    FeedbackAction.REJECT: ReviewStatus.REJECTED,
    FeedbackAction.REQUEST_CHANGES: ReviewStatus.REQUIRES_CHANGES,
}


class FeedbackService:
    """Records HumanFeedback and applies its action."""

    def __init__(self, store: ReviewRequestStore, workflows: WorkflowEngine):
        self.store = store
        self.workflows = workflows

    def submit_feedback(self,
                        review_id: str,
                        reviewer_id: str,
                        action,
                        feedback_type=FeedbackType.GENERAL,
                        comments: str = "",
                        corrected_sql: Optional[str] = None,
                        issues_identified: Optional[List[str]] = None,
                        suggested_improvements: Optional[List[str]] = None,
                        quality_rating: Optional[int] = None,
                        step_id: Optional[str] = None,
                        now: Optional[datetime] = None) -> HumanFeedback:
        if not reviewer_id or not reviewer_id.strip():
            raise InvalidRequest("reviewer is required", field="reviewer_id")
        try:
            action = FeedbackAction(action)
        except ValueError:
            raise InvalidRequest(f"unknown action: {action}", field="action")
        try:
            feedback_type = FeedbackType(feedback_type)
        except ValueError:
            raise InvalidRequest(f"unknown feedback type: {feedback_type}", field="feedback_type")
        if quality_rating is not None and (isinstance(quality_rating, bool) or not 1 <= quality_rating <= 5):
            raise InvalidRequest("quality rating must be between 1 and 5", field="quality_rating")

        now = now or utcnow()
        request = self.store.get(review_id)

        if request.workflow_id:
            workflow = self.workflows.get(request.workflow_id)
            if step_id is None:
                current = workflow.current_step
                if current is None:
                    raise StaleStep(workflow.id, None, "no step in flight")
                step_id = current.id
            self.workflows.record_decision(workflow.id, step_id, action, reviewer_id,
                                           comments=comments, corrected_sql=corrected_sql, now=now)
        else:
            self._apply_direct(request, reviewer_id, action, comments, corrected_sql, now)

        feedback = HumanFeedback(
            id=str(uuid.uuid4()),
            review_request_id=review_id,
            reviewer_id=reviewer_id,
            feedback_type=feedback_type,
            action=action,
            provided_at=now,
            corrected_sql=corrected_sql,
            comments=comments or "",
            issues_identified=list(issues_identified or []),
            suggested_improvements=list(suggested_improvements or []),
            quality_rating=quality_rating,
            is_approved=action == FeedbackAction.APPROVE,
            step_id=step_id,
        )
        dao.add_feedback(feedback)
        audit_event("feedback.submitted", {"review_id": review_id, "feedback_id": feedback.id}, feedback.to_dict())
        return feedback

    def _apply_direct(self, request, reviewer_id: str, action: FeedbackAction, comments: str,
                      corrected_sql: Optional[str], now: datetime):
        """Ad-hoc review: only the assignee (or anyone, if unassigned) may act."""
        if request.assigned_to and request.assigned_to != reviewer_id:
            raise IllegalTransition("review", request.id, request.status.value, request.status.value,
                                    reason=f"{reviewer_id} is not assigned to this review")

        if action == FeedbackAction.DEFER:
            logger.log_operation("review.deferred", request.status.value,
                                 {"review_id": request.id, "reviewer": reviewer_id})
        elif action == FeedbackAction.CANCEL:
            self.workflows.cancel(request.id, actor=reviewer_id, reason=comments, now=now)
        elif action == FeedbackAction.ESCALATE:
            self.store.escalate(request.id, reason=comments, actor=reviewer_id, now=now)
        else:
            self.store.transition(request.id, _DIRECT_TRANSITIONS[action], actor=reviewer_id, reason=comments,
                                  corrected_sql=corrected_sql, now=now)

    def list_feedback(self, review_id: str) -> List[HumanFeedback]:
        self.store.get(review_id)
        return dao.list_feedback(review_id=review_id)
