"""
Review & approval endpoints.

The caller is identified by the X-User-Id header; authentication happens upstream.
"""

from fastapi import APIRouter, Depends, Header, Query
from typing import Optional
from datetime import datetime

from .schemas import (
    AnalyticsResponse,
    AssignRequest,
    DecisionRequest,
    FeedbackListResponse,
    FeedbackRequest,
    FeedbackResponse,
    IssueCreateRequest,
    NotificationListResponse,
    NotificationResponse,
    NotificationSettingsRequest,
    NotificationSettingsResponse,
    QueueResponse,
    ReasonRequest,
    ResubmitRequest,
    ReviewResponse,
    SubmitReviewRequest,
    TransitionRequest,
    ValidationIssueResponse,
    WorkflowResponse,
)
from ..core.engine import ReviewEngine, get_engine
from ..core.errors import InvalidRequest

router = APIRouter(prefix="/api/reviews", tags=["reviews"])


def _caller(x_user_id: Optional[str]) -> str:
    if not x_user_id or not x_user_id.strip():
        raise InvalidRequest("X-User-Id header is required", field="X-User-Id")
    return x_user_id.strip()


def _review(request) -> ReviewResponse:
    return ReviewResponse(**request.to_dict())


@router.post("/submit", response_model=ReviewResponse, status_code=201)
def submit_review(req: SubmitReviewRequest,
                  x_user_id: Optional[str] = Header(None),
                  engine: ReviewEngine = Depends(get_engine)):
    """Submit generated SQL for review. Policy may resolve it immediately."""
    requested_by = req.requested_by or _caller(x_user_id)
    request = engine.submit_review(
        original_query=req.original_query,
        generated_sql=req.generated_sql,
        review_type=req.review_type,
        requested_by=requested_by,
        confidence_score=req.confidence_score,
        requires_approval=req.requires_approval,
        priority=req.priority,
        review_notes=req.review_notes,
        validation_issues=[issue.model_dump() for issue in req.validation_issues],
    )
    return _review(request)


@router.get("/queue", response_model=QueueResponse)
def review_queue(assigned_to: Optional[str] = Query(None, description="Only reviews assigned to this user"),
                 review_type: Optional[str] = Query(None),
                 priority: Optional[str] = Query(None),
                 page: int = Query(1, ge=1),
                 page_size: int = Query(20, ge=1, le=100),
                 engine: ReviewEngine = Depends(get_engine)):
    """Open reviews, highest priority first."""
    items, total = engine.get_review_queue(assigned_to, review_type, priority, page, page_size)
    return QueueResponse(items=[_review(r) for r in items], total=total, page=page, page_size=page_size)


@router.get("/analytics", response_model=AnalyticsResponse)
def review_analytics(start_date: Optional[datetime] = Query(None),
                     end_date: Optional[datetime] = Query(None),
                     reviewer_id: Optional[str] = Query(None, description="Only feedback from this reviewer"),
                     engine: ReviewEngine = Depends(get_engine)):
    """Aggregate review outcomes for reviews created in [start_date, end_date]."""
    analytics = engine.get_analytics(start_date, end_date, reviewer_id=reviewer_id)
    return AnalyticsResponse(**analytics.to_dict())


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(unread_only: bool = Query(False),
                       page: int = Query(1, ge=1),
                       page_size: int = Query(20, ge=1, le=100),
                       x_user_id: Optional[str] = Header(None),
                       engine: ReviewEngine = Depends(get_engine)):
    notifications = engine.list_notifications(_caller(x_user_id), unread_only, page, page_size)
    return NotificationListResponse(
        notifications=[NotificationResponse(**n.to_dict()) for n in notifications],
        page=page,
        page_size=page_size,
    )


@router.get("/notifications/settings", response_model=NotificationSettingsResponse)
def get_notification_settings(x_user_id: Optional[str] = Header(None),
                              engine: ReviewEngine = Depends(get_engine)):
    return NotificationSettingsResponse(**engine.get_notification_settings(_caller(x_user_id)).to_dict())


@router.put("/notifications/settings", response_model=NotificationSettingsResponse)
def update_notification_settings(req: NotificationSettingsRequest,
                                 x_user_id: Optional[str] = Header(None),
                                 engine: ReviewEngine = Depends(get_engine)):
    """Change only the fields present in the body."""
    settings = engine.update_notification_settings(_caller(x_user_id), req.model_dump(exclude_unset=True))
    return NotificationSettingsResponse(**settings.to_dict())


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(notification_id: str, engine: ReviewEngine = Depends(get_engine)):
    return NotificationResponse(**engine.mark_notification_read(notification_id).to_dict())


@router.post("/workflows/{workflow_id}/steps/{step_id}/decision", response_model=WorkflowResponse)
def record_step_decision(workflow_id: str,
                         step_id: str,
                         req: DecisionRequest,
                         x_user_id: Optional[str] = Header(None),
                         engine: ReviewEngine = Depends(get_engine)):
    """Decide on the workflow's in-flight step. A stale step returns 409."""
    workflow = engine.record_decision(workflow_id, step_id, req.decision, _caller(x_user_id),
                                      comments=req.comments, corrected_sql=req.corrected_sql)
    return WorkflowResponse(**workflow.to_dict())


@router.get("/{review_id}", response_model=ReviewResponse)
def get_review(review_id: str, engine: ReviewEngine = Depends(get_engine)):
    return _review(engine.get_review(review_id))


@router.get("/{review_id}/workflow", response_model=WorkflowResponse)
def get_review_workflow(review_id: str, engine: ReviewEngine = Depends(get_engine)):
    return WorkflowResponse(**engine.get_workflow(review_id).to_dict())


@router.post("/{review_id}/assign", response_model=ReviewResponse)
def assign_review(review_id: str,
                  req: AssignRequest,
                  x_user_id: Optional[str] = Header(None),
                  engine: ReviewEngine = Depends(get_engine)):
    return _review(engine.assign(review_id, req.assignee, actor=x_user_id or "system"))


@router.post("/{review_id}/complete", response_model=FeedbackResponse)
def complete_review(review_id: str,
                    req: FeedbackRequest,
                    x_user_id: Optional[str] = Header(None),
                    engine: ReviewEngine = Depends(get_engine)):
    """Record reviewer feedback and apply its action."""
    feedback = engine.submit_feedback(
        review_id,
        _caller(x_user_id),
        req.action,
        feedback_type=req.feedback_type,
        comments=req.comments,
        corrected_sql=req.corrected_sql,
        issues_identified=req.issues_identified,
        suggested_improvements=req.suggested_improvements,
        quality_rating=req.quality_rating,
        step_id=req.step_id,
    )
    return FeedbackResponse(**feedback.to_dict())


@router.post("/{review_id}/cancel", response_model=ReviewResponse)
def cancel_review(review_id: str,
                  req: ReasonRequest,
                  x_user_id: Optional[str] = Header(None),
                  engine: ReviewEngine = Depends(get_engine)):
    """Cancel a review. Cancelling twice is not an error."""
    return _review(engine.cancel(review_id, actor=x_user_id or "system", reason=req.reason))


@router.post("/{review_id}/escalate", response_model=ReviewResponse)
def escalate_review(review_id: str,
                    req: ReasonRequest,
                    x_user_id: Optional[str] = Header(None),
                    engine: ReviewEngine = Depends(get_engine)):
    return _review(engine.escalate(review_id, reason=req.reason, actor=x_user_id or "system"))


@router.post("/{review_id}/resubmit", response_model=ReviewResponse)
def resubmit_review(review_id: str,
                    req: ResubmitRequest,
                    x_user_id: Optional[str] = Header(None),
                    engine: ReviewEngine = Depends(get_engine)):
    """Put a review back in review after requested changes or an escalation."""
    return _review(engine.resubmit(review_id, corrected_sql=req.corrected_sql, actor=x_user_id or "system"))


@router.post("/{review_id}/transition", response_model=ReviewResponse)
def transition_review(review_id: str,
                      req: TransitionRequest,
                      x_user_id: Optional[str] = Header(None),
                      engine: ReviewEngine = Depends(get_engine)):
    return _review(engine.transition(review_id, req.status, actor=x_user_id or "system", reason=req.reason))


@router.post("/{review_id}/issues", response_model=ValidationIssueResponse, status_code=201)
def attach_issue(review_id: str, req: IssueCreateRequest, engine: ReviewEngine = Depends(get_engine)):
    issue = engine.attach_issue(review_id, req.issue_type, req.description, req.severity,
                                req.location, req.suggested_fix)
    return ValidationIssueResponse(**issue.to_dict())


@router.post("/{review_id}/issues/{issue_id}/resolve", response_model=ValidationIssueResponse)
def resolve_issue(review_id: str,
                  issue_id: str,
                  x_user_id: Optional[str] = Header(None),
                  engine: ReviewEngine = Depends(get_engine)):
    issue = engine.resolve_issue(review_id, issue_id, _caller(x_user_id))
    return ValidationIssueResponse(**issue.to_dict())


@router.get("/{review_id}/feedback", response_model=FeedbackListResponse)
def list_review_feedback(review_id: str, engine: ReviewEngine = Depends(get_engine)):
    return FeedbackListResponse(feedback=[FeedbackResponse(**f.to_dict()) for f in engine.list_feedback(review_id)])
