"""
Request/response models for the review HTTP API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, time

from ..core.schema import FeedbackAction, FeedbackType, IssueSeverity, ReviewPriority, ReviewStatus, ReviewType


def _values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


class IssueCreateRequest(BaseModel):
    issue_type: str
    description: str = ""
    severity: str = IssueSeverity.MEDIUM.value
    location: Optional[str] = None
    suggested_fix: Optional[str] = None

    @field_validator('issue_type')
    @classmethod
    def issue_type_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('issue_type cannot be empty')
        return v

    @field_validator('severity')
    @classmethod
    def severity_must_be_valid(cls, v):
        if v not in _values(IssueSeverity):
            raise ValueError(f'severity must be one of: {_values(IssueSeverity)}')
        return v


class SubmitReviewRequest(BaseModel):
    original_query: str
    generated_sql: str
    review_type: str
    requested_by: Optional[str] = None
    confidence_score: Optional[float] = None
    requires_approval: bool = False
    priority: Optional[str] = None
    review_notes: str = ""
    validation_issues: List[IssueCreateRequest] = []

    @field_validator('original_query', 'generated_sql')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('text cannot be empty')
        return v

    @field_validator('review_type')
    @classmethod
    def review_type_must_be_valid(cls, v):
        if v not in _values(ReviewType):
            raise ValueError(f'review_type must be one of: {_values(ReviewType)}')
        return v

    @field_validator('priority')
    @classmethod
    def priority_must_be_valid(cls, v):
        if v is not None and v not in _values(ReviewPriority):
            raise ValueError(f'priority must be one of: {_values(ReviewPriority)}')
        return v


class ValidationIssueResponse(BaseModel):
    id: str
    issue_type: str
    description: str
    severity: str
    location: Optional[str] = None
    suggested_fix: Optional[str] = None
    is_resolved: bool
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class ReviewResponse(BaseModel):
    id: str
    original_query: str
    generated_sql: str
    corrected_sql: Optional[str] = None
    review_type: str
    status: str
    priority: str
    requested_by: str
    assigned_to: Optional[str] = None
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    review_notes: str = ""
    validation_issues: List[ValidationIssueResponse] = []
    confidence_score: Optional[float] = None
    requires_approval: bool
    workflow_id: Optional[str] = None
    auto_resolved: bool
    version: int


class QueueResponse(BaseModel):
    items: List[ReviewResponse]
    total: int
    page: int
    page_size: int


class ApprovalStepResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    assigned_to: Optional[str] = None
    assigned_role: Optional[str] = None
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    decision: Optional[str] = None
    decided_by: Optional[str] = None
    comments: str = ""
    is_required: bool
    order: int
    timeout_sec: Optional[float] = None
    escalated_at: Optional[datetime] = None


class WorkflowResponse(BaseModel):
    id: str
    review_request_id: str
    workflow_name: str
    steps: List[ApprovalStepResponse]
    current_step_index: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    final_decision: Optional[str] = None
    context: Dict[str, Any]
    version: int


class AssignRequest(BaseModel):
    assignee: str

    @field_validator('assignee')
    @classmethod
    def assignee_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('assignee cannot be empty')
        return v


class ReasonRequest(BaseModel):
    reason: str = ""


class ResubmitRequest(BaseModel):
    corrected_sql: Optional[str] = None


class TransitionRequest(BaseModel):
    status: str
    reason: str = ""

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        if v not in _values(ReviewStatus):
            raise ValueError(f'status must be one of: {_values(ReviewStatus)}')
        return v


class FeedbackRequest(BaseModel):
    action: str
    feedback_type: str = FeedbackType.GENERAL.value
    comments: str = ""
    corrected_sql: Optional[str] = None
    issues_identified: List[str] = []
    suggested_improvements: List[str] = []
    quality_rating: Optional[int] = None
    step_id: Optional[str] = None

    @field_validator('action')
    @classmethod
    def action_must_be_valid(cls, v):
        if v not in _values(FeedbackAction):
            raise ValueError(f'action must be one of: {_values(FeedbackAction)}')
        return v

    @field_validator('feedback_type')
    @classmethod
    def feedback_type_must_be_valid(cls, v):
        if v not in _values(FeedbackType):
            raise ValueError(f'feedback_type must be one of: {_values(FeedbackType)}')
        return v

    @field_validator('quality_rating')
    @classmethod
    def rating_must_be_in_range(cls, v):
        if v is not None and not 1 <= v <= 5:
            raise ValueError('quality_rating must be between 1 and 5')
        return v


class DecisionRequest(BaseModel):
    decision: str
    comments: str = ""
    corrected_sql: Optional[str] = None

    @field_validator('decision')
    @classmethod
    def decision_must_be_valid(cls, v):
        if v not in _values(FeedbackAction):
            raise ValueError(f'decision must be one of: {_values(FeedbackAction)}')
        return v


class FeedbackResponse(BaseModel):
    id: str
    review_request_id: str
    reviewer_id: str
    feedback_type: str
    action: str
    provided_at: datetime
    corrected_sql: Optional[str] = None
    comments: str = ""
    issues_identified: List[str] = []
    suggested_improvements: List[str] = []
    quality_rating: Optional[int] = None
    is_approved: bool
    step_id: Optional[str] = None


class FeedbackListResponse(BaseModel):
    feedback: List[FeedbackResponse]


class NotificationResponse(BaseModel):
    id: str
    review_request_id: str
    recipient_id: str
    notification_type: str
    title: str
    message: str
    created_at: datetime
    payload: Dict[str, Any]
    priority: str
    is_read: bool
    read_at: Optional[datetime] = None
    delivery_status: str
    delivery_attempts: int
    next_attempt_at: Optional[datetime] = None
    channels: List[str] = []


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    page: int
    page_size: int


class NotificationSettingsRequest(BaseModel):
    """Partial update; fields left out keep their stored value."""
    email_notifications: Optional[bool] = None
    in_app_notifications: Optional[bool] = None
    slack_notifications: Optional[bool] = None
    reminder_interval_sec: Optional[float] = None
    review_types: Optional[List[str]] = None
    priorities: Optional[List[str]] = None
    weekend_notifications: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None

    @field_validator('review_types')
    @classmethod
    def review_types_must_be_valid(cls, v):
        if v is not None:
            unknown = [t for t in v if t not in _values(ReviewType)]
            if unknown:
                raise ValueError(f'review_types must be drawn from: {_values(ReviewType)}')
        return v

    @field_validator('priorities')
    @classmethod
    def priorities_must_be_valid(cls, v):
        if v is not None:
            unknown = [p for p in v if p not in _values(ReviewPriority)]
            if unknown:
                raise ValueError(f'priorities must be drawn from: {_values(ReviewPriority)}')
        return v

    @field_validator('reminder_interval_sec')
    @classmethod
    def reminder_interval_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('reminder_interval_sec must be positive')
        return v

    @field_validator('quiet_hours_start', 'quiet_hours_end')
    @classmethod
    def quiet_hours_must_be_clock_times(cls, v):
        if v is None or v == "":
            return None
        try:
            time.fromisoformat(v)
        except ValueError:
            raise ValueError('quiet hours must be HH:MM')
        return v


class NotificationSettingsResponse(BaseModel):
    user_id: str
    email_notifications: bool
    in_app_notifications: bool
    slack_notifications: bool
    reminder_interval_sec: Optional[float] = None
    review_types: List[str]
    priorities: List[str]
    weekend_notifications: bool
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    updated_at: Optional[datetime] = None


class AnalyticsResponse(BaseModel):
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    generated_at: datetime
    total_reviews: int
    approved_reviews: int
    rejected_reviews: int
    pending_reviews: int
    auto_resolved_reviews: int
    approval_rate: float
    average_review_time_minutes: float
    reviews_by_status: Dict[str, int]
    reviews_by_type: Dict[str, int]
    reviews_by_priority: Dict[str, int]
    steps_by_status: Dict[str, int]
    total_feedback: int
    average_quality_rating: float
    reviewer_ratings: Dict[str, float]
    feedback_by_action: Dict[str, int]
    feedback_by_type: Dict[str, int]
    common_issues: List[str]
    improvement_suggestions: List[str]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    scheduler: Dict[str, Any]
