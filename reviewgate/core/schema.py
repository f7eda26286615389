"""
Review data model - requests, approval workflows, feedback, issues, notifications
and analytics snapshots, with their closed status enumerations.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time; every stored timestamp uses it."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _seconds(value: Optional[timedelta]) -> Optional[float]:
    return value.total_seconds() if value is not None else None


def _parse_td(value) -> Optional[timedelta]:
    if value is None:
        return None
    return timedelta(seconds=float(value))


class ReviewStatus(str, Enum):
    """Request-level status."""
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUIRES_CHANGES = "requires_changes"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ReviewType(str, Enum):
    """Category of review; selects the per-type policy."""
    SQL_VALIDATION = "sql_validation"
    SEMANTIC_ALIGNMENT = "semantic_alignment"
    BUSINESS_LOGIC = "business_logic"
    SECURITY_REVIEW = "security_review"
    PERFORMANCE_REVIEW = "performance_review"
    COMPLIANCE_REVIEW = "compliance_review"
    DATA_ACCESS = "data_access"
    SENSITIVE_DATA = "sensitive_data"


class ReviewPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"
    URGENT = "urgent"


PRIORITY_RANK = {
    ReviewPriority.LOW: 0,
    ReviewPriority.NORMAL: 1,
    ReviewPriority.HIGH: 2,
    ReviewPriority.CRITICAL: 3,
    ReviewPriority.URGENT: 4,
}


def at_least(priority: "ReviewPriority", floor: "ReviewPriority") -> "ReviewPriority":
    """Return the higher of two priorities."""
    return priority if PRIORITY_RANK[priority] >= PRIORITY_RANK[floor] else floor


class WorkflowStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"


class ApprovalStepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    EXPIRED = "expired"


class FeedbackAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"
    ESCALATE = "escalate"
    DEFER = "defer"
    CANCEL = "cancel"


class FeedbackType(str, Enum):
    INCORRECT_SQL = "incorrect_sql"
    MISSING_INFORMATION = "missing_information"
    IRRELEVANT_CONTEXT = "irrelevant_context"
    TOO_MUCH_CONTEXT = "too_much_context"
    TOO_LITTLE_CONTEXT = "too_little_context"
    GENERAL = "general"


class IssueSeverity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ERROR = "error"
    CRITICAL = "critical"


class NotificationType(str, Enum):
    REVIEW_ASSIGNED = "review_assigned"
    REVIEW_REMINDER = "review_reminder"
    REVIEW_ESCALATED = "review_escalated"
    REVIEW_COMPLETED = "review_completed"
    CHANGES_REQUESTED = "changes_requested"
    REVIEW_CANCELLED = "review_cancelled"
    REVIEW_EXPIRED = "review_expired"
    STEP_ACTIVATED = "step_activated"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationChannel(str, Enum):
    """External channels a delivery is fanned out to; in-app is the stored inbox."""
    EMAIL = "email"
    SLACK = "slack"


@dataclass
class ValidationIssue:
    """A defect found in the artifact under review."""
    id: str
    issue_type: str
    description: str
    severity: IssueSeverity = IssueSeverity.MEDIUM
    location: Optional[str] = None
    suggested_fix: Optional[str] = None
    is_resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "issue_type": self.issue_type,
            "description": self.description,
            "severity": self.severity.value,
            "location": self.location,
            "suggested_fix": self.suggested_fix,
            "is_resolved": self.is_resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationIssue":
        return cls(
            id=data["id"],
            issue_type=data["issue_type"],
            description=data.get("description", ""),
            severity=IssueSeverity(data.get("severity", "medium")),
            location=data.get("location"),
            suggested_fix=data.get("suggested_fix"),
            is_resolved=bool(data.get("is_resolved", False)),
            resolved_by=data.get("resolved_by"),
            resolved_at=_parse_dt(data.get("resolved_at")),
        )


@dataclass
class ReviewRequest:
    """
    A unit of human validation work over one AI-generated SQL artifact.

    Status is only ever changed by the engine; `reviewed_at` is set exactly
    when the status is terminal. `version` backs compare-and-set writes.
    """
    id: str
    original_query: str
    generated_sql: str
    review_type: ReviewType
    requested_by: str
    created_at: datetime
    status: ReviewStatus = ReviewStatus.PENDING
    priority: ReviewPriority = ReviewPriority.NORMAL
    assigned_to: Optional[str] = None
    corrected_sql: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: str = ""
    validation_issues: List[ValidationIssue] = field(default_factory=list)
    confidence_score: Optional[float] = None
    requires_approval: bool = False
    workflow_id: Optional[str] = None
    auto_resolved: bool = False
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and API responses."""
        return {
            "id": self.id,
            "original_query": self.original_query,
            "generated_sql": self.generated_sql,
            "review_type": self.review_type.value,
            "requested_by": self.requested_by,
            "created_at": _iso(self.created_at),
            "status": self.status.value,
            "priority": self.priority.value,
            "assigned_to": self.assigned_to,
            "corrected_sql": self.corrected_sql,
            "reviewed_at": _iso(self.reviewed_at),
            "review_notes": self.review_notes,
            "validation_issues": [issue.to_dict() for issue in self.validation_issues],
            "confidence_score": self.confidence_score,
            "requires_approval": self.requires_approval,
            "workflow_id": self.workflow_id,
            "auto_resolved": self.auto_resolved,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewRequest":
        """Create from dictionary (for loading from storage)."""
        return cls(
            id=data["id"],
            original_query=data["original_query"],
            generated_sql=data["generated_sql"],
            review_type=ReviewType(data["review_type"]),
            requested_by=data["requested_by"],
            created_at=_parse_dt(data["created_at"]),
            status=ReviewStatus(data.get("status", "pending")),
            priority=ReviewPriority(data.get("priority", "normal")),
            assigned_to=data.get("assigned_to"),
            corrected_sql=data.get("corrected_sql"),
            reviewed_at=_parse_dt(data.get("reviewed_at")),
            review_notes=data.get("review_notes", ""),
            validation_issues=[ValidationIssue.from_dict(i) for i in data.get("validation_issues", [])],
            confidence_score=data.get("confidence_score"),
            requires_approval=bool(data.get("requires_approval", False)),
            workflow_id=data.get("workflow_id"),
            auto_resolved=bool(data.get("auto_resolved", False)),
            version=int(data.get("version", 0)),
        )


@dataclass
class ApprovalStep:
    """One stage in an approval chain."""
    id: str
    name: str
    description: str = ""
    assigned_to: Optional[str] = None
    assigned_role: Optional[str] = None
    status: ApprovalStepStatus = ApprovalStepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    decision: Optional[str] = None
    decided_by: Optional[str] = None
    comments: str = ""
    is_required: bool = True
    order: int = 0
    timeout: Optional[timedelta] = None
    escalated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "assigned_to": self.assigned_to,
            "assigned_role": self.assigned_role,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "decision": self.decision,
            "decided_by": self.decided_by,
            "comments": self.comments,
            "is_required": self.is_required,
            "order": self.order,
            "timeout_sec": _seconds(self.timeout),
            "escalated_at": _iso(self.escalated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalStep":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            assigned_to=data.get("assigned_to"),
            assigned_role=data.get("assigned_role"),
            status=ApprovalStepStatus(data.get("status", "pending")),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            decision=data.get("decision"),
            decided_by=data.get("decided_by"),
            comments=data.get("comments", ""),
            is_required=bool(data.get("is_required", True)),
            order=int(data.get("order", 0)),
            timeout=_parse_td(data.get("timeout_sec")),
            escalated_at=_parse_dt(data.get("escalated_at")),
        )


@dataclass
class WorkflowContext:
    """Typed context carried by a workflow (schema version 1)."""
    review_type: ReviewType
    priority: ReviewPriority
    requested_by: str
    confidence_score: Optional[float] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    schema_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "review_type": self.review_type.value,
            "priority": self.priority.value,
            "requested_by": self.requested_by,
            "confidence_score": self.confidence_score,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowContext":
        return cls(
            review_type=ReviewType(data["review_type"]),
            priority=ReviewPriority(data["priority"]),
            requested_by=data["requested_by"],
            confidence_score=data.get("confidence_score"),
            attributes={str(k): str(v) for k, v in data.get("attributes", {}).items()},
            schema_version=int(data.get("schema_version", 1)),
        )


@dataclass
class ApprovalWorkflow:
    """The ordered approval chain bound to exactly one review request."""
    id: str
    review_request_id: str
    workflow_name: str
    steps: List[ApprovalStep]
    started_at: datetime
    context: WorkflowContext
    current_step_index: int = 0
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    completed_at: Optional[datetime] = None
    final_decision: Optional[str] = None
    version: int = 0

    @property
    def current_step(self) -> Optional[ApprovalStep]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def find_step(self, step_id: str) -> Optional[ApprovalStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "review_request_id": self.review_request_id,
            "workflow_name": self.workflow_name,
            "steps": [step.to_dict() for step in self.steps],
            "started_at": _iso(self.started_at),
            "context": self.context.to_dict(),
            "current_step_index": self.current_step_index,
            "status": self.status.value,
            "completed_at": _iso(self.completed_at),
            "final_decision": self.final_decision,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalWorkflow":
        return cls(
            id=data["id"],
            review_request_id=data["review_request_id"],
            workflow_name=data["workflow_name"],
            steps=[ApprovalStep.from_dict(s) for s in data.get("steps", [])],
            started_at=_parse_dt(data["started_at"]),
            context=WorkflowContext.from_dict(data["context"]),
            current_step_index=int(data.get("current_step_index", 0)),
            status=WorkflowStatus(data.get("status", "in_progress")),
            completed_at=_parse_dt(data.get("completed_at")),
            final_decision=data.get("final_decision"),
            version=int(data.get("version", 0)),
        )


@dataclass
class HumanFeedback:
    """A reviewer's verdict on a request."""
    id: str
    review_request_id: str
    reviewer_id: str
    feedback_type: FeedbackType
    action: FeedbackAction
    provided_at: datetime
    corrected_sql: Optional[str] = None
    comments: str = ""
    issues_identified: List[str] = field(default_factory=list)
    suggested_improvements: List[str] = field(default_factory=list)
    quality_rating: Optional[int] = None
    is_approved: bool = False
    step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "review_request_id": self.review_request_id,
            "reviewer_id": self.reviewer_id,
            "feedback_type": self.feedback_type.value,
            "action": self.action.value,
            "provided_at": _iso(self.provided_at),
            "corrected_sql": self.corrected_sql,
            "comments": self.comments,
            "issues_identified": list(self.issues_identified),
            "suggested_improvements": list(self.suggested_improvements),
            "quality_rating": self.quality_rating,
            "is_approved": self.is_approved,
            "step_id": self.step_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HumanFeedback":
        return cls(
            id=data["id"],
            review_request_id=data["review_request_id"],
            reviewer_id=data["reviewer_id"],
            feedback_type=FeedbackType(data.get("feedback_type", "general")),
            action=FeedbackAction(data["action"]),
            provided_at=_parse_dt(data["provided_at"]),
            corrected_sql=data.get("corrected_sql"),
            comments=data.get("comments", ""),
            issues_identified=list(data.get("issues_identified", [])),
            suggested_improvements=list(data.get("suggested_improvements", [])),
            quality_rating=data.get("quality_rating"),
            is_approved=bool(data.get("is_approved", False)),
            step_id=data.get("step_id"),
        )


@dataclass
class NotificationPayload:
    """Typed notification body (schema version 1)."""
    review_id: str
    workflow_id: Optional[str] = None
    step_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: str = ""
    schema_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "review_id": self.review_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationPayload":
        return cls(
            review_id=data["review_id"],
            workflow_id=data.get("workflow_id"),
            step_id=data.get("step_id"),
            from_status=data.get("from_status"),
            to_status=data.get("to_status"),
            reason=data.get("reason", ""),
            schema_version=int(data.get("schema_version", 1)),
        )


@dataclass
class ReviewNotification:
    """Outbound event record. Write-once apart from read and delivery state."""
    id: str
    review_request_id: str
    recipient_id: str
    notification_type: NotificationType
    title: str
    message: str
    created_at: datetime
    payload: NotificationPayload
    priority: NotificationPriority = NotificationPriority.NORMAL
    is_read: bool = False
    read_at: Optional[datetime] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivery_attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    channels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "review_request_id": self.review_request_id,
            "recipient_id": self.recipient_id,
            "notification_type": self.notification_type.value,
            "title": self.title,
            "message": self.message,
            "created_at": _iso(self.created_at),
            "payload": self.payload.to_dict(),
            "priority": self.priority.value,
            "is_read": self.is_read,
            "read_at": _iso(self.read_at),
            "delivery_status": self.delivery_status.value,
            "delivery_attempts": self.delivery_attempts,
            "last_attempt_at": _iso(self.last_attempt_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "channels": list(self.channels),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewNotification":
        return cls(
            id=data["id"],
            review_request_id=data["review_request_id"],
            recipient_id=data["recipient_id"],
            notification_type=NotificationType(data["notification_type"]),
            title=data.get("title", ""),
            message=data.get("message", ""),
            created_at=_parse_dt(data["created_at"]),
            payload=NotificationPayload.from_dict(data["payload"]),
            priority=NotificationPriority(data.get("priority", "normal")),
            is_read=bool(data.get("is_read", False)),
            read_at=_parse_dt(data.get("read_at")),
            delivery_status=DeliveryStatus(data.get("delivery_status", "pending")),
            delivery_attempts=int(data.get("delivery_attempts", 0)),
            last_attempt_at=_parse_dt(data.get("last_attempt_at")),
            next_attempt_at=_parse_dt(data.get("next_attempt_at")),
            channels=list(data.get("channels", [])),
        )


def _clock(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value is not None else None


def _parse_clock(value) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


@dataclass
class NotificationSettings:
    """
    Per-user delivery preferences.

    Quiet hours and weekends are evaluated in UTC. A quiet window whose start is
    later than its end wraps past midnight (18:00-08:00).
    """
    user_id: str
    email_notifications: bool = True
    in_app_notifications: bool = True
    slack_notifications: bool = False
    reminder_interval: Optional[timedelta] = None
    review_types: List[ReviewType] = field(default_factory=lambda: list(ReviewType))
    priorities: List[ReviewPriority] = field(default_factory=lambda: list(ReviewPriority))
    weekend_notifications: bool = True
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    updated_at: Optional[datetime] = None

    @property
    def external_channels(self) -> List[str]:
        channels = []
        if self.email_notifications:
            channels.append(NotificationChannel.EMAIL.value)
        if self.slack_notifications:
            channels.append(NotificationChannel.SLACK.value)
        return channels

    def wants(self, review_type: ReviewType, priority: ReviewPriority) -> bool:
        return review_type in self.review_types and priority in self.priorities

    def in_quiet_hours(self, moment: datetime) -> bool:
        start, end = self.quiet_hours_start, self.quiet_hours_end
        if start is None or end is None or start == end:
            return False
        clock = moment.astimezone(timezone.utc).time()
        if start < end:
            return start <= clock < end
        return clock >= start or clock < end

    def next_delivery_time(self, moment: datetime) -> datetime:
        """Earliest time at or after moment that is outside quiet hours (and on a weekday if weekends are off)."""
        moment = moment.astimezone(timezone.utc)
        for _ in range(4):
            if not self.weekend_notifications and moment.weekday() >= 5:
                monday = moment.date() + timedelta(days=7 - moment.weekday())
                moment = datetime.combine(monday, time(0, 0), tzinfo=timezone.utc)
            elif self.in_quiet_hours(moment):
                resume = datetime.combine(moment.date(), self.quiet_hours_end, tzinfo=timezone.utc)
                if resume <= moment:
                    resume += timedelta(days=1)
                moment = resume
            else:
                break
        return moment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email_notifications": self.email_notifications,
            "in_app_notifications": self.in_app_notifications,
            "slack_notifications": self.slack_notifications,
            "reminder_interval_sec": _seconds(self.reminder_interval),
            "review_types": [t.value for t in self.review_types],
            "priorities": [p.value for p in self.priorities],
            "weekend_notifications": self.weekend_notifications,
            "quiet_hours_start": _clock(self.quiet_hours_start),
            "quiet_hours_end": _clock(self.quiet_hours_end),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationSettings":
        return cls(
            user_id=data["user_id"],
            email_notifications=bool(data.get("email_notifications", True)),
            in_app_notifications=bool(data.get("in_app_notifications", True)),
            slack_notifications=bool(data.get("slack_notifications", False)),
            reminder_interval=_parse_td(data.get("reminder_interval_sec")),
            review_types=[ReviewType(t) for t in data.get("review_types", [t.value for t in ReviewType])],
            priorities=[ReviewPriority(p) for p in data.get("priorities", [p.value for p in ReviewPriority])],
            weekend_notifications=bool(data.get("weekend_notifications", True)),
            quiet_hours_start=_parse_clock(data.get("quiet_hours_start")),
            quiet_hours_end=_parse_clock(data.get("quiet_hours_end")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class ReviewAnalytics:
    """Derived snapshot over a closed time window. Never edited by hand."""
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    generated_at: datetime
    total_reviews: int = 0
    approved_reviews: int = 0
    rejected_reviews: int = 0
    pending_reviews: int = 0
    auto_resolved_reviews: int = 0
    approval_rate: float = 0.0
    average_review_time_minutes: float = 0.0
    reviews_by_status: Dict[str, int] = field(default_factory=dict)
    reviews_by_type: Dict[str, int] = field(default_factory=dict)
    reviews_by_priority: Dict[str, int] = field(default_factory=dict)
    steps_by_status: Dict[str, int] = field(default_factory=dict)
    total_feedback: int = 0
    average_quality_rating: float = 0.0
    reviewer_ratings: Dict[str, float] = field(default_factory=dict)
    feedback_by_action: Dict[str, int] = field(default_factory=dict)
    feedback_by_type: Dict[str, int] = field(default_factory=dict)
    common_issues: List[str] = field(default_factory=list)
    improvement_suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "generated_at": _iso(self.generated_at),
            "total_reviews": self.total_reviews,
            "approved_reviews": self.approved_reviews,
            "rejected_reviews": self.rejected_reviews,
            "pending_reviews": self.pending_reviews,
            "auto_resolved_reviews": self.auto_resolved_reviews,
            "approval_rate": self.approval_rate,
            "average_review_time_minutes": self.average_review_time_minutes,
            "reviews_by_status": dict(self.reviews_by_status),
            "reviews_by_type": dict(self.reviews_by_type),
            "reviews_by_priority": dict(self.reviews_by_priority),
            "steps_by_status": dict(self.steps_by_status),
            "total_feedback": self.total_feedback,
            "average_quality_rating": self.average_quality_rating,
            "reviewer_ratings": dict(self.reviewer_ratings),
            "feedback_by_action": dict(self.feedback_by_action),
            "feedback_by_type": dict(self.feedback_by_type),
            "common_issues": list(self.common_issues),
            "improvement_suggestions": list(self.improvement_suggestions),
        }
