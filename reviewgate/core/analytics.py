"""
Analytics Aggregator.

compute_analytics() is a pure function over one closed time window of request,
feedback and workflow history: the same inputs always give the same snapshot and
source records are never touched. ReviewAnalyticsService reads the window from
storage and persists scheduled snapshots.
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Iterable, Optional

from . import dao
from .schema import (
    ApprovalWorkflow,
    HumanFeedback,
    ReviewAnalytics,
    ReviewRequest,
    ReviewStatus,
    utcnow,
)
from .transitions import is_terminal_review
from ..util.logging import logger

TOP_ITEMS = 10


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_window(value: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def compute_analytics(requests: Iterable[ReviewRequest],
                      feedback: Iterable[HumanFeedback],
                      workflows: Iterable[ApprovalWorkflow],
                      window_start: Optional[datetime],
                      window_end: Optional[datetime],
                      generated_at: Optional[datetime] = None) -> ReviewAnalytics:
    """
    Aggregate review outcomes for requests created in [window_start, window_end].

    approval_rate = approved / (approved + rejected); requests in any other status
    are left out of the denominator, and an empty denominator gives 0.0.
    """
    window_start, window_end = _aware(window_start), _aware(window_end)
    requests = [r for r in requests if _in_window(r.created_at, window_start, window_end)]
    request_ids = {r.id for r in requests}
    feedback = [f for f in feedback if _in_window(f.provided_at, window_start, window_end)]
    workflows = [w for w in workflows if w.review_request_id in request_ids]

    by_status = Counter(r.status.value for r in requests)
    approved = by_status.get(ReviewStatus.APPROVED.value, 0)
    rejected = by_status.get(ReviewStatus.REJECTED.value, 0)
    decided = approved + rejected

    durations = [
        (r.reviewed_at - r.created_at).total_seconds() / 60.0
        for r in requests
        if is_terminal_review(r.status) and r.reviewed_at is not None
    ]

    ratings_by_reviewer = defaultdict(list)
    for item in feedback:
        if item.quality_rating is not None:
            ratings_by_reviewer[item.reviewer_id].append(item.quality_rating)
    all_ratings = [rating for ratings in ratings_by_reviewer.values() for rating in ratings]

    issues = Counter(issue for item in feedback for issue in item.issues_identified if issue)
    suggestions = Counter(s for item in feedback for s in item.suggested_improvements if s)

    return ReviewAnalytics(
        window_start=window_start,
        window_end=window_end,
        generated_at=generated_at or utcnow(),
        total_reviews=len(requests),
        approved_reviews=approved,
        rejected_reviews=rejected,
        pending_reviews=sum(1 for r in requests if not is_terminal_review(r.status)),
        auto_resolved_reviews=sum(1 for r in requests if r.auto_resolved),
        approval_rate=approved / decided if decided else 0.0,
        average_review_time_minutes=mean(durations) if durations else 0.0,
        reviews_by_status=dict(sorted(by_status.items())),
        reviews_by_type=dict(sorted(Counter(r.review_type.value for r in requests).items())),
        reviews_by_priority=dict(sorted(Counter(r.priority.value for r in requests).items())),
        steps_by_status=dict(sorted(Counter(s.status.value for w in workflows for s in w.steps).items())),
        total_feedback=len(feedback),
        average_quality_rating=float(mean(all_ratings)) if all_ratings else 0.0,
        reviewer_ratings={reviewer: float(mean(ratings)) for reviewer, ratings in sorted(ratings_by_reviewer.items())},
        feedback_by_action=dict(sorted(Counter(f.action.value for f in feedback).items())),
        feedback_by_type=dict(sorted(Counter(f.feedback_type.value for f in feedback).items())),
        common_issues=[issue for issue, _ in issues.most_common(TOP_ITEMS)],
        improvement_suggestions=[s for s, _ in suggestions.most_common(TOP_ITEMS)],
    )


class ReviewAnalyticsService:
    """Loads a window from storage and aggregates it."""

    def generate(self, window_start: Optional[datetime] = None, window_end: Optional[datetime] = None,
                 reviewer_id: Optional[str] = None, now: Optional[datetime] = None) -> ReviewAnalytics:
        """With reviewer_id, the feedback figures only cover that reviewer's feedback."""
        requests = dao.list_requests(created_from=window_start, created_to=window_end)
        feedback = dao.list_feedback(provided_from=window_start, provided_to=window_end, reviewer_id=reviewer_id)
        request_ids = {r.id for r in requests}
        workflows = [w for w in dao.list_workflows() if w.review_request_id in request_ids]
        return compute_analytics(requests, feedback, workflows, window_start, window_end, generated_at=now)

    def snapshot(self, window: timedelta, now: Optional[datetime] = None) -> ReviewAnalytics:
        """Aggregate the trailing window ending now and store the result."""
        now = now or utcnow()
        analytics = self.generate(now - window, now, now=now)
        dao.save_analytics_snapshot(analytics)
        logger.log_operation("analytics.snapshot", "saved", {
            "window_start": analytics.window_start.isoformat(),
            "total_reviews": analytics.total_reviews,
            "approval_rate": round(analytics.approval_rate, 3),
        })
        return analytics

    def latest_snapshot(self) -> Optional[dict]:
        return dao.latest_analytics_snapshot()
