"""
Legal transition tables for requests, workflows and steps.
All status guards in the engine go through this module.
"""

from typing import Dict, FrozenSet

from .errors import IllegalTransition
from .schema import ApprovalStepStatus, ReviewStatus, WorkflowStatus


TERMINAL_REVIEW_STATUSES: FrozenSet[ReviewStatus] = frozenset({
    ReviewStatus.APPROVED,
    ReviewStatus.REJECTED,
    ReviewStatus.CANCELLED,
    ReviewStatus.EXPIRED,
})

OPEN_REVIEW_STATUSES: FrozenSet[ReviewStatus] = frozenset(set(ReviewStatus) - TERMINAL_REVIEW_STATUSES)

REVIEW_TRANSITIONS: Dict[ReviewStatus, FrozenSet[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset({
        ReviewStatus.IN_REVIEW,
        ReviewStatus.APPROVED,
        ReviewStatus.REJECTED,
        ReviewStatus.CANCELLED,
        ReviewStatus.EXPIRED,
    }),
    ReviewStatus.IN_REVIEW: frozenset({
        ReviewStatus.APPROVED,
        ReviewStatus.REJECTED,
        ReviewStatus.REQUIRES_CHANGES,
        ReviewStatus.ESCALATED,
        ReviewStatus.CANCELLED,
        ReviewStatus.EXPIRED,
    }),
    ReviewStatus.REQUIRES_CHANGES: frozenset({
        ReviewStatus.IN_REVIEW,
        ReviewStatus.CANCELLED,
        ReviewStatus.EXPIRED,
    }),
    ReviewStatus.ESCALATED: frozenset({
        ReviewStatus.IN_REVIEW,
        ReviewStatus.APPROVED,
        ReviewStatus.REJECTED,
        ReviewStatus.CANCELLED,
        ReviewStatus.EXPIRED,
    }),
    ReviewStatus.APPROVED: frozenset(),
    ReviewStatus.REJECTED: frozenset(),
    ReviewStatus.CANCELLED: frozenset(),
    ReviewStatus.EXPIRED: frozenset(),
}

TERMINAL_WORKFLOW_STATUSES: FrozenSet[WorkflowStatus] = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.FAILED,
    WorkflowStatus.EXPIRED,
})

TERMINAL_STEP_STATUSES: FrozenSet[ApprovalStepStatus] = frozenset({
    ApprovalStepStatus.APPROVED,
    ApprovalStepStatus.REJECTED,
    ApprovalStepStatus.SKIPPED,
    ApprovalStepStatus.EXPIRED,
})

STEP_TRANSITIONS: Dict[ApprovalStepStatus, FrozenSet[ApprovalStepStatus]] = {
    ApprovalStepStatus.PENDING: frozenset({
        ApprovalStepStatus.IN_PROGRESS,
        ApprovalStepStatus.SKIPPED,
        ApprovalStepStatus.EXPIRED,
    }),
    ApprovalStepStatus.IN_PROGRESS: frozenset(TERMINAL_STEP_STATUSES),
}


def is_terminal_review(status: ReviewStatus) -> bool:
    return status in TERMINAL_REVIEW_STATUSES


def is_terminal_workflow(status: WorkflowStatus) -> bool:
    return status in TERMINAL_WORKFLOW_STATUSES


def is_terminal_step(status: ApprovalStepStatus) -> bool:
    return status in TERMINAL_STEP_STATUSES


def can_transition(from_status: ReviewStatus, to_status: ReviewStatus) -> bool:
    return to_status in REVIEW_TRANSITIONS.get(from_status, frozenset())


def ensure_review_transition(review_id: str, from_status: ReviewStatus, to_status: ReviewStatus):
    """Raise IllegalTransition unless from_status -> to_status is in the table."""
    if not can_transition(from_status, to_status):
        raise IllegalTransition("review", review_id, from_status.value, to_status.value)


def ensure_step_transition(step_id: str, from_status: ApprovalStepStatus, to_status: ApprovalStepStatus):
    if to_status not in STEP_TRANSITIONS.get(from_status, frozenset()):
        raise IllegalTransition("step", step_id, from_status.value, to_status.value)
