"""
Consistency checks over persisted requests and workflows.

A violation means an earlier bug wrote impossible state. It is reported with
InvariantViolation and never patched in place.
"""

from typing import Optional

from .errors import InvariantViolation
from .schema import ApprovalStepStatus, ApprovalWorkflow, ReviewRequest, WorkflowStatus
from .transitions import is_terminal_review, is_terminal_step, is_terminal_workflow


def check_request_invariants(request: ReviewRequest):
    terminal = is_terminal_review(request.status)
    if terminal and request.reviewed_at is None:
        raise InvariantViolation("review", request.id, f"status {request.status.value} without reviewed_at")
    if not terminal and request.reviewed_at is not None:
        raise InvariantViolation("review", request.id, f"reviewed_at set while {request.status.value}")

    for issue in request.validation_issues:
        has_resolution = issue.resolved_at is not None and issue.resolved_by is not None
        if issue.is_resolved != has_resolution:
            raise InvariantViolation("review", request.id, f"issue {issue.id} resolution fields inconsistent")


def check_workflow_invariants(workflow: ApprovalWorkflow, request: Optional[ReviewRequest] = None):
    steps = workflow.steps
    index = workflow.current_step_index

    if workflow.status == WorkflowStatus.IN_PROGRESS:
        if not 0 <= index < len(steps):
            raise InvariantViolation("workflow", workflow.id, f"current_step_index {index} out of range while in progress")
        for position, step in enumerate(steps):
            if position < index and not is_terminal_step(step.status):
                raise InvariantViolation("workflow", workflow.id, f"step {step.id} before the current step is {step.status.value}")
            if position > index and step.status != ApprovalStepStatus.PENDING:
                raise InvariantViolation("workflow", workflow.id, f"step {step.id} after the current step is {step.status.value}")
    else:
        if not 0 <= index <= len(steps):
            raise InvariantViolation("workflow", workflow.id, f"current_step_index {index} out of range")
        if workflow.status == WorkflowStatus.COMPLETED and index != len(steps):
            raise InvariantViolation("workflow", workflow.id, "completed before the last step")
        if index == len(steps) and workflow.status != WorkflowStatus.COMPLETED and steps:
            raise InvariantViolation("workflow", workflow.id, f"index past the last step while {workflow.status.value}")
        for step in steps:
            if step.status == ApprovalStepStatus.IN_PROGRESS:
                raise InvariantViolation("workflow", workflow.id, f"terminal workflow with step {step.id} in progress")

    for position in range(1, len(steps)):
        if steps[position].order < steps[position - 1].order:
            raise InvariantViolation("workflow", workflow.id, "steps out of order")

    if request is not None:
        if workflow.review_request_id != request.id or request.workflow_id != workflow.id:
            raise InvariantViolation("workflow", workflow.id, f"not linked to review {request.id}")
        if is_terminal_workflow(workflow.status) and not is_terminal_review(request.status):
            raise InvariantViolation("workflow", workflow.id,
                                     f"workflow {workflow.status.value} but review still {request.status.value}")
        if not is_terminal_workflow(workflow.status) and is_terminal_review(request.status):
            raise InvariantViolation("workflow", workflow.id, f"still in progress but review is {request.status.value}")
