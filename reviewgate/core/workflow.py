"""
Approval Workflow Engine.

Drives ApprovalWorkflow / ApprovalStep state machines. The engine never blocks:
it reacts to a reviewer decision (record_decision) or to a timeout breach found
by the scheduler (expire_step). Each reaction re-reads state under the review's
entity lock and commits request and workflow together with compare-and-set;
a reaction aimed at a step that is no longer in flight raises StaleStep.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from . import dao
from .config import ReviewConfiguration
from .errors import DependencyUnavailable, IllegalTransition, InvalidRequest, NotFound, StaleStep
from .identity import IdentityProvider
from .notifications import NotificationDispatcher
from .schema import (
    ApprovalStep,
    ApprovalStepStatus,
    ApprovalWorkflow,
    FeedbackAction,
    NotificationPayload,
    NotificationType,
    ReviewPriority,
    ReviewRequest,
    ReviewStatus,
    WorkflowContext,
    WorkflowStatus,
    at_least,
    utcnow,
)
from .store import apply_status
from .transitions import ensure_step_transition, is_terminal_workflow
from ..util.logging import logger

# Request statuses in which a reviewer may act on the current step
DECIDABLE_REVIEW_STATUSES = (ReviewStatus.IN_REVIEW, ReviewStatus.ESCALATED)

TIMEOUT_ESCALATED = "escalated"
TIMEOUT_EXPIRED = "expired"
TIMEOUT_SKIPPED = "skipped"


class WorkflowEngine:
    """Multi-step approval chains bound to review requests."""

    def __init__(self,
                 config_source: Callable[[], ReviewConfiguration],
                 dispatcher: NotificationDispatcher,
                 identity: IdentityProvider):
        self._config_source = config_source
        self.dispatcher = dispatcher
        self.identity = identity

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, workflow_id: str) -> ApprovalWorkflow:
        workflow = dao.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound("workflow", workflow_id)
        return workflow

    def get_for_request(self, review_id: str) -> Optional[ApprovalWorkflow]:
        return dao.get_workflow_for_request(review_id)

    def _load(self, workflow_id: str) -> Tuple[ApprovalWorkflow, ReviewRequest]:
        workflow = self.get(workflow_id)
        request = dao.get_request(workflow.review_request_id)
        if request is None:
            raise NotFound("review", workflow.review_request_id)
        return workflow, request

    def role_members(self, role: Optional[str]) -> List[str]:
        if not role:
            return []
        try:
            return self.identity.resolve_role(role)
        except DependencyUnavailable as e:
            logger.warning(f"Could not resolve role {role}: {e}")
            return []

    @staticmethod
    def step_deadline(workflow: ApprovalWorkflow, step: ApprovalStep, config: ReviewConfiguration) -> datetime:
        """When the step times out: latest (re)start or escalation plus its effective timeout."""
        marks = [mark for mark in (step.started_at, step.escalated_at) if mark is not None]
        base = max(marks) if marks else workflow.started_at
        return base + (step.timeout or config.default_review_timeout)

    # ------------------------------------------------------------------
    # Building and starting
    # ------------------------------------------------------------------

    def build_steps(self, request: ReviewRequest, config: ReviewConfiguration) -> List[ApprovalStep]:
        """One required step per required role, then one optional step per optional role."""
        type_config = config.type_config(request.review_type)
        steps = []
        roles = [(role, True) for role in type_config.required_roles]
        roles += [(role, False) for role in type_config.optional_roles]

        for role, required in roles:
            assignee = None
            if request.assigned_to and request.assigned_to in self.role_members(role):
                assignee = request.assigned_to
            steps.append(ApprovalStep(
                id=str(uuid.uuid4()),
                name=f"{role} Approval",
                description=f"{role} sign-off for {request.review_type.value}",
                assigned_to=assignee,
                assigned_role=role,
                is_required=required,
                order=len(steps),
                timeout=type_config.timeout,
            ))
        return steps

    def start_workflow(self,
                       review_id: str,
                       priority: Optional[ReviewPriority] = None,
                       steps: Optional[List[ApprovalStep]] = None,
                       workflow_name: Optional[str] = None,
                       attributes: Optional[Dict[str, str]] = None,
                       config: Optional[ReviewConfiguration] = None,
                       now: Optional[datetime] = None) -> ApprovalWorkflow:
        """
        Attach a workflow to a pending request and activate its first step.

        `config` is the policy snapshot the caller routed with; it is read once
        here when not given.
        """
        now = now or utcnow()
        config = config or self._config_source()

        with dao.entity_lock(review_id):
            request = dao.get_request(review_id)
            if request is None:
                raise NotFound("review", review_id)
            if request.workflow_id:
                raise IllegalTransition("review", review_id, request.status.value, ReviewStatus.IN_REVIEW.value,
                                        reason="a workflow is already attached")
            if request.status != ReviewStatus.PENDING:
                raise IllegalTransition("review", review_id, request.status.value, ReviewStatus.IN_REVIEW.value,
                                        reason="workflows start from pending")

            if steps is None:
                steps = self.build_steps(request, config)
            if not steps:
                raise InvalidRequest("a workflow needs at least one step", field="steps")
            # sorted() is stable, so equal orders keep insertion sequence
            steps = sorted(steps, key=lambda s: s.order)

            from_status, version = request.status, request.version
            if priority is not None:
                request.priority = priority

            workflow = ApprovalWorkflow(
                id=str(uuid.uuid4()),
                review_request_id=review_id,
                workflow_name=workflow_name or f"{request.review_type.value} approval",
                steps=steps,
                started_at=now,
                context=WorkflowContext(
                    review_type=request.review_type,
                    priority=request.priority,
                    requested_by=request.requested_by,
                    confidence_score=request.confidence_score,
                    attributes={str(k): str(v) for k, v in (attributes or {}).items()},
                ),
            )
            apply_status(request, ReviewStatus.IN_REVIEW, now)
            request.workflow_id = workflow.id
            activated = self._activate(workflow, now)

            if not dao.commit_transition(request=request, request_expected=(from_status, version),
                                         new_workflow=workflow):
                raise IllegalTransition("review", review_id, from_status.value, ReviewStatus.IN_REVIEW.value,
                                        reason="request was modified concurrently")

        logger.log_transition(review_id, from_status.value, request.status.value, reason="workflow started")
        logger.log_workflow_status(workflow.id, review_id, workflow.status.value, workflow.current_step_index)
        self._notify_after(request, from_status, workflow, activated, "workflow started", now)
        return workflow

    # ------------------------------------------------------------------
    # Step mechanics (in-memory; committed by the callers)
    # ------------------------------------------------------------------

    def _activate(self, workflow: ApprovalWorkflow, now: datetime) -> Optional[ApprovalStep]:
        step = workflow.current_step
        if step is not None and step.status == ApprovalStepStatus.PENDING:
            ensure_step_transition(step.id, step.status, ApprovalStepStatus.IN_PROGRESS)
            step.status = ApprovalStepStatus.IN_PROGRESS
            step.started_at = now
            return step
        return None

    @staticmethod
    def _finish_step(step: ApprovalStep, status: ApprovalStepStatus, decision: str, now: datetime):
        ensure_step_transition(step.id, step.status, status)
        step.status = status
        step.decision = decision
        step.completed_at = now

    @staticmethod
    def _close(workflow: ApprovalWorkflow, status: WorkflowStatus, decision: str, now: datetime):
        workflow.status = status
        workflow.completed_at = now
        workflow.final_decision = decision

    def _advance_past(self, workflow: ApprovalWorkflow, request: ReviewRequest, now: datetime) -> Optional[ApprovalStep]:
        """Move beyond the current (finished) step; completes the workflow after the last one."""
        workflow.current_step_index += 1
        if workflow.current_step_index >= len(workflow.steps):
            workflow.current_step_index = len(workflow.steps)
            self._close(workflow, WorkflowStatus.COMPLETED, "approved", now)
            apply_status(request, ReviewStatus.APPROVED, now)
            return None
        return self._activate(workflow, now)

    @staticmethod
    def _in_flight_step(workflow: ApprovalWorkflow, step_id: str) -> ApprovalStep:
        if is_terminal_workflow(workflow.status):
            raise StaleStep(workflow.id, step_id, f"workflow is {workflow.status.value}")
        step = workflow.find_step(step_id)
        if step is None:
            raise NotFound("step", step_id)
        current = workflow.current_step
        if current is None or current.id != step_id:
            raise StaleStep(workflow.id, step_id, "not the current step")
        if step.status != ApprovalStepStatus.IN_PROGRESS:
            raise StaleStep(workflow.id, step_id, f"step is {step.status.value}")
        return step

    def _commit(self, request: ReviewRequest, request_expected, workflow: ApprovalWorkflow, workflow_expected,
                step_id: Optional[str]):
        if not dao.commit_transition(request=request, request_expected=request_expected,
                                     workflow=workflow, workflow_expected=workflow_expected):
            raise StaleStep(workflow.id, step_id, "workflow or request changed concurrently")

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def record_decision(self,
                        workflow_id: str,
                        step_id: str,
                        action,
                        reviewer: str,
                        comments: str = "",
                        corrected_sql: Optional[str] = None,
                        now: Optional[datetime] = None) -> ApprovalWorkflow:
        """
        Apply a reviewer decision to the workflow's in-flight step.

        Approve/Reject finish the step; RequestChanges and Escalate change the
        request status and leave the step in progress; Defer changes nothing;
        Cancel cancels the whole review.
        """
        try:
            action = FeedbackAction(action)
        except ValueError:
            raise InvalidRequest(f"unknown decision: {action}", field="action")
        if not reviewer or not reviewer.strip():
            raise InvalidRequest("reviewer is required", field="reviewer")
        now = now or utcnow()
        config = self._config_source()

        review_id = self.get(workflow_id).review_request_id
        if action == FeedbackAction.CANCEL:
            with dao.entity_lock(review_id):
                workflow, _ = self._load(workflow_id)
                step = self._in_flight_step(workflow, step_id)
                self._check_reviewer(step, reviewer)
            self.cancel(review_id, actor=reviewer, reason=comments or "cancelled by reviewer", now=now)
            return self.get(workflow_id)

        with dao.entity_lock(review_id):
            workflow, request = self._load(workflow_id)
            step = self._in_flight_step(workflow, step_id)
            self._check_reviewer(step, reviewer)

            if action == FeedbackAction.DEFER:
                logger.log_step_decision(workflow_id, step_id, action.value, reviewer, comments)
                return workflow

            if request.status not in DECIDABLE_REVIEW_STATUSES:
                raise IllegalTransition("review", review_id, request.status.value, action.value,
                                        reason="step decisions need a review that is in review or escalated")

            request_expected = (request.status, request.version)
            workflow_expected = (workflow.status, workflow.version)
            from_status = request.status
            activated = None

            step.decided_by = reviewer
            step.comments = comments
            if corrected_sql:
                request.corrected_sql = corrected_sql

            if action == FeedbackAction.APPROVE:
                self._finish_step(step, ApprovalStepStatus.APPROVED, "approved", now)
                activated = self._advance_past(workflow, request, now)
            elif action == FeedbackAction.REJECT:
                self._finish_step(step, ApprovalStepStatus.REJECTED, "rejected", now)
                if step.is_required:
                    self._close(workflow, WorkflowStatus.FAILED, "rejected", now)
                    apply_status(request, ReviewStatus.REJECTED, now)
                else:
                    activated = self._advance_past(workflow, request, now)
            elif action == FeedbackAction.REQUEST_CHANGES:
                step.decision = "request_changes"
                apply_status(request, ReviewStatus.REQUIRES_CHANGES, now)
            elif action == FeedbackAction.ESCALATE:
                step.decision = "escalate"
                step.escalated_at = now
                apply_status(request, ReviewStatus.ESCALATED, now)
                request.priority = at_least(request.priority, ReviewPriority.HIGH)

            self._commit(request, request_expected, workflow, workflow_expected, step_id)

        logger.log_step_decision(workflow_id, step_id, action.value, reviewer, comments)
        if request.status != from_status:
            logger.log_transition(review_id, from_status.value, request.status.value, reviewer, comments)
        if workflow.status != workflow_expected[0]:
            logger.log_workflow_status(workflow.id, review_id, workflow.status.value, workflow.current_step_index)
        if action == FeedbackAction.ESCALATE:
            logger.log_escalation(review_id, comments, list(config.escalation_recipients))
        self._notify_after(request, from_status, workflow, activated, comments, now, step_id=step_id)
        return workflow

    def _check_reviewer(self, step: ApprovalStep, reviewer: str):
        if not self.identity.can_act(reviewer, step.assigned_to, step.assigned_role):
            raise IllegalTransition("step", step.id, step.status.value, step.status.value,
                                    reason=f"{reviewer} is not an approver for {step.name}")

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def expire_step(self, workflow_id: str, step_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Apply the timeout branch to an in-flight step past its deadline.

        Returns the outcome ("escalated", "expired", "skipped") or None if the
        deadline has not passed. Raises StaleStep if the step is no longer in flight.
        """
        now = now or utcnow()
        config = self._config_source()
        review_id = self.get(workflow_id).review_request_id

        with dao.entity_lock(review_id):
            workflow, request = self._load(workflow_id)
            step = self._in_flight_step(workflow, step_id)
            deadline = self.step_deadline(workflow, step, config)
            if now <= deadline:
                return None

            request_expected = (request.status, request.version)
            workflow_expected = (workflow.status, workflow.version)
            from_status = request.status
            activated = None

            if request.status == ReviewStatus.REQUIRES_CHANGES and not step.is_required:
                # An optional step is dropped; the requester still owes changes.
                # The last step stays current so resubmit can complete the workflow.
                outcome = TIMEOUT_SKIPPED
                self._finish_step(step, ApprovalStepStatus.SKIPPED, "timeout", now)
                if workflow.current_step_index < len(workflow.steps) - 1:
                    activated = self._advance_past(workflow, request, now)
            elif request.status == ReviewStatus.REQUIRES_CHANGES:
                # Waiting on the requester, not on this step's reviewer
                outcome = TIMEOUT_EXPIRED
                self._finish_step(step, ApprovalStepStatus.EXPIRED, "timeout", now)
                self._close(workflow, WorkflowStatus.EXPIRED, "expired", now)
                apply_status(request, ReviewStatus.EXPIRED, now)
            elif step.is_required and config.escalate_on_timeout and step.escalated_at is None:
                outcome = TIMEOUT_ESCALATED
                step.escalated_at = now
                if request.status == ReviewStatus.IN_REVIEW:
                    apply_status(request, ReviewStatus.ESCALATED, now)
                request.priority = at_least(request.priority, ReviewPriority.HIGH)
            elif step.is_required:
                outcome = TIMEOUT_EXPIRED
                self._finish_step(step, ApprovalStepStatus.EXPIRED, "timeout", now)
                self._close(workflow, WorkflowStatus.EXPIRED, "expired", now)
                apply_status(request, ReviewStatus.EXPIRED, now)
            else:
                outcome = TIMEOUT_SKIPPED
                self._finish_step(step, ApprovalStepStatus.SKIPPED, "timeout", now)
                activated = self._advance_past(workflow, request, now)

            self._commit(request, request_expected, workflow, workflow_expected, step_id)

        logger.log_step_timeout(workflow_id, step_id, outcome, (now - deadline).total_seconds())
        if request.status != from_status:
            logger.log_transition(review_id, from_status.value, request.status.value, reason=f"step timeout: {outcome}")
        if workflow.status != workflow_expected[0]:
            logger.log_workflow_status(workflow.id, review_id, workflow.status.value, workflow.current_step_index)

        if outcome == TIMEOUT_ESCALATED:
            recipients = list(config.escalation_recipients)
            logger.log_escalation(review_id, f"{step.name} timed out", recipients)
            if request.status == from_status:
                payload = NotificationPayload(review_id=review_id, workflow_id=workflow_id, step_id=step_id,
                                              from_status=from_status.value, to_status=request.status.value,
                                              reason=f"{step.name} timed out")
                self.dispatcher.notify(request, recipients + [request.assigned_to],
                                       NotificationType.REVIEW_ESCALATED, payload, now=now)
        self._notify_after(request, from_status, workflow, activated, f"{step.name} timed out", now, step_id=step_id)
        return outcome

    # ------------------------------------------------------------------
    # Cancellation and re-entry
    # ------------------------------------------------------------------

    def cancel(self, review_id: str, actor: str = "system", reason: str = "",
               now: Optional[datetime] = None) -> ReviewRequest:
        """
        Cancel a review and its workflow. The in-flight step becomes skipped.
        Cancelling an already-cancelled review is a no-op success.
        """
        now = now or utcnow()
        with dao.entity_lock(review_id):
            request = dao.get_request(review_id)
            if request is None:
                raise NotFound("review", review_id)
            if request.status == ReviewStatus.CANCELLED:
                return request

            request_expected = (request.status, request.version)
            from_status = request.status
            apply_status(request, ReviewStatus.CANCELLED, now)
            if reason:
                request.review_notes = f"{request.review_notes}\n[{actor}] {reason}".strip()

            workflow = dao.get_workflow_for_request(review_id) if request.workflow_id else None
            workflow_expected = None
            if workflow is not None and not is_terminal_workflow(workflow.status):
                workflow_expected = (workflow.status, workflow.version)
                step = workflow.current_step
                if step is not None and step.status in (ApprovalStepStatus.PENDING, ApprovalStepStatus.IN_PROGRESS):
                    self._finish_step(step, ApprovalStepStatus.SKIPPED, "cancelled", now)
                self._close(workflow, WorkflowStatus.CANCELLED, "cancelled", now)

            if not dao.commit_transition(request=request, request_expected=request_expected,
                                         workflow=workflow if workflow_expected else None,
                                         workflow_expected=workflow_expected):
                raise IllegalTransition("review", review_id, from_status.value, ReviewStatus.CANCELLED.value,
                                        reason="request was modified concurrently")

        logger.log_transition(review_id, from_status.value, ReviewStatus.CANCELLED.value, actor, reason)
        if workflow_expected:
            logger.log_workflow_status(workflow.id, review_id, workflow.status.value, workflow.current_step_index)
        self.dispatcher.notify_transition(request, from_status, reason=reason,
                                          workflow_id=request.workflow_id, now=now)
        return request

    def resubmit(self, review_id: str, corrected_sql: Optional[str] = None, actor: str = "system",
                 now: Optional[datetime] = None) -> ReviewRequest:
        """
        Explicit re-entry into in_review from requires_changes or escalated.

        After changes were requested, the in-flight step's clock restarts. If its
        optional last step was skipped in the meantime, the workflow completes.
        """
        now = now or utcnow()
        with dao.entity_lock(review_id):
            request = dao.get_request(review_id)
            if request is None:
                raise NotFound("review", review_id)

            request_expected = (request.status, request.version)
            from_status = request.status
            apply_status(request, ReviewStatus.IN_REVIEW, now)
            if corrected_sql:
                request.corrected_sql = corrected_sql

            workflow = dao.get_workflow_for_request(review_id) if request.workflow_id else None
            workflow_expected = None
            step = None
            finished = False
            if workflow is not None and not is_terminal_workflow(workflow.status):
                step = workflow.current_step
                if from_status == ReviewStatus.REQUIRES_CHANGES and step is not None:
                    workflow_expected = (workflow.status, workflow.version)
                    if step.status == ApprovalStepStatus.SKIPPED:
                        # Optional last step timed out while changes were outstanding
                        self._advance_past(workflow, request, now)
                        finished = True
                    else:
                        step.started_at = now

            if not dao.commit_transition(request=request, request_expected=request_expected,
                                         workflow=workflow if workflow_expected else None,
                                         workflow_expected=workflow_expected):
                raise IllegalTransition("review", review_id, from_status.value, ReviewStatus.IN_REVIEW.value,
                                        reason="request was modified concurrently")

        logger.log_transition(review_id, from_status.value, request.status.value, actor, "resubmitted")
        if finished:
            logger.log_workflow_status(workflow.id, review_id, workflow.status.value, workflow.current_step_index)
            self._notify_after(request, from_status, workflow, None, "resubmitted", now)
        elif step is not None:
            self._notify_step(request, workflow, step, now, reason="review resubmitted")
        else:
            self.dispatcher.notify_transition(request, from_status, reason="resubmitted", now=now)
        return request

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify_step(self, request: ReviewRequest, workflow: ApprovalWorkflow, step: ApprovalStep,
                     now: datetime, reason: str = ""):
        recipients = [step.assigned_to] if step.assigned_to else self.role_members(step.assigned_role)
        if not recipients:
            recipients = [request.assigned_to]
        payload = NotificationPayload(review_id=request.id, workflow_id=workflow.id, step_id=step.id,
                                      to_status=step.status.value, reason=reason)
        self.dispatcher.notify(request, recipients, NotificationType.STEP_ACTIVATED, payload, now=now)

    def _notify_after(self, request: ReviewRequest, from_status: ReviewStatus, workflow: ApprovalWorkflow,
                      activated: Optional[ApprovalStep], reason: str, now: datetime, step_id: Optional[str] = None):
        if request.status != from_status:
            self.dispatcher.notify_transition(request, from_status, reason=reason,
                                              workflow_id=workflow.id, step_id=step_id, now=now)
        if activated is not None:
            self._notify_step(request, workflow, activated, now)
