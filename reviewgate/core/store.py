"""
Review Request Store - creation, classification and status guard for review
requests, plus the validation issue tracker.

Every status change goes through apply_status(), which enforces the transition
table and keeps reviewed_at in step with terminal status.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from . import dao
from .config import ReviewConfiguration, ReviewTypeConfig
from .errors import DependencyUnavailable, IllegalTransition, InvalidRequest, NotFound
from .identity import IdentityProvider
from .notifications import NotificationDispatcher
from .schema import (
    IssueSeverity,
    NotificationPayload,
    NotificationType,
    PRIORITY_RANK,
    ReviewPriority,
    ReviewRequest,
    ReviewStatus,
    ReviewType,
    ValidationIssue,
    at_least,
    utcnow,
)
from .transitions import OPEN_REVIEW_STATUSES, ensure_review_transition, is_terminal_review
from ..util.logging import logger, audit_event


# Classification outcomes
AUTO_APPROVE = "auto_approve"
AUTO_REJECT = "auto_reject"
MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class Classification:
    outcome: str
    priority: ReviewPriority
    reason: str


def _usable_confidence(score: Optional[float]) -> Optional[float]:
    if score is None or isinstance(score, bool):
        return None
    try:
        score = float(score)
    except (TypeError, ValueError):
        return None
    if math.isnan(score) or not 0.0 <= score <= 1.0:
        return None
    return score


def classify(request: ReviewRequest, config: ReviewConfiguration) -> Classification:
    """
    Decide how a freshly submitted request is handled.

    Missing or out-of-range confidence is the most conservative case: manual
    review at raised priority. Auto-approval needs both the type policy and the
    request itself to waive explicit approval.
    """
    type_config = config.type_config(request.review_type)
    confidence = _usable_confidence(request.confidence_score)

    if confidence is None:
        return Classification(MANUAL_REVIEW, at_least(request.priority, ReviewPriority.HIGH),
                              "confidence missing or out of range")

    if (config.auto_review_enabled
            and confidence >= config.auto_approval_threshold
            and not type_config.requires_approval
            and not request.requires_approval):
        return Classification(AUTO_APPROVE, request.priority,
                              f"confidence {confidence:.2f} >= {config.auto_approval_threshold:.2f}")

    if (config.auto_review_enabled
            and config.auto_rejection_threshold is not None
            and confidence < config.auto_rejection_threshold):
        return Classification(AUTO_REJECT, request.priority,
                              f"confidence {confidence:.2f} < {config.auto_rejection_threshold:.2f}")

    if confidence < config.manual_review_threshold:
        return Classification(MANUAL_REVIEW, at_least(request.priority, ReviewPriority.HIGH),
                              f"confidence {confidence:.2f} below manual review threshold")

    return Classification(MANUAL_REVIEW, request.priority, "manual review")


def apply_status(request: ReviewRequest, to_status: ReviewStatus, now: datetime):
    """Validate and apply a status change on the in-memory request."""
    ensure_review_transition(request.id, request.status, to_status)
    request.status = to_status
    if is_terminal_review(to_status):
        request.reviewed_at = now


class ReviewRequestStore:
    """CRUD and guarded status transitions over ReviewRequest."""

    def __init__(self,
                 config_source: Callable[[], ReviewConfiguration],
                 dispatcher: NotificationDispatcher,
                 identity: IdentityProvider):
        self._config_source = config_source
        self.dispatcher = dispatcher
        self.identity = identity

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def submit(self,
               original_query: str,
               generated_sql: str,
               review_type,
               requested_by: str,
               confidence_score: Optional[float] = None,
               requires_approval: bool = False,
               priority=None,
               review_notes: str = "",
               validation_issues: Optional[List[dict]] = None,
               config: Optional[ReviewConfiguration] = None,
               now: Optional[datetime] = None) -> ReviewRequest:
        """Validate and persist a new pending request. Nothing is stored if validation fails."""
        if not original_query or not original_query.strip():
            raise InvalidRequest("original query text is empty", field="original_query")
        if not generated_sql or not generated_sql.strip():
            raise InvalidRequest("generated SQL is empty", field="generated_sql")
        if not requested_by or not requested_by.strip():
            raise InvalidRequest("requester is required", field="requested_by")

        try:
            review_type = ReviewType(review_type)
        except ValueError:
            raise InvalidRequest(f"unknown review type: {review_type}", field="review_type")

        config = config or self._config_source()
        type_config = config.type_config(review_type)

        if priority is None:
            priority = type_config.default_priority
        else:
            try:
                priority = ReviewPriority(priority)
            except ValueError:
                raise InvalidRequest(f"unknown priority: {priority}", field="priority")

        issues = [_build_issue(**raw) for raw in (validation_issues or [])]

        request = ReviewRequest(
            id=str(uuid.uuid4()),
            original_query=original_query,
            generated_sql=generated_sql,
            review_type=review_type,
            requested_by=requested_by,
            created_at=now or utcnow(),
            priority=priority,
            review_notes=review_notes,
            confidence_score=confidence_score,
            requires_approval=bool(requires_approval),
            validation_issues=issues,
        )
        request.assigned_to = self._pick_assignee(type_config)

        dao.save_request(request)
        logger.log_review_submitted(request.id, review_type.value, requested_by, priority.value)
        audit_event("review.submitted", {"review_id": request.id}, request.to_dict())
        return request

    def _pick_assignee(self, type_config: ReviewTypeConfig) -> Optional[str]:
        """Least-loaded reviewer from the auto-assign roles, or None."""
        if not type_config.auto_assign_enabled or not type_config.auto_assign_to_roles:
            return None
        try:
            candidates = self.identity.resolve_roles(type_config.auto_assign_to_roles)
        except DependencyUnavailable as e:
            logger.warning(f"Auto-assignment skipped, role lookup failed: {e}")
            return None
        if not candidates:
            return None

        load = dao.count_open_assignments(candidates, OPEN_REVIEW_STATUSES)
        return min(candidates, key=lambda reviewer: (load.get(reviewer, 0), reviewer))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, review_id: str) -> ReviewRequest:
        request = dao.get_request(review_id)
        if request is None:
            raise NotFound("review", review_id)
        return request

    def queue(self,
              assignee: Optional[str] = None,
              review_type=None,
              priority=None,
              page: int = 1,
              page_size: int = 20) -> Tuple[List[ReviewRequest], int]:
        """Open requests, highest priority first, then oldest first. Returns (page, total)."""
        requests = dao.list_requests(
            statuses=OPEN_REVIEW_STATUSES,
            assigned_to=assignee,
            review_type=ReviewType(review_type).value if review_type else None,
            priority=ReviewPriority(priority).value if priority else None,
        )
        requests.sort(key=lambda r: (-PRIORITY_RANK[r.priority], r.created_at))
        page = max(page, 1)
        start = (page - 1) * page_size
        return requests[start:start + page_size], len(requests)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _commit(self, request: ReviewRequest, expected: Tuple[ReviewStatus, int], to_status: ReviewStatus):
        if not dao.update_request_cas(request, *expected):
            raise IllegalTransition("review", request.id, expected[0].value, to_status.value,
                                    reason="request was modified concurrently")

    def transition(self,
                   review_id: str,
                   new_status,
                   actor: str = "system",
                   reason: str = "",
                   priority: Optional[ReviewPriority] = None,
                   corrected_sql: Optional[str] = None,
                   auto_resolved: bool = False,
                   now: Optional[datetime] = None) -> ReviewRequest:
        """
        Move a request to a new status under the transition table.

        Cancelling an already-cancelled request is a no-op success.
        """
        try:
            new_status = ReviewStatus(new_status)
        except ValueError:
            raise InvalidRequest(f"unknown status: {new_status}", field="status")
        now = now or utcnow()

        with dao.entity_lock(review_id):
            request = self.get(review_id)
            if new_status == ReviewStatus.CANCELLED and request.status == ReviewStatus.CANCELLED:
                return request

            from_status, version = request.status, request.version
            apply_status(request, new_status, now)
            if priority is not None:
                request.priority = priority
            if corrected_sql:
                request.corrected_sql = corrected_sql
            if auto_resolved:
                request.auto_resolved = True
            if reason:
                request.review_notes = _append_note(request.review_notes, actor, reason)
            self._commit(request, (from_status, version), new_status)

        logger.log_transition(request.id, from_status.value, new_status.value, actor, reason)
        self.dispatcher.notify_transition(request, from_status, reason=reason, now=now)
        return request

    def assign(self, review_id: str, assignee: str, actor: str = "system",
               now: Optional[datetime] = None) -> ReviewRequest:
        """Set the assignee; a pending request moves to in_review."""
        if not assignee or not assignee.strip():
            raise InvalidRequest("assignee is required", field="assignee")
        now = now or utcnow()

        with dao.entity_lock(review_id):
            request = self.get(review_id)
            if is_terminal_review(request.status):
                raise IllegalTransition("review", review_id, request.status.value, request.status.value,
                                        reason="cannot assign a closed review")

            from_status, version = request.status, request.version
            request.assigned_to = assignee
            if request.status == ReviewStatus.PENDING:
                apply_status(request, ReviewStatus.IN_REVIEW, now)
            self._commit(request, (from_status, version), request.status)

        logger.log_operation("review.assigned", request.status.value,
                             {"review_id": review_id, "assignee": assignee, "actor": actor})
        payload = NotificationPayload(review_id=review_id, workflow_id=request.workflow_id,
                                      from_status=from_status.value, to_status=request.status.value)
        self.dispatcher.notify(request, [assignee], NotificationType.REVIEW_ASSIGNED, payload, now=now)
        return request

    def escalate(self, review_id: str, reason: str = "", actor: str = "system",
                 now: Optional[datetime] = None) -> ReviewRequest:
        """in_review -> escalated, priority raised to at least high."""
        request = self.get(review_id)
        request = self.transition(review_id, ReviewStatus.ESCALATED, actor=actor, reason=reason,
                                  priority=at_least(request.priority, ReviewPriority.HIGH), now=now)
        logger.log_escalation(review_id, reason, list(self._config_source().escalation_recipients))
        return request

    # ------------------------------------------------------------------
    # Validation issues
    # ------------------------------------------------------------------

    def attach_issue(self,
                     review_id: str,
                     issue_type: str,
                     description: str,
                     severity=IssueSeverity.MEDIUM,
                     location: Optional[str] = None,
                     suggested_fix: Optional[str] = None) -> ValidationIssue:
        """Append a validation issue. Issues are never removed."""
        issue = _build_issue(issue_type, description, severity, location, suggested_fix)
        with dao.entity_lock(review_id):
            request = self.get(review_id)
            request.validation_issues.append(issue)
            self._commit(request, (request.status, request.version), request.status)

        logger.log_operation("review.issue_attached", issue.severity.value,
                             {"review_id": review_id, "issue_id": issue.id, "issue_type": issue_type})
        return issue

    def resolve_issue(self, review_id: str, issue_id: str, resolver: str,
                      now: Optional[datetime] = None) -> ValidationIssue:
        """Mark an issue resolved. Resolving it again keeps the first resolution."""
        if not resolver or not resolver.strip():
            raise InvalidRequest("resolver is required", field="resolved_by")

        with dao.entity_lock(review_id):
            request = self.get(review_id)
            issue = next((i for i in request.validation_issues if i.id == issue_id), None)
            if issue is None:
                raise NotFound("issue", issue_id)
            if issue.is_resolved:
                return issue

            issue.is_resolved = True
            issue.resolved_by = resolver
            issue.resolved_at = now or utcnow()
            self._commit(request, (request.status, request.version), request.status)

        logger.log_operation("review.issue_resolved", "resolved",
                             {"review_id": review_id, "issue_id": issue_id, "resolver": resolver})
        return issue


def _append_note(notes: str, actor: str, text: str) -> str:
    line = f"[{actor}] {text}"
    return f"{notes}\n{line}" if notes else line


def _build_issue(issue_type: str,
                 description: str = "",
                 severity=IssueSeverity.MEDIUM,
                 location: Optional[str] = None,
                 suggested_fix: Optional[str] = None) -> ValidationIssue:
    if not issue_type or not issue_type.strip():
        raise InvalidRequest("issue type is required", field="issue_type")
    try:
        severity = IssueSeverity(severity)
    except ValueError:
        raise InvalidRequest(f"unknown severity: {severity}", field="severity")

    return ValidationIssue(
        id=str(uuid.uuid4()),
        issue_type=issue_type,
        description=description or "",
        severity=severity,
        location=location,
        suggested_fix=suggested_fix,
    )
