"""
Storage access for review requests, workflows, feedback, notifications and
analytics snapshots.

Every update to a request or workflow is a compare-and-set on (status, version):
the write only lands if the row still holds what the caller read. Callers that
lose the race get False back and must re-read.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .db import get_db, init_db
from .errors import DependencyUnavailable
from .schema import (
    ApprovalWorkflow,
    HumanFeedback,
    NotificationSettings,
    NotificationType,
    ReviewAnalytics,
    ReviewNotification,
    ReviewRequest,
    ReviewStatus,
    WorkflowStatus,
    DeliveryStatus,
)
from ..util.logging import logger


# review id -> [lock, holders and waiters]; entries are dropped when unused
_locks: Dict[str, list] = {}
_locks_guard = threading.Lock()


@contextmanager
def entity_lock(review_id: str):
    """Serialize transitions on one review request (and its workflow) within this process."""
    with _locks_guard:
        entry = _locks.get(review_id)
        if entry is None:
            entry = [threading.Lock(), 0]
            _locks[review_id] = entry
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _locks[review_id]


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp for indexed columns, so string order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f+00:00')


def _storage_error(operation: str, error: Exception) -> DependencyUnavailable:
    logger.error(f"Database error during {operation}: {error}")
    return DependencyUnavailable("storage", operation, error)


def initialize():
    """Create tables if needed."""
    try:
        init_db()
    except sqlite3.Error as e:
        raise _storage_error("init_db", e) from e


# ---------------------------------------------------------------------------
# Review requests
# ---------------------------------------------------------------------------

def _request_from_row(row) -> ReviewRequest:
    payload, version = row
    data = json.loads(payload)
    data["version"] = version
    return ReviewRequest.from_dict(data)


def save_request(request: ReviewRequest):
    """Insert a new review request."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            _insert_request(cursor, request)
            conn.commit()
    except sqlite3.Error as e:
        raise _storage_error("save_request", e) from e


def _insert_request(cursor, request: ReviewRequest):
    cursor.execute(
        "INSERT INTO review_requests (id, status, review_type, priority, assigned_to, created_at, reviewed_at, version, payload) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (request.id, request.status.value, request.review_type.value, request.priority.value, request.assigned_to,
         _ts(request.created_at), _ts(request.reviewed_at), request.version, json.dumps(request.to_dict()))
    )


def get_request(review_id: str) -> Optional[ReviewRequest]:
    """Get a review request by id."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload, version FROM review_requests WHERE id = ?", (review_id,))
            row = cursor.fetchone()
            return _request_from_row(row) if row else None
    except sqlite3.Error as e:
        raise _storage_error("get_request", e) from e


def _update_request(cursor, request: ReviewRequest, expected_status: ReviewStatus, expected_version: int) -> bool:
    request.version = expected_version + 1
    cursor.execute(
        "UPDATE review_requests SET status = ?, priority = ?, assigned_to = ?, reviewed_at = ?, version = ?, payload = ? "
        "WHERE id = ? AND status = ? AND version = ?",
        (request.status.value, request.priority.value, request.assigned_to, _ts(request.reviewed_at),
         request.version, json.dumps(request.to_dict()),
         request.id, expected_status.value, expected_version)
    )
    if cursor.rowcount != 1:
        request.version = expected_version
        return False
    return True


def update_request_cas(request: ReviewRequest, expected_status: ReviewStatus, expected_version: int) -> bool:
    """Write a request only if it still has the status and version the caller read."""
    return commit_transition(request=request, request_expected=(expected_status, expected_version))


def list_requests(statuses: Optional[Iterable[ReviewStatus]] = None,
                  created_from: Optional[datetime] = None,
                  created_to: Optional[datetime] = None,
                  assigned_to: Optional[str] = None,
                  review_type: Optional[str] = None,
                  priority: Optional[str] = None) -> List[ReviewRequest]:
    """Range query over requests by status and creation time (closed interval)."""
    clauses = []
    params: list = []

    if statuses is not None:
        statuses = list(statuses)
        if not statuses:
            return []
        clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
        params.extend(s.value for s in statuses)
    if created_from is not None:
        clauses.append("created_at >= ?")
        params.append(_ts(created_from))
    if created_to is not None:
        clauses.append("created_at <= ?")
        params.append(_ts(created_to))
    if assigned_to is not None:
        clauses.append("assigned_to = ?")
        params.append(assigned_to)
    if review_type is not None:
        clauses.append("review_type = ?")
        params.append(review_type)
    if priority is not None:
        clauses.append("priority = ?")
        params.append(priority)

    query = "SELECT payload, version FROM review_requests"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY created_at ASC"

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_request_from_row(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        raise _storage_error("list_requests", e) from e


def count_open_assignments(assignees: Iterable[str], open_statuses: Iterable[ReviewStatus]) -> Dict[str, int]:
    """Count non-terminal requests per assignee (used for least-loaded auto-assignment)."""
    assignees = list(assignees)
    statuses = [s.value for s in open_statuses]
    counts = {assignee: 0 for assignee in assignees}
    if not assignees or not statuses:
        return counts

    query = (
        f"SELECT assigned_to, COUNT(*) FROM review_requests "
        f"WHERE assigned_to IN ({', '.join('?' for _ in assignees)}) "
        f"AND status IN ({', '.join('?' for _ in statuses)}) GROUP BY assigned_to"
    )
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, assignees + statuses)
            for assignee, count in cursor.fetchall():
                counts[assignee] = count
            return counts
    except sqlite3.Error as e:
        raise _storage_error("count_open_assignments", e) from e


# ---------------------------------------------------------------------------
# Approval workflows
# ---------------------------------------------------------------------------

def _workflow_from_row(row) -> ApprovalWorkflow:
    payload, version = row
    data = json.loads(payload)
    data["version"] = version
    return ApprovalWorkflow.from_dict(data)


def _insert_workflow(cursor, workflow: ApprovalWorkflow):
    cursor.execute(
        "INSERT INTO approval_workflows (id, review_request_id, status, started_at, version, payload) VALUES (?, ?, ?, ?, ?, ?)",
        (workflow.id, workflow.review_request_id, workflow.status.value, _ts(workflow.started_at),
         workflow.version, json.dumps(workflow.to_dict()))
    )


def _update_workflow(cursor, workflow: ApprovalWorkflow, expected_status: WorkflowStatus, expected_version: int) -> bool:
    workflow.version = expected_version + 1
    cursor.execute(
        "UPDATE approval_workflows SET status = ?, version = ?, payload = ? WHERE id = ? AND status = ? AND version = ?",
        (workflow.status.value, workflow.version, json.dumps(workflow.to_dict()),
         workflow.id, expected_status.value, expected_version)
    )
    if cursor.rowcount != 1:
        workflow.version = expected_version
        return False
    return True


def get_workflow(workflow_id: str) -> Optional[ApprovalWorkflow]:
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload, version FROM approval_workflows WHERE id = ?", (workflow_id,))
            row = cursor.fetchone()
            return _workflow_from_row(row) if row else None
    except sqlite3.Error as e:
        raise _storage_error("get_workflow", e) from e


def get_workflow_for_request(review_id: str) -> Optional[ApprovalWorkflow]:
    """Look up the workflow owned by a review request."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload, version FROM approval_workflows WHERE review_request_id = ?", (review_id,))
            row = cursor.fetchone()
            return _workflow_from_row(row) if row else None
    except sqlite3.Error as e:
        raise _storage_error("get_workflow_for_request", e) from e


def list_workflows(statuses: Optional[Iterable[WorkflowStatus]] = None) -> List[ApprovalWorkflow]:
    query = "SELECT payload, version FROM approval_workflows"
    params: list = []
    if statuses is not None:
        statuses = list(statuses)
        if not statuses:
            return []
        query += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
        params.extend(s.value for s in statuses)
    query += " ORDER BY started_at ASC"

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_workflow_from_row(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        raise _storage_error("list_workflows", e) from e


def update_workflow_cas(workflow: ApprovalWorkflow, expected_status: WorkflowStatus, expected_version: int) -> bool:
    """Write a workflow only if it still has the status and version the caller read."""
    return commit_transition(workflow=workflow, workflow_expected=(expected_status, expected_version))


def commit_transition(request: Optional[ReviewRequest] = None,
                      request_expected: Optional[Tuple[ReviewStatus, int]] = None,
                      workflow: Optional[ApprovalWorkflow] = None,
                      workflow_expected: Optional[Tuple[WorkflowStatus, int]] = None,
                      new_workflow: Optional[ApprovalWorkflow] = None) -> bool:
    """
    Apply request and workflow changes in one transaction.

    Each update is conditional on the expected (status, version). If any
    condition misses, the transaction is rolled back and False is returned.
    """
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            ok = True
            if new_workflow is not None:
                _insert_workflow(cursor, new_workflow)
            if request is not None and request_expected is not None:
                ok = _update_request(cursor, request, *request_expected)
            if ok and workflow is not None and workflow_expected is not None:
                ok = _update_workflow(cursor, workflow, *workflow_expected)
                if not ok and request is not None and request_expected is not None:
                    request.version = request_expected[1]

            if ok:
                conn.commit()
            else:
                conn.rollback()
            return ok
    except sqlite3.Error as e:
        if request is not None and request_expected is not None:
            request.version = request_expected[1]
        if workflow is not None and workflow_expected is not None:
            workflow.version = workflow_expected[1]
        raise _storage_error("commit_transition", e) from e


# ---------------------------------------------------------------------------
# Human feedback
# ---------------------------------------------------------------------------

def add_feedback(feedback: HumanFeedback):
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO human_feedback (id, review_request_id, reviewer_id, provided_at, payload) VALUES (?, ?, ?, ?, ?)",
                (feedback.id, feedback.review_request_id, feedback.reviewer_id, _ts(feedback.provided_at),
                 json.dumps(feedback.to_dict()))
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _storage_error("add_feedback", e) from e


def list_feedback(review_id: Optional[str] = None,
                  provided_from: Optional[datetime] = None,
                  provided_to: Optional[datetime] = None,
                  reviewer_id: Optional[str] = None) -> List[HumanFeedback]:
    """Feedback for one request, or for a time window, oldest first."""
    clauses = []
    params: list = []
    if review_id is not None:
        clauses.append("review_request_id = ?")
        params.append(review_id)
    if provided_from is not None:
        clauses.append("provided_at >= ?")
        params.append(_ts(provided_from))
    if provided_to is not None:
        clauses.append("provided_at <= ?")
        params.append(_ts(provided_to))
    if reviewer_id is not None:
        clauses.append("reviewer_id = ?")
        params.append(reviewer_id)

    query = "SELECT payload FROM human_feedback"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY provided_at ASC"

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [HumanFeedback.from_dict(json.loads(row[0])) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        raise _storage_error("list_feedback", e) from e


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def save_notification(notification: ReviewNotification):
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO review_notifications (id, review_request_id, recipient_id, notification_type, created_at, is_read, delivery_status, next_attempt_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (notification.id, notification.review_request_id, notification.recipient_id,
                 notification.notification_type.value, _ts(notification.created_at), notification.is_read,
                 notification.delivery_status.value, _ts(notification.next_attempt_at), json.dumps(notification.to_dict()))
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _storage_error("save_notification", e) from e


def update_notification_state(notification: ReviewNotification):
    """Persist read and delivery state. The rest of the record is immutable."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE review_notifications SET is_read = ?, delivery_status = ?, next_attempt_at = ?, payload = ? WHERE id = ?",
                (notification.is_read, notification.delivery_status.value, _ts(notification.next_attempt_at),
                 json.dumps(notification.to_dict()), notification.id)
            )
            conn.commit()
            return cursor.rowcount == 1
    except sqlite3.Error as e:
        raise _storage_error("update_notification_state", e) from e


def get_notification(notification_id: str) -> Optional[ReviewNotification]:
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload FROM review_notifications WHERE id = ?", (notification_id,))
            row = cursor.fetchone()
            return ReviewNotification.from_dict(json.loads(row[0])) if row else None
    except sqlite3.Error as e:
        raise _storage_error("get_notification", e) from e


def list_notifications(recipient_id: Optional[str] = None,
                       review_id: Optional[str] = None,
                       unread_only: bool = False,
                       limit: int = 20,
                       offset: int = 0) -> List[ReviewNotification]:
    """Newest first."""
    clauses = []
    params: list = []
    if recipient_id is not None:
        clauses.append("recipient_id = ?")
        params.append(recipient_id)
    if review_id is not None:
        clauses.append("review_request_id = ?")
        params.append(review_id)
    if unread_only:
        clauses.append("is_read = 0")

    query = "SELECT payload FROM review_notifications"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [ReviewNotification.from_dict(json.loads(row[0])) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        raise _storage_error("list_notifications", e) from e


def list_undelivered_notifications(limit: int = 100, due_at: Optional[datetime] = None) -> List[ReviewNotification]:
    """Pending notifications, oldest first. With due_at, only those whose next attempt is due by then."""
    query = "SELECT payload FROM review_notifications WHERE delivery_status = ?"
    params: list = [DeliveryStatus.PENDING.value]
    if due_at is not None:
        query += " AND (next_attempt_at IS NULL OR next_attempt_at <= ?)"
        params.append(_ts(due_at))
    query += " ORDER BY created_at ASC LIMIT ?"
    params.append(limit)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [ReviewNotification.from_dict(json.loads(row[0])) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        raise _storage_error("list_undelivered_notifications", e) from e


def last_notification_at(review_id: str, notification_type: NotificationType,
                         recipient_id: Optional[str] = None) -> Optional[datetime]:
    """Creation time of the newest notification of a type for a request (optionally for one recipient)."""
    query = "SELECT MAX(created_at) FROM review_notifications WHERE review_request_id = ? AND notification_type = ?"
    params = [review_id, notification_type.value]
    if recipient_id is not None:
        query += " AND recipient_id = ?"
        params.append(recipient_id)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            row = cursor.fetchone()
            if not row or row[0] is None:
                return None
            return datetime.fromisoformat(row[0])
    except sqlite3.Error as e:
        raise _storage_error("last_notification_at", e) from e


# ---------------------------------------------------------------------------
# Notification settings
# ---------------------------------------------------------------------------

def get_notification_settings(user_id: str) -> Optional[NotificationSettings]:
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload FROM notification_settings WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return NotificationSettings.from_dict(json.loads(row[0])) if row else None
    except sqlite3.Error as e:
        raise _storage_error("get_notification_settings", e) from e


def save_notification_settings(settings: NotificationSettings):
    """Insert or replace a user's settings."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO notification_settings (user_id, updated_at, payload) VALUES (?, ?, ?)",
                (settings.user_id, _ts(settings.updated_at), json.dumps(settings.to_dict()))
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _storage_error("save_notification_settings", e) from e


# ---------------------------------------------------------------------------
# Analytics snapshots
# ---------------------------------------------------------------------------

def save_analytics_snapshot(analytics: ReviewAnalytics):
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO analytics_snapshots (generated_at, window_start, window_end, payload) VALUES (?, ?, ?, ?)",
                (_ts(analytics.generated_at), _ts(analytics.window_start), _ts(analytics.window_end),
                 json.dumps(analytics.to_dict()))
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _storage_error("save_analytics_snapshot", e) from e


def latest_analytics_snapshot() -> Optional[dict]:
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT payload FROM analytics_snapshots ORDER BY generated_at DESC, id DESC LIMIT 1")
            row = cursor.fetchone()
            return json.loads(row[0]) if row else None
    except sqlite3.Error as e:
        raise _storage_error("latest_analytics_snapshot", e) from e
