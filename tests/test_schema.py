"""
Review data model tests - serialization and priority helpers.
"""

from datetime import datetime, timedelta, timezone

from reviewgate.core.schema import (
    ApprovalStep,
    ApprovalStepStatus,
    ApprovalWorkflow,
    NotificationPayload,
    NotificationType,
    ReviewNotification,
    ReviewPriority,
    ReviewRequest,
    ReviewStatus,
    ReviewType,
    ValidationIssue,
    WorkflowContext,
    at_least,
)


class TestPriority:
    """Test priority ordering helper."""

    def test_at_least_raises_low_priority(self):
        assert at_least(ReviewPriority.LOW, ReviewPriority.HIGH) == ReviewPriority.HIGH
        assert at_least(ReviewPriority.NORMAL, ReviewPriority.HIGH) == ReviewPriority.HIGH

    def test_at_least_never_lowers(self):
        assert at_least(ReviewPriority.CRITICAL, ReviewPriority.HIGH) == ReviewPriority.CRITICAL
        assert at_least(ReviewPriority.URGENT, ReviewPriority.HIGH) == ReviewPriority.URGENT


class TestReviewRequest:
    """Test ReviewRequest storage format."""

    def test_to_dict_and_from_dict(self, t0):
        request = ReviewRequest(
            id="r-1",
            original_query="top customers by revenue",
            generated_sql="SELECT * FROM customers",
            review_type=ReviewType.SQL_VALIDATION,
            requested_by="alice",
            created_at=t0,
            priority=ReviewPriority.HIGH,
            confidence_score=0.82,
            validation_issues=[ValidationIssue(id="i-1", issue_type="select_star", description="SELECT *")],
        )

        data = request.to_dict()
        assert data["review_type"] == "sql_validation"
        assert data["status"] == "pending"
        assert data["validation_issues"][0]["severity"] == "medium"

        restored = ReviewRequest.from_dict(data)
        assert restored == request

    def test_naive_timestamps_are_read_as_utc(self):
        data = {
            "id": "r-2",
            "original_query": "q",
            "generated_sql": "SELECT 1",
            "review_type": "business_logic",
            "requested_by": "bob",
            "created_at": "2025-03-03T09:00:00",
        }
        request = ReviewRequest.from_dict(data)
        assert request.created_at.tzinfo is not None
        assert request.created_at == datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
        assert request.status == ReviewStatus.PENDING


class TestApprovalWorkflow:
    """Test workflow helpers and serialization."""

    def _workflow(self, t0):
        steps = [
            ApprovalStep(id="s-1", name="Developer Approval", assigned_role="Developer", order=0,
                         timeout=timedelta(hours=8)),
            ApprovalStep(id="s-2", name="Lead Approval", assigned_role="SeniorDeveloper", order=1,
                         is_required=False),
        ]
        return ApprovalWorkflow(
            id="w-1",
            review_request_id="r-1",
            workflow_name="sql_validation approval",
            steps=steps,
            started_at=t0,
            context=WorkflowContext(review_type=ReviewType.SQL_VALIDATION, priority=ReviewPriority.NORMAL,
                                    requested_by="alice", attributes={"source": "nl2sql"}),
        )

    def test_current_step_and_find_step(self, t0):
        workflow = self._workflow(t0)
        assert workflow.current_step.id == "s-1"
        assert workflow.find_step("s-2").name == "Lead Approval"
        assert workflow.find_step("missing") is None

        workflow.current_step_index = len(workflow.steps)
        assert workflow.current_step is None

    def test_step_timeout_serialized_in_seconds(self, t0):
        workflow = self._workflow(t0)
        data = workflow.to_dict()
        assert data["steps"][0]["timeout_sec"] == 8 * 3600
        assert data["steps"][1]["timeout_sec"] is None
        assert data["context"]["schema_version"] == 1

        restored = ApprovalWorkflow.from_dict(data)
        assert restored.steps[0].timeout == timedelta(hours=8)
        assert restored.steps[1].is_required is False
        assert restored.steps[0].status == ApprovalStepStatus.PENDING
        assert restored.context.attributes == {"source": "nl2sql"}


class TestNotification:

    def test_payload_round_trip(self, t0):
        notification = ReviewNotification(
            id="n-1",
            review_request_id="r-1",
            recipient_id="dev1",
            notification_type=NotificationType.REVIEW_REMINDER,
            title="Review due soon",
            message="soon",
            created_at=t0,
            payload=NotificationPayload(review_id="r-1", step_id="s-1", reason="due"),
        )
        restored = ReviewNotification.from_dict(notification.to_dict())
        assert restored == notification
        assert restored.payload.step_id == "s-1"
