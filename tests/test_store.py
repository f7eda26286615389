"""
Review request store tests - classification, submission, assignment, queue and
validation issues.
"""

from datetime import timedelta

import pytest

from reviewgate.core import dao
from reviewgate.core.config import ReviewConfiguration
from reviewgate.core.errors import IllegalTransition, InvalidRequest, NotFound
from reviewgate.core.schema import ReviewPriority, ReviewRequest, ReviewStatus, ReviewType
from reviewgate.core.store import AUTO_APPROVE, AUTO_REJECT, MANUAL_REVIEW, classify


def _request(t0, review_type=ReviewType.SEMANTIC_ALIGNMENT, confidence=0.95, priority=ReviewPriority.NORMAL,
             requires_approval=False):
    return ReviewRequest(
        id="r-1",
        original_query="monthly active users",
        generated_sql="SELECT COUNT(DISTINCT user_id) FROM events",
        review_type=review_type,
        requested_by="alice",
        created_at=t0,
        priority=priority,
        confidence_score=confidence,
        requires_approval=requires_approval,
    )


def _submit(store, t0, **overrides):
    fields = {
        "original_query": "orders last week",
        "generated_sql": "SELECT * FROM orders WHERE created_at > now() - interval '7 days'",
        "review_type": "sql_validation",
        "requested_by": "alice",
        "confidence_score": 0.8,
        "now": t0,
    }
    fields.update(overrides)
    return store.submit(**fields)


class TestClassify:
    """Test the submit-time routing decision."""

    def test_high_confidence_without_required_approval_auto_approves(self, t0):
        decision = classify(_request(t0), ReviewConfiguration())
        assert decision.outcome == AUTO_APPROVE

    def test_type_requiring_approval_goes_to_manual_review(self, t0):
        decision = classify(_request(t0, review_type=ReviewType.SQL_VALIDATION), ReviewConfiguration())
        assert decision.outcome == MANUAL_REVIEW
        assert decision.priority == ReviewPriority.NORMAL

    def test_request_flag_blocks_auto_approval(self, t0):
        decision = classify(_request(t0, requires_approval=True), ReviewConfiguration())
        assert decision.outcome == MANUAL_REVIEW

    def test_auto_review_disabled(self, t0):
        decision = classify(_request(t0), ReviewConfiguration(auto_review_enabled=False))
        assert decision.outcome == MANUAL_REVIEW

    @pytest.mark.parametrize("confidence", [None, -0.1, 1.5, float("nan")])
    def test_unusable_confidence_is_manual_at_high(self, t0, confidence):
        decision = classify(_request(t0, confidence=confidence), ReviewConfiguration())
        assert decision.outcome == MANUAL_REVIEW
        assert decision.priority == ReviewPriority.HIGH

    def test_low_confidence_raises_priority(self, t0):
        decision = classify(_request(t0, confidence=0.5), ReviewConfiguration())
        assert decision.outcome == MANUAL_REVIEW
        assert decision.priority == ReviewPriority.HIGH

    def test_low_confidence_never_lowers_priority(self, t0):
        decision = classify(_request(t0, confidence=0.5, priority=ReviewPriority.CRITICAL), ReviewConfiguration())
        assert decision.priority == ReviewPriority.CRITICAL

    def test_auto_rejection_threshold(self, t0):
        config = ReviewConfiguration(auto_rejection_threshold=0.3)
        assert classify(_request(t0, confidence=0.2), config).outcome == AUTO_REJECT
        assert classify(_request(t0, confidence=0.3), config).outcome == MANUAL_REVIEW


class TestSubmit:
    """Test request creation."""

    @pytest.mark.parametrize("field,value", [
        ("original_query", "   "),
        ("generated_sql", ""),
        ("requested_by", ""),
        ("review_type", "vibes_check"),
        ("priority", "whenever"),
    ])
    def test_invalid_submission_stores_nothing(self, engine, t0, field, value):
        with pytest.raises(InvalidRequest) as exc_info:
            _submit(engine.store, t0, **{field: value})
        assert exc_info.value.field == field
        assert dao.list_requests() == []

    def test_invalid_issue_stores_nothing(self, engine, t0):
        with pytest.raises(InvalidRequest):
            _submit(engine.store, t0, validation_issues=[{"issue_type": "x", "severity": "catastrophic"}])
        assert dao.list_requests() == []

    def test_defaults_from_type_policy(self, engine, t0):
        request = _submit(engine.store, t0, review_type="security_review")
        assert request.status == ReviewStatus.PENDING
        assert request.priority == ReviewPriority.HIGH
        assert request.created_at == t0
        assert request.reviewed_at is None
        assert engine.store.get(request.id) == request

    def test_auto_assigns_least_loaded_reviewer(self, engine, t0):
        first = _submit(engine.store, t0)
        second = _submit(engine.store, t0 + timedelta(minutes=1))
        third = _submit(engine.store, t0 + timedelta(minutes=2))
        assert [first.assigned_to, second.assigned_to, third.assigned_to] == ["dev1", "dev2", "dev1"]

    def test_no_assignee_when_role_is_empty(self, make_engine, make_config, t0):
        engine = make_engine(make_config(role_directory={}))
        request = _submit(engine.store, t0)
        assert request.assigned_to is None

    def test_get_unknown_review(self, engine):
        with pytest.raises(NotFound):
            engine.store.get("does-not-exist")


class TestTransitions:

    def test_reviewed_at_set_on_terminal_status(self, engine, t0):
        request = _submit(engine.store, t0)
        engine.store.transition(request.id, ReviewStatus.IN_REVIEW, now=t0)
        done = engine.store.transition(request.id, ReviewStatus.APPROVED, actor="dev1", reason="looks right",
                                       now=t0 + timedelta(minutes=30))
        assert done.reviewed_at == t0 + timedelta(minutes=30)
        assert "[dev1] looks right" in done.review_notes
        assert done.version == request.version + 2

    def test_terminal_request_cannot_move(self, engine, t0):
        request = _submit(engine.store, t0)
        engine.store.transition(request.id, ReviewStatus.REJECTED, now=t0)
        with pytest.raises(IllegalTransition):
            engine.store.transition(request.id, ReviewStatus.IN_REVIEW, now=t0)
        assert engine.store.get(request.id).status == ReviewStatus.REJECTED

    def test_unknown_status(self, engine, t0):
        request = _submit(engine.store, t0)
        with pytest.raises(InvalidRequest):
            engine.store.transition(request.id, "done", now=t0)

    def test_assign_moves_pending_to_in_review(self, engine, transport, t0):
        request = _submit(engine.store, t0)
        assigned = engine.store.assign(request.id, "dev2", actor="lead1", now=t0)
        assert assigned.status == ReviewStatus.IN_REVIEW
        assert assigned.assigned_to == "dev2"
        recipients = [call.args[0].recipient_id for call in transport.send.call_args_list]
        assert "dev2" in recipients

    def test_assign_closed_review(self, engine, t0):
        request = _submit(engine.store, t0)
        engine.store.transition(request.id, ReviewStatus.CANCELLED, now=t0)
        with pytest.raises(IllegalTransition):
            engine.store.assign(request.id, "dev2", now=t0)

    def test_escalate_raises_priority(self, engine, t0):
        request = _submit(engine.store, t0, review_type="semantic_alignment")
        assert request.priority == ReviewPriority.LOW
        engine.store.transition(request.id, ReviewStatus.IN_REVIEW, now=t0)
        escalated = engine.store.escalate(request.id, reason="needs a second look", now=t0)
        assert escalated.status == ReviewStatus.ESCALATED
        assert escalated.priority == ReviewPriority.HIGH


class TestQueue:

    def test_priority_then_age(self, engine, t0):
        old_normal = _submit(engine.store, t0, priority="normal")
        new_normal = _submit(engine.store, t0 + timedelta(minutes=5), priority="normal")
        urgent = _submit(engine.store, t0 + timedelta(minutes=10), priority="urgent")
        closed = _submit(engine.store, t0, priority="critical")
        engine.store.transition(closed.id, ReviewStatus.CANCELLED, now=t0)

        items, total = engine.store.queue()
        assert total == 3
        assert [r.id for r in items] == [urgent.id, old_normal.id, new_normal.id]

    def test_filters_and_paging(self, engine, t0):
        for minute in range(5):
            _submit(engine.store, t0 + timedelta(minutes=minute))

        items, total = engine.store.queue(assignee="dev1", page=1, page_size=2)
        assert total == 3
        assert len(items) == 2
        assert all(r.assigned_to == "dev1" for r in items)

        items, total = engine.store.queue(review_type="security_review")
        assert (items, total) == ([], 0)


class TestValidationIssues:

    def test_attach_and_resolve(self, engine, t0):
        request = _submit(engine.store, t0, validation_issues=[
            {"issue_type": "select_star", "description": "avoid SELECT *", "severity": "low"},
        ])
        assert len(request.validation_issues) == 1

        issue = engine.store.attach_issue(request.id, "missing_filter", "no tenant filter", severity="high",
                                          location="WHERE clause")
        resolved = engine.store.resolve_issue(request.id, issue.id, "dev1", now=t0 + timedelta(hours=1))
        assert resolved.is_resolved
        assert resolved.resolved_by == "dev1"

        again = engine.store.resolve_issue(request.id, issue.id, "dev2", now=t0 + timedelta(hours=2))
        assert again.resolved_by == "dev1"
        assert again.resolved_at == t0 + timedelta(hours=1)

        stored = engine.store.get(request.id)
        assert [i.issue_type for i in stored.validation_issues] == ["select_star", "missing_filter"]

    def test_resolve_unknown_issue(self, engine, t0):
        request = _submit(engine.store, t0)
        with pytest.raises(NotFound):
            engine.store.resolve_issue(request.id, "nope", "dev1")

    def test_issues_can_be_attached_after_close(self, engine, t0):
        request = _submit(engine.store, t0)
        engine.store.transition(request.id, ReviewStatus.APPROVED, now=t0)
        engine.store.attach_issue(request.id, "late_finding", "found after approval")
        assert len(engine.store.get(request.id).validation_issues) == 1


class TestEntityLock:

    def test_locks_released_after_use(self, engine, t0):
        for _ in range(5):
            request = engine.submit_review("late invoices", "SELECT id FROM invoices", "sql_validation", "alice",
                                           confidence_score=0.8, now=t0)
            engine.cancel(request.id, now=t0)
        assert dao._locks == {}

    def test_lock_shared_while_held(self):
        with dao.entity_lock("r-1"):
            assert dao._locks["r-1"][1] == 1
            with dao.entity_lock("r-2"):
                assert sorted(dao._locks) == ["r-1", "r-2"]
        assert dao._locks == {}

    def test_lock_released_when_body_raises(self):
        with pytest.raises(RuntimeError):
            with dao.entity_lock("r-1"):
                raise RuntimeError("boom")
        assert dao._locks == {}
