"""
Error taxonomy for the review engine.

- InvalidRequest: malformed submission, rejected before anything is persisted
- NotFound: unknown review, workflow, step or notification id
- IllegalTransition: state-machine violation, nothing is mutated
- StaleStep: optimistic-concurrency conflict, caller must re-read and retry
- ConfigurationError: missing or invalid policy, fatal at startup
- DependencyUnavailable: storage, transport or identity provider failure
- InvariantViolation: persisted state that no legal sequence of transitions produces
"""

from typing import Any, Dict, Optional


class ReviewGateError(Exception):
    """
    Base exception for all review engine errors.

    Carries a human-readable message plus structured details so the API
    layer and the audit log can render the same information.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidRequest(ReviewGateError):
    """Raised when a submission or feedback payload is malformed."""

    def __init__(self, reason: str, field: Optional[str] = None):
        self.reason = reason
        self.field = field
        details = {"reason": reason}
        if field:
            details["field"] = field
        super().__init__(f"Invalid request: {reason}", details)


class NotFound(ReviewGateError):
    """Raised when an entity id does not resolve."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", {"entity": entity, "entity_id": entity_id})


class IllegalTransition(ReviewGateError):
    """
    Raised when a requested status change is not in the transition table,
    or when the entity no longer holds the status the caller read.
    """

    def __init__(self, entity: str, entity_id: str, from_status: str, to_status: str, reason: str = ""):
        self.entity = entity
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status

        message = f"Illegal {entity} transition {from_status} -> {to_status} for {entity_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message, {
            "entity": entity,
            "entity_id": entity_id,
            "from_status": from_status,
            "to_status": to_status,
            "reason": reason,
        })


class StaleStep(ReviewGateError):
    """
    Raised when a decision or timeout targets a step that is no longer the
    workflow's current in-flight step, or when a compare-and-set write lost
    a race. The caller must re-fetch state before retrying.
    """

    def __init__(self, workflow_id: str, step_id: Optional[str], reason: str):
        self.workflow_id = workflow_id
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"Stale step {step_id} in workflow {workflow_id}: {reason}", {
            "workflow_id": workflow_id,
            "step_id": step_id,
            "reason": reason,
        })


class ConfigurationError(ReviewGateError):
    """Raised when review policy thresholds or timeouts are invalid."""

    def __init__(self, issues):
        self.issues = list(issues)
        super().__init__(f"Review configuration invalid: {self.issues}", {"issues": self.issues})


class DependencyUnavailable(ReviewGateError):
    """Raised when storage, the notification transport or the identity provider fails."""

    def __init__(self, dependency: str, operation: str, original_error: Optional[Exception] = None):
        self.dependency = dependency
        self.operation = operation
        self.original_error = original_error

        details = {"dependency": dependency, "operation": operation}
        if original_error:
            details["original_error"] = str(original_error)
        super().__init__(f"{dependency} unavailable during {operation}", details)


class InvariantViolation(ReviewGateError):
    """Raised when persisted state breaks an engine invariant."""

    def __init__(self, entity: str, entity_id: str, problem: str):
        self.entity = entity
        self.entity_id = entity_id
        self.problem = problem
        super().__init__(f"Invariant violated on {entity} {entity_id}: {problem}", {
            "entity": entity,
            "entity_id": entity_id,
            "problem": problem,
        })
