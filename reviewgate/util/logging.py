"""
Structured logging for the review engine.
Every state change, delivery attempt and scheduler tick goes through here so the
audit trail reads the same regardless of which actor caused it.
"""

import logging
from typing import Any, Dict, List, Optional

# Artifact text is never written to logs verbatim.
SENSITIVE_FIELDS = ['original_query', 'generated_sql', 'corrected_sql', 'secret', 'password', 'token']


class StructuredLogger:
    """Structured logger for review, workflow and notification operations."""

    def __init__(self, name: str = "reviewgate"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_review_submitted(self, review_id: str, review_type: str, requested_by: str, priority: str):
        """Log creation of a review request."""
        self.log_operation("review.submitted", "pending", {
            "review_id": review_id,
            "review_type": review_type,
            "requested_by": requested_by,
            "priority": priority
        })

    def log_transition(self, review_id: str, from_status: str, to_status: str, actor: str = "system", reason: str = ""):
        """Log a request-level status transition."""
        log_details = {
            "review_id": review_id,
            "from": from_status,
            "to": to_status,
            "actor": actor
        }
        if reason:
            log_details["reason"] = reason[:100]

        self.log_operation("review.transition", to_status, log_details)

    def log_step_decision(self, workflow_id: str, step_id: str, decision: str, reviewer: str, comments: str = ""):
        """Log a reviewer decision on an approval step."""
        log_details = {
            "workflow_id": workflow_id,
            "step_id": step_id,
            "decision": decision,
            "reviewer": reviewer,
            "comments": comments[:100] if comments else ""
        }
        self.log_operation("workflow.step_decision", decision, log_details)

    def log_workflow_status(self, workflow_id: str, review_id: str, status: str, step_index: int):
        """Log a workflow-level status change."""
        self.log_operation("workflow.status", status, {
            "workflow_id": workflow_id,
            "review_id": review_id,
            "current_step_index": step_index
        })

    def log_step_timeout(self, workflow_id: str, step_id: str, outcome: str, overdue_sec: float):
        """Log a timeout-driven step transition."""
        self.log_operation("scheduler.step_timeout", outcome, {
            "workflow_id": workflow_id,
            "step_id": step_id,
            "overdue_sec": round(overdue_sec, 1)
        })

    def log_escalation(self, review_id: str, reason: str, recipients: List[str]):
        """Log an escalation."""
        self.log_operation("review.escalated", "escalated", {
            "review_id": review_id,
            "reason": reason[:100] if reason else "",
            "recipients": len(recipients)
        }, level=logging.WARNING)

    def log_notification(self, notification_id: str, notification_type: str, recipient: str, status: str, attempts: int = 0):
        """Log a notification delivery attempt outcome."""
        log_details = {
            "notification_id": notification_id,
            "type": notification_type,
            "recipient": recipient,
            "attempts": attempts
        }
        level = logging.INFO if status == "delivered" else logging.WARNING
        self.log_operation("notification.delivery", status, log_details, level=level)

    def log_scheduler_tick(self, start_time: float, end_time: float, details: Dict[str, Any] = None, status: str = "success"):
        """Log one scheduler sweep."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation("scheduler.tick", status, log_details)

    def log_config_issue(self, issue: str, fatal: bool = True):
        """Log a configuration validation problem."""
        level = logging.ERROR if fatal else logging.WARNING
        self.log_operation("config.validation", "invalid" if fatal else "warning", {"issue": issue}, level=level)

    def log_invariant_violation(self, entity: str, entity_id: str, problem: str):
        """Log a detected invariant violation. These are reported, never repaired."""
        self.log_operation("invariant.violation", "detected", {
            "entity": entity,
            "entity_id": entity_id,
            "problem": problem
        }, level=logging.ERROR)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)

    def set_debug(self, enabled: bool) -> None:
        self.logger.setLevel(logging.DEBUG if enabled else logging.INFO)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with artifact redaction."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    # Determine operation type from event_type
    if event_type.startswith("review"):
        operation = "audit.review"
    elif event_type.startswith("workflow"):
        operation = "audit.workflow"
    elif event_type.startswith("feedback"):
        operation = "audit.feedback"
    else:
        operation = "audit." + event_type.replace(".", "_")

    logger.log_operation(operation, event_type, log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: Optional[List[str]] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
