"""
Configuration for the review engine.

Process settings come from environment variables (read on every call so tests and
hot reloads see changes). Review policy is assembled into an immutable
ReviewConfiguration snapshot; the ReviewConfigProvider swaps snapshots atomically.
"""

import json
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError
from .schema import ReviewPriority, ReviewType
from ..util.logging import logger

load_dotenv()

VERSION = "1.0.0"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def get_db_path() -> str:
    """SQLite database path."""
    return os.getenv("REVIEWGATE_DB_PATH", "./data/reviewgate.db")


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def debug_enabled() -> bool:
    """Check if debug mode is enabled."""
    return _env_bool("DEBUG", "false")


def is_scheduler_enabled() -> bool:
    """Check if the timeout scheduler loop may start."""
    return _env_bool("SCHEDULER_ENABLED", "false")


def get_scheduler_interval() -> int:
    """Scheduler tick interval in seconds."""
    return int(os.getenv("SCHEDULER_INTERVAL_SEC", "60"))


def get_analytics_interval() -> int:
    """Interval between scheduled analytics snapshots in seconds."""
    return int(os.getenv("ANALYTICS_SNAPSHOT_INTERVAL_SEC", "3600"))


def get_analytics_window() -> timedelta:
    """Trailing window covered by scheduled analytics snapshots."""
    return timedelta(hours=float(os.getenv("ANALYTICS_WINDOW_HOURS", "24")))


def get_notification_retry_policy() -> Tuple[int, float]:
    """(max attempts, backoff base seconds) for notification delivery."""
    return int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3")), float(os.getenv("NOTIFICATION_BACKOFF_SEC", "0.5"))


def get_notification_webhook_url() -> Optional[str]:
    return os.getenv("NOTIFICATION_WEBHOOK_URL") or None


def validate_scheduler_config() -> List[str]:
    """Validate scheduler configuration and return any issues."""
    issues = []

    try:
        if get_scheduler_interval() < 1:
            issues.append("SCHEDULER_INTERVAL_SEC must be >= 1")
    except ValueError:
        issues.append(f"Invalid SCHEDULER_INTERVAL_SEC: {os.getenv('SCHEDULER_INTERVAL_SEC')}")

    try:
        if get_analytics_interval() < 1:
            issues.append("ANALYTICS_SNAPSHOT_INTERVAL_SEC must be >= 1")
    except ValueError:
        issues.append(f"Invalid ANALYTICS_SNAPSHOT_INTERVAL_SEC: {os.getenv('ANALYTICS_SNAPSHOT_INTERVAL_SEC')}")

    return issues


@dataclass(frozen=True)
class ReviewTypeConfig:
    """Policy for one review type."""
    requires_approval: bool = True
    required_roles: Tuple[str, ...] = ("Admin",)
    optional_roles: Tuple[str, ...] = ()
    timeout: timedelta = timedelta(hours=24)
    default_priority: ReviewPriority = ReviewPriority.NORMAL
    auto_assign_enabled: bool = False
    auto_assign_to_roles: Tuple[str, ...] = ()


# Fallback for types missing from the policy
DEFAULT_TYPE_CONFIG = ReviewTypeConfig()

DEFAULT_TYPE_CONFIGS: Dict[ReviewType, ReviewTypeConfig] = {
    ReviewType.SQL_VALIDATION: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("Developer", "SeniorDeveloper"),
        timeout=timedelta(hours=8),
        default_priority=ReviewPriority.NORMAL,
        auto_assign_enabled=True,
        auto_assign_to_roles=("Developer",),
    ),
    ReviewType.SECURITY_REVIEW: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("SecurityAnalyst", "SecurityOfficer", "SecurityManager"),
        timeout=timedelta(hours=24),
        default_priority=ReviewPriority.HIGH,
        auto_assign_enabled=True,
        auto_assign_to_roles=("SecurityAnalyst",),
    ),
    ReviewType.BUSINESS_LOGIC: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("BusinessAnalyst", "ProductOwner"),
        timeout=timedelta(hours=12),
        default_priority=ReviewPriority.NORMAL,
        auto_assign_enabled=True,
        auto_assign_to_roles=("BusinessAnalyst",),
    ),
    ReviewType.SEMANTIC_ALIGNMENT: ReviewTypeConfig(
        requires_approval=False,
        required_roles=("DataAnalyst",),
        timeout=timedelta(hours=4),
        default_priority=ReviewPriority.LOW,
        auto_assign_enabled=True,
        auto_assign_to_roles=("DataAnalyst",),
    ),
    ReviewType.PERFORMANCE_REVIEW: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("DatabaseAdmin", "PerformanceEngineer"),
        timeout=timedelta(hours=6),
        default_priority=ReviewPriority.HIGH,
        auto_assign_enabled=True,
        auto_assign_to_roles=("DatabaseAdmin",),
    ),
    ReviewType.COMPLIANCE_REVIEW: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("ComplianceOfficer", "LegalTeam"),
        timeout=timedelta(hours=48),
        default_priority=ReviewPriority.CRITICAL,
    ),
    ReviewType.DATA_ACCESS: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("DataSteward", "DataOwner"),
        timeout=timedelta(hours=16),
        default_priority=ReviewPriority.NORMAL,
        auto_assign_enabled=True,
        auto_assign_to_roles=("DataSteward",),
    ),
    ReviewType.SENSITIVE_DATA: ReviewTypeConfig(
        requires_approval=True,
        required_roles=("DataProtectionOfficer", "SecurityManager", "ComplianceOfficer"),
        timeout=timedelta(hours=72),
        default_priority=ReviewPriority.CRITICAL,
    ),
}


@dataclass(frozen=True)
class ReviewConfiguration:
    """Process-wide review policy. Read-only to the engine during a transition."""
    auto_review_enabled: bool = True
    auto_approval_threshold: float = 0.9
    manual_review_threshold: float = 0.7
    auto_rejection_threshold: Optional[float] = None
    default_review_timeout: timedelta = timedelta(hours=24)
    notification_interval: timedelta = timedelta(hours=4)
    notifications_enabled: bool = True
    escalate_on_timeout: bool = False
    escalation_recipients: Tuple[str, ...] = ()
    type_configs: Dict[ReviewType, ReviewTypeConfig] = field(default_factory=lambda: dict(DEFAULT_TYPE_CONFIGS))
    role_directory: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def type_config(self, review_type: ReviewType) -> ReviewTypeConfig:
        return self.type_configs.get(review_type, DEFAULT_TYPE_CONFIG)

    def with_type_config(self, review_type: ReviewType, type_config: ReviewTypeConfig) -> "ReviewConfiguration":
        configs = dict(self.type_configs)
        configs[review_type] = type_config
        return replace(self, type_configs=configs)


def validate_review_configuration(config: ReviewConfiguration) -> List[str]:
    """Validate review policy and return any issues (empty list means valid)."""
    issues = []

    if not 0.0 <= config.auto_approval_threshold <= 1.0:
        issues.append("AUTO_APPROVAL_THRESHOLD must be between 0 and 1")

    if not 0.0 <= config.manual_review_threshold <= 1.0:
        issues.append("MANUAL_REVIEW_THRESHOLD must be between 0 and 1")

    if config.auto_rejection_threshold is not None:
        if not 0.0 <= config.auto_rejection_threshold <= 1.0:
            issues.append("AUTO_REJECTION_THRESHOLD must be between 0 and 1")
        elif config.auto_rejection_threshold > config.manual_review_threshold:
            issues.append("AUTO_REJECTION_THRESHOLD must not exceed MANUAL_REVIEW_THRESHOLD")

    if config.default_review_timeout <= timedelta(0):
        issues.append("DEFAULT_REVIEW_TIMEOUT_SEC must be positive")

    if config.notification_interval <= timedelta(0):
        issues.append("NOTIFICATION_INTERVAL_SEC must be positive")

    for review_type, type_config in config.type_configs.items():
        if type_config.timeout <= timedelta(0):
            issues.append(f"{review_type.value}: timeout must be positive")

    return issues


def _parse_type_config(raw: Dict, base: ReviewTypeConfig) -> ReviewTypeConfig:
    updates = {}
    if "requires_approval" in raw:
        updates["requires_approval"] = bool(raw["requires_approval"])
    for key in ("required_roles", "optional_roles", "auto_assign_to_roles"):
        if key in raw:
            updates[key] = tuple(str(role) for role in raw[key])
    if "timeout_sec" in raw:
        updates["timeout"] = timedelta(seconds=float(raw["timeout_sec"]))
    if "default_priority" in raw:
        updates["default_priority"] = ReviewPriority(raw["default_priority"])
    if "auto_assign_enabled" in raw:
        updates["auto_assign_enabled"] = bool(raw["auto_assign_enabled"])
    return replace(base, **updates)


def load_review_configuration(policy_path: Optional[str] = None) -> ReviewConfiguration:
    """
    Build a ReviewConfiguration from the environment and the optional policy file.

    Raises ConfigurationError if any value is unparseable or fails validation.
    """
    policy_path = policy_path or os.getenv("REVIEW_POLICY_PATH")

    try:
        raw_rejection = os.getenv("AUTO_REJECTION_THRESHOLD")
        recipients = os.getenv("ESCALATION_RECIPIENTS", "")
        config = ReviewConfiguration(
            auto_review_enabled=_env_bool("AUTO_REVIEW_ENABLED", "true"),
            auto_approval_threshold=float(os.getenv("AUTO_APPROVAL_THRESHOLD", "0.9")),
            manual_review_threshold=float(os.getenv("MANUAL_REVIEW_THRESHOLD", "0.7")),
            auto_rejection_threshold=float(raw_rejection) if raw_rejection else None,
            default_review_timeout=timedelta(seconds=float(os.getenv("DEFAULT_REVIEW_TIMEOUT_SEC", "86400"))),
            notification_interval=timedelta(seconds=float(os.getenv("NOTIFICATION_INTERVAL_SEC", "14400"))),
            notifications_enabled=_env_bool("NOTIFICATIONS_ENABLED", "true"),
            escalate_on_timeout=_env_bool("ESCALATE_ON_TIMEOUT", "false"),
            escalation_recipients=tuple(r.strip() for r in recipients.split(",") if r.strip()),
        )
    except ValueError as e:
        raise ConfigurationError([f"Unparseable review setting: {e}"]) from e

    if policy_path:
        try:
            with open(policy_path, "r", encoding="utf-8") as fh:
                policy = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError([f"Cannot read review policy {policy_path}: {e}"]) from e

        try:
            type_configs = dict(config.type_configs)
            for type_name, raw in policy.get("types", {}).items():
                review_type = ReviewType(type_name)
                type_configs[review_type] = _parse_type_config(raw, config.type_config(review_type))

            role_directory = {
                str(role): tuple(str(member) for member in members)
                for role, members in policy.get("role_directory", {}).items()
            }
            config = replace(config, type_configs=type_configs, role_directory=role_directory)
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError([f"Invalid review policy {policy_path}: {e}"]) from e

    issues = validate_review_configuration(config)
    if issues:
        for issue in issues:
            logger.log_config_issue(issue)
        raise ConfigurationError(issues)

    if config.auto_approval_threshold <= config.manual_review_threshold:
        logger.log_config_issue("AUTO_APPROVAL_THRESHOLD should be higher than MANUAL_REVIEW_THRESHOLD", fatal=False)

    if not config.notifications_enabled:
        logger.log_config_issue("Notifications are disabled - reviewers will not hear about pending reviews", fatal=False)

    return config


class ReviewConfigProvider:
    """
    Holds the current ReviewConfiguration snapshot.

    Readers call get() once per operation and keep that snapshot for the whole
    transition; reload() swaps in a new validated snapshot between operations.
    """

    def __init__(self, config: Optional[ReviewConfiguration] = None, policy_path: Optional[str] = None):
        self._policy_path = policy_path
        self._lock = threading.Lock()
        if config is not None:
            issues = validate_review_configuration(config)
            if issues:
                raise ConfigurationError(issues)
            self._config = config
        else:
            self._config = load_review_configuration(policy_path)

    def get(self) -> ReviewConfiguration:
        return self._config

    def reload(self) -> ReviewConfiguration:
        """Reload from the environment; keeps the previous snapshot if the new one is invalid."""
        config = load_review_configuration(self._policy_path)
        with self._lock:
            self._config = config
        logger.info("Review configuration reloaded")
        return config

    def update(self, config: ReviewConfiguration) -> ReviewConfiguration:
        """Replace the snapshot with an explicit configuration after validating it."""
        issues = validate_review_configuration(config)
        if issues:
            for issue in issues:
                logger.log_config_issue(issue)
            raise ConfigurationError(issues)
        with self._lock:
            self._config = config
        return config
