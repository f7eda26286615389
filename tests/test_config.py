"""
Review configuration tests - environment loading, policy files and validation.
"""

import json
from datetime import timedelta

import pytest

from reviewgate.core.config import (
    DEFAULT_TYPE_CONFIG,
    ReviewConfigProvider,
    ReviewConfiguration,
    ReviewTypeConfig,
    get_notification_retry_policy,
    load_review_configuration,
    validate_review_configuration,
    validate_scheduler_config,
)
from reviewgate.core.errors import ConfigurationError
from reviewgate.core.schema import ReviewPriority, ReviewType


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("AUTO_REVIEW_ENABLED", "AUTO_APPROVAL_THRESHOLD", "MANUAL_REVIEW_THRESHOLD",
                 "AUTO_REJECTION_THRESHOLD", "DEFAULT_REVIEW_TIMEOUT_SEC", "NOTIFICATION_INTERVAL_SEC",
                 "NOTIFICATIONS_ENABLED", "ESCALATE_ON_TIMEOUT", "ESCALATION_RECIPIENTS", "REVIEW_POLICY_PATH"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadConfiguration:

    def test_defaults(self, clean_env):
        config = load_review_configuration()
        assert config.auto_review_enabled is True
        assert config.auto_approval_threshold == 0.9
        assert config.manual_review_threshold == 0.7
        assert config.auto_rejection_threshold is None
        assert config.default_review_timeout == timedelta(hours=24)
        assert config.escalation_recipients == ()

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("AUTO_APPROVAL_THRESHOLD", "0.95")
        clean_env.setenv("AUTO_REJECTION_THRESHOLD", "0.2")
        clean_env.setenv("ESCALATE_ON_TIMEOUT", "true")
        clean_env.setenv("ESCALATION_RECIPIENTS", "oncall, lead1 ,")

        config = load_review_configuration()
        assert config.auto_approval_threshold == 0.95
        assert config.auto_rejection_threshold == 0.2
        assert config.escalate_on_timeout is True
        assert config.escalation_recipients == ("oncall", "lead1")

    def test_unparseable_value(self, clean_env):
        clean_env.setenv("AUTO_APPROVAL_THRESHOLD", "very high")
        with pytest.raises(ConfigurationError):
            load_review_configuration()

    def test_threshold_out_of_range(self, clean_env):
        clean_env.setenv("MANUAL_REVIEW_THRESHOLD", "1.5")
        with pytest.raises(ConfigurationError) as exc_info:
            load_review_configuration()
        assert any("MANUAL_REVIEW_THRESHOLD" in issue for issue in exc_info.value.issues)

    def test_policy_file(self, clean_env, tmp_path):
        policy = {
            "types": {
                "business_logic": {
                    "required_roles": ["BusinessAnalyst"],
                    "optional_roles": ["ProductOwner"],
                    "timeout_sec": 3600,
                    "default_priority": "high",
                }
            },
            "role_directory": {"BusinessAnalyst": ["ba1", "ba2"]},
        }
        path = tmp_path / "policy.json"
        path.write_text(json.dumps(policy))

        config = load_review_configuration(str(path))
        type_config = config.type_config(ReviewType.BUSINESS_LOGIC)
        assert type_config.required_roles == ("BusinessAnalyst",)
        assert type_config.optional_roles == ("ProductOwner",)
        assert type_config.timeout == timedelta(hours=1)
        assert type_config.default_priority == ReviewPriority.HIGH
        # Unlisted settings keep their defaults
        assert type_config.auto_assign_enabled is True
        assert config.role_directory == {"BusinessAnalyst": ("ba1", "ba2")}

    def test_policy_file_with_unknown_type(self, clean_env, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"types": {"vibes_check": {}}}))
        with pytest.raises(ConfigurationError):
            load_review_configuration(str(path))

    def test_missing_policy_file(self, clean_env, tmp_path):
        with pytest.raises(ConfigurationError):
            load_review_configuration(str(tmp_path / "nope.json"))


class TestValidation:

    def test_rejection_threshold_above_manual(self):
        config = ReviewConfiguration(auto_rejection_threshold=0.8, manual_review_threshold=0.7)
        issues = validate_review_configuration(config)
        assert any("AUTO_REJECTION_THRESHOLD" in issue for issue in issues)

    def test_non_positive_type_timeout(self):
        config = ReviewConfiguration().with_type_config(ReviewType.DATA_ACCESS,
                                                        ReviewTypeConfig(timeout=timedelta(0)))
        issues = validate_review_configuration(config)
        assert issues == ["data_access: timeout must be positive"]

    def test_unknown_type_falls_back(self):
        config = ReviewConfiguration(type_configs={})
        assert config.type_config(ReviewType.SQL_VALIDATION) == DEFAULT_TYPE_CONFIG

    def test_scheduler_interval(self, monkeypatch):
        monkeypatch.setenv("SCHEDULER_INTERVAL_SEC", "0")
        assert validate_scheduler_config() == ["SCHEDULER_INTERVAL_SEC must be >= 1"]

    def test_retry_policy(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATION_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("NOTIFICATION_BACKOFF_SEC", "0.5")
        assert get_notification_retry_policy() == (5, 0.5)


class TestProvider:

    def test_explicit_config_is_validated(self):
        with pytest.raises(ConfigurationError):
            ReviewConfigProvider(config=ReviewConfiguration(auto_approval_threshold=2.0))

    def test_update_keeps_previous_snapshot_on_error(self):
        original = ReviewConfiguration()
        provider = ReviewConfigProvider(config=original)

        with pytest.raises(ConfigurationError):
            provider.update(ReviewConfiguration(default_review_timeout=timedelta(seconds=-1)))
        assert provider.get() is original

        replacement = ReviewConfiguration(auto_approval_threshold=0.99)
        provider.update(replacement)
        assert provider.get() is replacement

    def test_reload_reads_environment(self, clean_env):
        provider = ReviewConfigProvider(config=ReviewConfiguration())
        clean_env.setenv("NOTIFICATIONS_ENABLED", "false")
        config = provider.reload()
        assert config.notifications_enabled is False
        assert provider.get() is config
