"""Producer pipeline: classification, envelopes, publishing and polling."""

from changewire.pipeline.classifier import (
    ALERT_LEVEL_HIGH,
    DEFAULT_RULES,
    ChangeCategory,
    ClassificationRules,
    RiskLevel,
    SecurityImplication,
    assess_risk,
    classify,
    is_critical,
    security_implications,
)
from changewire.pipeline.envelope import CRITICAL_CATEGORY, EventEnvelope, partition_key
from changewire.pipeline.poller import ChangePoller, CycleResult, PollerState
from changewire.pipeline.publisher import ChangePublisher, PublishOutcome
from changewire.pipeline.reporters import (
    USER_LOGIN,
    USER_LOGOUT,
    USER_REGISTERED,
    ActivityReporter,
    SystemEventReporter,
)

__all__ = [
    "ALERT_LEVEL_HIGH",
    "CRITICAL_CATEGORY",
    "DEFAULT_RULES",
    "USER_LOGIN",
    "USER_LOGOUT",
    "USER_REGISTERED",
    "ActivityReporter",
    "ChangeCategory",
    "ChangePoller",
    "ChangePublisher",
    "ClassificationRules",
    "CycleResult",
    "EventEnvelope",
    "PollerState",
    "PublishOutcome",
    "RiskLevel",
    "SecurityImplication",
    "SystemEventReporter",
    "assess_risk",
    "classify",
    "is_critical",
    "partition_key",
    "security_implications",
]
