"""Scheduling kernel data models."""

from scheduling_kernel.models.audit import (
    AuditEntry,
    AuditQuery,
    AuditStatistics,
    DecisionOutcome,
    OverrideKind,
    SenderHistory,
    UserOverride,
)
from scheduling_kernel.models.breaker import (
    BreakerEvent,
    BreakerEventKind,
    BreakerStatus,
    BreakerTuning,
    CircuitBreakerState,
)
from scheduling_kernel.models.confidence import (
    ConfidenceAssessment,
    Recommendation,
    ScoringWeights,
    SubScores,
)
from scheduling_kernel.models.conversation import (
    TERMINAL_STATUSES,
    ConversationState,
    ConversationStatus,
)
from scheduling_kernel.models.decision import (
    AvailabilityResult,
    DecisionResult,
    ProcessResult,
)
from scheduling_kernel.models.message import ClassifiedMessage, RequestType, TimeRange
from scheduling_kernel.models.preferences import (
    PreferencesUpdate,
    UserAutomationPreferences,
)

__all__ = [
    "AuditEntry",
    "AuditQuery",
    "AuditStatistics",
    "AvailabilityResult",
    "BreakerEvent",
    "BreakerEventKind",
    "BreakerStatus",
    "BreakerTuning",
    "CircuitBreakerState",
    "ClassifiedMessage",
    "ConfidenceAssessment",
    "ConversationState",
    "ConversationStatus",
    "DecisionOutcome",
    "DecisionResult",
    "OverrideKind",
    "PreferencesUpdate",
    "ProcessResult",
    "Recommendation",
    "RequestType",
    "ScoringWeights",
    "SenderHistory",
    "SubScores",
    "TERMINAL_STATUSES",
    "TimeRange",
    "UserAutomationPreferences",
    "UserOverride",
]
