"""
Confidence Scorer — multi-factor certainty that a message can be auto-answered.

Factors (default weights):
  - Intent clarity (40%): is this really a scheduling request?
  - Time parsing clarity (30%): were the proposed times extracted cleanly?
  - Sender trust (20%): does the sender have a good track record?
  - Conversation clarity (10%): is the thread context unambiguous?

Behavioral Contract:
- Pure and deterministic: identical inputs yield identical assessments
- No I/O, no clock reads, no logging
- Missing inputs are replaced by DEGRADED_DEFAULT and flagged, never guessed
"""

from datetime import datetime
from typing import List, Optional, Tuple

from scheduling_kernel.models.confidence import (
    ConfidenceAssessment,
    Recommendation,
    ScoringWeights,
    SubScores,
)
from scheduling_kernel.models.conversation import ConversationState, ConversationStatus
from scheduling_kernel.models.message import ClassifiedMessage, RequestType, TimeRange

DEGRADED_DEFAULT = 0.5
MAX_SLOT_SECONDS = 24 * 60 * 60


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def score(
    sub_scores: SubScores,
    threshold: float,
    weights: Optional[ScoringWeights] = None,
) -> Tuple[float, Recommendation]:
    """Weighted overall score and the recommendation it implies."""
    weights = weights or ScoringWeights()
    overall = (
        sub_scores.intent_clarity * weights.intent
        + sub_scores.time_parsing_clarity * weights.time_parsing
        + sub_scores.sender_trust * weights.sender_trust
        + sub_scores.conversation_clarity * weights.conversation
    )
    overall = round(_clamp(overall), 6)
    return overall, recommend(overall, threshold, weights.approval_floor)


def recommend(overall: float, threshold: float, approval_floor: float = 0.70) -> Recommendation:
    if overall >= threshold:
        return Recommendation.AUTO_RESPOND
    elif overall >= approval_floor:
        return Recommendation.REQUEST_APPROVAL
    else:
        return Recommendation.DECLINE


def _intent_clarity(message: ClassifiedMessage) -> Optional[float]:
    if message.intent_confidence is None:
        return None
    confidence = message.intent_confidence
    # A confirmation is the least ambiguous request type
    if message.request_type == RequestType.CONFIRMATION:
        confidence += 0.1
    return _clamp(confidence)


def _slot_quality(slots: List[TimeRange], request_type: RequestType) -> float:
    if not slots:
        # Confirmations legitimately carry no new times
        return 0.7 if request_type == RequestType.CONFIRMATION else 0.3

    valid = [s for s in slots if 0 < s.duration_seconds < MAX_SLOT_SECONDS]
    if len(valid) == len(slots):
        quality = 0.9
    elif valid:
        quality = 0.6
    else:
        quality = 0.5

    if 1 <= len(slots) <= 5:
        quality += 0.1
    return _clamp(quality)


def _time_parsing_clarity(message: ClassifiedMessage) -> Optional[float]:
    if message.time_candidates is None:
        return None
    if message.extraction_quality is not None:
        return _clamp(message.extraction_quality)
    return _slot_quality(message.time_candidates, message.request_type)


def _conversation_clarity(conversation: Optional[ConversationState]) -> float:
    if conversation is None or conversation.turn_count == 0:
        return 0.8  # New conversation

    clarity = 0.7
    if conversation.state == ConversationStatus.AVAILABILITY_SENT:
        clarity = 0.9
    if conversation.turn_count > 5:
        clarity = 0.5  # Long negotiation
    if conversation.state == ConversationStatus.CONFIRMED:
        clarity = 0.95
    return clarity


class ConfidenceScorer:
    """Turns a classified message plus context into a ConfidenceAssessment."""

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def assess(
        self,
        message: ClassifiedMessage,
        conversation: Optional[ConversationState],
        sender_trust: Optional[float],
        threshold: float,
        assessed_at: Optional[datetime] = None,
    ) -> ConfidenceAssessment:
        """
        Assess a message. ``sender_trust=None`` means the trust lookup
        answered "unknown". ``assessed_at`` defaults to the message's
        received time so the result depends only on the inputs.
        """
        degraded_inputs: List[str] = []

        intent = _intent_clarity(message)
        if intent is None:
            degraded_inputs.append("intent_confidence")
            intent = DEGRADED_DEFAULT

        time_clarity = _time_parsing_clarity(message)
        if time_clarity is None:
            degraded_inputs.append("time_candidates")
            time_clarity = DEGRADED_DEFAULT

        if sender_trust is None:
            degraded_inputs.append("sender_trust")
            trust = DEGRADED_DEFAULT
        else:
            trust = _clamp(sender_trust)

        sub_scores = SubScores(
            intent_clarity=intent,
            time_parsing_clarity=time_clarity,
            sender_trust=trust,
            conversation_clarity=_clamp(_conversation_clarity(conversation)),
        )
        overall, recommendation = score(sub_scores, threshold, self.weights)

        factors = {
            "intent_clear": sub_scores.intent_clarity >= 0.8,
            "times_extracted_cleanly": sub_scores.time_parsing_clarity >= 0.7,
            "known_sender": sub_scores.sender_trust >= 0.5 and sender_trust is not None,
            "thread_context": conversation.state.value if conversation else "initial",
            "request_type": message.request_type.value,
            "proposed_slot_count": len(message.time_candidates or []),
            "degraded": bool(degraded_inputs),
            "degraded_inputs": degraded_inputs,
            "weights": self.weights.model_dump(),
        }

        return ConfidenceAssessment(
            id=f"conf_{message.message_id}",
            message_id=message.message_id,
            overall=overall,
            sub_scores=sub_scores,
            recommendation=recommendation,
            threshold=threshold,
            factors=factors,
            assessed_at=assessed_at or message.received_at,
        )
