"""Confidence Assessment — output of the Confidence Scorer."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Recommendation(str, Enum):
    AUTO_RESPOND = "auto_respond"
    REQUEST_APPROVAL = "request_approval"
    DECLINE = "decline"


class SubScores(BaseModel):
    """The four weighted factors, each already clamped to [0, 1]."""

    model_config = ConfigDict(frozen=True)

    intent_clarity: float = Field(ge=0.0, le=1.0)
    time_parsing_clarity: float = Field(ge=0.0, le=1.0)
    sender_trust: float = Field(ge=0.0, le=1.0)
    conversation_clarity: float = Field(ge=0.0, le=1.0)


class ScoringWeights(BaseModel):
    """Tunable weighting of the sub-scores. Must sum to 1."""

    model_config = ConfigDict(frozen=True)

    intent: float = Field(ge=0.0, le=1.0, default=0.4)
    time_parsing: float = Field(ge=0.0, le=1.0, default=0.3)
    sender_trust: float = Field(ge=0.0, le=1.0, default=0.2)
    conversation: float = Field(ge=0.0, le=1.0, default=0.1)
    approval_floor: float = Field(ge=0.0, le=1.0, default=0.70)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ScoringWeights":
        total = self.intent + self.time_parsing + self.sender_trust + self.conversation
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"scoring weights must sum to 1.0, got {total:.4f}")
        return self


class ConfidenceAssessment(BaseModel):
    """
    Explainable certainty that a message can be safely auto-answered.

    Created once per classified message and never mutated. ``factors`` keeps
    the explainability map; ``factors["degraded"]`` is set when one or more
    inputs were missing and a conservative default was substituted.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    message_id: str
    overall: float = Field(ge=0.0, le=1.0)
    sub_scores: SubScores
    recommendation: Recommendation
    threshold: float
    factors: dict = {}
    assessed_at: datetime

    @property
    def degraded(self) -> bool:
        return bool(self.factors.get("degraded", False))
