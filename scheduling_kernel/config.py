from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from scheduling_kernel.models.confidence import ScoringWeights

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    log_level: str = "INFO"

    # Audit log
    audit_db_path: str = ":memory:"
    override_window_hours: float = 24.0

    # Conversation tracking
    conversation_expiry_days: int = 14
    max_previous_requests: int = 20
    sweep_schedule: str = "0 * * * *"  # hourly

    # =================================================================
    # COLLABORATOR TIMEOUTS - every external call is bounded
    # =================================================================
    trust_lookup_timeout_seconds: float = 2.0
    calendar_timeout_seconds: float = 5.0
    audit_write_timeout_seconds: float = 5.0
    send_timeout_seconds: float = 10.0

    # Scoring weights (tunable, must sum to 1)
    weight_intent: float = 0.4
    weight_time_parsing: float = 0.3
    weight_sender_trust: float = 0.2
    weight_conversation: float = 0.1
    approval_floor: float = 0.70

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULING_KERNEL_",
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def scoring_weights(self) -> ScoringWeights:
        """Validated weights for the confidence scorer."""
        return ScoringWeights(
            intent=self.weight_intent,
            time_parsing=self.weight_time_parsing,
            sender_trust=self.weight_sender_trust,
            conversation=self.weight_conversation,
            approval_floor=self.approval_floor,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
