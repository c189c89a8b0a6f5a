"""User Automation Preferences — the validated per-decision configuration."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from scheduling_kernel.models.breaker import BreakerTuning

MIN_CONFIDENCE_THRESHOLD = 0.70
MAX_CONFIDENCE_THRESHOLD = 0.95
DEFAULT_CONFIDENCE_THRESHOLD = 0.85


def _normalize_addresses(addresses: List[str]) -> List[str]:
    seen = []
    for address in addresses:
        normalized = address.strip().lower()
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


class UserAutomationPreferences(BaseModel):
    """Snapshot read once per decision. Ranges are validated here, not in the scorer."""

    user_id: str
    automation_enabled: bool = True
    confidence_threshold: float = Field(
        ge=MIN_CONFIDENCE_THRESHOLD,
        le=MAX_CONFIDENCE_THRESHOLD,
        default=DEFAULT_CONFIDENCE_THRESHOLD,
    )
    vip_list: List[str] = []
    blacklist: List[str] = []
    breaker: BreakerTuning = BreakerTuning()
    updated_at: Optional[datetime] = None

    @field_validator("vip_list", "blacklist")
    @classmethod
    def _normalize_lists(cls, value: List[str]) -> List[str]:
        return _normalize_addresses(value)

    def is_vip(self, sender: str) -> bool:
        return sender.strip().lower() in self.vip_list

    def is_blacklisted(self, sender: str) -> bool:
        return sender.strip().lower() in self.blacklist


class PreferencesUpdate(BaseModel):
    """Partial update; ``None`` fields are left untouched."""

    automation_enabled: Optional[bool] = None
    confidence_threshold: Optional[float] = None
    vip_list: Optional[List[str]] = None
    blacklist: Optional[List[str]] = None
    breaker: Optional[BreakerTuning] = None
