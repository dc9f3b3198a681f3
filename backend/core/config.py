"""
Agent configuration loaded from the environment (.env supported).
"""

from __future__ import annotations

import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

DEFAULT_PRIORITY_KEYWORDS = [
    "help",
    "support",
    "question",
    "feedback",
    "suggestion",
    "community",
    "connect",
    "collaborate",
]

DEFAULT_BLOCKED_TERMS = [
    "scam",
    "giveaway",
    "crypto airdrop",
    "dm me",
    "follow for follow",
]


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class AgentConfig(BaseModel):
    """Thresholds, quotas and keyword lists for the decision engine."""
    detection_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    high_engagement_threshold: int = Field(default=50, ge=0)
    max_daily_actions: int = Field(default=50, ge=0)
    cooldown_minutes: float = Field(default=15, ge=0)
    max_response_length: int = Field(default=280, gt=0)
    priority_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_PRIORITY_KEYWORDS))
    blocked_terms: List[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_TERMS))
    dry_run: bool = Field(default=False, description="Decide and log, but never call write endpoints")

    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown_minutes * 60

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Build a config from AGENT_* environment variables, falling back to defaults."""
        return cls(
            detection_threshold=float(os.getenv("AGENT_DETECTION_THRESHOLD", "0.6")),
            high_engagement_threshold=int(os.getenv("AGENT_HIGH_ENGAGEMENT_THRESHOLD", "50")),
            max_daily_actions=int(os.getenv("AGENT_MAX_DAILY_ACTIONS", "50")),
            cooldown_minutes=float(os.getenv("AGENT_COOLDOWN_MINUTES", "15")),
            max_response_length=int(os.getenv("AGENT_MAX_RESPONSE_LENGTH", "280")),
            priority_keywords=_env_list("AGENT_PRIORITY_KEYWORDS", DEFAULT_PRIORITY_KEYWORDS),
            blocked_terms=_env_list("AGENT_BLOCKED_TERMS", DEFAULT_BLOCKED_TERMS),
            dry_run=_env_bool("AGENT_DRY_RUN", False),
        )


__all__ = ["AgentConfig", "DEFAULT_PRIORITY_KEYWORDS", "DEFAULT_BLOCKED_TERMS"]
