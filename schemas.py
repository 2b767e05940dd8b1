"""Pydantic schemas for trait stats, update results and request payloads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

__all__ = [
    "TraitKey",
    "TRAIT_KEYS",
    "TraitStat",
    "RollingStatsUpdateResult",
    "RollingStatsSnapshot",
    "LessonCompletionRequest",
    "UserCreateRequest",
]


class TraitKey(str, Enum):
    """The six CX traits tracked for every trainee."""

    EMPATHY = "empathy"
    LISTENING = "listening"
    TRUST = "trust"
    FOLLOW_UP = "followUp"
    CLOSING = "closing"
    RELATIONSHIP = "relationship"


TRAIT_KEYS: Tuple[TraitKey, ...] = tuple(TraitKey)


class TraitStat(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    last_updated: datetime


class RollingStatsUpdateResult(BaseModel):
    """Before/after scores for one applied observation."""

    user_id: str
    before: Dict[TraitKey, float]
    after: Dict[TraitKey, float]
    updated_at: datetime
    attempts: int = Field(
        default=1,
        ge=1,
        description="Transaction attempts needed before the write committed.",
    )
    lesson_log_id: Optional[int] = None


class RollingStatsSnapshot(BaseModel):
    """Decayed view of a trainee's stats at ``as_of``; nothing is written."""

    user_id: str
    as_of: datetime
    scores: Dict[TraitKey, float]
    # Only traits that have been written; the rest sit at the implicit baseline.
    stats: Dict[TraitKey, TraitStat]


class LessonCompletionRequest(BaseModel):
    user_id: str
    lesson_id: str
    xp_gained: int = Field(default=0, ge=0)
    # Raw per-trait scores; sanitised by the stats engine, never here.
    scores: Dict[str, Any] = Field(default_factory=dict)


class UserCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    display_name: str | None = None
    role: str | None = None
