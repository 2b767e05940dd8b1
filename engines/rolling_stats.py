"""Rolling per-trait CX scores.

Each completed lesson yields an observed 0-100 score per trait. The stored
score for a trait first drifts back toward ``BASELINE`` for the time since
it was last touched (the gap halves every 30 days) and is then blended with
the new observation as an exponential moving average whose half-life is 12
lessons. All six traits are rewritten on every update inside one
optimistic transaction; conflicting writers force a fresh read and retry.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import db
from engines.base import BaseEngine
from env_validation import stats_max_attempts, stats_retry_delay
from schemas import (
    TRAIT_KEYS,
    RollingStatsSnapshot,
    RollingStatsUpdateResult,
    TraitKey,
    TraitStat,
)

logger = logging.getLogger(__name__)

BASELINE = 60.0
ALPHA = 1 - math.pow(0.5, 1 / 12)
LAMBDA = math.log(2) / 30

MIN_SCORE = 0.0
MAX_SCORE = 100.0
SECONDS_PER_DAY = 24 * 60 * 60

# Older lesson payloads spell the last trait out in full.
_TRAIT_ALIASES: Dict[str, TraitKey] = {"relationshipBuilding": TraitKey.RELATIONSHIP}


class InvalidUserIdError(ValueError):
    """Raised before any storage access when the user id is empty or not a string."""


class UserNotFoundError(LookupError):
    """Raised when the user has no record in the store."""


class StatsUpdateUnavailableError(RuntimeError):
    """Raised when every transaction attempt lost to a concurrent writer."""


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def clamp(value: float, min_value: float = MIN_SCORE, max_value: float = MAX_SCORE) -> float:
    return min(max_value, max(min_value, value))


def to_finite_number(value: Any, fallback: Any) -> Any:
    """Coerce ``value`` to a finite float, returning ``fallback`` when impossible."""

    if value is None or isinstance(value, bool):
        return fallback
    try:
        numeric = float(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    return numeric if math.isfinite(numeric) else fallback


def to_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime, or ``None``."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Decay and blend
# ---------------------------------------------------------------------------

def elapsed_days(last_updated: datetime, now: datetime) -> float:
    return max(0.0, (now - last_updated).total_seconds() / SECONDS_PER_DAY)


def drift_toward_baseline(score: float, last_updated: datetime, now: datetime) -> float:
    """Exponential reversion of ``score`` toward ``BASELINE``.

    Returns ``score`` unchanged when no time has passed; a clock that runs
    backwards counts as no time passed.
    """

    days = elapsed_days(last_updated, now)
    if days == 0.0:
        return score
    return BASELINE + (score - BASELINE) * math.exp(-LAMBDA * days)


def blend(drifted: float, observed: float) -> float:
    if observed == drifted:
        # Exact fixed point; the weighted sum can be off by one ulp.
        return clamp(drifted)
    return clamp((1 - ALPHA) * drifted + ALPHA * observed)


def next_trait_stat(
    current: Optional[Mapping[str, Any]],
    observed: Optional[float],
    now: datetime,
) -> Tuple[float, float, TraitStat]:
    """Apply one observation to one stored trait.

    ``current`` is the raw stored entry (or ``None``); ``observed`` is an
    already sanitised score, ``None`` meaning no new evidence. Returns the
    before score, the after score and the stat to persist.
    """

    current = current or {}
    score = clamp(to_finite_number(current.get("score"), BASELINE))
    last_updated = to_datetime(current.get("last_updated")) or now

    drifted = drift_toward_baseline(score, last_updated, now)
    updated = blend(drifted, drifted if observed is None else observed)
    stat = TraitStat(score=updated, last_updated=max(now, last_updated))
    return score, updated, stat


# ---------------------------------------------------------------------------
# Observation boundary
# ---------------------------------------------------------------------------

def default_scores() -> Dict[TraitKey, float]:
    return {key: BASELINE for key in TRAIT_KEYS}


def _trait_for(key: Any) -> Optional[TraitKey]:
    if isinstance(key, TraitKey):
        return key
    if isinstance(key, str):
        alias = _TRAIT_ALIASES.get(key)
        if alias is not None:
            return alias
        try:
            return TraitKey(key)
        except ValueError:
            return None
    return None


def sanitize_observation(raw: Optional[Mapping[Any, Any]]) -> Dict[TraitKey, Optional[float]]:
    """Map an untyped score payload onto the six traits.

    Every trait is present in the result. ``None`` marks a trait with no
    usable evidence (missing, non-numeric, NaN or infinite).
    """

    sanitized: Dict[TraitKey, Optional[float]] = {key: None for key in TRAIT_KEYS}
    if not raw:
        return sanitized
    if not isinstance(raw, Mapping):
        logger.debug("Ignoring non-mapping observation payload of type %s", type(raw).__name__)
        return sanitized
    for key, value in raw.items():
        trait = _trait_for(key)
        if trait is None:
            logger.debug("Dropping unknown trait key in observation: %r", key)
            continue
        numeric = to_finite_number(value, None)
        sanitized[trait] = None if numeric is None else clamp(numeric)
    return sanitized


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidUserIdError("updateRollingStats requires a non-empty user_id")
    return user_id


class RollingStatsEngine(BaseEngine):
    """Transactional orchestrator for rolling trait stats.

    Holds configuration only; all state lives in the store and is re-read on
    every attempt.
    """

    def __init__(
        self,
        *,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else stats_max_attempts()
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.retry_delay = retry_delay if retry_delay is not None else stats_retry_delay()
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        now = to_datetime(self._clock())
        if now is None:
            raise ValueError("clock returned an unusable timestamp")
        return now

    def update(
        self,
        user_id: str,
        observation: Optional[Mapping[Any, Any]],
        *,
        lesson_id: Optional[str] = None,
        xp_gained: int = 0,
    ) -> RollingStatsUpdateResult:
        """Apply one observation to all six traits.

        With ``lesson_id`` the lesson log row and its XP credit are committed
        in the same transaction as the stats, so either both land or neither.
        """

        user_id = _validate_user_id(user_id)
        observed = sanitize_observation(observation)
        lesson = None
        if lesson_id is not None:
            lesson = {
                "lesson_id": lesson_id,
                "xp_gained": xp_gained,
                "scores": observation if isinstance(observation, Mapping) else None,
            }

        delay = self.retry_delay
        last_conflict: Optional[db.TransactionConflictError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self._apply_once(user_id, observed, attempt, lesson)
            except db.TransactionConflictError as exc:
                last_conflict = exc
                logger.warning(
                    "Stats transaction conflict for user %s (attempt %s/%s)",
                    user_id, attempt, self.max_attempts,
                )
                if attempt == self.max_attempts:
                    break
                if delay > 0:
                    time.sleep(delay)
                delay *= 2
                continue
            logger.info(
                "Updated rolling stats for user %s after %s attempt(s)", user_id, attempt
            )
            return result

        raise StatsUpdateUnavailableError(
            f"rolling stats for user {user_id!r} not updated after {self.max_attempts} attempts"
        ) from last_conflict

    def _apply_once(
        self,
        user_id: str,
        observed: Mapping[TraitKey, Optional[float]],
        attempt: int,
        lesson: Optional[Mapping[str, Any]] = None,
    ) -> RollingStatsUpdateResult:
        now = self._now()
        with db.begin_transaction() as txn:
            stored = txn.read_user_stats(user_id)
            if stored is None:
                raise UserNotFoundError(f"User {user_id} not found")

            before: Dict[TraitKey, float] = {}
            after: Dict[TraitKey, float] = {}
            staged: Dict[str, Dict[str, Any]] = {}
            for key in TRAIT_KEYS:
                score_before, score_after, stat = next_trait_stat(
                    stored.get(key.value), observed.get(key), now
                )
                before[key] = score_before
                after[key] = score_after
                staged[key.value] = {"score": stat.score, "last_updated": stat.last_updated}

            txn.write_user_stats(user_id, staged)
            if lesson is not None:
                txn.log_lesson(user_id, **lesson)
            txn.commit()
            lesson_log_id = txn.lesson_log_id

        return RollingStatsUpdateResult(
            user_id=user_id,
            before=before,
            after=after,
            updated_at=now,
            attempts=attempt,
            lesson_log_id=lesson_log_id,
        )

    def snapshot(self, user_id: str, now: Optional[datetime] = None) -> RollingStatsSnapshot:
        """Current decayed scores without writing anything back."""

        user_id = _validate_user_id(user_id)
        as_of = to_datetime(now) if now is not None else self._now()
        if as_of is None:
            raise ValueError("snapshot requires a valid timestamp")
        with db.begin_transaction() as txn:
            stored = txn.read_user_stats(user_id)
        if stored is None:
            raise UserNotFoundError(f"User {user_id} not found")

        scores: Dict[TraitKey, float] = {}
        stats: Dict[TraitKey, TraitStat] = {}
        for key in TRAIT_KEYS:
            entry = stored.get(key.value)
            if entry is None:
                # Never written: implicit baseline, nothing stored to report.
                scores[key] = BASELINE
                continue
            score = clamp(to_finite_number(entry.get("score"), BASELINE))
            last_updated = to_datetime(entry.get("last_updated"))
            if last_updated is None:
                scores[key] = score
                continue
            scores[key] = drift_toward_baseline(score, last_updated, as_of)
            stats[key] = TraitStat(score=score, last_updated=last_updated)
        return RollingStatsSnapshot(user_id=user_id, as_of=as_of, scores=scores, stats=stats)


def update_rolling_stats(user_id: str, observation: Optional[Mapping[Any, Any]]) -> RollingStatsUpdateResult:
    """Apply one lesson's observed scores using configuration defaults."""

    return RollingStatsEngine().update(user_id, observation)
