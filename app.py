# app.py — CX Trait Stats v1.0.0
# - Lesson completion handler feeding the rolling trait stats engine
# - Read-only decayed stats projection for dashboards

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException

import db, xapi
from engines.rolling_stats import (
    InvalidUserIdError,
    RollingStatsEngine,
    StatsUpdateUnavailableError,
    UserNotFoundError,
)
from schemas import LessonCompletionRequest, UserCreateRequest

logger = logging.getLogger(__name__)

_STATS_ENGINE: Optional[RollingStatsEngine] = None


def get_stats_engine() -> RollingStatsEngine:
    """Engine built from the environment on first use."""
    global _STATS_ENGINE
    if _STATS_ENGINE is None:
        _STATS_ENGINE = RollingStatsEngine()
    return _STATS_ENGINE


def reset_stats_engine(engine: Optional[RollingStatsEngine] = None) -> None:
    global _STATS_ENGINE
    _STATS_ENGINE = engine


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Stats store ready at %s", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    finally:
        db.reset_pool()


app = FastAPI(title="CX Trait Stats v1.0.0", version="1.0.0", lifespan=_lifespan)


def _stats_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidUserIdError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, UserNotFoundError):
        return HTTPException(status_code=404, detail="user not found")
    return HTTPException(status_code=503, detail="stats update temporarily unavailable")


@app.post("/users", status_code=201)
def create_user(body: UserCreateRequest):
    if not body.user_id.strip():
        raise HTTPException(status_code=400, detail="user_id required")
    try:
        db.create_user(body.user_id, body.display_name, body.role)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="user already exists")
    return db.get_user(body.user_id)


@app.get("/users/{user_id}/stats")
def user_stats(user_id: str):
    try:
        snapshot = get_stats_engine().snapshot(user_id)
    except (InvalidUserIdError, UserNotFoundError) as exc:
        raise _stats_http_error(exc)
    return snapshot.model_dump(mode="json")


@app.post("/lessons/complete")
def lesson_complete(body: LessonCompletionRequest) -> Dict[str, Any]:
    if not body.lesson_id.strip():
        raise HTTPException(status_code=400, detail="lesson_id required")
    try:
        result = get_stats_engine().update(
            body.user_id, body.scores, lesson_id=body.lesson_id, xp_gained=body.xp_gained
        )
    except (InvalidUserIdError, UserNotFoundError, StatsUpdateUnavailableError) as exc:
        if isinstance(exc, StatsUpdateUnavailableError):
            logger.error("Giving up on stats update for user %s: %s", body.user_id, exc)
        raise _stats_http_error(exc)

    try:
        xapi.emit_stats_update(result, lesson_id=body.lesson_id, xp_gained=body.xp_gained)
    except (ValueError, sqlite3.Error):
        logging.getLogger("cxstats.xapi.api").exception(
            "Failed to emit xAPI statement for lesson %s", body.lesson_id
        )

    return {
        "log_id": result.lesson_log_id,
        "lesson_id": body.lesson_id,
        "stats": result.model_dump(mode="json"),
    }
