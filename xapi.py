"""xAPI statements for lesson completions and rolling stats updates.

Two statement types exist: ``completed`` for a lesson and ``evaluated`` for
the trait stats it produced. Statements are stored in ``xapi_statements``
and, when ``LRS_URL`` is set, posted to an external Learning Record Store
from a background thread. Forwarding problems are logged and never reach
the caller.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

import db
from env_validation import xapi_enabled
from schemas import RollingStatsUpdateResult

LOGGER = logging.getLogger("cxstats.xapi")

VERB_COMPLETED = "http://adlnet.gov/expapi/verbs/completed"
VERB_EVALUATED = "http://adlnet.gov/expapi/verbs/evaluated"

# verb -> object id prefix it may be used with
_VERB_OBJECT_PREFIX: Dict[str, str] = {
    VERB_COMPLETED: "lesson:",
    VERB_EVALUATED: "traits:",
}

_EXTENSION_TYPES: Dict[str, type] = {
    "lesson_id": str,
    "before": dict,
    "after": dict,
    "attempts": int,
    "xp_gained": int,
    "source": str,
}


def _clean_extensions(extensions: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in (extensions or {}).items():
        expected = _EXTENSION_TYPES.get(key)
        if expected is None:
            LOGGER.debug("Dropping unsupported xAPI extension: %s", key)
            continue
        if value is None:
            continue
        if expected is dict and not isinstance(value, dict):
            raise ValueError(f"{key} extension must be an object")
        cleaned[key] = value if expected is dict else expected(value)
    return cleaned


def build_statement(
    user_id: str,
    verb: str,
    object_id: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    extensions: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble a statement, rejecting verbs and objects outside the profile."""

    prefix = _VERB_OBJECT_PREFIX.get(verb)
    if prefix is None:
        raise ValueError(f"Unsupported verb '{verb}'")
    if not object_id.startswith(prefix) or object_id == prefix:
        raise ValueError(f"object id for {verb} must look like '{prefix}<id>', got {object_id!r}")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("statement actor requires a user id")

    statement: Dict[str, Any] = {
        "actor": {
            "account": {
                "homePage": os.getenv("APP_BASE_URL", "https://local.cxstats"),
                "name": user_id,
            }
        },
        "verb": {"id": verb},
        "object": {"id": object_id},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "context": {
            "platform": os.getenv("XAPI_PLATFORM", "CXTraitStats"),
            "language": os.getenv("XAPI_LANGUAGE", "en"),
            "extensions": _clean_extensions(extensions),
        },
    }
    result: Dict[str, Any] = {}
    if score is not None:
        result["score"] = {"raw": float(score)}
    if success is not None:
        result["success"] = bool(success)
    if result:
        statement["result"] = result
    return statement


def _post_with_retry(
    statement: Dict[str, Any],
    *,
    lrs_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
    backoff: float = 0.5,
) -> bool:
    """POST to the LRS; 5xx and connection errors are retried with doubling backoff."""

    for attempt in range(1, max_attempts + 1):
        try:
            response = requests.post(lrs_url, json=statement, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward xAPI statement (attempt %s): %s", attempt, exc)
        else:
            if response.status_code < 500:
                return True
            LOGGER.warning("LRS responded with status %s on attempt %s", response.status_code, attempt)
        if attempt < max_attempts:
            time.sleep(backoff)
            backoff *= 2
    LOGGER.error("Giving up forwarding xAPI statement for %s", statement["object"]["id"])
    return False


def _forward(statement: Dict[str, Any]) -> None:
    lrs_url = os.getenv("LRS_URL")
    if not lrs_url:
        return
    headers = {
        "Content-Type": "application/json",
        "X-Experience-API-Version": "1.0.3",
    }
    auth = os.getenv("LRS_AUTH")
    if auth:
        headers["Authorization"] = auth
    threading.Thread(
        target=_post_with_retry,
        args=(statement,),
        kwargs={"lrs_url": lrs_url, "headers": headers},
        daemon=True,
    ).start()


def emit(
    user_id: str,
    verb: str,
    object_id: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Store one statement locally and forward it when an LRS is configured."""

    statement = build_statement(
        user_id, verb, object_id, score=score, success=success, extensions=context
    )
    extensions = statement["context"]["extensions"]
    with db._conn() as con:
        con.execute(
            """
            INSERT INTO xapi_statements(user_id, verb, object_id, score, success, context)
            VALUES (?,?,?,?,?,?)
            """,
            (
                user_id,
                verb,
                object_id,
                None if score is None else float(score),
                None if success is None else int(bool(success)),
                json.dumps(extensions, ensure_ascii=False, separators=(",", ":")),
            ),
        )
        con.commit()

    _forward(statement)
    return statement


def emit_stats_update(
    result: RollingStatsUpdateResult,
    *,
    lesson_id: Optional[str] = None,
    xp_gained: Optional[int] = None,
) -> None:
    """Report a committed stats update; the raw score is the mean of the after values."""

    if not xapi_enabled():
        return

    after = {key.value: value for key, value in result.after.items()}
    before = {key.value: value for key, value in result.before.items()}
    extensions: Dict[str, Any] = {
        "before": before,
        "after": after,
        "attempts": result.attempts,
        "source": "rolling_stats",
    }
    if lesson_id:
        extensions["lesson_id"] = lesson_id
        emit(
            result.user_id,
            VERB_COMPLETED,
            f"lesson:{lesson_id}",
            success=True,
            context={"lesson_id": lesson_id, "xp_gained": xp_gained or 0},
        )
    emit(
        result.user_id,
        VERB_EVALUATED,
        f"traits:{result.user_id}",
        score=sum(after.values()) / len(after) if after else None,
        context=extensions,
    )
