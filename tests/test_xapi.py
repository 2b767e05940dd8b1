import threading
from datetime import datetime, timezone

import pytest
import requests

import db
import xapi
from schemas import RollingStatsUpdateResult, TRAIT_KEYS


def _result(user_id: str = "alice") -> RollingStatsUpdateResult:
    return RollingStatsUpdateResult(
        user_id=user_id,
        before={key: 60.0 for key in TRAIT_KEYS},
        after={key: 62.0 for key in TRAIT_KEYS},
        updated_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        attempts=2,
    )


@pytest.mark.usefixtures("temp_db")
def test_xapi_emit_persists_and_calls_lrs(monkeypatch):
    event = threading.Event()
    calls = []

    def fake_post(statement, *, lrs_url, headers, **kwargs):
        calls.append((lrs_url, statement, headers))
        event.set()
        return True

    monkeypatch.setattr(xapi, "_post_with_retry", fake_post)
    monkeypatch.setenv("LRS_URL", "https://example.com/xapi")
    monkeypatch.setenv("LRS_AUTH", "Token abc")

    xapi.emit(
        user_id="alice",
        verb=xapi.VERB_COMPLETED,
        object_id="lesson:closing-101",
        success=True,
        context={"lesson_id": "closing-101", "xp_gained": 50},
    )

    rows = db._query(
        "SELECT user_id, verb, object_id, score, success, context FROM xapi_statements"
    )
    assert len(rows) == 1
    stored = dict(rows[0])
    assert stored["user_id"] == "alice"
    assert stored["verb"].endswith("completed")
    assert stored["score"] is None
    assert stored["success"] == 1

    assert event.wait(0.5)
    url, payload, headers = calls[0]
    assert url == "https://example.com/xapi"
    assert headers["Authorization"] == "Token abc"
    assert headers["Content-Type"] == "application/json"
    assert payload["context"]["extensions"]["xp_gained"] == 50


@pytest.mark.usefixtures("temp_db")
def test_emit_rejects_unknown_verb():
    with pytest.raises(ValueError, match="Unsupported verb"):
        xapi.emit("alice", "http://adlnet.gov/expapi/verbs/mastered", "lesson:x")
    assert db._query("SELECT id FROM xapi_statements") == []


@pytest.mark.parametrize(
    "verb,object_id",
    [
        (xapi.VERB_EVALUATED, "activity:x"),
        (xapi.VERB_EVALUATED, "lesson:x"),
        (xapi.VERB_COMPLETED, "lesson:"),
    ],
)
def test_build_statement_rejects_objects_outside_profile(verb, object_id):
    with pytest.raises(ValueError, match="object id"):
        xapi.build_statement("alice", verb, object_id)


def test_build_statement_drops_unknown_extensions(monkeypatch):
    monkeypatch.delenv("XAPI_LANGUAGE", raising=False)

    statement = xapi.build_statement(
        "alice",
        xapi.VERB_EVALUATED,
        "traits:alice",
        score=61.5,
        extensions={"attempts": "3", "mood": "great", "source": None},
    )

    assert statement["context"]["extensions"] == {"attempts": 3}
    assert statement["context"]["language"] == "en"
    assert statement["result"] == {"score": {"raw": 61.5}}


@pytest.mark.usefixtures("temp_db")
def test_emit_stats_update_records_lesson_and_evaluation():
    xapi.emit_stats_update(_result(), lesson_id="trust-201", xp_gained=40)

    rows = [dict(row) for row in db._query("SELECT verb, object_id, score, context FROM xapi_statements ORDER BY id")]
    assert [row["object_id"] for row in rows] == ["lesson:trust-201", "traits:alice"]
    evaluated = rows[1]
    assert evaluated["score"] == pytest.approx(62.0)
    context = db._decode_json_field(evaluated["context"])
    assert context["attempts"] == 2
    assert context["lesson_id"] == "trust-201"
    assert context["before"]["followUp"] == 60.0


@pytest.mark.usefixtures("temp_db")
def test_emit_stats_update_respects_disable_flag(monkeypatch):
    monkeypatch.setenv("XAPI_ENABLED", "false")

    xapi.emit_stats_update(_result())

    assert db._query("SELECT id FROM xapi_statements") == []


class _Response:
    def __init__(self, status_code):
        self.status_code = status_code


def test_post_retries_server_errors(monkeypatch):
    outcomes = iter([_Response(503), requests.ConnectionError("reset"), _Response(200)])
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(url)
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(xapi.requests, "post", fake_post)
    monkeypatch.setattr(xapi.time, "sleep", lambda _delay: None)

    delivered = xapi._post_with_retry(
        {"object": {"id": "traits:alice"}},
        lrs_url="https://example.com/xapi",
        headers={},
    )

    assert delivered is True
    assert len(calls) == 3


def test_post_gives_up_after_max_attempts(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(url)
        return _Response(500)

    monkeypatch.setattr(xapi.requests, "post", fake_post)
    monkeypatch.setattr(xapi.time, "sleep", lambda _delay: None)

    delivered = xapi._post_with_retry(
        {"object": {"id": "traits:alice"}},
        lrs_url="https://example.com/xapi",
        headers={},
        max_attempts=2,
    )

    assert delivered is False
    assert len(calls) == 2
