import asyncio
import json
from typing import Optional
from unittest.mock import patch
from urllib.parse import urlencode

import requests

import app
import db
from errors import StoreUnavailableError

from conftest import reply


async def _call_app(method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post(path: str, payload: dict) -> tuple[int, dict]:
    return asyncio.run(_call_app("POST", path, payload=payload))


def _get(path: str, query: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("GET", path, query=query))


def _start(seeded, user_id="learner"):
    status, payload = _post(f"/assessments/{seeded.assessment_id}/attempt", {"user_id": user_id})
    assert status == 200
    return payload["id"]


def test_health():
    assert _get("/health") == (200, {"status": "ok"})


def test_full_conversation_over_http(seeded, fake_evaluator):
    first, second = seeded.skills
    fake_evaluator.queue(
        reply("improvable", "Which data would you check first?"),
        reply(
            "final",
            "Thanks, that covers everything.",
            [
                {"skillId": first.id, "skillLevelId": first.levels["Advanced"], "feedback": "Thorough."},
                {"skillId": second.id, "skillLevelId": second.levels["Beginner"], "feedback": "Thin."},
            ],
        ),
    )
    attempt_id = _start(seeded)

    status, turn_one = _post(
        f"/attempts/{attempt_id}/conversation",
        {"assessment_id": seeded.assessment_id, "message": "Stock-outs follow promotions."},
    )
    assert status == 200
    assert turn_one["evaluation_type"] == "improvable"
    assert turn_one["attempt_completed"] is False
    assert turn_one["max_turns"] == 4

    status, turn_two = _post(
        f"/attempts/{attempt_id}/conversation",
        {"assessment_id": seeded.assessment_id, "message": "I would compare forecast and actual sales."},
    )
    assert status == 200
    assert turn_two["attempt_completed"] is True
    assert turn_two["forced_final"] is False
    assert len(turn_two["results"]) == 2

    status, conversation = _get(f"/attempts/{attempt_id}/conversation")
    assert status == 200
    assert [m["message_type"] for m in conversation] == ["student", "ai", "student", "ai"]

    status, results = _get(f"/attempts/{attempt_id}/results")
    assert status == 200
    assert results["status"] == "Completed"
    assert results["max_score"] == 10.0
    assert results["final_grade"] == turn_two["final_grade"]


def test_unknown_resources_return_404(temp_db):
    status, payload = _post("/assessments/999/attempt", {"user_id": "learner"})
    assert status == 404
    assert "999" in payload["detail"]
    assert _get("/attempts/12345/conversation")[0] == 404
    assert _get("/attempts/12345/results")[0] == 404


def test_wrong_assessment_returns_400(seeded):
    attempt_id = _start(seeded)
    status, _ = _post(f"/attempts/{attempt_id}/conversation", {"assessment_id": 777, "message": "Hi"})
    assert status == 400


def test_empty_message_returns_400(seeded):
    attempt_id = _start(seeded)
    status, _ = _post(f"/attempts/{attempt_id}/conversation", {"assessment_id": seeded.assessment_id, "message": " "})
    assert status == 400


def test_completed_attempt_returns_409(seeded, fake_evaluator):
    attempt_id = _start(seeded)
    status, payload = _post(
        f"/attempts/{attempt_id}/conversation",
        {"assessment_id": seeded.assessment_id, "finish_early": True},
    )
    assert status == 200
    assert payload["forced_final"] is True

    status, _ = _post(f"/attempts/{attempt_id}/conversation", {"assessment_id": seeded.assessment_id, "message": "More"})
    assert status == 409
    assert fake_evaluator.calls == []


def test_evaluator_outage_returns_503_then_retry_succeeds(seeded, fake_evaluator):
    fake_evaluator.queue(requests.ConnectionError("down"), requests.ConnectionError("down"))
    attempt_id = _start(seeded)

    status, payload = _post(
        f"/attempts/{attempt_id}/conversation",
        {"assessment_id": seeded.assessment_id, "message": "The forecast is wrong."},
    )
    assert status == 503
    assert "try again" in payload["detail"]

    fake_evaluator.queue(reply("incomplete", "Tell me more."))
    status, payload = _post(f"/attempts/{attempt_id}/conversation/retry", {"assessment_id": seeded.assessment_id})
    assert status == 200
    assert payload["message"] == "Tell me more."

    status, _ = _post(f"/attempts/{attempt_id}/conversation/retry", {"assessment_id": seeded.assessment_id})
    assert status == 409


def test_integrity_failure_returns_502(seeded, fake_evaluator):
    first, second = seeded.skills
    fake_evaluator.queue(
        reply(
            "final",
            "Done.",
            [{"skillId": first.id, "skillLevelId": second.levels["Beginner"], "feedback": "x"},
             {"skillId": second.id, "skillLevelId": second.levels["Beginner"], "feedback": "x"}],
        )
    )
    attempt_id = _start(seeded)

    status, _ = _post(f"/attempts/{attempt_id}/conversation", {"assessment_id": seeded.assessment_id, "message": "Hi"})

    assert status == 502
    assert db.get_attempt(attempt_id)["status"] == db.STATUS_IN_PROGRESS


def test_store_outage_returns_503(seeded):
    attempt_id = _start(seeded)
    with patch("conversation.submit_message", side_effect=StoreUnavailableError("Database unavailable during write")):
        status, payload = _post(
            f"/attempts/{attempt_id}/conversation",
            {"assessment_id": seeded.assessment_id, "message": "Hi"},
        )
    assert status == 503
    assert payload["detail"].startswith("Database unavailable during write")


def test_missing_body_fields_are_rejected(seeded):
    attempt_id = _start(seeded)
    status, _ = _post(f"/attempts/{attempt_id}/conversation", {"message": "no assessment"})
    assert status == 422
    status, _ = _post(f"/assessments/{seeded.assessment_id}/attempt", {"user_id": ""})
    assert status == 422
