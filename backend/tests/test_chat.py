import asyncio
import json
from contextlib import asynccontextmanager

import httpx
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import DEVICE_HEADERS
from ecoflow import chat
from ecoflow.chat import (
    AUTH_FAILED,
    BUSY,
    NOT_CONFIGURED,
    REFUSAL,
    TRANSPORT_ERROR,
    ChatCompletionClient,
    build_system_prompt,
    classify_question,
    extract_hours,
    fetch_sensor_context,
    needs_references,
)
from ecoflow.deps import get_chat_client, get_database
from ecoflow.main import create_app


def _completion(text):
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


class FakeUpstream:
    """Records chat completion requests and answers with a canned response."""

    def __init__(self, status_code=200, body=None, error=None):
        self.status_code = status_code
        self.body = body if body is not None else _completion("<p>Water in the early morning.</p>")
        self.error = error
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.body)

    def client(self, api_key="sk-test"):
        return ChatCompletionClient(api_key, transport=httpx.MockTransport(self))


def _ask(settings, chat_client, body):
    app = create_app(settings)
    app.dependency_overrides[get_chat_client] = lambda: chat_client
    with TestClient(app) as client:
        return client.post("/api/chatbot", json=body)


def test_forbidden_topics_are_refused():
    for question in (
        "Please turn on pump 2",
        "Which pesticide should I buy?",
        "Magkano ang pera ko ngayong taon?",
        "What is the weather forecast tomorrow?",
    ):
        result = classify_question(question)
        assert result.forbidden, question
        assert result.intent is None


def test_intent_rules_apply_in_order():
    assert classify_question("Show the soil moisture history").intent == "history"
    assert classify_question("Which crop suits this greenhouse?").intent == "crop_suitability"
    assert classify_question("When should I irrigate?").intent == "irrigation_schedule"
    assert classify_question("How is the soil right now?").intent == "soil_condition"
    assert classify_question("What is the humidity?").intent == "sensor_data"
    assert classify_question("Hello there").intent == "general"


def test_history_window_is_extracted():
    assert classify_question("Moisture trend for the last 6 hours").hours == 6
    assert extract_hours("past week") == 168
    assert extract_hours("nakaraang 3 oras") == 3
    assert extract_hours("previous day") == 24
    assert extract_hours("anything") == 24


def test_needs_references():
    assert needs_references("crop_suitability", "what to plant")
    assert needs_references("general", "hi")
    assert not needs_references("soil_condition", "how is the soil")
    assert needs_references("soil_condition", "any research on soil moisture?")


def test_system_prompt_includes_intent_and_sensor_data():
    prompt = build_system_prompt("soil_condition", {"soil_moisture_1_percent": 41.0})
    assert "Current Intent: soil_condition" in prompt
    assert "Latest Sensor Data:" in prompt
    assert '"soil_moisture_1_percent": 41.0' in prompt

    assert "No sensor data is currently available." in build_system_prompt("general")
    history = build_system_prompt("history", [{"id": 1}, {"id": 2}], needs_refs=True)
    assert "Historical Sensor Data (2 readings" in history
    assert "MANDATORY" in history


def test_forbidden_question_never_reaches_upstream(settings):
    upstream = FakeUpstream()
    resp = _ask(settings, upstream.client(), {"question": "How much fertilizer should I use?"})

    assert resp.status_code == 200
    assert resp.json() == {"response": REFUSAL}
    assert upstream.requests == []


def test_forbidden_question_is_refused_without_api_key(settings):
    resp = _ask(settings, FakeUpstream().client(api_key=None), {"question": "open valve now"})

    assert resp.status_code == 200
    assert resp.json()["response"] == REFUSAL


def test_empty_question_is_rejected(settings):
    resp = _ask(settings, FakeUpstream().client(), {"question": "   "})
    missing = _ask(settings, FakeUpstream().client(), {})

    assert resp.status_code == 400
    assert resp.json() == {"response": "Please provide a question."}
    assert missing.status_code == 400


def test_unconfigured_client(settings):
    resp = _ask(settings, FakeUpstream().client(api_key=None), {"question": "How is the soil?"})

    assert resp.status_code == 500
    assert resp.json()["response"] == NOT_CONFIGURED


def test_answer_uses_latest_reading(settings):
    upstream = FakeUpstream()
    app = create_app(settings)
    app.dependency_overrides[get_chat_client] = lambda: upstream.client()
    with TestClient(app) as client:
        client.post(
            "/api/data/ingest",
            json={"temperature": 25, "humidity": 65, "soil1": 33, "soil2": 34, "soil3": 35},
            headers=DEVICE_HEADERS,
        )
        resp = client.post("/api/chatbot", json={"message": "How is the soil moisture?"})

    assert resp.status_code == 200
    assert resp.json() == {"response": "<p>Water in the early morning.</p>"}

    assert len(upstream.requests) == 1
    request = upstream.requests[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    sent = json.loads(request.content)
    assert sent["model"] == "gpt-4o-mini"
    assert sent["messages"][1] == {"role": "user", "content": "How is the soil moisture?"}
    system = sent["messages"][0]["content"]
    assert "Current Intent: soil_condition" in system
    assert '"soil_moisture_1_percent": 33.0' in system


def test_upstream_errors_map_to_messages(settings):
    auth = _ask(settings, FakeUpstream(401, {"error": "bad key"}).client(), {"question": "When to water?"})
    busy = _ask(settings, FakeUpstream(429, {"error": "slow down"}).client(), {"question": "When to water?"})
    other = _ask(settings, FakeUpstream(503, {"error": "down"}).client(), {"question": "When to water?"})

    assert auth.status_code == 500
    assert auth.json()["response"] == AUTH_FAILED
    assert busy.status_code == 500
    assert busy.json()["response"] == BUSY
    assert other.status_code == 500
    assert "(503)" in other.json()["response"]


def test_transport_failure(settings):
    upstream = FakeUpstream(error=httpx.ConnectError("connection refused"))
    resp = _ask(settings, upstream.client(), {"question": "When to water?"})

    assert resp.status_code == 500
    assert resp.json()["response"] == TRANSPORT_ERROR


def test_reply_without_content_gets_fallback(settings):
    upstream = FakeUpstream(body={"choices": []})
    resp = _ask(settings, upstream.client(), {"question": "When to water?"})

    assert resp.status_code == 200
    assert "having trouble processing" in resp.json()["response"]


class StubDatabase:
    def __init__(self, error=None):
        self.error = error

    @asynccontextmanager
    async def session(self):
        if self.error is not None:
            raise self.error
        yield None


def test_history_context_is_bounded(monkeypatch):
    calls = []

    async def fake_history(session, hours, limit=None):
        calls.append({"hours": hours, "limit": limit})
        return []

    monkeypatch.setattr(chat, "reading_history", fake_history)
    classification = classify_question("Soil moisture history for the last 1000 hours")

    assert classification.intent == "history"
    assert classification.hours == 1000
    assert asyncio.run(fetch_sensor_context(StubDatabase(), classification)) is None
    assert calls == [{"hours": 168, "limit": 500}]


def test_store_failure_still_answers_without_data(settings, caplog):
    upstream = FakeUpstream()
    broken = StubDatabase(error=OperationalError("SELECT 1", {}, Exception("server has gone away")))
    app = create_app(settings)
    app.dependency_overrides[get_chat_client] = lambda: upstream.client()
    app.dependency_overrides[get_database] = lambda: broken
    with TestClient(app) as client:
        resp = client.post("/api/chatbot", json={"question": "How is the soil moisture?"})

    assert resp.status_code == 200
    assert resp.json() == {"response": "<p>Water in the early morning.</p>"}
    system = json.loads(upstream.requests[0].content)["messages"][0]["content"]
    assert "No sensor data is currently available." in system
    assert "Could not fetch sensor data" in caplog.text
