from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .errors import GreenhouseError
from .readings import latest_reading, reading_history, reading_to_dict

if TYPE_CHECKING:
    from .db import Database

logger = logging.getLogger(__name__)

MAX_HISTORY_HOURS = 168
MAX_HISTORY_ROWS = 500

REFUSAL = (
    "I can only answer questions related to irrigation systems, soil conditions, supported crops, "
    "and recorded sensor data. I cannot provide information about control commands, chemicals, "
    "financial matters, or other off-topic subjects."
)
EMPTY_QUESTION = "Please provide a question."
NOT_CONFIGURED = "Chatbot service is not configured. Please contact the administrator."
AUTH_FAILED = "Chatbot authentication failed. Please check your API key configuration."
BUSY = "AI service is currently busy. Please try again in a moment."
NO_CONTENT = "I received your question, but I'm having trouble processing it right now. Please try again."
TRANSPORT_ERROR = "Sorry, I could not reach the AI service. Please try again later."


@dataclass(frozen=True)
class ClassifierRule:
    pattern: re.Pattern[str]
    category: str

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _keywords(category: str, *words: str) -> ClassifierRule:
    return ClassifierRule(re.compile("|".join(re.escape(w) for w in words), re.IGNORECASE), category)


def _regex(category: str, pattern: str) -> ClassifierRule:
    return ClassifierRule(re.compile(pattern, re.IGNORECASE), category)


# English and Filipino keywords, matched as substrings.
FORBIDDEN_RULES: list[ClassifierRule] = [
    _keywords(
        "device_control",
        "turn on pump", "turn off pump", "open valve", "close valve",
        "start pump", "stop pump", "activate pump", "deactivate pump",
        "control pump", "control valve", "operate pump", "operate valve",
    ),
    _keywords(
        "chemicals",
        "fertilizer", "herbicide", "pesticide", "chemical",
        "pataba", "pestisidyo", "herbisidyo", "kemikal",
    ),
    _keywords(
        "financial",
        "profit", "yield", "income", "money", "cost", "price",
        "utang", "bangko", "pera", "gastos",
    ),
    _keywords("medical", "medical", "health", "sick", "disease"),
    _keywords("forecast", "weather forecast", "forecast", "prediction", "hula", "prediksyon"),
]

# Checked in order; the first match wins.
INTENT_RULES: list[ClassifierRule] = [
    _regex("history", r"history|trend|nakaraan|dati|last|past|over time|historical|nakalipas"),
    _regex("crop_suitability", r"crop|suitable|tanim|pananim|halaman|gulay|vegetable|plant|recommend"),
    _regex("irrigation_schedule", r"irrigat|water|dilig|patubig|schedule|kailan|when|watering"),
    _regex("soil_condition", r"soil|moisture|lupa|halumigmig|condition|sensor"),
    _regex("sensor_data", r"temperature|humidity|temperatura|humedad|temp|humid"),
]

ALWAYS_CITE_INTENTS = {"crop_suitability", "irrigation_schedule", "general"}

REFERENCE_KEYWORDS = (
    "research", "study", "studies", "paper", "article", "publication",
    "best practices", "recommendations", "guide", "how to",
    "reference", "source", "citation", "where to find",
    "university", "extension", "government", "official",
)


@dataclass(frozen=True)
class Classification:
    intent: str | None
    forbidden: bool = False
    reason: str | None = None
    hours: int | None = None


def extract_hours(text: str) -> int:
    """Look-back window in hours named by the question, 24 by default."""
    lower = text.lower()
    match = re.search(r"(\d+)\s*(hour|hr|h|oras)", lower)
    if match:
        return int(match.group(1))
    if re.search(r"week|linggo", lower):
        return 168
    if re.search(r"day|araw", lower) and not re.search(r"week|month|year", lower):
        return 24
    return 24


def classify_question(question: str) -> Classification:
    for rule in FORBIDDEN_RULES:
        if rule.matches(question):
            return Classification(intent=None, forbidden=True, reason=rule.category)

    for rule in INTENT_RULES:
        if rule.matches(question):
            if rule.category == "history":
                return Classification(intent="history", hours=extract_hours(question))
            return Classification(intent=rule.category)

    return Classification(intent="general")


def needs_references(intent: str, question: str) -> bool:
    if intent in ALWAYS_CITE_INTENTS:
        return True
    lower = question.lower()
    return any(keyword in lower for keyword in REFERENCE_KEYWORDS)


_BASE_PROMPT = """You are an expert AI irrigation assistant for the Eco Flow smart greenhouse irrigation system, specifically designed for Filipino farmers and agricultural practitioners.
Your role is to provide helpful, accurate, and actionable advice about irrigation, soil conditions, and crop management.

IMPORTANT RULES:
1. Only answer questions related to irrigation systems, soil conditions, supported crops, and recorded sensor data.
2. Do NOT provide commands to control pumps, valves, or any hardware.
3. Do NOT answer questions about fertilizers, pesticides, herbicides, or chemicals.
4. Do NOT answer questions about financial matters, medical advice, or weather forecasts.
5. Respond in the same language as the user's question (English or Filipino/Tagalog).
6. Use clear, concise language with short paragraphs and bullet points when appropriate.
7. If sensor data is provided, use it to give accurate answers. Do not invent sensor values.
8. Format your response as HTML with proper tags (p, ul, li, strong, a, h3, h4) for better readability.
9. When citing sources, use clickable links such as <a href="https://da.gov.ph" target="_blank" rel="noopener noreferrer">Department of Agriculture</a>, always with full https:// URLs.

RECOMMENDED FILIPINO AGRICULTURAL SOURCES:
- Department of Agriculture (DA): https://da.gov.ph
- Bureau of Agricultural Research (BAR): https://bar.gov.ph
- Philippine Rice Research Institute (PhilRice): https://philrice.gov.ph
- International Rice Research Institute (IRRI): https://irri.org
- Agricultural Training Institute (ATI): https://ati.da.gov.ph
- Bureau of Plant Industry (BPI): https://bpi.da.gov.ph
- University of the Philippines Los Baños (UPLB): https://uplb.edu.ph
"""


def build_system_prompt(intent: str, sensor_data: Any = None, needs_refs: bool = False) -> str:
    parts = [_BASE_PROMPT, f"Current Intent: {intent}"]

    if sensor_data:
        if isinstance(sensor_data, list):
            parts.append(
                f"Historical Sensor Data ({len(sensor_data)} readings over the requested time period):\n"
                + json.dumps(sensor_data, indent=2)
            )
        else:
            parts.append("Latest Sensor Data:\n" + json.dumps(sensor_data, indent=2))
        parts.append(
            "Note: When using sensor data, you can reference it directly. For any additional "
            "agricultural advice beyond sensor data, cite sources with clickable hyperlinks."
        )
    else:
        parts.append("Note: No sensor data is currently available.")

    if needs_refs:
        parts.append(
            "MANDATORY: The user's question requires factual agricultural information. You MUST cite "
            "sources for all recommendations, crop suggestions, and irrigation advice, with clickable "
            "hyperlinks to Filipino agricultural resources. Every factual claim must have a source link."
        )

    return "\n\n".join(parts)


async def fetch_sensor_context(database: "Database", classification: Classification) -> Any:
    """Bounded telemetry slice for the prompt; ``None`` when unavailable."""
    if classification.intent in (None, "general"):
        return None
    try:
        async with database.session() as db:
            if classification.intent == "history":
                hours = max(1, min(classification.hours or 24, MAX_HISTORY_HOURS))
                rows = await reading_history(db, hours, limit=MAX_HISTORY_ROWS)
                return [reading_to_dict(r) for r in rows] or None
            row = await latest_reading(db)
            return reading_to_dict(row) if row else None
    except (SQLAlchemyError, GreenhouseError) as exc:
        logger.warning("Could not fetch sensor data (continuing without it): %s", exc)
        return None


class ChatUpstreamError(Exception):
    def __init__(self, status_code: int, detail: Any = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"chat completion returned HTTP {status_code}")


class ChatCompletionClient:
    """OpenAI-compatible ``/chat/completions`` client with an explicit lifecycle."""

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        temperature: float = 0.3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def init(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        if not self.configured:
            logger.warning("OPENAI_API_KEY not set. Chatbot will not work until this is configured.")

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(self, system_prompt: str, question: str) -> str:
        if self._client is None:
            await self.init()
        response = await self._client.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "temperature": self.temperature,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": question},
                ],
            },
        )
        if not response.is_success:
            try:
                detail = response.json()
            except ValueError:
                detail = response.text
            raise ChatUpstreamError(response.status_code, detail)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning("Chat completion response did not contain usable text")
            return NO_CONTENT
        return content or NO_CONTENT


@dataclass(frozen=True)
class ChatAnswer:
    status_code: int
    response: str


async def answer_question(
    question: str | None, *, database: "Database", client: ChatCompletionClient
) -> ChatAnswer:
    question = (question or "").strip()
    if not question:
        return ChatAnswer(400, EMPTY_QUESTION)

    classification = classify_question(question)
    if classification.forbidden:
        logger.info("Chatbot question refused (%s)", classification.reason)
        return ChatAnswer(200, REFUSAL)

    if not client.configured:
        return ChatAnswer(500, NOT_CONFIGURED)

    sensor_data = await fetch_sensor_context(database, classification)
    prompt = build_system_prompt(
        classification.intent, sensor_data, needs_references(classification.intent, question)
    )

    try:
        reply = await client.complete(prompt, question)
    except ChatUpstreamError as exc:
        logger.warning("Chat completion API responded with an error: %s %s", exc.status_code, exc.detail)
        if exc.status_code == 401:
            return ChatAnswer(500, AUTH_FAILED)
        if exc.status_code == 429:
            return ChatAnswer(500, BUSY)
        return ChatAnswer(
            500, f"I encountered an error processing your question ({exc.status_code}). Please try again later."
        )
    except httpx.HTTPError as exc:
        logger.exception("Chat completion request failed: %s", exc)
        return ChatAnswer(500, TRANSPORT_ERROR)

    return ChatAnswer(200, reply)
