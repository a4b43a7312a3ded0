"""
Structured response generation for call turns.

Provides:
- `ResponseContext` / `StructuredResponse` value types
- Strict parsing of model output into `Valid | Invalid`
- The fixed error-recovery fallback
- An LLM-backed generator over the OpenAI-compatible API (Groq or OpenAI)
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import structlog
from openai import AsyncOpenAI

from src.callcore.config import get_config
from src.callcore.conversation import ConversationTurn
from src.callcore.language import LanguageClassifier, normalize_language
from src.callcore.phrases import phrase
from src.callcore.prompt_utils import LANGUAGE_LABELS, format_history, operator_prompt

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)


@dataclass
class ResponseContext:
    """Everything the generator may use to answer one user utterance."""
    call_sid: str
    current_language: str
    user_input: str
    confidence: float = 0.0
    history: List[ConversationTurn] = field(default_factory=list)
    session_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StructuredResponse:
    message: str
    intent: str = "general"
    entities: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.9
    should_transfer: bool = False
    should_end_call: bool = False
    next_actions: List[str] = field(default_factory=list)
    emotional_tone: str = "friendly"
    detected_language: Optional[str] = None


@dataclass(frozen=True)
class Valid:
    response: StructuredResponse


@dataclass(frozen=True)
class Invalid:
    raw_text: str
    reason: str


ParseOutcome = Union[Valid, Invalid]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_structured_response(raw: str) -> ParseOutcome:
    """
    Parse model output into a `StructuredResponse`.

    Accepts a JSON object, optionally wrapped in markdown code fences, with a
    non-empty "response" (or "message") field. Both snake_case and camelCase
    keys are understood. Anything else is `Invalid`.
    """
    text = _FENCE_RE.sub("", raw or "").strip()
    if not text:
        return Invalid(raw_text=raw or "", reason="empty output")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return Invalid(raw_text=raw, reason=f"invalid JSON: {e.msg}")

    if not isinstance(data, dict):
        return Invalid(raw_text=raw, reason="expected a JSON object")

    message = data.get("response") or data.get("message")
    if not isinstance(message, str) or not message.strip():
        return Invalid(raw_text=raw, reason="missing response text")

    def pick(snake: str, camel: str, default: Any = None) -> Any:
        if snake in data:
            return data[snake]
        return data.get(camel, default)

    entities = data.get("entities")
    next_actions = pick("next_actions", "nextActions")
    detected = pick("detected_language", "detectedLanguage")

    return Valid(
        StructuredResponse(
            message=message.strip(),
            intent=str(data.get("intent") or "general"),
            entities=entities if isinstance(entities, dict) else {},
            confidence=_as_float(data.get("confidence"), 0.9),
            should_transfer=_as_bool(pick("should_transfer", "shouldTransfer", False)),
            should_end_call=_as_bool(pick("should_end_call", "shouldEndCall", False)),
            next_actions=[str(a) for a in next_actions] if isinstance(next_actions, list) else [],
            emotional_tone=str(pick("emotional_tone", "emotionalTone") or "friendly"),
            detected_language=normalize_language(detected) if isinstance(detected, str) else None,
        )
    )


def fallback_response(language: str) -> StructuredResponse:
    """The fixed error-recovery reply, spoken in `language`."""
    return StructuredResponse(
        message=phrase("error", language),
        intent="error_recovery",
        entities={},
        confidence=1.0,
        should_transfer=False,
        should_end_call=False,
        next_actions=["retry_input"],
        emotional_tone="apologetic",
        detected_language=language,
    )


def get_system_prompt(config: Optional[Any] = None, target_language: str = "hi") -> str:
    """
    Get the call-center persona prompt for `target_language`.

    An operator prompt (SYSTEM_PROMPT / SYSTEM_PROMPT_FILE) replaces the built-in
    persona; the language rules are always appended.
    """
    if config is None:
        config = get_config()

    target_label = LANGUAGE_LABELS.get(target_language, "Hindi")

    persona = operator_prompt(config, language=target_language)
    if not persona:
        persona = f"""You are {config.agent_name}, a warm, friendly and professional call-center representative for {config.company_name}.

PERSONALITY:
- Warm and empathetic, but professional
- Patient, calm and reassuring
- Naturally conversational, like a caring human representative

CONVERSATION GUIDELINES:
- Keep responses concise (1-3 sentences) - this is a phone call
- Show empathy when callers describe a problem
- Ask a clarifying question when the request is unclear
- Check whether the caller needs anything else before closing

ESCALATION RULES:
- Set should_transfer for complex technical issues, billing or account problems needing verification, complaints about service quality, or a caller still frustrated after 3 exchanges
- Set should_end_call only when the caller says goodbye or has nothing else to ask"""

    rules = f"""TARGET_LANGUAGE: {target_label}

LANGUAGE RULES (MANDATORY):
- Reply only in TARGET_LANGUAGE.
- If the caller explicitly asks for English or Hindi, acknowledge warmly and reply in the requested language.
- Set detected_language to the language your reply is written in ("en" or "hi")."""

    if target_language == "hi":
        rules += """

HINDI SPECIFICS:
- Use respectful Hindi with appropriate honorifics (आप, जी)
- Use natural expressions: "अच्छा", "समझ गया", "बिल्कुल"
- Write the reply in Devanagari script"""

    return f"{persona}\n\n{rules}"


_RESPONSE_FORMAT = """Respond ONLY with a valid JSON object, no other text:
{
    "response": "your natural spoken reply",
    "intent": "detected intent",
    "entities": {},
    "confidence": 0.9,
    "should_transfer": false,
    "should_end_call": false,
    "next_actions": ["next action"],
    "emotional_tone": "friendly",
    "detected_language": "language of your reply, en or hi"
}"""


class ResponseGenerator(ABC):
    """Produces one structured reply per user utterance. Must never raise."""

    @abstractmethod
    async def generate(self, context: ResponseContext) -> StructuredResponse:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LLMResponseGenerator(ResponseGenerator):
    """
    Chat-completions backed generator (Groq via its OpenAI-compatible API, or OpenAI).

    Provider errors, timeouts and unparseable output all degrade to
    `fallback_response(context.current_language)`.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[AsyncOpenAI] = None,
        *,
        history_limit: int = 10,
    ):
        if config is None:
            config = get_config()
        self.config = config

        provider = (config.llm_provider or "groq").strip().lower()
        if provider == "openai":
            self.model = config.openai_model
            self._client = client or AsyncOpenAI(api_key=config.openai_api_key)
        else:
            self.model = config.groq_model
            # Use OpenAI client with Groq base URL
            self._client = client or AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)

        self.provider = provider
        self.history_limit = history_limit
        self.timeout_seconds = config.provider_timeout_seconds

    @property
    def client(self) -> AsyncOpenAI:
        return self._client

    def build_messages(self, context: ResponseContext) -> List[Dict[str, str]]:
        system_prompt = get_system_prompt(self.config, target_language=context.current_language)

        user_block = "\n".join(
            part
            for part in (
                "CONVERSATION HISTORY:",
                format_history(context.history, limit=self.history_limit) or "(none)",
                "",
                f"USER INPUT: {context.user_input}",
                f"CONFIDENCE: {context.confidence:.2f}",
                f"LANGUAGE: {context.current_language}",
                "",
                _RESPONSE_FORMAT,
            )
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_block},
        ]

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        completion = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.config.llm_max_tokens,
            temperature=self.config.llm_temperature,
            response_format={"type": "json_object"},
        )
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""

    async def generate(self, context: ResponseContext) -> StructuredResponse:
        start_time = time.time()
        try:
            raw = await asyncio.wait_for(
                self._complete(self.build_messages(context)),
                timeout=self.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "LLM generation timed out",
                call_sid=context.call_sid,
                timeout_seconds=self.timeout_seconds,
            )
            return fallback_response(context.current_language)
        except Exception as e:
            logger.error("LLM generation failed", call_sid=context.call_sid, error=str(e))
            return fallback_response(context.current_language)

        outcome = parse_structured_response(raw)
        if isinstance(outcome, Invalid):
            logger.warning(
                "LLM returned unparseable output",
                call_sid=context.call_sid,
                reason=outcome.reason,
                raw=outcome.raw_text[:200],
            )
            return fallback_response(context.current_language)

        logger.debug(
            "LLM response generated",
            call_sid=context.call_sid,
            intent=outcome.response.intent,
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return outcome.response

    async def close(self) -> None:
        await self._client.close()


def make_llm_language_classifier(client: AsyncOpenAI, model: str) -> LanguageClassifier:
    """Build a classifier that asks the model for a single "en"/"hi" label."""

    async def classify(text: str) -> Optional[str]:
        completion = await client.chat.completions.create(
            model=model,
            messages=[
                {
                    "role": "system",
                    "content": "Classify the language of the user's text. Answer with exactly one word: en or hi.",
                },
                {"role": "user", "content": text},
            ],
            max_tokens=2,
            temperature=0,
        )
        if not completion.choices:
            return None
        return (completion.choices[0].message.content or "").strip().lower()

    return classify


def create_response_generator(config: Optional[Any] = None) -> LLMResponseGenerator:
    return LLMResponseGenerator(config or get_config())
