"""
Language utilities for the conversation pipeline.

Provides a small, deterministic layer to:
- classify transcript text by script (Devanagari -> Hindi, Latin -> English)
- detect explicit user requests to switch the conversation language
  (English <-> Hindi, including common Hinglish phrasings)

The heuristic functions are pure; only `LanguageDetector.detect` may call out to
a model-based classifier, and only when the script heuristic is inconclusive.
"""

from __future__ import annotations

import asyncio
import re
import unicodedata
from typing import Awaitable, Callable, Literal, Optional

import structlog

logger = structlog.get_logger(__name__)

LanguageCode = Literal["en", "hi"]
SUPPORTED_LANGUAGES: tuple[str, ...] = ("en", "hi")

# Async callable returning a raw language label for `text` (e.g. an LLM classifier).
LanguageClassifier = Callable[[str], Awaitable[Optional[str]]]

_DEVANAGARI_RE = re.compile(r"[ऀ-ॿ]")
_LATIN_RE = re.compile(r"[A-Za-z]")


def _normalize_for_matching(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    # NFC keeps Devanagari matras attached to their consonants
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"\s+", " ", text)
    return text


_HINDI_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\bcan you\b.*\b(speak|talk|switch)\b.*\bhindi\b",
        r"\b(please|pls|plz)\b.*\b(speak|talk)\b.*\bhindi\b",
        r"\b(speak|talk|reply|respond)\s+(in\s+)?hindi\b",
        r"\bswitch\s+(to\s+)?hindi\b",
        r"\bhindi\s+(please|pls|plz|me|mein|main)\b",
        r"हिंदी\s*(में|मे)\s*(बात|बोल)",
        r"हिंदी\s*(बोलिए|बोलें|करें|में बोलो)",
        r"हिन्दी\s*(में|मे)\s*(बात|बोल)",
    )
)

_ENGLISH_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"\bcan you\b.*\b(speak|talk|switch)\b.*\b(english|angrezi|angrej)\b",
        r"\b(please|pls|plz)\b.*\b(speak|talk)\b.*\b(english|angrezi|angrej)\b",
        r"\b(speak|talk|reply|respond)\s+(in\s+)?(english|angrezi)\b",
        r"\bswitch\s+(to\s+)?(english|angrezi)\b",
        r"\b(english|angrezi|angrej)\s+(please|pls|plz|me|mein|main)\b",
        r"(अंग्रेज़ी|अंग्रेजी|इंग्लिश)\s*(में|मे)\s*(बात|बोल)",
    )
)


def normalize_language(language: Optional[str]) -> Optional[LanguageCode]:
    """
    Normalize a provider/LLM language label into our internal LanguageCode.

    Accepts BCP-47 style tags ("hi-IN", "en-US") and names ("hindi", "English").
    """
    if not language:
        return None
    norm = str(language).strip().lower()
    if norm.startswith("hi") or norm in ("हिंदी", "हिन्दी"):
        return "hi"
    if norm.startswith("en"):
        return "en"
    return None


def detect_language_heuristic(text: str) -> Optional[LanguageCode]:
    """
    Fast script-based language detection.

    Returns:
        "hi" if any Devanagari character is present
        "en" if Latin letters are present (and no Devanagari)
        None when the text has no letters from either script
    """
    if not text:
        return None
    if _DEVANAGARI_RE.search(text):
        return "hi"
    if _LATIN_RE.search(text):
        return "en"
    return None


def infer_language_from_text(text: str) -> tuple[Optional[LanguageCode], Optional[float]]:
    """
    Script heuristic with a confidence score.

    Confidence grows with the share of characters belonging to the detected script,
    starting at 0.7 and capped at 0.95.
    """
    language = detect_language_heuristic(text)
    if language is None:
        return None, None

    pattern = _DEVANAGARI_RE if language == "hi" else _LATIN_RE
    matched = len(pattern.findall(text))
    confidence = min(0.95, 0.7 + (matched / max(len(text), 1)) * 0.3)
    return language, round(confidence, 3)


def detect_switch_request(text: str, current_language: Optional[str]) -> Optional[LanguageCode]:
    """
    Detect an explicit user request to switch the conversation language.

    Returns the requested language only if it differs from `current_language`,
    otherwise None.
    """
    normalized = _normalize_for_matching(text)
    if not normalized:
        return None

    current = normalize_language(current_language)

    if current != "en" and any(p.search(normalized) for p in _ENGLISH_PATTERNS):
        return "en"

    if current != "hi" and any(p.search(normalized) for p in _HINDI_PATTERNS):
        return "hi"

    return None


class LanguageDetector:
    """
    Heuristic-first language detection with an optional model fallback.

    Order: script heuristic, then the language tag the STT provider reported,
    then the classifier. The classifier is bounded by `timeout_seconds`, and any
    classifier failure or timeout degrades to the default language.
    """

    def __init__(
        self,
        *,
        default_language: LanguageCode = "hi",
        classifier: Optional[LanguageClassifier] = None,
        timeout_seconds: float = 5.0,
    ):
        self.default_language = default_language
        self._classifier = classifier
        self.timeout_seconds = timeout_seconds

    async def detect(self, text: str, provider_language: Optional[str] = None) -> LanguageCode:
        heuristic = detect_language_heuristic(text)
        if heuristic is not None:
            return heuristic

        reported = normalize_language(provider_language)
        if reported is not None:
            return reported

        if self._classifier is None or not (text or "").strip():
            return self.default_language

        try:
            label = await asyncio.wait_for(self._classifier(text), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Language classifier timed out", timeout_seconds=self.timeout_seconds)
            return self.default_language
        except Exception as e:
            logger.warning("Language classifier failed", error=str(e))
            return self.default_language

        return normalize_language(label) or self.default_language

    def detect_switch_request(self, text: str, current_language: Optional[str]) -> Optional[LanguageCode]:
        return detect_switch_request(text, current_language)
