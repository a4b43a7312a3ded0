from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class TranscriptionResult:
    """
    Result of one speech-to-text attempt.

    `language` is the provider's detected language tag, if it reports one.
    """

    text: str
    confidence: float = 0.0
    language: Optional[str] = None
    provider: str = ""
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip()


# Returned by the gateway when every provider failed or produced nothing usable.
EMPTY_TRANSCRIPTION = TranscriptionResult(text="", confidence=0.0)
