from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class TTSProvider(ABC):
    """Synthesizes text into Twilio-ready mu-law 8kHz audio."""

    name: str = "tts"

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        *,
        language: str,
        voice_hint: Optional[str] = None,
    ) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None
