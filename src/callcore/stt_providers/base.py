from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from src.callcore.speech_types import TranscriptionResult


class STTProvider(ABC):
    """Transcribes one utterance of mono PCM16 8kHz audio."""

    name: str = "stt"

    @abstractmethod
    async def transcribe(
        self,
        pcm_audio: bytes,
        *,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None
