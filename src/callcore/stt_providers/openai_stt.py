from __future__ import annotations

import math
import time
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.callcore.audio import TWILIO_SAMPLE_RATE, write_wav_mono_pcm16
from src.callcore.config import get_config
from src.callcore.errors import ProviderError
from src.callcore.speech_types import TranscriptionResult
from src.callcore.stt_providers.base import STTProvider

logger = structlog.get_logger(__name__)


def _confidence_from_segments(segments: Any) -> float:
    """
    Whisper does not report a confidence; approximate it from the mean
    per-segment average log-probability.
    """
    logprobs = []
    for segment in segments or []:
        value = segment.get("avg_logprob") if isinstance(segment, dict) else getattr(segment, "avg_logprob", None)
        if value is not None:
            logprobs.append(float(value))
    if not logprobs:
        return 0.0
    return round(min(1.0, math.exp(sum(logprobs) / len(logprobs))), 3)


class OpenAISTT(STTProvider):
    """
    OpenAI transcription (Whisper) provider.

    The PCM segment is wrapped in a WAV container before upload.
    """

    name = "openai"

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def transcribe(
        self,
        pcm_audio: bytes,
        *,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        start = time.time()
        wav_bytes = write_wav_mono_pcm16(pcm_audio, TWILIO_SAMPLE_RATE)

        kwargs: dict[str, Any] = {
            "model": self.config.openai_stt_model,
            "file": ("segment.wav", wav_bytes, "audio/wav"),
            "response_format": "verbose_json",
        }
        if language_hint:
            kwargs["language"] = language_hint

        try:
            resp = await self._client.audio.transcriptions.create(**kwargs)
        except Exception as e:
            raise ProviderError(self.name, str(e)) from e

        return TranscriptionResult(
            text=(getattr(resp, "text", "") or "").strip(),
            confidence=_confidence_from_segments(getattr(resp, "segments", None)),
            language=getattr(resp, "language", None),
            provider=self.name,
            latency_ms=(time.time() - start) * 1000,
        )

    async def close(self) -> None:
        await self._client.close()
