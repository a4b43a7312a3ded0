from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from src.callcore.audio import TWILIO_SAMPLE_RATE, get_audio_duration_ms
from src.callcore.config import get_config
from src.callcore.errors import ProviderError
from src.callcore.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)

# Cartesia can emit mu-law 8kHz directly, so no conversion is needed for Twilio.
CARTESIA_BYTES_URL = "https://api.cartesia.ai/tts/bytes"
CARTESIA_API_VERSION = "2024-06-10"
CARTESIA_MODEL_ID = "sonic-multilingual"


@dataclass
class CartesiaTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_total_ms: float = 0.0

    def record_synthesis(self, *, characters: int, audio_ms: float, total_ms: float) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_ms += audio_ms

        # Running average
        n = self.total_requests
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n


class CartesiaTTS(TTSProvider):
    """
    Cartesia TTS over the REST bytes endpoint.

    Produces Twilio-ready mu-law 8kHz audio, with a per-language voice.
    """

    name = "cartesia"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient()
        self._metrics = CartesiaTTSMetrics()

    @property
    def metrics(self) -> CartesiaTTSMetrics:
        return self._metrics

    def _voice_for(self, language: str, voice_hint: Optional[str]) -> str:
        if voice_hint:
            return voice_hint
        if language == "hi":
            return self.config.cartesia_voice_id_hi
        return self.config.cartesia_voice_id

    async def synthesize(
        self,
        text: str,
        *,
        language: str,
        voice_hint: Optional[str] = None,
    ) -> bytes:
        if not text or not text.strip():
            return b""

        start_time = time.time()
        payload = {
            "model_id": CARTESIA_MODEL_ID,
            "transcript": text,
            "voice": {"mode": "id", "id": self._voice_for(language, voice_hint)},
            "language": language,
            "output_format": {
                "container": "raw",
                "encoding": "pcm_mulaw",
                "sample_rate": TWILIO_SAMPLE_RATE,
            },
        }

        try:
            response = await self._client.post(
                CARTESIA_BYTES_URL,
                headers={
                    "X-API-Key": self.config.cartesia_api_key,
                    "Cartesia-Version": CARTESIA_API_VERSION,
                },
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, str(e)) from e

        audio = response.content
        total_ms = (time.time() - start_time) * 1000
        self._metrics.record_synthesis(
            characters=len(text),
            audio_ms=get_audio_duration_ms(audio),
            total_ms=total_ms,
        )
        logger.debug(
            "Cartesia synthesis complete",
            characters=len(text),
            language=language,
            total_ms=round(total_ms, 2),
        )
        return audio

    async def close(self) -> None:
        await self._client.aclose()
