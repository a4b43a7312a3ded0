from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.callcore.audio import TWILIO_SAMPLE_RATE
from src.callcore.config import get_config
from src.callcore.errors import ProviderError
from src.callcore.speech_types import TranscriptionResult
from src.callcore.stt_providers.base import STTProvider

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"


class DeepgramSTT(STTProvider):
    """
    Deepgram pre-recorded transcription over REST.

    Sends raw linear16 8kHz mono audio and asks Deepgram to detect the language,
    so mixed English/Hindi callers are handled without pinning a language.
    """

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient()

    def _params(self, language_hint: Optional[str]) -> dict[str, str]:
        params = {
            "model": self.config.deepgram_model,
            "encoding": "linear16",
            "sample_rate": str(TWILIO_SAMPLE_RATE),
            "channels": "1",
            "punctuate": "true",
            "smart_format": "true",
        }
        if language_hint:
            params["language"] = "hi" if language_hint == "hi" else "en-IN"
        else:
            params["detect_language"] = "true"
        return params

    async def transcribe(
        self,
        pcm_audio: bytes,
        *,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        start = time.time()
        try:
            response = await self._client.post(
                DEEPGRAM_LISTEN_URL,
                params=self._params(language_hint),
                headers={
                    "Authorization": f"Token {self.config.deepgram_api_key}",
                    "Content-Type": "application/octet-stream",
                },
                content=pcm_audio,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, str(e)) from e
        except ValueError as e:
            raise ProviderError(self.name, "invalid JSON response") from e

        return self._parse(data, latency_ms=(time.time() - start) * 1000)

    def _parse(self, data: dict, *, latency_ms: float) -> TranscriptionResult:
        try:
            channel = data["results"]["channels"][0]
        except (KeyError, IndexError, TypeError):
            logger.warning("Deepgram response missing channels")
            return TranscriptionResult(text="", provider=self.name, latency_ms=latency_ms)

        alternatives = channel.get("alternatives") or [{}]
        best = alternatives[0] or {}
        return TranscriptionResult(
            text=(best.get("transcript") or "").strip(),
            confidence=float(best.get("confidence") or 0.0),
            language=channel.get("detected_language"),
            provider=self.name,
            latency_ms=latency_ms,
        )

    async def close(self) -> None:
        await self._client.aclose()
