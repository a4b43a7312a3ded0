from __future__ import annotations

from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.callcore.audio import wav_bytes_to_twilio_ulaw
from src.callcore.config import get_config
from src.callcore.errors import ProviderError
from src.callcore.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Synthesizes a full WAV and converts it to Twilio mu-law. The voices are
    multilingual, so `language` is not sent to the API.
    """

    name = "openai"

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def _generate_wav(self, text: str, voice: str) -> bytes:
        resp = await self._client.audio.speech.create(
            model=self.config.openai_tts_model,
            voice=voice,
            input=text,
            response_format="wav",
        )
        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if isinstance(data, (bytes, bytearray)):
            return bytes(data)
        read = getattr(resp, "read", None)
        if callable(read):
            result = read()
            if hasattr(result, "__await__"):
                result = await result
            return bytes(result)
        return bytes(resp)

    async def synthesize(
        self,
        text: str,
        *,
        language: str,
        voice_hint: Optional[str] = None,
    ) -> bytes:
        if not text or not text.strip():
            return b""

        voice = voice_hint or self.config.openai_tts_voice
        try:
            wav_bytes = await self._generate_wav(text, voice)
        except Exception as e:
            raise ProviderError(self.name, str(e)) from e

        return wav_bytes_to_twilio_ulaw(wav_bytes)

    async def close(self) -> None:
        await self._client.close()
