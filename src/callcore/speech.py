from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

import structlog

from src.callcore.config import get_config
from src.callcore.speech_types import EMPTY_TRANSCRIPTION, TranscriptionResult
from src.callcore.stt_providers.base import STTProvider
from src.callcore.tts_providers.base import TTSProvider

logger = structlog.get_logger(__name__)


class SpeechGateway:
    """
    Speech-to-text and text-to-speech behind ordered fallback chains.

    - Providers are tried sequentially; each attempt is bounded by `timeout_seconds`.
    - A timed-out or failed attempt moves on to the next provider.
    - STT results that are empty or below `min_confidence` also fall through.
    - When every provider fails, the gateway returns a sentinel (`EMPTY_TRANSCRIPTION`
      or `b""`) instead of raising, so the turn can degrade gracefully.
    """

    def __init__(
        self,
        stt_providers: Sequence[STTProvider],
        tts_providers: Sequence[TTSProvider],
        *,
        timeout_seconds: float = 5.0,
        min_confidence: float = 0.5,
    ):
        self._stt = list(stt_providers)
        self._tts = list(tts_providers)
        self.timeout_seconds = timeout_seconds
        self.min_confidence = min_confidence

    @property
    def stt_provider_names(self) -> list[str]:
        return [p.name for p in self._stt]

    @property
    def tts_provider_names(self) -> list[str]:
        return [p.name for p in self._tts]

    async def speech_to_text(
        self,
        audio: bytes,
        *,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        if not audio:
            return EMPTY_TRANSCRIPTION

        for provider in self._stt:
            try:
                result = await asyncio.wait_for(
                    provider.transcribe(audio, language_hint=language_hint),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "STT provider timed out",
                    provider=provider.name,
                    timeout_seconds=self.timeout_seconds,
                )
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("STT provider failed", provider=provider.name, error=str(e))
                continue

            if result.is_empty:
                logger.debug("STT provider returned empty transcript", provider=provider.name)
                continue

            if result.confidence < self.min_confidence:
                logger.info(
                    "STT result below confidence threshold",
                    provider=provider.name,
                    confidence=result.confidence,
                    min_confidence=self.min_confidence,
                )
                continue

            return result

        return EMPTY_TRANSCRIPTION

    async def text_to_speech(
        self,
        text: str,
        language: str,
        voice_hint: Optional[str] = None,
    ) -> bytes:
        if not text or not text.strip():
            return b""

        for provider in self._tts:
            try:
                audio = await asyncio.wait_for(
                    provider.synthesize(text, language=language, voice_hint=voice_hint),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "TTS provider timed out",
                    provider=provider.name,
                    timeout_seconds=self.timeout_seconds,
                )
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("TTS provider failed", provider=provider.name, error=str(e))
                continue

            if audio:
                return audio
            logger.debug("TTS provider returned no audio", provider=provider.name)

        logger.error("All TTS providers failed", providers=self.tts_provider_names)
        return b""

    async def close(self) -> None:
        for provider in [*self._stt, *self._tts]:
            try:
                await provider.close()
            except Exception as e:
                logger.warning("Error closing speech provider", provider=provider.name, error=str(e))


def build_speech_gateway(config: Optional[Any] = None) -> SpeechGateway:
    """Construct the configured provider chains."""
    config = config or get_config()

    stt: list[STTProvider] = []
    for name in config.stt_provider_chain:
        if name == "deepgram":
            from src.callcore.stt_providers.deepgram import DeepgramSTT

            stt.append(DeepgramSTT(config))
        elif name == "openai":
            from src.callcore.stt_providers.openai_stt import OpenAISTT

            stt.append(OpenAISTT(config))
        else:
            raise ValueError(f"Unsupported STT provider: {name}")

    tts: list[TTSProvider] = []
    for name in config.tts_provider_chain:
        if name == "openai":
            from src.callcore.tts_providers.openai_tts import OpenAITTS

            tts.append(OpenAITTS(config))
        elif name == "cartesia":
            from src.callcore.tts_providers.cartesia import CartesiaTTS

            tts.append(CartesiaTTS(config))
        else:
            raise ValueError(f"Unsupported TTS provider: {name}")

    return SpeechGateway(
        stt,
        tts,
        timeout_seconds=config.provider_timeout_seconds,
        min_confidence=config.stt_min_confidence,
    )
