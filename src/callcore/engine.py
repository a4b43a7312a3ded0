"""
The conversation core as seen by a telephony transport.

`CallPipeline` wires segmenter -> turn coordinator -> session manager and
exposes the transport-facing operations:
- start_call / attach_channel
- ingest_audio(call_sid, pcm16_bytes)
- notify_call_ended(call_sid)
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import structlog

from src.callcore.config import get_config
from src.callcore.conversation import ConversationState
from src.callcore.coordinator import TurnCoordinator
from src.callcore.events import EventPublisher, create_event_publisher
from src.callcore.language import LanguageDetector
from src.callcore.responder import ResponseGenerator, create_response_generator, make_llm_language_classifier
from src.callcore.segmenter import AudioChunk, AudioSegmenter, SegmentationSettings, UtteranceSegment
from src.callcore.sessions import CallSession, CallSessionManager
from src.callcore.speech import SpeechGateway, build_speech_gateway
from src.callcore.transport import END_REASON_STOP, OutboundChannel

logger = structlog.get_logger(__name__)


class CallPipeline:
    def __init__(
        self,
        config: Any,
        speech: SpeechGateway,
        generator: ResponseGenerator,
        *,
        detector: Optional[LanguageDetector] = None,
        events: Optional[EventPublisher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.speech = speech
        self.generator = generator
        self.events = events or EventPublisher()
        self.clock = clock

        self.segmenter = AudioSegmenter(SegmentationSettings.from_config(config))
        self.sessions = CallSessionManager.from_config(
            config,
            self.segmenter,
            events=self.events,
            clock=clock,
        )
        self.conversation = ConversationState(
            self.sessions.history_for,
            default_language=config.default_language,
        )
        self.detector = detector or LanguageDetector(
            default_language=config.default_language,
            timeout_seconds=config.provider_timeout_seconds,
        )
        self.coordinator = TurnCoordinator(
            self.sessions,
            speech,
            self.detector,
            generator,
            conversation=self.conversation,
            events=self.events,
            min_confidence=config.stt_min_confidence,
            clock=clock,
        )
        self.segmenter.set_handler(self._on_segment)
        self._running = False

    async def _on_segment(self, call_sid: str, segment: UtteranceSegment) -> None:
        await self.coordinator.handle_segment(call_sid, segment)

    async def start(self) -> None:
        """Start background work (inactivity sweep)."""
        if self._running:
            return
        self.sessions.start_sweeper()
        self._running = True
        logger.info(
            "Call pipeline started",
            stt_providers=self.speech.stt_provider_names,
            tts_providers=self.speech.tts_provider_names,
        )

    async def stop(self) -> None:
        """End every call and release providers."""
        logger.info("Stopping call pipeline", sessions=len(self.sessions))
        self._running = False
        await self.sessions.shutdown()
        await self.events.close()
        await self.speech.close()
        await self.generator.close()

    async def start_call(
        self,
        call_sid: str,
        channel: Optional[OutboundChannel] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CallSession:
        return await self.sessions.start(call_sid, channel=channel, metadata=metadata)

    async def attach_channel(self, call_sid: str, channel: OutboundChannel) -> CallSession:
        return await self.sessions.attach_channel(call_sid, channel)

    async def ingest_audio(self, call_sid: str, data: bytes) -> bool:
        """
        Feed one chunk of 16-bit PCM (8kHz mono) for a call.

        Returns False (and drops the chunk) for unknown or ending calls.
        """
        session = self.sessions.get(call_sid)
        if session is None or not session.accepts_audio:
            logger.debug("Audio for unknown or ending call dropped", call_sid=call_sid)
            return False

        session.metrics.chunks_received += 1
        self.sessions.record_activity(call_sid)
        self.segmenter.ingest(call_sid, session.audio, AudioChunk(data=data, received_at=self.clock()))
        return True

    async def notify_call_ended(self, call_sid: str, reason: str = END_REASON_STOP) -> bool:
        """Transport-side end: finish the in-flight turn and the last utterance, then tear down."""
        return await self.sessions.end(call_sid, reason, drain=True)

    def stats(self) -> Dict[str, Any]:
        return {
            **self.sessions.stats(),
            "events_published": self.events.published,
            "events_failed": self.events.failed,
        }


def create_pipeline(config: Optional[Any] = None) -> CallPipeline:
    """Build the pipeline with the configured providers."""
    config = config or get_config()

    generator = create_response_generator(config)
    classifier = None
    if config.language_classifier_enabled:
        classifier = make_llm_language_classifier(generator.client, generator.model)

    return CallPipeline(
        config,
        build_speech_gateway(config),
        generator,
        detector=LanguageDetector(
            default_language=config.default_language,
            classifier=classifier,
            timeout_seconds=config.provider_timeout_seconds,
        ),
        events=create_event_publisher(config),
    )
