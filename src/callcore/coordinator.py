"""
Per-call turn state machine.

IDLE -> TRANSCRIBING -> GENERATING -> SYNTHESIZING -> EMITTING -> IDLE

One pass handles one utterance segment. Failures in the first four stages are
converted into the fixed error-recovery reply; the caller always hears
something. Output is only pushed while the session is ACTIVE, so a pass that
outlives its call just records history and returns.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from src.callcore.conversation import ConversationState
from src.callcore.events import TURN_PROCESSED, EventPublisher
from src.callcore.language import SUPPORTED_LANGUAGES, LanguageDetector, detect_language_heuristic
from src.callcore.phrases import phrase
from src.callcore.responder import ResponseContext, ResponseGenerator, StructuredResponse, fallback_response
from src.callcore.segmenter import UtteranceSegment
from src.callcore.sessions import CallSession, CallSessionManager, SessionState, TurnState
from src.callcore.speech import SpeechGateway
from src.callcore.speech_types import TranscriptionResult
from src.callcore.transport import END_REASON_GOODBYE, END_REASON_TRANSFER, OutboundEvent

logger = structlog.get_logger(__name__)

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
# Indian mobile/landline numbers and NANP-style numbers
_PHONE_RE = re.compile(r"(?:\+?91[\s\-]?|0)?[6-9]\d{4}[\s\-]?\d{5}\b|(?:\+?1[\s\-.]?)?\(?\d{3}\)?[\s\-.]?\d{3}[\s\-.]?\d{4}\b")


def redact_for_logs(text: str) -> str:
    """
    Best-effort masking of emails and phone numbers before text is logged.

    Phone numbers keep their last four digits: `[PHONE-***1234]`.
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0))
        return f"[PHONE-***{digits[-4:]}]"

    return _PHONE_RE.sub(_mask_phone, redacted)


@dataclass
class TurnOutcome:
    """What a single pass produced (mainly for logging and tests)."""
    kind: str  # "reply" | "no_input" | "fallback" | "skipped"
    text: str = ""
    language: str = ""
    emitted: bool = False
    end_reason: str = ""


class _StageError(Exception):
    def __init__(self, stage: str, error: BaseException):
        super().__init__(f"{stage}: {error}")
        self.stage = stage
        self.error = error


class TurnCoordinator:
    def __init__(
        self,
        sessions: CallSessionManager,
        speech: SpeechGateway,
        detector: LanguageDetector,
        generator: ResponseGenerator,
        *,
        conversation: Optional[ConversationState] = None,
        events: Optional[EventPublisher] = None,
        min_confidence: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sessions = sessions
        self.speech = speech
        self.detector = detector
        self.generator = generator
        self.conversation = conversation or ConversationState(
            sessions.history_for,
            default_language=sessions.default_language,
        )
        self.events = events or sessions.events
        self.min_confidence = min_confidence
        self.clock = clock

    async def handle_segment(self, call_sid: str, segment: UtteranceSegment) -> TurnOutcome:
        session = self.sessions.get(call_sid)
        if session is None or session.state == SessionState.ENDED:
            logger.debug("Segment for unknown or ended call ignored", call_sid=call_sid)
            return TurnOutcome(kind="skipped")

        start_time = self.clock()
        language = self.conversation.get_current_language(call_sid)
        try:
            return await self._run_turn(session, segment, language, start_time)
        except asyncio.CancelledError:
            logger.info("Turn cancelled", call_sid=call_sid, turn_state=session.turn_state.value)
            raise
        except _StageError as e:
            logger.error("Turn failed", call_sid=call_sid, stage=e.stage, error=str(e.error))
            session.metrics.record_failed(e.stage, str(e.error))
            return await self._reply_fallback(session, language)
        finally:
            session.turn_state = TurnState.IDLE
            self.sessions.record_activity(call_sid)

    async def _run_turn(
        self,
        session: CallSession,
        segment: UtteranceSegment,
        language: str,
        start_time: float,
    ) -> TurnOutcome:
        call_sid = session.call_sid

        # 1. Transcribe
        session.turn_state = TurnState.TRANSCRIBING
        try:
            transcription = await self.speech.speech_to_text(segment.audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise _StageError("transcribe", e) from e

        if not self._usable(transcription):
            logger.info(
                "No usable transcript",
                call_sid=call_sid,
                confidence=transcription.confidence,
                provider=transcription.provider,
            )
            text = phrase("no_input", language)
            emitted = await self._synthesize_and_emit(session, text, language)
            return TurnOutcome(kind="no_input", text=text, language=language, emitted=emitted)

        user_text = transcription.text.strip()
        logger.info(
            "Transcript received",
            call_sid=call_sid,
            transcript=redact_for_logs(user_text)[:100],
            confidence=transcription.confidence,
            provider=transcription.provider,
        )

        # 2. Language + generation
        session.turn_state = TurnState.GENERATING
        try:
            switch_to = self.detector.detect_switch_request(user_text, language)
            history = self.conversation.get_history(call_sid)
            spoken_language = await self.detector.detect(user_text, transcription.language)
            turn_language = switch_to or language

            context = ResponseContext(
                call_sid=call_sid,
                current_language=turn_language,
                user_input=user_text,
                confidence=transcription.confidence,
                history=history,
                session_metadata={
                    **session.metadata,
                    "spoken_language": spoken_language,
                    "switch_requested": switch_to is not None,
                },
            )
            response = await self.generator.generate(context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise _StageError("generate", e) from e

        if response.intent == "error_recovery":
            session.metrics.record_failed("generate", "error_recovery response")
            return await self._reply_fallback(session, language)

        reply_language = self._reply_language(switch_to, response, turn_language)

        # 3. History (+ language switch before synthesis)
        self.conversation.append(call_sid, "user", user_text, turn_language)
        self.conversation.append(call_sid, "assistant", response.message, reply_language)
        if switch_to is not None and self.conversation.set_current_language(call_sid, switch_to):
            session.metrics.language_switches += 1

        spoken_text = response.message
        end_reason = ""
        if response.should_transfer:
            end_reason = END_REASON_TRANSFER
            spoken_text = f"{spoken_text} {phrase('transfer', reply_language)}"
        elif response.should_end_call:
            end_reason = END_REASON_GOODBYE
            spoken_text = f"{spoken_text} {phrase('goodbye', reply_language)}"

        # 4. Synthesize
        session.turn_state = TurnState.SYNTHESIZING
        try:
            audio = await self.speech.text_to_speech(spoken_text, reply_language)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise _StageError("synthesize", e) from e

        # 5. Emit
        emitted = await self._emit(session, audio, spoken_text, reply_language)

        latency_ms = (self.clock() - start_time) * 1000
        session.metrics.record_processed(
            latency_ms=latency_ms,
            confidence=transcription.confidence,
            words=len(user_text.split()),
        )
        logger.info(
            "Turn processed",
            call_sid=call_sid,
            intent=response.intent,
            language=reply_language,
            switched=switch_to is not None,
            latency_ms=round(latency_ms, 2),
            emitted=emitted,
        )
        self.events.publish(
            TURN_PROCESSED,
            call_sid,
            intent=response.intent,
            language=reply_language,
            confidence=transcription.confidence,
            latency_ms=round(latency_ms, 2),
            should_transfer=response.should_transfer,
            should_end_call=response.should_end_call,
        )

        if end_reason:
            self.sessions.request_end(call_sid, end_reason)

        return TurnOutcome(
            kind="reply",
            text=spoken_text,
            language=reply_language,
            emitted=emitted,
            end_reason=end_reason,
        )

    def _usable(self, transcription: TranscriptionResult) -> bool:
        return not transcription.is_empty and transcription.confidence >= self.min_confidence

    @staticmethod
    def _reply_language(switch_to: Optional[str], response: StructuredResponse, turn_language: str) -> str:
        # explicit switch > generator's language > script of the reply > language in effect
        if switch_to:
            return switch_to
        if response.detected_language in SUPPORTED_LANGUAGES:
            return response.detected_language
        return detect_language_heuristic(response.message) or turn_language

    async def _reply_fallback(self, session: CallSession, language: str) -> TurnOutcome:
        text = fallback_response(language).message
        emitted = await self._synthesize_and_emit(session, text, language)
        return TurnOutcome(kind="fallback", text=text, language=language, emitted=emitted)

    async def _synthesize_and_emit(self, session: CallSession, text: str, language: str) -> bool:
        session.turn_state = TurnState.SYNTHESIZING
        try:
            audio = await self.speech.text_to_speech(text, language)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Synthesis of fixed reply failed", call_sid=session.call_sid, error=str(e))
            audio = b""
        return await self._emit(session, audio, text, language)

    async def _emit(self, session: CallSession, audio: bytes, text: str, language: str) -> bool:
        session.turn_state = TurnState.EMITTING
        if not session.is_active or session.channel is None:
            logger.debug(
                "Reply not emitted; session not active",
                call_sid=session.call_sid,
                state=session.state.value,
            )
            return False
        if not audio:
            logger.warning("Emitting reply without audio", call_sid=session.call_sid)

        try:
            await session.channel.send(OutboundEvent.from_audio(audio, text, language))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Failed to emit reply", call_sid=session.call_sid, error=str(e))
            session.metrics.record_error("emit", str(e))
            return False
        return True
