"""
Tests for the per-call turn state machine.
"""

import asyncio

import pytest

from src.callcore.language import LanguageDetector
from src.callcore.phrases import phrase
from src.callcore.responder import StructuredResponse
from src.callcore.segmenter import AudioSegmenter, SegmentationSettings, UtteranceSegment
from src.callcore.coordinator import TurnCoordinator, redact_for_logs
from src.callcore.sessions import CallSessionManager, SessionState, TurnState
from src.callcore.transport import END_REASON_GOODBYE, END_REASON_TRANSFER

from fakes import FakeChannel, FakeGenerator, FakeSpeech, transcript


def _segment():
    return UtteranceSegment(audio=b"\x10\x27" * 2048, started_at=0.0, ended_at=0.2, chunk_count=2)


async def _setup(speech, generator, *, channel=None, default_language="hi", detector=None):
    sessions = CallSessionManager(
        AudioSegmenter(SegmentationSettings(debounce_ms=0)),
        default_language=default_language,
    )
    coordinator = TurnCoordinator(
        sessions,
        speech,
        detector or LanguageDetector(default_language=default_language),
        generator,
    )
    channel = channel if channel is not None else FakeChannel()
    session = await sessions.start("CA123", channel=channel)
    return coordinator, sessions, session, channel


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_reply_recorded_and_emitted(self):
        speech = FakeSpeech([transcript("hello")])
        generator = FakeGenerator([StructuredResponse(message="Hi there!", detected_language="en")])
        coordinator, sessions, session, channel = await _setup(speech, generator)

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.kind == "reply"
        assert outcome.emitted is True
        assert [(t.role, t.content) for t in session.conversation.turns()] == [
            ("user", "hello"),
            ("assistant", "Hi there!"),
        ]
        assert len(channel.sent) == 1
        assert channel.sent[0].to_dict()["text"] == "Hi there!"
        assert channel.sent[0].audio_bytes == speech.tts_audio
        assert session.metrics.chunks_processed == 1
        assert session.turn_state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_context_carries_history_and_language(self):
        speech = FakeSpeech([transcript("first"), transcript("second")])
        generator = FakeGenerator([
            StructuredResponse(message="one", detected_language="en"),
            StructuredResponse(message="two", detected_language="en"),
        ])
        coordinator, _, _, _ = await _setup(speech, generator)

        await coordinator.handle_segment("CA123", _segment())
        await coordinator.handle_segment("CA123", _segment())

        second = generator.contexts[1]
        assert second.current_language == "hi"
        assert second.user_input == "second"
        assert [t.content for t in second.history] == ["first", "one"]
        assert second.session_metadata["spoken_language"] == "en"


class TestNoInput:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [transcript(""), transcript("mumble", confidence=0.2)])
    async def test_no_usable_transcript(self, result):
        speech = FakeSpeech([result])
        generator = FakeGenerator()
        coordinator, _, session, channel = await _setup(speech, generator)

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.kind == "no_input"
        assert generator.contexts == []
        assert len(session.conversation) == 0
        assert channel.sent[0].text == phrase("no_input", "hi")
        assert session.metrics.chunks_processed == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_generator_fallback_in_current_language(self):
        speech = FakeSpeech([transcript("hello there")])
        coordinator, _, session, channel = await _setup(speech, FakeGenerator(), default_language="en")

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.kind == "fallback"
        assert channel.sent[0].text == phrase("error", "en")
        assert speech.spoken == [(phrase("error", "en"), "en")]
        assert len(session.conversation) == 0
        assert session.metrics.chunks_failed == 1

    @pytest.mark.asyncio
    async def test_generator_exception_is_contained(self):
        speech = FakeSpeech([transcript("hello")])
        coordinator, _, session, channel = await _setup(speech, FakeGenerator(error=RuntimeError("boom")))

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.kind == "fallback"
        assert channel.sent[0].text == phrase("error", "hi")
        assert session.metrics.errors[-1]["stage"] == "generate"

    @pytest.mark.asyncio
    async def test_transcription_exception_is_contained(self):
        speech = FakeSpeech(stt_error=RuntimeError("stt down"))
        coordinator, _, session, channel = await _setup(speech, FakeGenerator())

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.kind == "fallback"
        assert session.metrics.errors[-1]["stage"] == "transcribe"
        assert session.turn_state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_emit_failure_is_recorded_not_raised(self):
        speech = FakeSpeech([transcript("hello")])
        generator = FakeGenerator([StructuredResponse(message="Hi!", detected_language="en")])
        coordinator, _, session, _ = await _setup(speech, generator, channel=FakeChannel(fail=RuntimeError("closed")))

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.emitted is False
        assert session.metrics.errors[-1]["stage"] == "emit"
        assert len(session.conversation) == 2


class TestLanguage:
    @pytest.mark.asyncio
    async def test_explicit_switch_changes_language(self):
        speech = FakeSpeech([transcript("Can you speak English?")])
        generator = FakeGenerator([StructuredResponse(message="Of course! How can I help?")])
        coordinator, _, session, channel = await _setup(speech, generator)

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert session.current_language == "en"
        assert session.metrics.language_switches == 1
        assert generator.contexts[0].current_language == "en"
        assert generator.contexts[0].session_metadata["switch_requested"] is True
        assert outcome.language == "en"
        assert speech.spoken[0][1] == "en"
        assert [t.language for t in session.conversation.turns()] == ["en", "en"]

    @pytest.mark.asyncio
    async def test_plain_utterance_keeps_language(self):
        speech = FakeSpeech([transcript("I have a question about my bill")])
        generator = FakeGenerator([StructuredResponse(message="Sure, tell me more.", detected_language="en")])
        coordinator, _, session, _ = await _setup(speech, generator)

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert session.current_language == "hi"
        assert session.metrics.language_switches == 0
        # Reply is voiced in the language it is written in
        assert outcome.language == "en"

    @pytest.mark.asyncio
    async def test_reply_language_from_script_when_unreported(self):
        speech = FakeSpeech([transcript("hello")])
        generator = FakeGenerator([StructuredResponse(message="नमस्ते! बताइए।")])
        coordinator, _, _, _ = await _setup(speech, generator, default_language="en")

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert outcome.language == "hi"


    @pytest.mark.asyncio
    async def test_provider_language_tag_reaches_context(self):
        speech = FakeSpeech([transcript("12345", language="en-US")])
        generator = FakeGenerator([StructuredResponse(message="Got it.", detected_language="en")])
        coordinator, _, _, _ = await _setup(speech, generator)

        await coordinator.handle_segment("CA123", _segment())

        assert generator.contexts[0].session_metadata["spoken_language"] == "en"

    @pytest.mark.asyncio
    async def test_stalled_classifier_does_not_stall_turn(self):
        async def stalled_classifier(text):
            await asyncio.sleep(30)
            return "en"

        speech = FakeSpeech([transcript("12345 678")])
        generator = FakeGenerator([StructuredResponse(message="ठीक है।", detected_language="hi")])
        detector = LanguageDetector(default_language="hi", classifier=stalled_classifier, timeout_seconds=0.05)
        coordinator, _, _, channel = await _setup(speech, generator, detector=detector)

        outcome = await asyncio.wait_for(coordinator.handle_segment("CA123", _segment()), timeout=2)

        assert outcome.kind == "reply"
        assert outcome.emitted is True
        assert generator.contexts[0].session_metadata["spoken_language"] == "hi"
        assert len(channel.sent) == 1


class TestCallEnding:
    @pytest.mark.asyncio
    async def test_transfer_requests_end(self):
        speech = FakeSpeech([transcript("I want to talk to a manager")])
        generator = FakeGenerator([
            StructuredResponse(message="I understand.", should_transfer=True, detected_language="en"),
        ])
        coordinator, sessions, session, channel = await _setup(speech, generator)

        outcome = await coordinator.handle_segment("CA123", _segment())
        assert outcome.end_reason == END_REASON_TRANSFER
        assert session.state in (SessionState.ENDING, SessionState.ENDED)

        await asyncio.sleep(0.01)

        assert channel.sent[0].text == f"I understand. {phrase('transfer', 'en')}"
        assert channel.ended == [END_REASON_TRANSFER]
        assert sessions.get("CA123") is None

    @pytest.mark.asyncio
    async def test_goodbye_requests_end(self):
        speech = FakeSpeech([transcript("that's all, bye")])
        generator = FakeGenerator([
            StructuredResponse(message="Happy to help.", should_end_call=True, detected_language="en"),
        ])
        coordinator, _, _, channel = await _setup(speech, generator)

        outcome = await coordinator.handle_segment("CA123", _segment())
        await asyncio.sleep(0.01)

        assert outcome.end_reason == END_REASON_GOODBYE
        assert phrase("goodbye", "en") in channel.sent[0].text
        assert channel.ended == [END_REASON_GOODBYE]


class TestSessionGuards:
    @pytest.mark.asyncio
    async def test_unknown_call_skipped(self):
        speech = FakeSpeech([transcript("hello")])
        coordinator, _, _, _ = await _setup(speech, FakeGenerator())

        outcome = await coordinator.handle_segment("CA999", _segment())

        assert outcome.kind == "skipped"
        assert speech.heard == []

    @pytest.mark.asyncio
    async def test_no_emit_while_connecting(self):
        speech = FakeSpeech([transcript("hello")])
        generator = FakeGenerator([StructuredResponse(message="Hi!", detected_language="en")])
        sessions = CallSessionManager(AudioSegmenter(SegmentationSettings(debounce_ms=0)))
        coordinator = TurnCoordinator(sessions, speech, LanguageDetector(), generator)
        session = await sessions.start("CA123")

        outcome = await coordinator.handle_segment("CA123", _segment())

        assert session.state == SessionState.CONNECTING
        assert outcome.kind == "reply"
        assert outcome.emitted is False
        assert len(session.conversation) == 2


class TestRedaction:
    def test_masks_email_and_phone(self):
        text = "my email is asha.k@example.com and number is +91 98765 43210"

        redacted = redact_for_logs(text)

        assert "[EMAIL]" in redacted
        assert "[PHONE-***3210]" in redacted
        assert "example.com" not in redacted
        assert "98765" not in redacted

    def test_plain_text_untouched(self):
        assert redact_for_logs("मेरा बिल गलत है") == "मेरा बिल गलत है"
        assert redact_for_logs("") == ""
