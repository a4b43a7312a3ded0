"""
End-to-end tests for the call pipeline with fake providers.
"""

import asyncio
from dataclasses import replace

import pytest

from src.callcore.config import get_config
from src.callcore.engine import CallPipeline, create_pipeline
from src.callcore.responder import LLMResponseGenerator, StructuredResponse
from src.callcore.sessions import SessionState
from src.callcore.transport import END_REASON_INACTIVITY, END_REASON_STOP

from fakes import FakeChannel, FakeGenerator, FakeSpeech, transcript


def _pipeline(speech, generator, **overrides):
    config = replace(get_config(), **overrides)
    return CallPipeline(config, speech, generator)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_single_utterance_turn(self, voiced_chunk):
        speech = FakeSpeech([transcript("hello", 0.9)])
        generator = FakeGenerator([
            StructuredResponse(message="Hi there!", should_transfer=False, should_end_call=False),
        ])
        pipeline = _pipeline(speech, generator)
        channel = FakeChannel()

        await pipeline.start_call("CA123", channel=channel)
        for _ in range(3):
            assert await pipeline.ingest_audio("CA123", voiced_chunk) is True
        await asyncio.sleep(0.4)

        session = pipeline.sessions.get("CA123")
        assert len(speech.heard) == 1
        assert [(t.role, t.content) for t in session.conversation.turns()] == [
            ("user", "hello"),
            ("assistant", "Hi there!"),
        ]
        assert len(channel.sent) == 1
        assert set(channel.sent[0].to_dict()) == {"audio", "text"}
        assert channel.sent[0].text == "Hi there!"
        assert session.metrics.chunks_received == 3

    @pytest.mark.asyncio
    async def test_immediate_emission_without_debounce(self, voiced_chunk):
        speech = FakeSpeech([transcript("hello", 0.9)])
        generator = FakeGenerator([StructuredResponse(message="Hi there!", detected_language="en")])
        pipeline = _pipeline(speech, generator, segment_debounce_ms=0)
        channel = FakeChannel()

        await pipeline.start_call("CA123", channel=channel)
        await pipeline.ingest_audio("CA123", voiced_chunk)
        await pipeline.ingest_audio("CA123", voiced_chunk)
        await pipeline.ingest_audio("CA123", voiced_chunk)
        await asyncio.sleep(0.05)

        assert len(speech.heard) == 1
        assert len(speech.heard[0]) == 2 * len(voiced_chunk)
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_silence_only_produces_nothing(self, silent_chunk):
        speech = FakeSpeech()
        pipeline = _pipeline(speech, FakeGenerator())

        await pipeline.start_call("CA123", channel=FakeChannel())
        for _ in range(11):
            await pipeline.ingest_audio("CA123", silent_chunk)
        await asyncio.sleep(0.3)

        session = pipeline.sessions.get("CA123")
        assert speech.heard == []
        assert session.audio.is_empty
        assert pipeline.segmenter.flush(session.audio) is None

    @pytest.mark.asyncio
    async def test_inactive_call_swept_once(self):
        clock_now = [100.0]
        config = replace(get_config(), inactivity_timeout_seconds=30.0)
        pipeline = CallPipeline(config, FakeSpeech(), FakeGenerator(), clock=lambda: clock_now[0])
        channel = FakeChannel()
        session = await pipeline.start_call("CA123", channel=channel)
        session.conversation.append("user", "hello", "hi")

        clock_now[0] += 31.0
        assert await pipeline.sessions.sweep_once() == ["CA123"]
        assert await pipeline.sessions.sweep_once() == []

        assert channel.ended == [END_REASON_INACTIVITY]
        assert session.state == SessionState.ENDED
        assert len(session.conversation) == 0
        assert await pipeline.ingest_audio("CA123", b"\x00\x10" * 100) is False

    @pytest.mark.asyncio
    async def test_call_end_drains_last_utterance(self, voiced_chunk):
        speech = FakeSpeech([transcript("one last thing", 0.9)])
        generator = FakeGenerator([StructuredResponse(message="Sure.", detected_language="en")])
        pipeline = _pipeline(speech, generator)
        channel = FakeChannel()

        await pipeline.start_call("CA123", channel=channel)
        await pipeline.ingest_audio("CA123", voiced_chunk)

        assert await pipeline.notify_call_ended("CA123") is True

        # Processed, but nothing is emitted once the call is ending
        assert len(speech.heard) == 1
        assert len(generator.contexts) == 1
        assert channel.sent == []
        assert channel.ended == [END_REASON_STOP]
        assert await pipeline.notify_call_ended("CA123") is False

    @pytest.mark.asyncio
    async def test_calls_are_isolated(self, voiced_chunk):
        speech = FakeSpeech([transcript("Can you speak English?"), transcript("hello")])
        generator = FakeGenerator([
            StructuredResponse(message="Sure, English it is."),
            StructuredResponse(message="नमस्ते!", detected_language="hi"),
        ])
        pipeline = _pipeline(speech, generator, segment_debounce_ms=0)
        first, second = FakeChannel(), FakeChannel()
        await pipeline.start_call("CA1", channel=first)
        await pipeline.start_call("CA2", channel=second)

        await pipeline.ingest_audio("CA1", voiced_chunk)
        await pipeline.ingest_audio("CA1", voiced_chunk)
        await asyncio.sleep(0.05)
        await pipeline.ingest_audio("CA2", voiced_chunk)
        await pipeline.ingest_audio("CA2", voiced_chunk)
        await asyncio.sleep(0.05)

        assert pipeline.sessions.get("CA1").current_language == "en"
        assert pipeline.sessions.get("CA2").current_language == "hi"
        assert len(pipeline.sessions.get("CA2").conversation) == 2
        assert len(first.sent) == 1 and len(second.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_call_audio_dropped(self, voiced_chunk):
        pipeline = _pipeline(FakeSpeech(), FakeGenerator())
        assert await pipeline.ingest_audio("CA404", voiced_chunk) is False


class TestPipelineLifecycle:
    @pytest.mark.asyncio
    async def test_stop_ends_calls_and_closes_providers(self):
        speech, generator = FakeSpeech(), FakeGenerator()
        pipeline = _pipeline(speech, generator)
        channel = FakeChannel()

        await pipeline.start()
        await pipeline.start_call("CA1", channel=channel)
        await pipeline.stop()

        assert channel.ended == ["shutdown"]
        assert speech.closed is True
        assert generator.closed is True

    @pytest.mark.asyncio
    async def test_stats(self):
        pipeline = _pipeline(FakeSpeech(), FakeGenerator())
        await pipeline.start_call("CA1", channel=FakeChannel())

        stats = pipeline.stats()

        assert stats["active_calls"] == 1
        assert stats["total_started"] == 1
        assert "events_published" in stats

    def test_create_pipeline_from_config(self):
        pipeline = create_pipeline(replace(get_config(), language_classifier_enabled=True))

        assert isinstance(pipeline.generator, LLMResponseGenerator)
        assert pipeline.speech.stt_provider_names == ["deepgram", "openai"]
        assert pipeline.detector._classifier is not None
