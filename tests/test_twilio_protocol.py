"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64
from unittest.mock import AsyncMock, MagicMock

from src.callcore.audio import TWILIO_FRAME_SIZE
from src.callcore.transport import (
    END_REASON_GOODBYE,
    END_REASON_INACTIVITY,
    END_REASON_STOP,
    END_REASON_TRANSFER,
    OutboundEvent,
)
from src.callcore.twilio_protocol import (
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    StreamState,
    InboundAudioBatcher,
    TwilioCallControl,
    TwilioMediaChannel,
    TwilioStreamHandler,
    parse_twilio_message,
    create_media_message,
    create_mark_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self):
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {
                "callSid": "CA456",
                "accountSid": "AC789",
                "tracks": ["inbound"],
                "customParameters": {"key": "value"},
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123"
        assert event.call_sid == "CA456"
        assert event.account_sid == "AC789"
        assert event.tracks == ["inbound"]
        assert event.custom_parameters == {"key": "value"}

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123456"
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == sample_ulaw_audio

    def test_parse_media_event_bad_payload(self):
        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {"track": "inbound", "payload": "!!not-base64!!"},
        })

        _, event = parse_twilio_message(message)

        assert event.payload == b""

    def test_parse_mark_event(self):
        message = json.dumps({"event": "mark", "streamSid": "MZ123", "mark": {"name": "reply_1"}})

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "reply_1"

    def test_parse_dtmf_event(self):
        message = json.dumps({"event": "dtmf", "streamSid": "MZ123", "dtmf": {"digit": "5"}})

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.DTMF
        assert isinstance(event, TwilioDTMFEvent)
        assert event.digit == "5"

    def test_parse_stop_event(self, twilio_stop_message):
        event_type, _ = parse_twilio_message(twilio_stop_message)
        assert event_type == TwilioEventType.STOP

    def test_parse_bytes(self):
        event_type, _ = parse_twilio_message(b'{"event": "stop"}')
        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object(self):
        with pytest.raises(ValueError):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(json.dumps({"event": "unknown_event"}))


class TestMessageCreation:
    def test_create_media_message(self):
        audio_data = b"\xff" * 160
        parsed = json.loads(create_media_message("MZ123", audio_data))

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_mark_message(self):
        parsed = json.loads(create_mark_message("MZ123", "reply_42"))

        assert parsed["event"] == "mark"
        assert parsed["mark"]["name"] == "reply_42"


class TestInboundAudioBatcher:
    def test_default_chunk_is_200ms(self):
        assert InboundAudioBatcher().chunk_bytes == 3200

    def test_regroups_frames(self):
        batcher = InboundAudioBatcher(chunk_ms=200)
        chunks = []
        # 10 frames of 20ms mu-law = 200ms = one 3200-byte PCM chunk
        for _ in range(10):
            chunks.extend(batcher.add(b"\xff" * 160))

        assert len(chunks) == 1
        assert len(chunks[0]) == 3200
        assert batcher.pending_bytes == 0

    def test_drain_returns_partial(self):
        batcher = InboundAudioBatcher(chunk_ms=200)
        assert batcher.add(b"\xff" * 160) == []

        remainder = batcher.drain()

        assert len(remainder) == 320
        assert batcher.pending_bytes == 0
        assert batcher.drain() == b""

    def test_empty_payload_ignored(self):
        assert InboundAudioBatcher().add(b"") == []


class FakeCallControl:
    def __init__(self):
        self.hangups = []
        self.transfers = []

    async def hangup(self, call_sid):
        self.hangups.append(call_sid)
        return True

    async def transfer(self, call_sid):
        self.transfers.append(call_sid)
        return True


def _channel(call_control=None):
    sent = []

    async def send_text(message):
        sent.append(json.loads(message))

    state = StreamState(stream_sid="MZ123", call_sid="CA456")
    return TwilioMediaChannel(state, send_text, call_control), sent


class TestTwilioMediaChannel:
    @pytest.mark.asyncio
    async def test_send_writes_frames_then_mark(self):
        channel, sent = _channel()

        await channel.send(OutboundEvent.from_audio(b"\xff" * (TWILIO_FRAME_SIZE * 2), "hello", "en"))

        assert [m["event"] for m in sent] == ["media", "media", "mark"]
        assert all(m["streamSid"] == "MZ123" for m in sent)
        assert sent[-1]["mark"]["name"] == "reply_1"
        assert "reply_1" in channel.state.pending_marks

    @pytest.mark.asyncio
    async def test_send_dropped_when_stream_inactive(self):
        channel, sent = _channel()
        channel.state.is_active = False

        await channel.send(OutboundEvent.from_audio(b"\xff" * 160, "hi", "en"))

        assert sent == []

    @pytest.mark.asyncio
    async def test_send_failure_propagates(self):
        state = StreamState(stream_sid="MZ123", call_sid="CA456")
        channel = TwilioMediaChannel(state, AsyncMock(side_effect=RuntimeError("socket closed")))

        with pytest.raises(RuntimeError):
            await channel.send(OutboundEvent.from_audio(b"\xff" * 160, "hi", "en"))

    @pytest.mark.asyncio
    async def test_mark_ack_records_rtt(self):
        channel, _ = _channel()
        await channel.send(OutboundEvent.from_audio(b"\xff" * 160, "hi", "en"))

        rtt = channel.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="reply_1"))

        assert rtt >= 0.0
        assert channel.state.pending_marks == {}
        assert len(channel.state.mark_rtt_samples) == 1
        assert channel.state.avg_mark_rtt_ms == pytest.approx(rtt)

    def test_unknown_mark_is_ignored(self):
        channel, _ = _channel()
        assert channel.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="other")) == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", [END_REASON_GOODBYE, END_REASON_INACTIVITY])
    async def test_call_ended_hangs_up(self, reason):
        control = FakeCallControl()
        channel, _ = _channel(control)

        await channel.call_ended(reason)
        await channel.call_ended(reason)

        assert control.hangups == ["CA456"]
        assert control.transfers == []

    @pytest.mark.asyncio
    async def test_call_ended_transfers(self):
        control = FakeCallControl()
        channel, _ = _channel(control)

        await channel.call_ended(END_REASON_TRANSFER)

        assert control.transfers == ["CA456"]
        assert control.hangups == []

    @pytest.mark.asyncio
    async def test_no_rest_call_after_stream_stop(self):
        control = FakeCallControl()
        channel, _ = _channel(control)
        channel.state.is_active = False

        await channel.call_ended(END_REASON_STOP)

        assert channel.closed is True
        assert control.hangups == [] and control.transfers == []


class TestTwilioCallControl:
    @pytest.mark.asyncio
    async def test_hangup_updates_call_status(self):
        client = MagicMock()
        control = TwilioCallControl("AC1", "token", settle_seconds=0, client=client)

        assert await control.hangup("CA456") is True
        client.calls.assert_called_once_with("CA456")
        client.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_transfer_dials_number(self):
        client = MagicMock()
        control = TwilioCallControl("AC1", "token", transfer_number="+15550001111", settle_seconds=0, client=client)

        assert await control.transfer("CA456") is True
        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert "<Dial>+15550001111</Dial>" in twiml

    @pytest.mark.asyncio
    async def test_transfer_without_number_is_skipped(self):
        client = MagicMock()
        control = TwilioCallControl("AC1", "token", settle_seconds=0, client=client)

        assert await control.transfer("CA456") is False
        client.calls.assert_not_called()

    @pytest.mark.asyncio
    async def test_rest_failure_returns_false(self):
        client = MagicMock()
        client.calls.return_value.update.side_effect = RuntimeError("twilio down")
        control = TwilioCallControl("AC1", "token", settle_seconds=0, client=client)

        assert await control.hangup("CA456") is False

    def test_disabled_without_credentials(self):
        assert TwilioCallControl("", "").enabled is False


class FakePipeline:
    def __init__(self):
        self.attached = []
        self.ingested = []
        self.ended = []

    async def attach_channel(self, call_sid, channel):
        self.attached.append((call_sid, channel))

    async def ingest_audio(self, call_sid, data):
        self.ingested.append((call_sid, data))
        return True

    async def notify_call_ended(self, call_sid):
        self.ended.append(call_sid)


class TestTwilioStreamHandler:
    @pytest.mark.asyncio
    async def test_start_attaches_channel(self, twilio_start_message):
        pipeline = FakePipeline()
        handler = TwilioStreamHandler(pipeline, AsyncMock())

        await handler.handle_message(twilio_start_message)

        assert handler.call_sid == "CA789012"
        assert handler.is_active is True
        assert pipeline.attached[0][0] == "CA789012"
        assert pipeline.attached[0][1] is handler.channel

    @pytest.mark.asyncio
    async def test_media_before_start_is_ignored(self, twilio_media_message):
        pipeline = FakePipeline()
        handler = TwilioStreamHandler(pipeline, AsyncMock())

        await handler.handle_message(twilio_media_message)

        assert handler.frames_received == 0
        assert pipeline.ingested == []

    @pytest.mark.asyncio
    async def test_media_is_batched(self, twilio_start_message, twilio_media_message):
        pipeline = FakePipeline()
        handler = TwilioStreamHandler(pipeline, AsyncMock(), inbound_chunk_ms=40)

        await handler.handle_message(twilio_start_message)
        await handler.handle_message(twilio_media_message)
        assert pipeline.ingested == []

        await handler.handle_message(twilio_media_message)

        assert handler.frames_received == 2
        assert len(pipeline.ingested) == 1
        assert pipeline.ingested[0][0] == "CA789012"
        assert len(pipeline.ingested[0][1]) == 640

    @pytest.mark.asyncio
    async def test_stop_flushes_remainder_and_ends_call(
        self, twilio_start_message, twilio_media_message, twilio_stop_message
    ):
        pipeline = FakePipeline()
        handler = TwilioStreamHandler(pipeline, AsyncMock())

        await handler.handle_message(twilio_start_message)
        await handler.handle_message(twilio_media_message)
        await handler.handle_message(twilio_stop_message)

        assert pipeline.ingested == [("CA789012", pipeline.ingested[0][1])]
        assert len(pipeline.ingested[0][1]) == 320
        assert pipeline.ended == ["CA789012"]
        assert handler.is_active is False

        # Socket close after stop does not end the call twice
        await handler.stop()
        assert pipeline.ended == ["CA789012"]

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self):
        pipeline = FakePipeline()
        handler = TwilioStreamHandler(pipeline, AsyncMock())

        await handler.stop()

        assert pipeline.ended == []
