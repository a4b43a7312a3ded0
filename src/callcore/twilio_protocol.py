"""
Twilio Media Streams WebSocket protocol handling.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio

Inbound audio is converted to 16-bit PCM and regrouped into fixed-duration
chunks before it reaches the conversation core; replies go back out as 20ms
media frames followed by a mark.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import msgspec
import structlog
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from src.callcore.audio import TWILIO_FRAME_SIZE, chunk_audio, pcm16_bytes_for_duration, ulaw_to_linear16
from src.callcore.transport import END_REASON_GOODBYE, END_REASON_INACTIVITY, END_REASON_TRANSFER, OutboundEvent

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

SendText = Callable[[str], Awaitable[None]]


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start", {})
        return cls(
            stream_sid=message.get("streamSid", "") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media", {})
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64)
        except (binascii.Error, ValueError):
            logger.warning("Dropping media frame with invalid base64 payload")
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0)),
            timestamp=media.get("timestamp", ""),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark", {})
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf", {})
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


def parse_twilio_message(raw_message: str | bytes) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message must be a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Create a Twilio media message from raw mu-law bytes (160 bytes per 20ms frame)."""
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": payload_b64},
    }
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """Create a Twilio mark message; Twilio echoes it back once the audio before it has played."""
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {"name": name},
    }
    return encoder.encode(message).decode("utf-8")


class InboundAudioBatcher:
    """
    Converts inbound mu-law frames to PCM16 and regroups them into fixed-size chunks.

    Twilio delivers 20ms frames; the segmenter works on larger chunks
    (`chunk_ms`, default 200ms = 3200 bytes of PCM16).
    """

    def __init__(self, chunk_ms: int = 200):
        self.chunk_bytes = max(pcm16_bytes_for_duration(chunk_ms), 2)
        self._pending = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def add(self, ulaw_payload: bytes) -> List[bytes]:
        if not ulaw_payload:
            return []
        self._pending.extend(ulaw_to_linear16(ulaw_payload))
        chunks: List[bytes] = []
        while len(self._pending) >= self.chunk_bytes:
            chunks.append(bytes(self._pending[: self.chunk_bytes]))
            del self._pending[: self.chunk_bytes]
        return chunks

    def drain(self) -> bytes:
        remainder = bytes(self._pending)
        self._pending.clear()
        return remainder


class TwilioCallControl:
    """Hang-up and transfer through the Twilio REST API (blocking SDK run in a thread)."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        transfer_number: str = "",
        settle_seconds: float = 2.0,
        client: Optional[Any] = None,
    ):
        self._client = client
        # Lets the last reply finish playing before the call is redirected
        self.settle_seconds = settle_seconds
        if self._client is None and account_sid and auth_token:
            self._client = TwilioClient(account_sid, auth_token)
        self.transfer_number = transfer_number

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def hangup(self, call_sid: str) -> bool:
        if not self._client or not call_sid:
            logger.warning("Cannot hangup - missing Twilio client or call_sid", call_sid=call_sid)
            return False
        try:
            await asyncio.sleep(self.settle_seconds)
            await asyncio.to_thread(lambda: self._client.calls(call_sid).update(status="completed"))
        except Exception as e:
            logger.error("Failed to hang up call", call_sid=call_sid, error=str(e))
            return False
        logger.info("Call hung up", call_sid=call_sid)
        return True

    async def transfer(self, call_sid: str) -> bool:
        if not self._client or not call_sid or not self.transfer_number:
            logger.warning("Cannot transfer - missing Twilio client, call_sid or TRANSFER_NUMBER", call_sid=call_sid)
            return False

        response = VoiceResponse()
        response.dial(self.transfer_number)
        twiml = str(response)
        try:
            await asyncio.sleep(self.settle_seconds)
            await asyncio.to_thread(lambda: self._client.calls(call_sid).update(twiml=twiml))
        except Exception as e:
            logger.error("Failed to transfer call", call_sid=call_sid, error=str(e))
            return False
        logger.info("Call transferred", call_sid=call_sid)
        return True


@dataclass
class StreamState:
    """State for one Twilio media stream."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    is_active: bool = True
    mark_sequence: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)  # RTT samples in ms

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


class TwilioMediaChannel:
    """
    `OutboundChannel` over a Twilio media stream.

    Replies are written as 20ms media frames plus a mark; call end requests are
    translated into REST hang-up or transfer.
    """

    def __init__(self, state: StreamState, send_text: SendText, call_control: Optional[TwilioCallControl] = None):
        self.state = state
        self._send_text = send_text
        self._call_control = call_control
        self.closed = False

    async def _send(self, message: str) -> None:
        try:
            await self._send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", call_sid=self.state.call_sid, error=str(e))
            raise

    def _next_mark(self) -> str:
        self.state.mark_sequence += 1
        name = f"reply_{self.state.mark_sequence}"
        self.state.pending_marks[name] = time.time()
        return name

    def create_audio_messages(self, audio_bytes: bytes) -> List[str]:
        return [create_media_message(self.state.stream_sid, frame) for frame in chunk_audio(audio_bytes, TWILIO_FRAME_SIZE)]

    async def send(self, event: OutboundEvent) -> None:
        if self.closed or not self.state.is_active:
            logger.debug("Dropping reply for closed stream", call_sid=self.state.call_sid)
            return
        for message in self.create_audio_messages(event.audio_bytes):
            await self._send(message)
        await self._send(create_mark_message(self.state.stream_sid, self._next_mark()))

    def handle_mark(self, event: TwilioMarkEvent) -> float:
        """Record a mark acknowledgment; returns the round-trip time in ms (0 if unknown)."""
        rtt_ms = 0.0
        send_time = self.state.pending_marks.pop(event.name, None)
        if send_time:
            rtt_ms = (time.time() - send_time) * 1000
            self.state.mark_rtt_samples.append(rtt_ms)
            # Keep only last 20 samples
            if len(self.state.mark_rtt_samples) > 20:
                self.state.mark_rtt_samples.pop(0)
        logger.debug("Mark acknowledged", mark_name=event.name, rtt_ms=round(rtt_ms, 2))
        return rtt_ms

    async def call_ended(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        logger.info(
            "Stream notified of call end",
            call_sid=self.state.call_sid,
            reason=reason,
            avg_mark_rtt_ms=round(self.state.avg_mark_rtt_ms, 2),
        )

        if self._call_control is None or not self.state.is_active:
            return
        if reason == END_REASON_TRANSFER:
            await self._call_control.transfer(self.state.call_sid)
        elif reason in (END_REASON_GOODBYE, END_REASON_INACTIVITY):
            await self._call_control.hangup(self.state.call_sid)


class CallPipelineLike(Protocol):
    async def attach_channel(self, call_sid: str, channel: Any) -> Any:
        ...

    async def ingest_audio(self, call_sid: str, data: bytes) -> bool:
        ...

    async def notify_call_ended(self, call_sid: str) -> None:
        ...


class TwilioStreamHandler:
    """
    Drives one Media Streams WebSocket connection into the conversation core.

    `send_text` writes a text frame to the socket.
    """

    def __init__(
        self,
        pipeline: CallPipelineLike,
        send_text: SendText,
        *,
        inbound_chunk_ms: int = 200,
        call_control: Optional[TwilioCallControl] = None,
    ):
        self.pipeline = pipeline
        self._send_text = send_text
        self._call_control = call_control
        self._batcher = InboundAudioBatcher(inbound_chunk_ms)
        self.channel: Optional[TwilioMediaChannel] = None
        self.frames_received = 0

    @property
    def call_sid(self) -> str:
        return self.channel.state.call_sid if self.channel else ""

    @property
    def is_active(self) -> bool:
        return self.channel is not None and self.channel.state.is_active

    async def handle_message(self, raw_message: str | bytes) -> None:
        event_type, event = parse_twilio_message(raw_message)

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio stream connected")
        elif event_type == TwilioEventType.START:
            await self._handle_start(event)
        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
        elif event_type == TwilioEventType.MARK:
            if self.channel:
                self.channel.handle_mark(event)
        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", call_sid=self.call_sid, digit=event.digit)
        elif event_type == TwilioEventType.STOP:
            await self.stop()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        state = StreamState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
        )
        self.channel = TwilioMediaChannel(state, self._send_text, self._call_control)
        logger.info("Stream started", stream_sid=event.stream_sid, call_sid=event.call_sid)
        await self.pipeline.attach_channel(event.call_sid, self.channel)

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self.is_active or event.track not in ("inbound", "inbound_track"):
            return
        self.frames_received += 1
        for chunk in self._batcher.add(event.payload):
            await self.pipeline.ingest_audio(self.call_sid, chunk)

    async def stop(self) -> None:
        """Stream stopped (or socket closed): hand over remaining audio and end the call."""
        if not self.is_active:
            return
        remainder = self._batcher.drain()
        if remainder:
            await self.pipeline.ingest_audio(self.call_sid, remainder)
        self.channel.state.is_active = False
        logger.info("Stream stopped", stream_sid=self.channel.state.stream_sid, call_sid=self.call_sid)
        await self.pipeline.notify_call_ended(self.call_sid)
