"""
Utterance segmentation for inbound call audio (16-bit PCM, 8kHz mono).

Each call owns one `AudioBuffer`; the `AudioSegmenter` holds no per-call state
of its own. A segment is cut from the buffer only when:

- (a) buffered bytes >= `chunk_bytes` and at least `min_chunks` voiced chunks
  arrived since the last cut, or
- (b) `max_silence_chunks` consecutive silent chunks followed buffered audio, or
- (c) a force flush is requested (call ending).

Silent chunks are never buffered; they only advance the silence counter.
When (a) or (b) first becomes true a debounce timer is armed so that chunks
arriving within `debounce_ms` join the same segment. At most one segment per
call is being processed at a time; audio that arrives meanwhile is buffered and
a single follow-up pass runs once the in-flight one finishes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from src.callcore.audio import is_silent_pcm16

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AudioChunk:
    """Raw inbound PCM16 bytes plus arrival time."""
    data: bytes
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class UtteranceSegment:
    audio: bytes
    started_at: float
    ended_at: float
    chunk_count: int
    forced: bool = False

    @property
    def duration_ms(self) -> float:
        # 8kHz, 2 bytes per sample
        return len(self.audio) / 16.0


@dataclass(frozen=True)
class SegmentationSettings:
    chunk_bytes: int = 4096
    min_chunks: int = 2
    silence_threshold: float = 500
    max_silence_chunks: int = 10
    debounce_ms: int = 200

    @classmethod
    def from_config(cls, config: Any) -> "SegmentationSettings":
        return cls(
            chunk_bytes=config.segment_chunk_bytes,
            min_chunks=config.segment_min_chunks,
            silence_threshold=config.silence_amplitude_threshold,
            max_silence_chunks=config.max_silence_chunks,
            debounce_ms=config.segment_debounce_ms,
        )


@dataclass
class AudioBuffer:
    """Per-call segmentation state, owned by the call's session."""
    chunks: List[AudioChunk] = field(default_factory=list)
    byte_count: int = 0
    chunk_count: int = 0
    silence_count: int = 0
    processing: bool = False
    follow_up: bool = False
    debounce: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    released: bool = False

    @property
    def is_empty(self) -> bool:
        return self.byte_count == 0

    def reset(self) -> None:
        self.chunks = []
        self.byte_count = 0
        self.chunk_count = 0
        self.silence_count = 0

    def cancel_debounce(self) -> None:
        if self.debounce is not None:
            self.debounce.cancel()
            self.debounce = None


SegmentHandler = Callable[[str, UtteranceSegment], Awaitable[None]]


class AudioSegmenter:
    """Cuts utterance segments out of per-call audio buffers and hands them to `on_segment`."""

    def __init__(self, settings: SegmentationSettings, on_segment: Optional[SegmentHandler] = None):
        self.settings = settings
        self._on_segment = on_segment

    def set_handler(self, on_segment: SegmentHandler) -> None:
        self._on_segment = on_segment

    def is_silent(self, data: bytes) -> bool:
        return is_silent_pcm16(data, self.settings.silence_threshold)

    def ready(self, buffer: AudioBuffer) -> bool:
        """Whether the buffer currently satisfies an emission condition (a) or (b)."""
        if buffer.is_empty:
            return False
        s = self.settings
        if buffer.byte_count >= s.chunk_bytes and buffer.chunk_count >= s.min_chunks:
            return True
        return buffer.silence_count >= s.max_silence_chunks

    def take_segment(self, buffer: AudioBuffer, *, force: bool = False) -> Optional[UtteranceSegment]:
        """Cut a segment if an emission condition holds (or `force` with audio buffered)."""
        if buffer.is_empty:
            return None
        if not force and not self.ready(buffer):
            return None

        segment = UtteranceSegment(
            audio=b"".join(c.data for c in buffer.chunks),
            started_at=buffer.chunks[0].received_at,
            ended_at=buffer.chunks[-1].received_at,
            chunk_count=buffer.chunk_count,
            forced=force,
        )
        buffer.reset()
        return segment

    def ingest(self, call_sid: str, buffer: AudioBuffer, chunk: AudioChunk) -> List[UtteranceSegment]:
        """
        Add one chunk to the call's buffer.

        Returns the segments whose processing started synchronously (only
        possible with debounce disabled); debounced segments start later.
        """
        if buffer.released or not chunk.data:
            return []

        if self.is_silent(chunk.data):
            buffer.silence_count += 1
        else:
            buffer.chunks.append(chunk)
            buffer.byte_count += len(chunk.data)
            buffer.chunk_count += 1
            buffer.silence_count = 0

        if buffer.processing:
            buffer.follow_up = True
            return []

        segment = self._schedule(call_sid, buffer)
        return [segment] if segment is not None else []

    def _schedule(self, call_sid: str, buffer: AudioBuffer) -> Optional[UtteranceSegment]:
        if not self.ready(buffer):
            return None
        if self.settings.debounce_ms <= 0:
            return self._start_pass(call_sid, buffer)
        if buffer.debounce is None:
            loop = asyncio.get_running_loop()
            buffer.debounce = loop.call_later(
                self.settings.debounce_ms / 1000.0,
                self._on_debounce,
                call_sid,
                buffer,
            )
        return None

    def _on_debounce(self, call_sid: str, buffer: AudioBuffer) -> None:
        buffer.debounce = None
        if buffer.released or buffer.processing:
            return
        self._start_pass(call_sid, buffer)

    def _start_pass(self, call_sid: str, buffer: AudioBuffer) -> Optional[UtteranceSegment]:
        segment = self.take_segment(buffer)
        if segment is None:
            return None

        buffer.cancel_debounce()
        buffer.processing = True
        buffer.follow_up = False
        logger.debug(
            "Utterance segment emitted",
            call_sid=call_sid,
            bytes=len(segment.audio),
            chunks=segment.chunk_count,
        )
        buffer.task = asyncio.get_running_loop().create_task(self._run_pass(call_sid, buffer, segment))
        return segment

    async def _run_pass(self, call_sid: str, buffer: AudioBuffer, segment: UtteranceSegment) -> None:
        try:
            await self.process(call_sid, segment)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Segment handler failed", call_sid=call_sid)
        finally:
            buffer.processing = False
            buffer.task = None

        if buffer.released:
            return
        if buffer.follow_up:
            buffer.follow_up = False
            if self.ready(buffer):
                self._start_pass(call_sid, buffer)

    async def process(self, call_sid: str, segment: UtteranceSegment) -> None:
        """Run the segment handler inline (used when draining a call)."""
        if self._on_segment is not None:
            await self._on_segment(call_sid, segment)

    def flush(self, buffer: AudioBuffer) -> Optional[UtteranceSegment]:
        """Force-cut whatever audio is buffered. Does not run the handler."""
        buffer.cancel_debounce()
        return self.take_segment(buffer, force=True)

    def release(self, buffer: AudioBuffer) -> None:
        """Drop buffered audio and pending timers; the buffer accepts nothing afterwards."""
        buffer.cancel_debounce()
        buffer.reset()
        buffer.follow_up = False
        buffer.released = True
