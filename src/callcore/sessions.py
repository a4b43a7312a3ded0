"""
Call session lifecycle.

`CallSession` is the single per-call aggregate: conversation history, audio
buffer, in-flight turn, metrics and outbound channel all hang off it and are
released together when the call ends. `CallSessionManager` is the only thing
that creates or destroys sessions.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from src.callcore.conversation import ConversationHistory
from src.callcore.errors import CapacityExceededError, SessionNotFoundError
from src.callcore.events import CALL_ENDED, CALL_STARTED, EventPublisher
from src.callcore.segmenter import AudioBuffer, AudioSegmenter
from src.callcore.transport import END_REASON_INACTIVITY, END_REASON_SHUTDOWN, OutboundChannel

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"


class TurnState(str, Enum):
    IDLE = "idle"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    EMITTING = "emitting"


@dataclass
class CallMetrics:
    """Per-call counters. Only ever increase; averages are running means."""
    chunks_received: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0
    turns: int = 0
    language_switches: int = 0
    avg_latency_ms: float = 0.0
    avg_confidence: float = 0.0
    total_words: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def record_processed(self, *, latency_ms: float, confidence: float, words: int) -> None:
        self.chunks_processed += 1
        self.turns += 1
        self.total_words += words

        # Running average
        n = self.chunks_processed
        self.avg_latency_ms = (self.avg_latency_ms * (n - 1) + latency_ms) / n
        self.avg_confidence = (self.avg_confidence * (n - 1) + confidence) / n

    def record_failed(self, stage: str, error: str) -> None:
        self.chunks_failed += 1
        self.record_error(stage, error)

    def record_error(self, stage: str, error: str) -> None:
        self.errors.append({"stage": stage, "error": error})
        # Keep only the last 20 errors
        if len(self.errors) > 20:
            self.errors.pop(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks_received": self.chunks_received,
            "chunks_processed": self.chunks_processed,
            "chunks_failed": self.chunks_failed,
            "turns": self.turns,
            "language_switches": self.language_switches,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "avg_confidence": round(self.avg_confidence, 3),
            "total_words": self.total_words,
            "errors": len(self.errors),
        }


@dataclass
class CallSession:
    call_sid: str
    conversation: ConversationHistory
    started_at: float
    last_activity_at: float
    state: SessionState = SessionState.CONNECTING
    audio: AudioBuffer = field(default_factory=AudioBuffer)
    metrics: CallMetrics = field(default_factory=CallMetrics)
    turn_state: TurnState = TurnState.IDLE
    channel: Optional[OutboundChannel] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    end_reason: str = ""
    ended_at: Optional[float] = None
    teardown_started: bool = False

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def accepts_audio(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.ACTIVE)

    @property
    def current_language(self) -> str:
        return self.conversation.current_language

    @property
    def in_flight(self) -> Optional[asyncio.Task]:
        return self.audio.task


class CallSessionManager:
    """
    Owns the session map (guarded by an asyncio.Lock) and the inactivity sweep.

    `end()` is idempotent: the second call for the same call SID is a no-op.
    """

    def __init__(
        self,
        segmenter: AudioSegmenter,
        *,
        max_concurrent_calls: int = 100,
        max_history_turns: int = 20,
        default_language: str = "hi",
        inactivity_timeout_seconds: float = 30.0,
        sweep_interval_seconds: float = 5.0,
        drain_timeout_seconds: float = 5.0,
        events: Optional[EventPublisher] = None,
        clock: Clock = time.monotonic,
    ):
        self.segmenter = segmenter
        self.max_concurrent_calls = max_concurrent_calls
        self.max_history_turns = max_history_turns
        self.default_language = default_language
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.drain_timeout_seconds = drain_timeout_seconds
        self.events = events or EventPublisher()
        self.clock = clock

        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()
        self._end_tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None

        self.total_started = 0
        self.total_ended = 0
        self.total_rejected = 0

    @classmethod
    def from_config(cls, config: Any, segmenter: AudioSegmenter, **kwargs: Any) -> "CallSessionManager":
        return cls(
            segmenter,
            max_concurrent_calls=config.max_concurrent_calls,
            max_history_turns=config.max_history_turns,
            default_language=config.default_language,
            inactivity_timeout_seconds=config.inactivity_timeout_seconds,
            sweep_interval_seconds=config.sweep_interval_seconds,
            drain_timeout_seconds=config.drain_timeout_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, call_sid: str) -> Optional[CallSession]:
        return self._sessions.get(call_sid)

    def require(self, call_sid: str) -> CallSession:
        session = self._sessions.get(call_sid)
        if session is None or session.state == SessionState.ENDED:
            raise SessionNotFoundError(call_sid)
        return session

    def history_for(self, call_sid: str) -> Optional[ConversationHistory]:
        session = self._sessions.get(call_sid)
        return session.conversation if session is not None else None

    def is_active(self, call_sid: str) -> bool:
        session = self._sessions.get(call_sid)
        return session is not None and session.is_active

    def list_active(self) -> List[str]:
        return [sid for sid, s in self._sessions.items() if s.state == SessionState.ACTIVE]

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        call_sid: str,
        channel: Optional[OutboundChannel] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CallSession:
        """
        Create the session for `call_sid` (CONNECTING, or ACTIVE when a channel is given).

        Starting an already-known call returns the existing session.
        Raises SessionNotFoundError while the previous session for `call_sid` is
        still tearing down.
        Raises CapacityExceededError once `max_concurrent_calls` sessions exist.
        """
        async with self._lock:
            existing = self._sessions.get(call_sid)
            if existing is not None and not existing.teardown_started:
                if channel is not None:
                    self._attach(existing, channel)
                return existing
            if existing is not None:
                raise SessionNotFoundError(call_sid)

            if len(self._sessions) >= self.max_concurrent_calls:
                self.total_rejected += 1
                logger.warning(
                    "Call rejected: capacity reached",
                    call_sid=call_sid,
                    max_concurrent_calls=self.max_concurrent_calls,
                )
                raise CapacityExceededError(self.max_concurrent_calls)

            now = self.clock()
            session = CallSession(
                call_sid=call_sid,
                conversation=ConversationHistory(
                    max_turns=self.max_history_turns,
                    language=self.default_language,
                ),
                started_at=now,
                last_activity_at=now,
                metadata=dict(metadata or {}),
            )
            if channel is not None:
                self._attach(session, channel)
            self._sessions[call_sid] = session
            self.total_started += 1

        logger.info(
            "Call session started",
            call_sid=call_sid,
            state=session.state.value,
            active_sessions=len(self._sessions),
        )
        self.events.publish(CALL_STARTED, call_sid, language=session.current_language)
        return session

    def _attach(self, session: CallSession, channel: OutboundChannel) -> None:
        session.channel = channel
        if session.state == SessionState.CONNECTING:
            session.state = SessionState.ACTIVE
        session.last_activity_at = self.clock()

    async def attach_channel(self, call_sid: str, channel: OutboundChannel) -> CallSession:
        """Bind the live transport to a call, creating the session if the stream arrived first."""
        async with self._lock:
            session = self._sessions.get(call_sid)
            if session is not None:
                if session.teardown_started:
                    raise SessionNotFoundError(call_sid)
                self._attach(session, channel)
                logger.info("Channel attached", call_sid=call_sid)
                return session
        return await self.start(call_sid, channel=channel)

    def record_activity(self, call_sid: str) -> bool:
        session = self._sessions.get(call_sid)
        if session is None or session.state == SessionState.ENDED:
            return False
        session.last_activity_at = self.clock()
        return True

    def request_end(self, call_sid: str, reason: str) -> bool:
        """Move the call to ENDING and finish teardown in the background."""
        session = self._sessions.get(call_sid)
        if session is None or not session.accepts_audio:
            return False
        session.state = SessionState.ENDING
        task = asyncio.get_running_loop().create_task(self.end(call_sid, reason))
        self._end_tasks.add(task)
        task.add_done_callback(self._end_tasks.discard)
        return True

    async def end(self, call_sid: str, reason: str = "hangup", *, drain: bool = False) -> bool:
        """
        End a call and release everything it owns.

        With `drain`, the in-flight turn is allowed to finish and any buffered
        audio is processed (so the final utterance reaches history) before
        teardown; nothing is emitted because the session is no longer ACTIVE.
        Returns False when the call was unknown or already ending/ended.
        """
        async with self._lock:
            session = self._sessions.get(call_sid)
            if session is None or session.teardown_started:
                return False
            session.teardown_started = True
            session.state = SessionState.ENDING
            session.end_reason = reason

        if drain:
            await self._drain(session)
        else:
            await self._cancel_in_flight(session)

        stats = session.conversation.stats()
        self.segmenter.release(session.audio)
        session.conversation.clear()
        session.turn_state = TurnState.IDLE
        session.state = SessionState.ENDED
        session.ended_at = self.clock()

        async with self._lock:
            if self._sessions.get(call_sid) is session:
                del self._sessions[call_sid]
            self.total_ended += 1

        channel, session.channel = session.channel, None
        if channel is not None:
            try:
                await channel.call_ended(reason)
            except Exception as e:
                logger.warning("Transport call-end notification failed", call_sid=call_sid, error=str(e))

        logger.info(
            "Call session ended",
            call_sid=call_sid,
            reason=reason,
            duration_s=round(session.ended_at - session.started_at, 2),
            turns=session.metrics.turns,
            active_sessions=len(self._sessions),
        )
        self.events.publish(
            CALL_ENDED,
            call_sid,
            reason=reason,
            duration_s=round(session.ended_at - session.started_at, 2),
            messages=stats.total_messages,
            languages_switched=stats.languages_switched,
            metrics=session.metrics.to_dict(),
        )
        return True

    async def _cancel_in_flight(self, session: CallSession) -> None:
        task = session.in_flight
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("In-flight turn failed during cancel", call_sid=session.call_sid, error=str(e))

    async def _drain(self, session: CallSession) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.drain_timeout_seconds
        # A finishing pass may start one follow-up pass; wait for that one too.
        while True:
            task = session.in_flight
            if task is None or task.done() or task is asyncio.current_task():
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("In-flight turn did not finish before drain timeout", call_sid=session.call_sid)
                await self._cancel_in_flight(session)
                break
            await asyncio.wait({task}, timeout=remaining)

        segment = self.segmenter.flush(session.audio)
        if segment is None:
            return
        try:
            await asyncio.wait_for(
                self.segmenter.process(session.call_sid, segment),
                timeout=self.drain_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Final segment not processed before drain timeout", call_sid=session.call_sid)

    async def shutdown(self) -> None:
        await self.stop()
        await asyncio.gather(*(self.end(sid, END_REASON_SHUTDOWN) for sid in list(self._sessions)))
        if self._end_tasks:
            await asyncio.gather(*self._end_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Inactivity sweep
    # ------------------------------------------------------------------

    async def sweep_once(self) -> List[str]:
        """End every call idle for longer than the inactivity timeout; returns their SIDs."""
        now = self.clock()
        async with self._lock:
            expired = [
                sid
                for sid, s in self._sessions.items()
                if s.accepts_audio and now - s.last_activity_at > self.inactivity_timeout_seconds
            ]

        for call_sid in expired:
            logger.info("Ending inactive call", call_sid=call_sid, timeout_s=self.inactivity_timeout_seconds)
        # Teardown waits on call control per call; end them side by side.
        results = await asyncio.gather(*(self.end(sid, END_REASON_INACTIVITY) for sid in expired))
        return [sid for sid, ended in zip(expired, results) if ended]

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Session sweep failed")

    def start_sweeper(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def stats(self) -> Dict[str, Any]:
        return {
            "active_calls": len(self.list_active()),
            "sessions": len(self._sessions),
            "total_started": self.total_started,
            "total_ended": self.total_ended,
            "total_rejected": self.total_rejected,
            "max_concurrent_calls": self.max_concurrent_calls,
        }
