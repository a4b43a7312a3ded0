"""
Best-effort analytics events (call.started, call.ended, turn.processed).

Publishing never blocks or fails the conversational path: each sink delivery
runs as its own task and failures are only logged.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

import httpx
import structlog

from src.callcore.config import get_config

logger = structlog.get_logger(__name__)

CALL_STARTED = "call.started"
CALL_ENDED = "call.ended"
TURN_PROCESSED = "turn.processed"


@dataclass(frozen=True)
class CallEvent:
    name: str
    call_sid: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventSink(ABC):
    name: str = "sink"

    @abstractmethod
    async def send(self, event: CallEvent) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingEventSink(EventSink):
    name = "log"

    async def send(self, event: CallEvent) -> None:
        logger.info("Call event", event_name=event.name, call_sid=event.call_sid, **event.data)


class HttpEventSink(EventSink):
    """POSTs each event as JSON to a webhook URL."""

    name = "http"

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, *, timeout: float = 5.0):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, event: CallEvent) -> None:
        response = await self._client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


class EventPublisher:
    """Fan-out to sinks without awaiting delivery in the caller."""

    def __init__(self, sinks: Sequence[EventSink] = ()):
        self._sinks: List[EventSink] = list(sinks)
        self._pending: Set[asyncio.Task] = set()
        self.published = 0
        self.failed = 0

    @property
    def sinks(self) -> List[EventSink]:
        return list(self._sinks)

    def publish(self, name: str, call_sid: str, **data: Any) -> Optional[CallEvent]:
        if not self._sinks:
            return None

        event = CallEvent(name=name, call_sid=call_sid, data=data)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; event dropped", event_name=name, call_sid=call_sid)
            return None

        for sink in self._sinks:
            task = loop.create_task(self._deliver(sink, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    async def _deliver(self, sink: EventSink, event: CallEvent) -> None:
        try:
            await sink.send(event)
            self.published += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.warning(
                "Event delivery failed",
                sink=sink.name,
                event_name=event.name,
                call_sid=event.call_sid,
                error=str(e),
            )

    async def flush(self, timeout: float = 2.0) -> None:
        """Wait (bounded) for in-flight deliveries."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()

    async def close(self) -> None:
        await self.flush()
        for sink in self._sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.warning("Error closing event sink", sink=sink.name, error=str(e))


def create_event_publisher(config: Optional[Any] = None) -> EventPublisher:
    config = config or get_config()
    sinks: List[EventSink] = [LoggingEventSink()]
    if config.events_webhook_url:
        sinks.append(HttpEventSink(config.events_webhook_url))
    return EventPublisher(sinks)
