"""Outbound side of the telephony transport, as seen by the conversation core."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, Protocol, runtime_checkable


# Reasons passed to `OutboundChannel.call_ended`
END_REASON_STOP = "stop"
END_REASON_GOODBYE = "goodbye"
END_REASON_TRANSFER = "transfer"
END_REASON_INACTIVITY = "inactivity"
END_REASON_SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class OutboundEvent:
    """One assistant reply: base64 audio (mu-law 8kHz) plus its text."""
    audio: str
    text: str
    language: str = ""

    @classmethod
    def from_audio(cls, audio: bytes, text: str, language: str = "") -> "OutboundEvent":
        return cls(audio=base64.b64encode(audio).decode("ascii"), text=text, language=language)

    @property
    def audio_bytes(self) -> bytes:
        return base64.b64decode(self.audio) if self.audio else b""

    def to_dict(self) -> Dict[str, Any]:
        return {"audio": self.audio, "text": self.text}


@runtime_checkable
class OutboundChannel(Protocol):
    async def send(self, event: OutboundEvent) -> None:
        ...

    async def call_ended(self, reason: str) -> None:
        ...
