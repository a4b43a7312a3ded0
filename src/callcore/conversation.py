"""
Per-call conversation history and language state.

Each call owns exactly one `ConversationHistory` (held by its `CallSession`).
`ConversationState` is the call-scoped facade the turn coordinator uses; it
resolves histories through the session manager and never touches another
call's state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional

import structlog

logger = structlog.get_logger(__name__)

Role = Literal["user", "assistant", "system"]
_ROLES: tuple[str, ...] = ("user", "assistant", "system")


@dataclass(frozen=True)
class ConversationTurn:
    """A single message in the conversation. Immutable once appended."""
    role: str
    content: str
    language: str
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationStats:
    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    languages_switched: int = 0


class ConversationHistory:
    """Ordered conversation history with a rolling window (oldest dropped first)."""

    def __init__(self, *, max_turns: int = 20, language: str = "hi"):
        if max_turns <= 0:
            raise ValueError("max_turns must be positive")
        self.max_turns = max_turns
        self.current_language = language
        self.language_switches = 0
        self._turns: List[ConversationTurn] = []
        self._appended = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, role: str, content: str, language: str) -> Optional[ConversationTurn]:
        """Append a turn; returns None once the history has been released."""
        if role not in _ROLES:
            raise ValueError(f"Invalid role: {role}")
        if self._closed:
            return None
        turn = ConversationTurn(role=role, content=content, language=language)
        self._turns.append(turn)
        self._appended += 1
        self._trim()
        return turn

    def _trim(self) -> None:
        if len(self._turns) > self.max_turns:
            self._turns = self._turns[-self.max_turns:]

    def set_language(self, language: str) -> bool:
        """Set the current language; returns True if it changed."""
        if self._closed or language == self.current_language:
            return False
        self.current_language = language
        self.language_switches += 1
        return True

    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI chat format."""
        return [turn.to_message() for turn in self._turns]

    def stats(self) -> ConversationStats:
        return ConversationStats(
            total_messages=self._appended,
            user_messages=sum(1 for t in self._turns if t.role == "user"),
            assistant_messages=sum(1 for t in self._turns if t.role == "assistant"),
            languages_switched=self.language_switches,
        )

    def clear(self) -> None:
        """Release all turns; further appends are ignored."""
        self._turns.clear()
        self._closed = True

    def __len__(self) -> int:
        return len(self._turns)


class ConversationState:
    """
    Call-scoped access to conversation histories.

    `resolve` maps a call SID to its live history (or None for unknown/ended
    calls). Reads on unknown calls return empty values; writes are no-ops.
    """

    def __init__(
        self,
        resolve: Callable[[str], Optional[ConversationHistory]],
        *,
        default_language: str = "hi",
    ):
        self._resolve = resolve
        self.default_language = default_language

    def append(self, call_sid: str, role: str, content: str, language: str) -> bool:
        history = self._resolve(call_sid)
        if history is None:
            logger.debug("Append ignored for unknown call", call_sid=call_sid, role=role)
            return False
        return history.append(role, content, language) is not None

    def get_history(self, call_sid: str) -> List[ConversationTurn]:
        history = self._resolve(call_sid)
        return history.turns() if history is not None else []

    def get_current_language(self, call_sid: str) -> str:
        history = self._resolve(call_sid)
        return history.current_language if history is not None else self.default_language

    def set_current_language(self, call_sid: str, language: str) -> bool:
        history = self._resolve(call_sid)
        if history is None:
            return False
        changed = history.set_language(language)
        if changed:
            logger.info("Conversation language switched", call_sid=call_sid, language=language)
        return changed

    def clear(self, call_sid: str) -> None:
        history = self._resolve(call_sid)
        if history is not None:
            history.clear()

    def stats(self, call_sid: str) -> ConversationStats:
        history = self._resolve(call_sid)
        return history.stats() if history is not None else ConversationStats()
