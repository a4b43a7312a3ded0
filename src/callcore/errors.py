"""Typed exceptions for the conversation core.

These are safe to import from the server layer without pulling in provider SDKs.
"""

from __future__ import annotations


class CallCoreError(Exception):
    default_detail: str = "Call pipeline error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ProviderError(CallCoreError):
    """An external speech/LLM provider failed or returned unusable output."""

    default_detail = "Provider request failed"

    def __init__(self, provider: str, detail: str | None = None) -> None:
        super().__init__(f"{provider}: {detail or self.default_detail}")
        self.provider = provider


class SessionNotFoundError(CallCoreError):
    default_detail = "Unknown or ended call session"

    def __init__(self, call_sid: str) -> None:
        super().__init__(f"{self.default_detail}: {call_sid}")
        self.call_sid = call_sid


class CapacityExceededError(CallCoreError):
    default_detail = "Maximum concurrent calls reached"

    def __init__(self, limit: int) -> None:
        super().__init__(f"{self.default_detail} ({limit})")
        self.limit = limit
