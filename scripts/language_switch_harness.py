"""
Quick language switching harness.

Runs a few deterministic assertions for English <-> Hindi switching rules.

Usage:
  python scripts/language_switch_harness.py
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.callcore.conversation import ConversationHistory
from src.callcore.language import detect_language_heuristic, detect_switch_request


def main() -> None:
    history = ConversationHistory(max_turns=20, language="hi")

    def feed(text: str) -> tuple[bool, str | None]:
        target = detect_switch_request(text, history.current_language)
        history.append("user", text, target or history.current_language)
        if target is None:
            return False, None
        return history.set_language(target), target

    # 1) Plain speech never switches, whatever its script
    switched, target = feed("Hello, I have a question about my bill.")
    assert switched is False and target is None
    assert history.current_language == "hi"
    assert detect_language_heuristic("Hello, I have a question about my bill.") == "en"

    # 2) Explicit English request (Hinglish) switches
    switched, target = feed("kya aap english mein baat kar sakte hain")
    assert switched is True and target == "en"
    assert history.current_language == "en"

    # 3) Asking for the language already in use is not a switch
    switched, target = feed("Please speak in English")
    assert switched is False and target is None

    # 4) Devanagari request switches back
    switched, target = feed("कृपया हिंदी में बात करें")
    assert switched is True and target == "hi"
    assert history.current_language == "hi"

    assert history.language_switches == 2
    assert len(history) == 4

    print("OK")


if __name__ == "__main__":
    main()
