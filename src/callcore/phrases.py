"""Fixed caller-facing lines, per language."""

from __future__ import annotations

_PHRASES: dict[str, dict[str, str]] = {
    "no_input": {
        "en": "I didn't catch that. Could you please speak a bit louder or repeat what you said?",
        "hi": "मुझे कुछ सुनाई नहीं दिया। कृपया थोड़ा तेज़ बोलें या फिर से बताएं?",
    },
    "error": {
        "en": (
            "I apologize, but I'm having a small technical difficulty. "
            "Could you please repeat what you said? I'm here to help you."
        ),
        "hi": "माफ़ करें, मुझे तकनीकी समस्या हो रही है। कृपया फिर से बताएं? मैं आपकी मदद करने के लिए यहाँ हूँ।",
    },
    "transfer": {
        "en": "Please stay on the line while I connect you to one of my colleagues.",
        "hi": "कृपया लाइन पर बने रहें, मैं आपको अपने सहयोगी से जोड़ रही हूँ।",
    },
    "goodbye": {
        "en": "Thank you for calling! Have a great day!",
        "hi": "धन्यवाद! आपका दिन शुभ हो।",
    },
}


def phrase(kind: str, language: str) -> str:
    """Return the `kind` line in `language`, falling back to Hindi."""
    options = _PHRASES[kind]
    return options.get(language) or options["hi"]
