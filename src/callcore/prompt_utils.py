from __future__ import annotations

from pathlib import Path
from typing import Iterable

import structlog

from src.callcore.config import Config
from src.callcore.conversation import ConversationTurn

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 20_000

LANGUAGE_LABELS = {"en": "English", "hi": "Hindi"}


def _repo_root() -> Path:
    # src/callcore/prompt_utils.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def read_prompt_file(path: str, *, max_chars: int = _DEFAULT_MAX_PROMPT_CHARS) -> str:
    """Read an operator prompt file (relative paths resolve from the repo root)."""
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Prompt file read failed", path=str(file_path), error=str(e))
        return ""

    content = content.strip()
    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]
    return content


def apply_placeholders(prompt: str, config: Config, *, language: str) -> str:
    if not prompt:
        return ""

    replacements = {
        "{AGENT_NAME}": config.agent_name,
        "{COMPANY_NAME}": config.company_name,
        "{LANGUAGE}": LANGUAGE_LABELS.get(language, language),
    }
    for key, value in replacements.items():
        prompt = prompt.replace(key, value)
    return prompt


def operator_prompt(config: Config, *, language: str) -> str:
    """
    Operator-supplied persona prompt: SYSTEM_PROMPT, else SYSTEM_PROMPT_FILE, else "".
    """
    prompt = (config.system_prompt or "").strip()
    if not prompt:
        prompt = read_prompt_file(config.system_prompt_file)
    return apply_placeholders(prompt, config, language=language)


def format_history(turns: Iterable[ConversationTurn], *, limit: int = 10) -> str:
    """Render the most recent `limit` turns as `ROLE: content` lines."""
    recent = list(turns)[-limit:] if limit > 0 else []
    return "\n".join(f"{turn.role.upper()}: {turn.content}" for turn in recent)
