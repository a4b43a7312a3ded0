"""
Configuration management for the call-center conversation pipeline.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

SUPPORTED_STT_PROVIDERS = ("deepgram", "openai")
SUPPORTED_TTS_PROVIDERS = ("openai", "cartesia")
SUPPORTED_LLM_PROVIDERS = ("groq", "openai")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Language
    # - default_language is the conversational language at call start ("en" or "hi")
    default_language: str = "hi"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    transfer_number: str = ""

    # Speech providers (ordered fallback chains, comma separated)
    stt_providers: str = "deepgram,openai"
    tts_providers: str = "openai,cartesia"
    stt_min_confidence: float = 0.5
    provider_timeout_seconds: float = 5.0

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2-phonecall"

    # OpenAI (STT / TTS / LLM)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"

    # Cartesia (TTS)
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_voice_id_hi: str = "3b554273-4299-48b9-9aaf-eefd438e3941"

    # Groq (LLM)
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    llm_max_tokens: int = 150
    llm_temperature: float = 0.7
    language_classifier_enabled: bool = False
    system_prompt: str = ""
    system_prompt_file: str = ""

    # Segmentation (16-bit PCM, 8kHz mono)
    segment_chunk_bytes: int = 4096
    segment_min_chunks: int = 2
    silence_amplitude_threshold: int = 500
    max_silence_chunks: int = 10
    segment_debounce_ms: int = 200
    inbound_chunk_ms: int = 200

    # Sessions
    max_history_turns: int = 20
    max_concurrent_calls: int = 100
    inactivity_timeout_seconds: float = 30.0
    sweep_interval_seconds: float = 5.0
    drain_timeout_seconds: float = 5.0

    # Analytics
    events_webhook_url: str = ""

    # Agent settings
    agent_name: str = "Asha"
    company_name: str = "Customer Care"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def stt_provider_chain(self) -> tuple[str, ...]:
        return _split_chain(self.stt_providers)

    @property
    def tts_provider_chain(self) -> tuple[str, ...]:
        return _split_chain(self.tts_providers)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")

        for name in self.stt_provider_chain:
            if name not in SUPPORTED_STT_PROVIDERS:
                raise ConfigError(
                    f"Invalid STT provider '{name}'. Expected one of: {', '.join(SUPPORTED_STT_PROVIDERS)}."
                )
        for name in self.tts_provider_chain:
            if name not in SUPPORTED_TTS_PROVIDERS:
                raise ConfigError(
                    f"Invalid TTS provider '{name}'. Expected one of: {', '.join(SUPPORTED_TTS_PROVIDERS)}."
                )
        if not self.stt_provider_chain:
            missing.append("STT_PROVIDERS")
        if not self.tts_provider_chain:
            missing.append("TTS_PROVIDERS")

        if "deepgram" in self.stt_provider_chain and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if "cartesia" in self.tts_provider_chain and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in SUPPORTED_LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        needs_openai = (
            provider == "openai"
            or "openai" in self.stt_provider_chain
            or "openai" in self.tts_provider_chain
        )
        if needs_openai and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.default_language not in ("en", "hi"):
            raise ConfigError(
                f"Invalid DEFAULT_LANGUAGE '{self.default_language}'. Expected 'en' or 'hi'."
            )

        if missing:
            # Preserve order, drop duplicates
            missing = list(dict.fromkeys(missing))
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            default_language=self.default_language,
            stt_providers=list(self.stt_provider_chain),
            tts_providers=list(self.tts_provider_chain),
            stt_min_confidence=self.stt_min_confidence,
            provider_timeout_seconds=self.provider_timeout_seconds,
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            segment_chunk_bytes=self.segment_chunk_bytes,
            segment_min_chunks=self.segment_min_chunks,
            max_silence_chunks=self.max_silence_chunks,
            segment_debounce_ms=self.segment_debounce_ms,
            max_history_turns=self.max_history_turns,
            max_concurrent_calls=self.max_concurrent_calls,
            inactivity_timeout_seconds=self.inactivity_timeout_seconds,
            events_webhook_set=bool(self.events_webhook_url),
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _split_chain(value: str) -> tuple[str, ...]:
    return tuple(part.strip().lower() for part in (value or "").split(",") if part.strip())


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    default_language_raw = os.getenv("DEFAULT_LANGUAGE", "hi").strip().lower()
    default_language = "en" if default_language_raw.startswith("en") else "hi"

    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Language
        default_language=default_language,

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        transfer_number=os.getenv("TRANSFER_NUMBER", ""),

        # Speech providers
        stt_providers=os.getenv("STT_PROVIDERS", "deepgram,openai"),
        tts_providers=os.getenv("TTS_PROVIDERS", "openai,cartesia"),
        stt_min_confidence=_get_float("STT_MIN_CONFIDENCE", 0.5),
        provider_timeout_seconds=_get_float("PROVIDER_TIMEOUT_SECONDS", 5.0),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2-phonecall"),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),

        # Cartesia
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_voice_id_hi=os.getenv("CARTESIA_VOICE_ID_HI", "3b554273-4299-48b9-9aaf-eefd438e3941"),

        # Groq
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 150),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        language_classifier_enabled=_get_bool("LANGUAGE_CLASSIFIER_ENABLED", False),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        system_prompt_file=os.getenv("SYSTEM_PROMPT_FILE", ""),

        # Segmentation
        segment_chunk_bytes=_get_int("SEGMENT_CHUNK_BYTES", 4096),
        segment_min_chunks=_get_int("SEGMENT_MIN_CHUNKS", 2),
        silence_amplitude_threshold=_get_int("SILENCE_AMPLITUDE_THRESHOLD", 500),
        max_silence_chunks=_get_int("MAX_SILENCE_CHUNKS", 10),
        segment_debounce_ms=_get_int("SEGMENT_DEBOUNCE_MS", 200),
        inbound_chunk_ms=_get_int("INBOUND_CHUNK_MS", 200),

        # Sessions
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 20),
        max_concurrent_calls=_get_int("MAX_CONCURRENT_CALLS", 100),
        inactivity_timeout_seconds=_get_float("INACTIVITY_TIMEOUT_SECONDS", 30.0),
        sweep_interval_seconds=_get_float("SWEEP_INTERVAL_SECONDS", 5.0),
        drain_timeout_seconds=_get_float("DRAIN_TIMEOUT_SECONDS", 5.0),

        # Analytics
        events_webhook_url=os.getenv("EVENTS_WEBHOOK_URL", ""),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Asha"),
        company_name=os.getenv("COMPANY_NAME", "Customer Care"),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
