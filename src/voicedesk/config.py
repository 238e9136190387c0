"""
Configuration management for the voice support orchestrator.

Loads environment variables and provides a strongly-typed configuration object.
Every turn-taking threshold and phrase set is tunable here; the defaults are
starting points, not measured optima.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

from src.voicedesk.errors import ConfigError

load_dotenv()

logger = structlog.get_logger(__name__)

__all__ = ["Config", "ConfigError", "get_config", "init_config"]


DEFAULT_QUESTION_STEMS: Tuple[str, ...] = ("how", "what", "why", "can", "could")
DEFAULT_COURTESY_PHRASES: Tuple[str, ...] = (
    "please",
    "thank you",
    "help me",
    "need help",
    "can you",
    "would you",
)
DEFAULT_GOODBYE_PHRASES: Tuple[str, ...] = (
    "goodbye",
    "bye",
    "thanks",
    "that's all",
    "have a good day",
    "end the call",
)
DEFAULT_CONTINUATION_CUES: Tuple[str, ...] = ("question", "help", "another")
DEFAULT_FILLER_WORDS: Tuple[str, ...] = ("um", "uh", "okay", "oh")
DEFAULT_GRATITUDE_PHRASES: Tuple[str, ...] = (
    "thank you",
    "thanks",
    "appreciate it",
)
DEFAULT_UNRELATED_TOPICS: Tuple[str, ...] = (
    "weather",
    "sports",
    "football",
    "recipe",
    "movie",
    "joke",
    "politics",
    "stock price",
    "lottery",
)


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio (call-control)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_voice: str = "Polly.Amy-Neural"
    twilio_language: str = "en-GB"
    keep_listening_pause_seconds: int = 120

    # Deepgram (transcription)
    deepgram_api_key: str = ""
    deepgram_language: str = "en-US"
    deepgram_endpointing_ms: int = 300
    transcription_buffer_frames: int = 250
    transcription_recreate_interval_seconds: float = 1.0

    # LLM Provider (Groq/OpenAI)
    # - Default is Groq; set LLM_PROVIDER=openai + OPENAI_API_KEY/OPENAI_MODEL to use ChatGPT.
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 200
    llm_temperature: float = 0.7

    # Agent persona
    agent_name: str = "Ava"
    company_name: str = "Acme Support"
    greeting: str = "Hi! How can I help you today?"
    max_history_turns: int = 10

    # Utterance segmentation
    silence_threshold_ms: int = 800
    min_utterance_chars: int = 10
    generation_cooldown_ms: int = 400
    loop_tick_ms: int = 100
    question_stems: Tuple[str, ...] = DEFAULT_QUESTION_STEMS
    courtesy_phrases: Tuple[str, ...] = DEFAULT_COURTESY_PHRASES
    goodbye_phrases: Tuple[str, ...] = DEFAULT_GOODBYE_PHRASES
    continuation_cues: Tuple[str, ...] = DEFAULT_CONTINUATION_CUES

    # Interruption
    soft_interrupt_min_chars: int = 8
    confirmed_interrupt_min_chars: int = 15
    interrupt_grace_ms: int = 1500
    soft_pause_timeout_ms: int = 2000
    filler_words: Tuple[str, ...] = DEFAULT_FILLER_WORDS
    gratitude_phrases: Tuple[str, ...] = DEFAULT_GRATITUDE_PHRASES

    # Reply streaming
    ack_timeout_ms: int = 2000
    ack_filler_text: str = "One moment."
    min_first_chunk_chars: int = 10
    chunk_spacing_ms: int = 700
    unrelated_topics: Tuple[str, ...] = DEFAULT_UNRELATED_TOPICS
    quick_replies_enabled: bool = True

    # Generator retries and fallback
    generator_timeout_seconds: float = 8.0
    generator_max_attempts: int = 3
    retry_backoff_base_ms: int = 1000
    retry_backoff_max_ms: int = 8000
    rate_limit_backoff_ms: int = 2000
    response_cache_ttl_seconds: float = 24 * 60 * 60

    # Dispatch
    max_dispatch_failures: int = 3

    @property
    def media_ws_url(self) -> str:
        """Get the WebSocket URL for Twilio media streams."""
        return f"wss://{self.public_host}/media"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.generator_max_attempts < 1:
            raise ConfigError("GENERATOR_MAX_ATTEMPTS must be at least 1.")
        if self.max_dispatch_failures < 1:
            raise ConfigError("MAX_DISPATCH_FAILURES must be at least 1.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            agent_name=self.agent_name,
            company_name=self.company_name,
            silence_threshold_ms=self.silence_threshold_ms,
            min_utterance_chars=self.min_utterance_chars,
            generation_cooldown_ms=self.generation_cooldown_ms,
            soft_interrupt_min_chars=self.soft_interrupt_min_chars,
            confirmed_interrupt_min_chars=self.confirmed_interrupt_min_chars,
            interrupt_grace_ms=self.interrupt_grace_ms,
            ack_timeout_ms=self.ack_timeout_ms,
            chunk_spacing_ms=self.chunk_spacing_ms,
            generator_timeout_seconds=self.generator_timeout_seconds,
            generator_max_attempts=self.generator_max_attempts,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


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


def _get_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Get a comma-separated phrase list from environment variable."""
    raw = os.getenv(key)
    if raw is None:
        return default
    items = tuple(p.strip().lower() for p in raw.split(",") if p.strip())
    return items or default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_voice=os.getenv("TWILIO_VOICE", "Polly.Amy-Neural"),
        twilio_language=os.getenv("TWILIO_LANGUAGE", "en-GB"),
        keep_listening_pause_seconds=_get_int("KEEP_LISTENING_PAUSE_SECONDS", 120),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),
        transcription_buffer_frames=_get_int("TRANSCRIPTION_BUFFER_FRAMES", 250),
        transcription_recreate_interval_seconds=_get_float("TRANSCRIPTION_RECREATE_INTERVAL_SECONDS", 1.0),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 200),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),

        # Agent persona
        agent_name=os.getenv("AGENT_NAME", "Ava"),
        company_name=os.getenv("COMPANY_NAME", "Acme Support"),
        greeting=os.getenv("GREETING", "Hi! How can I help you today?"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),

        # Utterance segmentation
        silence_threshold_ms=_get_int("SILENCE_THRESHOLD_MS", 800),
        min_utterance_chars=_get_int("MIN_UTTERANCE_CHARS", 10),
        generation_cooldown_ms=_get_int("GENERATION_COOLDOWN_MS", 400),
        loop_tick_ms=_get_int("LOOP_TICK_MS", 100),
        question_stems=_get_list("QUESTION_STEMS", DEFAULT_QUESTION_STEMS),
        courtesy_phrases=_get_list("COURTESY_PHRASES", DEFAULT_COURTESY_PHRASES),
        goodbye_phrases=_get_list("GOODBYE_PHRASES", DEFAULT_GOODBYE_PHRASES),
        continuation_cues=_get_list("CONTINUATION_CUES", DEFAULT_CONTINUATION_CUES),

        # Interruption
        soft_interrupt_min_chars=_get_int("SOFT_INTERRUPT_MIN_CHARS", 8),
        confirmed_interrupt_min_chars=_get_int("CONFIRMED_INTERRUPT_MIN_CHARS", 15),
        interrupt_grace_ms=_get_int("INTERRUPT_GRACE_MS", 1500),
        soft_pause_timeout_ms=_get_int("SOFT_PAUSE_TIMEOUT_MS", 2000),
        filler_words=_get_list("FILLER_WORDS", DEFAULT_FILLER_WORDS),
        gratitude_phrases=_get_list("GRATITUDE_PHRASES", DEFAULT_GRATITUDE_PHRASES),

        # Reply streaming
        ack_timeout_ms=_get_int("ACK_TIMEOUT_MS", 2000),
        ack_filler_text=os.getenv("ACK_FILLER_TEXT", "One moment."),
        min_first_chunk_chars=_get_int("MIN_FIRST_CHUNK_CHARS", 10),
        chunk_spacing_ms=_get_int("CHUNK_SPACING_MS", 700),
        unrelated_topics=_get_list("UNRELATED_TOPICS", DEFAULT_UNRELATED_TOPICS),
        quick_replies_enabled=_get_bool("QUICK_REPLIES_ENABLED", True),

        # Generator retries and fallback
        generator_timeout_seconds=_get_float("GENERATOR_TIMEOUT_SECONDS", 8.0),
        generator_max_attempts=_get_int("GENERATOR_MAX_ATTEMPTS", 3),
        retry_backoff_base_ms=_get_int("RETRY_BACKOFF_BASE_MS", 1000),
        retry_backoff_max_ms=_get_int("RETRY_BACKOFF_MAX_MS", 8000),
        rate_limit_backoff_ms=_get_int("RATE_LIMIT_BACKOFF_MS", 2000),
        response_cache_ttl_seconds=_get_float("RESPONSE_CACHE_TTL_SECONDS", 24 * 60 * 60),

        # Dispatch
        max_dispatch_failures=_get_int("MAX_DISPATCH_FAILURES", 3),
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
