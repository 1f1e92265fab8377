"""
Configuration management for the Bill Dispute Caller.

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

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # LLM Provider (Groq/OpenAI)
    # - Default is Groq for the lowest first-token latency.
    # - Set LLM_PROVIDER=openai + OPENAI_API_KEY/OPENAI_MODEL to use ChatGPT.
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Bill extraction always goes through OpenAI (vision + file inputs)
    extraction_model: str = "gpt-4o-mini"

    # Speech synthesis
    tts_provider: str = "elevenlabs"  # "elevenlabs" | "openai"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "f5HLTX707KIM4SzJYzSz"
    elevenlabs_model_id: str = "eleven_flash_v2_5"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"
    audio_cache_ttl_seconds: float = 300.0

    # Listening (seconds; Twilio <Gather> attributes)
    greeting_timeout_seconds: int = 5
    turn_timeout_seconds: int = 5
    turn_speech_timeout: str = "0.5"
    no_input_timeout_seconds: int = 2

    # Call flow
    max_greeting_attempts: int = 3
    carry_context_in_urls: bool = True

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def voice_id(self) -> str:
        """Default voice for the active speech provider."""
        if self.tts_provider == "openai":
            return self.openai_tts_voice
        return self.elevenlabs_voice_id

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.twilio_phone_number:
            missing.append("TWILIO_PHONE_NUMBER")

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

        tts = (self.tts_provider or "elevenlabs").strip().lower()
        if tts not in ("elevenlabs", "openai"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'elevenlabs' or 'openai'."
            )

        if tts == "elevenlabs" and not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if tts == "openai" and not self.openai_api_key and "OPENAI_API_KEY" not in missing:
            missing.append("OPENAI_API_KEY")

        if missing:
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
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            extraction_model=self.extraction_model,
            tts_provider=self.tts_provider,
            voice_id=self.voice_id,
            audio_cache_ttl_seconds=self.audio_cache_ttl_seconds,
            greeting_timeout_seconds=self.greeting_timeout_seconds,
            turn_timeout_seconds=self.turn_timeout_seconds,
            turn_speech_timeout=self.turn_speech_timeout,
            no_input_timeout_seconds=self.no_input_timeout_seconds,
            max_greeting_attempts=self.max_greeting_attempts,
            carry_context_in_urls=self.carry_context_in_urls,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            twilio_number_set=bool(self.twilio_phone_number),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
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
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        extraction_model=os.getenv("EXTRACTION_MODEL", "gpt-4o-mini"),

        # Speech synthesis
        tts_provider=os.getenv("TTS_PROVIDER", "elevenlabs").strip().lower(),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", "f5HLTX707KIM4SzJYzSz"),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_flash_v2_5"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        audio_cache_ttl_seconds=_get_float("AUDIO_CACHE_TTL_SECONDS", 300.0),

        # Listening
        greeting_timeout_seconds=_get_int("GREETING_TIMEOUT_SECONDS", 5),
        turn_timeout_seconds=_get_int("TURN_TIMEOUT_SECONDS", 5),
        turn_speech_timeout=os.getenv("TURN_SPEECH_TIMEOUT", "0.5"),
        no_input_timeout_seconds=_get_int("NO_INPUT_TIMEOUT_SECONDS", 2),

        # Call flow
        max_greeting_attempts=_get_int("MAX_GREETING_ATTEMPTS", 3),
        carry_context_in_urls=_get_bool("CARRY_CONTEXT_IN_URLS", True),
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
