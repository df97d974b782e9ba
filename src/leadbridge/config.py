"""
Configuration management for the lead bridging service.

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

DEFAULT_HOLD_MUSIC_URL = "https://twimlets.com/holdmusic?Bucket=com.twilio.music.classical"


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
    sales_team_phone_number: str = ""
    validate_twilio_signature: bool = False

    # ElevenLabs Conversational AI
    elevenlabs_api_key: str = ""
    elevenlabs_agent_id: str = ""

    # Agent persona and scripts
    agent_name: str = "Heather"
    company_name: str = "First Light Home Care"
    callback_number: str = ""
    agent_prompt: str = ""
    agent_prompt_file: str = ""
    agent_silence_timeout_ms: int = 3000

    # Bridging policy
    # - join_timeout_seconds: how long both legs get to show up in the room
    # - min_contact_turns: contact turns that make a no-signal conversation "ready"
    # - intent_priorities: "name=priority,..." overrides for the intent policy table
    join_timeout_seconds: float = 30.0
    min_contact_turns: int = 3
    hold_music_url: str = DEFAULT_HOLD_MUSIC_URL
    intent_priorities: str = ""

    # Sales agent hold while the contact is still talking to the voice agent.
    # - agent_hold_seconds: silence kept on the line after the hold audio
    # - agent_hold_audio_url: optional audio file played (looped) first
    agent_hold_seconds: int = 900
    agent_hold_audio_url: str = ""
    agent_hold_audio_loops: int = 10

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def media_stream_url(self) -> str:
        """Get the WebSocket URL for Twilio Media Streams."""
        return f"wss://{self.public_host}/media-stream"

    @property
    def conference_callback_url(self) -> str:
        return f"{self.base_url}/webhooks/conference"

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
        if not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if not self.elevenlabs_agent_id:
            missing.append("ELEVENLABS_AGENT_ID")

        if self.join_timeout_seconds <= 0:
            raise ConfigError(
                f"Invalid JOIN_TIMEOUT_SECONDS '{self.join_timeout_seconds}'. Expected a positive number."
            )
        if self.min_contact_turns < 0:
            raise ConfigError(
                f"Invalid MIN_CONTACT_TURNS '{self.min_contact_turns}'. Expected zero or more."
            )
        if self.agent_hold_seconds <= 0:
            raise ConfigError(
                f"Invalid AGENT_HOLD_SECONDS '{self.agent_hold_seconds}'. Expected a positive number."
            )

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
            agent_name=self.agent_name,
            company_name=self.company_name,
            join_timeout_seconds=self.join_timeout_seconds,
            min_contact_turns=self.min_contact_turns,
            intent_priorities=self.intent_priorities or "default",
            agent_hold_seconds=self.agent_hold_seconds,
            agent_hold_audio_set=bool(self.agent_hold_audio_url),
            validate_twilio_signature=self.validate_twilio_signature,
            sales_team_number_set=bool(self.sales_team_phone_number),
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
            elevenlabs_agent_set=bool(self.elevenlabs_agent_id),
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
        sales_team_phone_number=os.getenv("SALES_TEAM_PHONE_NUMBER", ""),
        validate_twilio_signature=_get_bool("VALIDATE_TWILIO_SIGNATURE", False),

        # ElevenLabs
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_agent_id=os.getenv("ELEVENLABS_AGENT_ID", ""),

        # Agent
        agent_name=os.getenv("AGENT_NAME", "Heather"),
        company_name=os.getenv("COMPANY_NAME", "First Light Home Care"),
        callback_number=os.getenv("CALLBACK_NUMBER", ""),
        agent_prompt=os.getenv("AGENT_PROMPT", ""),
        agent_prompt_file=os.getenv("AGENT_PROMPT_FILE", ""),
        agent_silence_timeout_ms=_get_int("AGENT_SILENCE_TIMEOUT_MS", 3000),

        # Bridging policy
        join_timeout_seconds=_get_float("JOIN_TIMEOUT_SECONDS", 30.0),
        min_contact_turns=_get_int("MIN_CONTACT_TURNS", 3),
        hold_music_url=os.getenv("HOLD_MUSIC_URL", DEFAULT_HOLD_MUSIC_URL),
        intent_priorities=os.getenv("INTENT_PRIORITIES", ""),

        # Agent hold
        agent_hold_seconds=_get_int("AGENT_HOLD_SECONDS", 900),
        agent_hold_audio_url=os.getenv("AGENT_HOLD_AUDIO_URL", ""),
        agent_hold_audio_loops=_get_int("AGENT_HOLD_AUDIO_LOOPS", 10),
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
