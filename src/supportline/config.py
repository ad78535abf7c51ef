"""
Settings for the support line, read once from the environment (and `.env`).

`init_config()` is the startup gate: it raises ConfigError when a credential
the call path depends on is absent, so the server never answers a call it
cannot finish.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

_TRUTHY = ("true", "1", "yes", "on")


class ConfigError(Exception):
    """Missing or inconsistent settings."""


@dataclass(frozen=True)
class Config:
    """Immutable settings snapshot; build via get_config()."""

    # Server
    public_host: str
    port: int = 5050
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # OpenAI Realtime (speech backend)
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-10-01"
    openai_realtime_voice: str = "alloy"
    openai_realtime_temperature: float = 0.7
    openai_realtime_vad_threshold: float = 0.3
    openai_realtime_prefix_padding_ms: int = 500
    openai_realtime_turn_silence_ms: int = 800
    openai_realtime_create_response: bool = True
    openai_realtime_interrupt_response: bool = True
    openai_realtime_instructions: str = ""
    openai_realtime_instructions_file: str = ""
    session_settle_ms: int = 100

    # OpenAI chat / transcription (labelling, adjudication, Whisper)
    openai_chat_model: str = "gpt-4-turbo-preview"
    openai_transcription_model: str = "whisper-1"
    whisper_fallback_enabled: bool = True
    whisper_interval_ms: int = 3000

    # Knowledge base
    knowledge_base_path: str = "data/knowledge_base.json"

    # Confidence thresholds (turns / raw recognition observations)
    confidence_high: float = 0.9
    confidence_medium: float = 0.6
    observation_confidence_high: float = 0.8
    observation_confidence_medium: float = 0.5

    # Speech segmentation / barge-in
    speech_start_debounce_ms: int = 500
    silence_min_frames: int = 50
    silence_window_frames: int = 20
    barge_in_min_elapsed_ms: int = 100

    # Call forwarding
    enable_call_forwarding: bool = False
    support_agent_number: str = ""
    forwarding_threshold: int = 3
    forwarding_recent_turns: int = 7
    transfer_grace_seconds: float = 1.5
    transfer_pause_seconds: float = 2.0

    # Call recording
    recordings_dir: str = "recordings"

    # Ticketing (Kayako)
    ticketing_enabled: bool = True
    kayako_api_url: str = ""
    kayako_username: str = ""
    kayako_password: str = ""
    kayako_default_agent_id: str = "309"
    kayako_default_team_id: str = "1"
    kayako_product_field: str = "80"
    ticket_tags: str = "voice-ai"

    # Agent settings
    agent_name: str = "Support Assistant"
    company_name: str = "Kayako"

    @property
    def ws_url(self) -> str:
        """Media Streams endpoint Twilio connects to."""
        return f"wss://{self.public_host}/media-stream"

    @property
    def forwarding_active(self) -> bool:
        return self.enable_call_forwarding and bool(self.support_agent_number)

    def _required(self) -> List[Tuple[str, str]]:
        required = [
            ("PUBLIC_HOST", self.public_host),
            ("OPENAI_API_KEY", self.openai_api_key),
            ("OPENAI_REALTIME_MODEL", self.openai_realtime_model),
            ("TWILIO_ACCOUNT_SID", self.twilio_account_sid),
            ("TWILIO_AUTH_TOKEN", self.twilio_auth_token),
        ]
        if self.enable_call_forwarding:
            required.append(("SUPPORT_AGENT_NUMBER", self.support_agent_number))
        if self.ticketing_enabled:
            required += [
                ("KAYAKO_API_URL", self.kayako_api_url),
                ("KAYAKO_USERNAME", self.kayako_username),
                ("KAYAKO_PASSWORD", self.kayako_password),
            ]
        return required

    def validate(self) -> None:
        """Raise ConfigError listing every unset required variable, or on inverted thresholds."""
        for label, medium, high in (
            ("CONFIDENCE", self.confidence_medium, self.confidence_high),
            ("OBSERVATION_CONFIDENCE", self.observation_confidence_medium, self.observation_confidence_high),
        ):
            if not 0.0 <= medium <= high <= 1.0:
                raise ConfigError(f"Invalid thresholds: expected 0 <= {label}_MEDIUM <= {label}_HIGH <= 1.")

        unset = [name for name, value in self._required() if not value]
        if unset:
            raise ConfigError(f"Unset environment variables: {', '.join(unset)}. Please check your .env file.")

    def log_config(self) -> None:
        # Secrets are reported as set / not set only.
        logger.info(
            "Settings in effect",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            vad_threshold=self.openai_realtime_vad_threshold,
            turn_silence_ms=self.openai_realtime_turn_silence_ms,
            chat_model=self.openai_chat_model,
            whisper_fallback_enabled=self.whisper_fallback_enabled,
            call_forwarding=self.forwarding_active,
            forwarding_threshold=self.forwarding_threshold,
            ticketing_enabled=self.ticketing_enabled,
            kayako_api_url=self.kayako_api_url or None,
            knowledge_base_path=self.knowledge_base_path,
            twilio_account=f"{self.twilio_account_sid[:6]}..." if self.twilio_account_sid else None,
            openai_key_present=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    return default if raw is None else raw.strip().lower() in _TRUTHY


def _env_number(key: str, default, cast):
    # Unparseable values fall back to the default rather than failing startup.
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring malformed setting", key=key, value=raw)
        return default


def _get_int(key: str, default: int) -> int:
    return _env_number(key, default, int)


def _get_float(key: str, default: float) -> float:
    return _env_number(key, default, float)


@lru_cache(maxsize=1)
def get_config() -> Config:
    """Process-wide settings; tests reset them with `get_config.cache_clear()`."""
    env = os.getenv
    return Config(
        public_host=env("PUBLIC_HOST", ""),
        port=_get_int("PORT", 5050),
        log_level=env("LOG_LEVEL", "INFO").upper(),

        twilio_account_sid=env("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=env("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=env("TWILIO_PHONE_NUMBER", ""),

        openai_api_key=env("OPENAI_API_KEY", ""),
        openai_realtime_model=env("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-10-01"),
        openai_realtime_voice=env("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_temperature=_get_float("OPENAI_REALTIME_TEMPERATURE", 0.7),
        openai_realtime_vad_threshold=_get_float("OPENAI_REALTIME_VAD_THRESHOLD", 0.3),
        openai_realtime_prefix_padding_ms=_get_int("OPENAI_REALTIME_PREFIX_PADDING_MS", 500),
        openai_realtime_turn_silence_ms=_get_int("OPENAI_REALTIME_TURN_SILENCE_MS", 800),
        openai_realtime_create_response=_get_bool("OPENAI_REALTIME_CREATE_RESPONSE", True),
        openai_realtime_interrupt_response=_get_bool("OPENAI_REALTIME_INTERRUPT_RESPONSE", True),
        openai_realtime_instructions=env("OPENAI_REALTIME_INSTRUCTIONS", ""),
        openai_realtime_instructions_file=env("OPENAI_REALTIME_INSTRUCTIONS_FILE", ""),
        session_settle_ms=_get_int("SESSION_SETTLE_MS", 100),

        openai_chat_model=env("OPENAI_CHAT_MODEL", "gpt-4-turbo-preview"),
        openai_transcription_model=env("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
        whisper_fallback_enabled=_get_bool("WHISPER_FALLBACK_ENABLED", True),
        whisper_interval_ms=_get_int("WHISPER_INTERVAL_MS", 3000),

        knowledge_base_path=env("KNOWLEDGE_BASE_PATH", "data/knowledge_base.json"),

        confidence_high=_get_float("CONFIDENCE_HIGH", 0.9),
        confidence_medium=_get_float("CONFIDENCE_MEDIUM", 0.6),
        observation_confidence_high=_get_float("OBSERVATION_CONFIDENCE_HIGH", 0.8),
        observation_confidence_medium=_get_float("OBSERVATION_CONFIDENCE_MEDIUM", 0.5),

        speech_start_debounce_ms=_get_int("SPEECH_START_DEBOUNCE_MS", 500),
        silence_min_frames=_get_int("SILENCE_MIN_FRAMES", 50),
        silence_window_frames=_get_int("SILENCE_WINDOW_FRAMES", 20),
        barge_in_min_elapsed_ms=_get_int("BARGE_IN_MIN_ELAPSED_MS", 100),

        enable_call_forwarding=_get_bool("ENABLE_CALL_FORWARDING", False),
        support_agent_number=env("SUPPORT_AGENT_NUMBER", ""),
        forwarding_threshold=_get_int("FORWARDING_THRESHOLD", 3),
        forwarding_recent_turns=_get_int("FORWARDING_RECENT_TURNS", 7),
        transfer_grace_seconds=_get_float("TRANSFER_GRACE_SECONDS", 1.5),
        transfer_pause_seconds=_get_float("TRANSFER_PAUSE_SECONDS", 2.0),

        recordings_dir=env("RECORDINGS_DIR", "recordings"),

        ticketing_enabled=_get_bool("TICKETING_ENABLED", True),
        kayako_api_url=env("KAYAKO_API_URL", "").rstrip("/"),
        kayako_username=env("KAYAKO_USERNAME", ""),
        kayako_password=env("KAYAKO_PASSWORD", ""),
        kayako_default_agent_id=env("KAYAKO_DEFAULT_AGENT_ID", "309"),
        kayako_default_team_id=env("KAYAKO_DEFAULT_TEAM_ID", "1"),
        kayako_product_field=env("KAYAKO_PRODUCT_FIELD", "80"),
        ticket_tags=env("TICKET_TAGS", "voice-ai"),

        agent_name=env("AGENT_NAME", "Support Assistant"),
        company_name=env("COMPANY_NAME", "Kayako"),
    )


def init_config() -> Config:
    """Load, validate and log the settings; call once before serving."""
    config = get_config()
    config.validate()
    config.log_config()
    return config
