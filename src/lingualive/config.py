"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional
import yaml

from .errors import ConfigurationError
from .models import SessionConfig

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")
DEFAULT_MODEL = "models/gemini-2.5-flash-native-audio-preview-09-2025"
DEFAULT_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)


@dataclass
class AudioConfig:
    input_sample_rate_hz: int = 16000
    output_sample_rate_hz: int = 24000
    channels: int = 1
    frame_size: int = 4096


@dataclass
class AgentConfig:
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    endpoint: str = DEFAULT_ENDPOINT
    open_timeout_s: float = 15.0
    allow_insecure: bool = False


@dataclass
class PlaybackConfig:
    max_lookahead_s: Optional[float] = 30.0
    meter_interval_s: float = 1 / 30
    outbound_queue_size: int = 8


@dataclass
class EngineConfig:
    input_device_name: Optional[str] = None
    output_device_name: Optional[str] = None
    audio: AudioConfig = field(default_factory=AudioConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


def resolve_api_key(configured: Optional[str]) -> Optional[str]:
    if configured:
        return configured
    for name in API_KEY_ENV_VARS:
        value = os.environ.get(name)
        if value and value != "undefined":
            return value
    return None


def validate_agent_config(agent: AgentConfig) -> str:
    """Return the usable API key or raise ``ConfigurationError``."""
    api_key = resolve_api_key(agent.api_key)
    if not api_key:
        raise ConfigurationError(
            "API key is missing. Set agent.api_key or the GEMINI_API_KEY environment variable."
        )
    if not agent.model:
        raise ConfigurationError("agent.model must not be empty.")
    if not agent.endpoint.startswith(("wss://", "ws://")):
        raise ConfigurationError(f"agent.endpoint is not a websocket URL: {agent.endpoint}")
    return api_key


def default_config() -> EngineConfig:
    return EngineConfig()


def load_config(path: str) -> EngineConfig:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    audio = AudioConfig(**data.get("audio", {}))
    agent = AgentConfig(**data.get("agent", {}))
    playback = PlaybackConfig(**data.get("playback", {}))
    session = SessionConfig(**data.get("session", {}))

    return EngineConfig(
        input_device_name=data.get("input_device_name"),
        output_device_name=data.get("output_device_name"),
        audio=audio,
        agent=agent,
        playback=playback,
        session=session,
    )


def save_config(path: str, config: EngineConfig) -> None:
    data = {
        "input_device_name": config.input_device_name,
        "output_device_name": config.output_device_name,
        "audio": {
            "input_sample_rate_hz": config.audio.input_sample_rate_hz,
            "output_sample_rate_hz": config.audio.output_sample_rate_hz,
            "channels": config.audio.channels,
            "frame_size": config.audio.frame_size,
        },
        "agent": {
            "api_key": config.agent.api_key,
            "model": config.agent.model,
            "endpoint": config.agent.endpoint,
            "open_timeout_s": config.agent.open_timeout_s,
            "allow_insecure": config.agent.allow_insecure,
        },
        "playback": {
            "max_lookahead_s": config.playback.max_lookahead_s,
            "meter_interval_s": config.playback.meter_interval_s,
            "outbound_queue_size": config.playback.outbound_queue_size,
        },
        "session": {
            "language": config.session.language,
            "proficiency": config.session.proficiency,
            "voice": config.session.voice,
            "mode": config.session.mode,
        },
    }
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
