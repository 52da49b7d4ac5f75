"""Configuration system for StreamBridge.

Supports loading from YAML files, dicts, or programmatic construction
via Pydantic models. The config drives the gateway serializer, the realtime
connection, the negotiated audio format and the bridge's limits.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from streambridge.core.events import AudioFormat
from streambridge.serializers.twilio import GATEWAY_SERIALIZERS

API_KEY_ENV = "OPENAI_API_KEY"


class TelephonyConfig(BaseModel):
    """Configuration for the telephony gateway side."""

    type: str = "signalwire"
    listen_host: str = "0.0.0.0"
    listen_port: int = 8765
    listen_path: str = "/media-stream"
    # Public wss:// URL of listen_path, used in the call webhook document
    public_url: str = ""
    webhook_path: str = "/incoming-call"

    @field_validator("type")
    @classmethod
    def _known_gateway(cls, value: str) -> str:
        if value not in GATEWAY_SERIALIZERS:
            raise ValueError(f"Unknown telephony gateway '{value}'")
        return value


class RealtimeConfig(BaseModel):
    """Configuration for the realtime API side."""

    url: str = "wss://api.openai.com/v1/realtime"
    model: str = "gpt-4o-realtime-preview"
    api_key: str = ""
    open_timeout: float = 10.0
    # Send response.create right after connecting so the agent speaks first
    greet_on_connect: bool = True

    @field_validator("api_key", mode="before")
    @classmethod
    def _drop_unexpanded(cls, value: Any) -> Any:
        # "${OPENAI_API_KEY}" left in place when the variable is unset
        if isinstance(value, str) and value.startswith("${"):
            return ""
        return value


class AudioConfig(BaseModel):
    """Audio format used end-to-end for the session."""

    format: AudioFormat = AudioFormat.G711_ULAW

    @field_validator("format", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class BargeInConfig(BaseModel):
    """Barge-in handling."""

    enabled: bool = True
    # Also detect caller speech locally from gateway audio energy
    local_vad: bool = False
    energy_threshold: float = 200.0
    min_speech_frames: int = 3


class LimitsConfig(BaseModel):
    """Resource limits for each session."""

    outbound_queue_size: int = 256
    read_timeout: float = 1.0
    drain_timeout: float = 2.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class BridgeConfig(BaseModel):
    """Top-level StreamBridge configuration.

    Examples:
        # Programmatic
        config = BridgeConfig(
            telephony=TelephonyConfig(type="twilio"),
            audio=AudioConfig(format="pcm16"),
        )

        # From YAML
        config = BridgeConfig.from_yaml("bridge.yaml")

        # Shorthand
        config = BridgeConfig.from_dict({
            "telephony": "signalwire",
            "audio_format": "pcm16",
            "model": "gpt-4o-realtime-preview",
        })
    """

    telephony: TelephonyConfig = Field(default_factory=TelephonyConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    barge_in: BargeInConfig = Field(default_factory=BargeInConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    # Agent behaviour (instructions, voice, tools, turn_detection...), merged
    # as-is into the session.update sent to the realtime API
    agent: dict[str, Any] = Field(default_factory=dict)

    @property
    def api_key(self) -> str:
        """Configured API key, falling back to the environment."""
        return self.realtime.api_key or os.environ.get(API_KEY_ENV, "")

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load configuration from a YAML file.

        ``${VAR}`` references are expanded from the environment.
        """
        path = Path(path)
        text = os.path.expandvars(path.read_text())
        data = yaml.safe_load(text) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BridgeConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"telephony": {"type": "twilio"}, "audio": {"format": "pcm16"}}

        Shorthand format:
            {"telephony": "twilio", "audio_format": "pcm16", "api_key": "sk-..."}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> BridgeConfig:
        """Normalize and construct config from a raw dict."""
        if isinstance(data.get("telephony"), str):
            data["telephony"] = {"type": data.pop("telephony")}

        flat_mappings = {
            "listen_host": ("telephony", "listen_host"),
            "listen_port": ("telephony", "listen_port"),
            "listen_path": ("telephony", "listen_path"),
            "public_url": ("telephony", "public_url"),
            "model": ("realtime", "model"),
            "api_key": ("realtime", "api_key"),
            "realtime_url": ("realtime", "url"),
            "audio_format": ("audio", "format"),
            "log_level": ("logging", "level"),
        }

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data:
                data.setdefault(section, {})
                data[section][nested_key] = data.pop(flat_key)

        return cls(**data)


def load_config(source: str | Path | dict[str, Any] | BridgeConfig | None = None) -> BridgeConfig:
    """Load a BridgeConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing BridgeConfig,
            or None for defaults.
    """
    if source is None:
        return BridgeConfig()
    if isinstance(source, BridgeConfig):
        return source
    if isinstance(source, dict):
        return BridgeConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if path.exists() and path.suffix in (".yaml", ".yml"):
            return BridgeConfig.from_yaml(path)
        # Gateway name shorthand
        return BridgeConfig.from_dict({"telephony": str(source)})
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `streambridge init`
DEFAULT_CONFIG_YAML = """\
# StreamBridge Configuration

telephony:
  type: signalwire        # signalwire | twilio
  listen_host: 0.0.0.0
  listen_port: 8765
  listen_path: /media-stream
  public_url: ""          # e.g. wss://example.ngrok.app/media-stream
  webhook_path: /incoming-call

realtime:
  model: gpt-4o-realtime-preview
  api_key: ${OPENAI_API_KEY}
  greet_on_connect: true

audio:
  format: g711_ulaw       # g711_ulaw (8kHz) | pcm16 (24kHz, L16@24000h)

barge_in:
  enabled: true
  local_vad: false

limits:
  outbound_queue_size: 256
  read_timeout: 1.0

logging:
  level: INFO

agent:
  instructions: "You are a helpful phone assistant. Greet the caller."
  voice: alloy
  turn_detection:
    type: server_vad
"""
