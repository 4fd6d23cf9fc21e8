"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .models import DeviceConfig, ReconnectPolicy


@dataclass
class DeviceSettings:
    label: str
    device_id: Optional[str] = None
    device_name: Optional[str] = None


@dataclass
class TranscriptionConfig:
    api_key: Optional[str] = None
    language: str = "en"
    model: str = "nova-2"
    keepalive_seconds: float = 10.0


@dataclass
class AgentConfig:
    provider: str = "groq"
    api_key: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = 1024
    skip_llm: bool = False
    system_prompt: Optional[str] = None


def _default_devices() -> Dict[str, DeviceSettings]:
    return {
        "mic": DeviceSettings(label="user"),
        "system": DeviceSettings(label="caller"),
    }


@dataclass
class Config:
    meetings_dir: str = "meetings"
    sample_rate: int = 16000
    confidence_threshold: float = 0.85
    devices: Dict[str, DeviceSettings] = field(default_factory=_default_devices)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    agent: AgentConfig = field(default_factory=AgentConfig)

    def device_configs(self) -> Dict[str, DeviceConfig]:
        return {
            key: DeviceConfig(
                device_id=settings.device_id,
                label=settings.label,
                credential=self.transcription.api_key,
                sample_rate=self.sample_rate,
                device_name=settings.device_name,
            )
            for key, settings in self.devices.items()
        }


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    devices = _default_devices()
    for key, values in (data.get("devices") or {}).items():
        values = dict(values or {})
        if values.get("device_id") is not None:
            values["device_id"] = str(values["device_id"])
        base = devices.get(key)
        values.setdefault("label", base.label if base else key)
        devices[key] = DeviceSettings(**values)

    agent = AgentConfig(**(data.get("agent") or {}))
    agent.skip_llm = _as_bool(agent.skip_llm)

    return Config(
        meetings_dir=data.get("meetings_dir", "meetings"),
        sample_rate=int(data.get("sample_rate", 16000)),
        confidence_threshold=float(data.get("confidence_threshold", 0.85)),
        devices=devices,
        transcription=TranscriptionConfig(**(data.get("transcription") or {})),
        reconnect=ReconnectPolicy(**(data.get("reconnect") or {})),
        agent=agent,
    )


def save_config(path: str, config: Config) -> None:
    data = {
        "meetings_dir": config.meetings_dir,
        "sample_rate": config.sample_rate,
        "confidence_threshold": config.confidence_threshold,
        "devices": {
            key: {
                "label": settings.label,
                "device_id": settings.device_id,
                "device_name": settings.device_name,
            }
            for key, settings in config.devices.items()
        },
        "transcription": {
            "api_key": config.transcription.api_key,
            "language": config.transcription.language,
            "model": config.transcription.model,
            "keepalive_seconds": config.transcription.keepalive_seconds,
        },
        "reconnect": {
            "base_delay_ms": config.reconnect.base_delay_ms,
            "max_delay_ms": config.reconnect.max_delay_ms,
            "max_retries": config.reconnect.max_retries,
        },
        "agent": {
            "provider": config.agent.provider,
            "api_key": config.agent.api_key,
            "model": config.agent.model,
            "max_tokens": config.agent.max_tokens,
            "skip_llm": config.agent.skip_llm,
            "system_prompt": config.agent.system_prompt,
        },
    }
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)


def apply_env(config: Config, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Override settings from environment variables (e.g. a ``.env`` file)."""
    env = os.environ if environ is None else environ

    if env.get("DEEPGRAM_API_KEY"):
        config.transcription.api_key = env["DEEPGRAM_API_KEY"]
    if env.get("DEEPGRAM_LANGUAGE"):
        config.transcription.language = env["DEEPGRAM_LANGUAGE"]

    for key, var in (("mic", "AUDIO_DEVICE_ID_MIC"), ("system", "AUDIO_DEVICE_ID_SYSTEM")):
        if var in env:
            settings = config.devices.setdefault(
                key, _default_devices().get(key, DeviceSettings(label=key))
            )
            settings.device_id = env[var]

    agent = config.agent
    if env.get("LLM_PROVIDER"):
        agent.provider = env["LLM_PROVIDER"].lower()
    if agent.provider == "groq":
        agent.api_key = env.get("GROQ_API_KEY") or agent.api_key
        agent.model = env.get("GROQ_MODEL_ID") or agent.model
        if env.get("GROQ_MAX_TOKENS"):
            agent.max_tokens = int(env["GROQ_MAX_TOKENS"])
    else:
        agent.api_key = env.get("ANTHROPIC_API_KEY") or agent.api_key
        agent.model = env.get("CLAUDE_MODEL_ID") or agent.model
    if "SKIP_LLM" in env:
        agent.skip_llm = _as_bool(env["SKIP_LLM"])
    return config


def resolve_config(path: Optional[str] = None, env_file: Optional[str] = None) -> Config:
    load_dotenv(env_file)
    config = load_config(path) if path and os.path.exists(path) else Config()
    return apply_env(config)
