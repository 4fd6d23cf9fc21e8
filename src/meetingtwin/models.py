"""Data models for MeetingTwin."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


def is_valid_device_id(value: Optional[str]) -> bool:
    """True when ``value`` is a non-empty string that parses as an integer."""
    if value is None:
        return False
    text = str(value).strip()
    if not text:
        return False
    try:
        int(text)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class DeviceConfig:
    device_id: Optional[str]
    label: str
    credential: Optional[str] = None
    sample_rate: int = 16000
    device_name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be a positive integer.")

    @property
    def is_configured(self) -> bool:
        return bool(self.device_id and str(self.device_id).strip())


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    timestamp: float
    confidence: Optional[float] = None
    speaker: Optional[int] = None
    source: Optional[str] = None


@dataclass
class TranscriptEntry:
    timestamp: float
    source: str
    text: str
    confidence: Optional[float] = None


@dataclass
class ReconnectPolicy:
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    max_retries: Optional[int] = None

    def delay_ms(self, retry_count: int) -> int:
        return min(self.base_delay_ms * (2 ** retry_count), self.max_delay_ms)

    def exhausted(self, retry_count: int) -> bool:
        return self.max_retries is not None and retry_count >= self.max_retries
