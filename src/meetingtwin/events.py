"""Listener interfaces and capability protocols.

Every component reports what happens to it through a listener object with one
method per event. The base classes below implement each method as a no-op so
subscribers only override what they care about.
"""

from __future__ import annotations

from typing import Protocol

from .models import TranscriptEvent


class AudioListener:
    def on_frame(self, frame: bytes) -> None:
        pass

    def on_level(self, db: float) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class SessionListener:
    def on_connected(self) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_transcript(self, event: TranscriptEvent) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class DeviceListener:
    """Events published by a single MeetingDevice."""

    def on_connected(self) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_transcript(self, event: TranscriptEvent) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class ManagerListener:
    """Device events re-published by DeviceManager, tagged with the device id."""

    def on_transcription(self, device_id: str, event: TranscriptEvent) -> None:
        pass

    def on_device_connected(self, device_id: str) -> None:
        pass

    def on_device_disconnected(self, device_id: str) -> None:
        pass

    def on_device_error(self, device_id: str, error: Exception) -> None:
        pass


class AudioSource(Protocol):
    sample_rate: int

    def initialize(self) -> None:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def subscribe(self, listener: AudioListener) -> None:
        ...


class TranscriptionSession(Protocol):
    def connect(self, sample_rate: int, label: str | None = None) -> None:
        ...

    def send_audio(self, frame: bytes) -> None:
        ...

    def disconnect(self) -> None:
        ...

    def subscribe(self, listener: SessionListener) -> None:
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """The subset of ``asyncio.AbstractEventLoop`` used for reconnect timers."""

    def call_later(self, delay, callback, *args) -> TimerHandle:
        ...
