"""Exception types."""

from __future__ import annotations


class MeetingTwinError(Exception):
    pass


class ConfigurationError(MeetingTwinError):
    """Missing credentials or unusable settings."""


class DuplicateDeviceError(MeetingTwinError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device '{device_id}' is already registered.")
        self.device_id = device_id


class ConnectionFailure(MeetingTwinError):
    """A recoverable failure of an audio source or transcription session."""


class AudioSourceError(ConnectionFailure):
    pass


class TranscriptionError(ConnectionFailure):
    pass


class AgentError(MeetingTwinError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
