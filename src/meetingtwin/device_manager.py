"""Meeting device lifecycle and reconnection.

A MeetingDevice pairs one audio source with one transcription session. The
session is connected first; capture only starts once the session reports it
is connected, and any failure of either side tears both down and schedules a
reconnect with exponential backoff. DeviceManager owns a set of devices and
re-publishes their events tagged with the device id.

Everything here runs on a single event loop. Audio sources are expected to
deliver their callbacks on that loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Callable, Dict, List, Optional

from .errors import DuplicateDeviceError
from .events import (
    AudioListener,
    AudioSource,
    DeviceListener,
    ManagerListener,
    Scheduler,
    SessionListener,
    TimerHandle,
    TranscriptionSession,
)
from .models import DeviceConfig, ReconnectPolicy, TranscriptEvent, is_valid_device_id

logger = logging.getLogger("meetingtwin")

AudioFactory = Callable[[DeviceConfig], AudioSource]
SessionFactory = Callable[[DeviceConfig], TranscriptionSession]


class DeviceState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


class _CaptureEvents(AudioListener):
    def __init__(self, device: "MeetingDevice") -> None:
        self._device = device

    def on_frame(self, frame: bytes) -> None:
        self._device._on_frame(frame)

    def on_error(self, error: Exception) -> None:
        self._device._on_capture_error(error)


class _SessionEvents(SessionListener):
    def __init__(self, device: "MeetingDevice") -> None:
        self._device = device

    def on_connected(self) -> None:
        self._device._on_session_connected()

    def on_disconnected(self) -> None:
        self._device._on_session_disconnected()

    def on_transcript(self, event: TranscriptEvent) -> None:
        self._device._on_transcript(event)

    def on_error(self, error: Exception) -> None:
        self._device._on_session_error(error)


class MeetingDevice:
    def __init__(
        self,
        config: DeviceConfig,
        audio_factory: AudioFactory,
        session_factory: SessionFactory,
        policy: Optional[ReconnectPolicy] = None,
        loop: Optional[Scheduler] = None,
    ) -> None:
        self.config = config
        self.policy = policy or ReconnectPolicy()
        self.capture: Optional[AudioSource] = None
        self.session: Optional[TranscriptionSession] = None
        self.state = DeviceState.UNCONFIGURED
        self.expected_running = False
        self.session_connected = False
        self.retry_count = 0
        self._audio_factory = audio_factory
        self._session_factory = session_factory
        self._loop = loop
        self._reconnect_handle: Optional[TimerHandle] = None
        self._capture_ready = False
        self._listeners: List[DeviceListener] = []

    @property
    def label(self) -> str:
        return self.config.label

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def subscribe(self, listener: DeviceListener) -> None:
        self._listeners.append(listener)

    def initialize(self) -> bool:
        if self.capture is not None and self.session is not None:
            return True
        if not self.config.is_configured:
            logger.warning("[%s] No device ID configured. Skipping initialization.", self.label)
            return False

        capture = self._audio_factory(self.config)
        session = self._session_factory(self.config)
        capture.subscribe(_CaptureEvents(self))
        session.subscribe(_SessionEvents(self))
        self.capture = capture
        self.session = session
        self.state = DeviceState.IDLE
        return True

    def start(self) -> None:
        if self.expected_running and self.state in (
            DeviceState.CONNECTING,
            DeviceState.CONNECTED,
            DeviceState.DISCONNECTED,
        ):
            logger.debug("[%s] Already running (%s).", self.label, self.state.value)
            return
        self.expected_running = True
        if not self.initialize():
            return
        self._connect()

    def stop(self) -> None:
        self.expected_running = False
        self._cancel_reconnect()
        self._teardown()
        if self.state is not DeviceState.UNCONFIGURED:
            self.state = DeviceState.STOPPED
        logger.info("[%s] Stopped.", self.label)

    def _connect(self) -> None:
        self.state = DeviceState.CONNECTING
        self.session_connected = False
        try:
            if not self._capture_ready:
                self.capture.initialize()
                self._capture_ready = True
            logger.info(
                "[%s] Connecting transcription at %s Hz (attempt %s).",
                self.label,
                self.capture.sample_rate,
                self.retry_count + 1,
            )
            self.session.connect(self.capture.sample_rate, self.label)
        except Exception as exc:
            logger.error("[%s] Connection failed: %s", self.label, exc)
            self._publish_error(exc)
            self._handle_failure()

    def _on_session_connected(self) -> None:
        if not self.expected_running or self.state is not DeviceState.CONNECTING:
            logger.debug(
                "[%s] Ignoring stale connected event (%s).", self.label, self.state.value
            )
            return
        logger.info("[%s] Transcription connected.", self.label)
        self.session_connected = True
        self.state = DeviceState.CONNECTED
        try:
            self.capture.start()
        except Exception as exc:
            logger.error("[%s] Failed to start capture after connection: %s", self.label, exc)
            self._publish_error(exc)
            self._handle_failure()
            return
        self.retry_count = 0
        for listener in list(self._listeners):
            listener.on_connected()

    def _on_session_disconnected(self) -> None:
        logger.info("[%s] Transcription disconnected.", self.label)
        self.session_connected = False
        self._handle_failure()

    def _on_session_error(self, error: Exception) -> None:
        logger.error("[%s] Transcription error: %s", self.label, error)
        self._publish_error(error)

    def _on_capture_error(self, error: Exception) -> None:
        logger.error("[%s] Audio capture error: %s", self.label, error)
        self._publish_error(error)
        self._handle_failure()

    def _on_frame(self, frame: bytes) -> None:
        if self.state is DeviceState.CONNECTED and self.session_connected:
            self.session.send_audio(frame)

    def _on_transcript(self, event: TranscriptEvent) -> None:
        tagged = dataclasses.replace(event, source=self.label)
        for listener in list(self._listeners):
            listener.on_transcript(tagged)

    def _publish_error(self, error: Exception) -> None:
        for listener in list(self._listeners):
            listener.on_error(error)

    def _handle_failure(self) -> None:
        if not self.expected_running:
            return
        if self._reconnect_handle is not None or self.state is DeviceState.DISCONNECTED:
            return

        # Marked before teardown so failure reports raised during it are ignored.
        self.state = DeviceState.DISCONNECTED
        self._teardown()
        for listener in list(self._listeners):
            listener.on_disconnected()

        if self.policy.exhausted(self.retry_count):
            logger.error(
                "[%s] Giving up after %s reconnection attempts.", self.label, self.retry_count
            )
            self.expected_running = False
            self.state = DeviceState.STOPPED
            return

        delay_ms = self.policy.delay_ms(self.retry_count)
        logger.warning(
            "[%s] Connection lost. Reconnecting in %sms... (Attempt %s)",
            self.label,
            delay_ms,
            self.retry_count + 1,
        )
        self._reconnect_handle = self._scheduler().call_later(
            delay_ms / 1000.0, self._reconnect
        )

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if not self.expected_running:
            return
        self.retry_count += 1
        self._connect()

    def _teardown(self) -> None:
        if self.capture is not None:
            try:
                self.capture.stop()
            except Exception:
                logger.exception("[%s] Error stopping capture", self.label)
        if self.session is not None:
            try:
                self.session.disconnect()
            except Exception:
                logger.exception("[%s] Error disconnecting transcription", self.label)
        self.session_connected = False

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _scheduler(self) -> Scheduler:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop


class _DeviceRelay(DeviceListener):
    def __init__(self, manager: "DeviceManager", device_id: str) -> None:
        self._manager = manager
        self._device_id = device_id

    def on_connected(self) -> None:
        for listener in list(self._manager._listeners):
            listener.on_device_connected(self._device_id)

    def on_disconnected(self) -> None:
        for listener in list(self._manager._listeners):
            listener.on_device_disconnected(self._device_id)

    def on_transcript(self, event: TranscriptEvent) -> None:
        for listener in list(self._manager._listeners):
            listener.on_transcription(self._device_id, event)

    def on_error(self, error: Exception) -> None:
        for listener in list(self._manager._listeners):
            listener.on_device_error(self._device_id, error)


class DeviceManager:
    def __init__(
        self,
        audio_factory: AudioFactory,
        session_factory: SessionFactory,
        policy: Optional[ReconnectPolicy] = None,
        loop: Optional[Scheduler] = None,
    ) -> None:
        self.policy = policy or ReconnectPolicy()
        self._audio_factory = audio_factory
        self._session_factory = session_factory
        self._loop = loop
        self._devices: Dict[str, MeetingDevice] = {}
        self._listeners: List[ManagerListener] = []

    def __len__(self) -> int:
        return len(self._devices)

    def subscribe(self, listener: ManagerListener) -> None:
        self._listeners.append(listener)

    def add_device(self, device_id: str, config: DeviceConfig) -> MeetingDevice:
        if device_id in self._devices:
            raise DuplicateDeviceError(device_id)
        device = MeetingDevice(
            config,
            self._audio_factory,
            self._session_factory,
            policy=self.policy,
            loop=self._loop,
        )
        device.subscribe(_DeviceRelay(self, device_id))
        self._devices[device_id] = device
        return device

    def get_device(self, device_id: str) -> Optional[MeetingDevice]:
        return self._devices.get(device_id)

    def start_all(self) -> int:
        logger.info("Starting all devices...")
        started = 0
        for device_id, device in self._devices.items():
            if not is_valid_device_id(device.config.device_id):
                logger.info("Skipping invalid device configuration for %s", device_id)
                continue
            device.start()
            started += 1
        if started == 0:
            logger.warning("No valid devices were started.")
        else:
            logger.info("Started %s of %s devices.", started, len(self._devices))
        return started

    def stop_all(self) -> None:
        logger.info("Stopping all devices...")
        for device_id, device in self._devices.items():
            try:
                device.stop()
            except Exception:
                logger.exception("Failed to stop device %s", device_id)
