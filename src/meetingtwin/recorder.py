"""Audio capture utilities."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Optional, List, Dict, Any

import numpy as np

from .errors import AudioSourceError
from .events import AudioListener

logger = logging.getLogger("meetingtwin")

LOOPBACK_NAME_MARKERS = (
    "loopback",
    "stereo mix",
    "missaggio stereo",
)

# Names that commonly belong to virtual cables; only used to flag devices in listings.
VIRTUAL_NAME_MARKERS = LOOPBACK_NAME_MARKERS + ("virtual", "vb-audio", "blackhole")


def _sounddevice():
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for audio capture.") from exc
    return sd


def list_input_devices() -> List[Dict[str, Any]]:
    sd = _sounddevice()
    devices = []
    for index, info in enumerate(sd.query_devices()):
        if info.get("max_input_channels", 0) > 0:
            device = dict(info)
            device.setdefault("index", index)
            devices.append(device)
    return devices


def looks_like_loopback(name: str, markers=LOOPBACK_NAME_MARKERS) -> bool:
    lowered = (name or "").lower()
    return any(marker in lowered for marker in markers)


def parse_device_index(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        index = int(str(value).strip())
    except ValueError:
        return None
    return index if index >= 0 else None


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise AudioSourceError("No input audio devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]
        logger.warning(
            "No device found matching %r. Falling back to auto-detection.", prefer_name
        )

    for device in candidates:
        if looks_like_loopback(device.get("name", "")):
            return device

    return candidates[0]


def frame_level_db(frame: bytes) -> float:
    """RMS level of a little-endian int16 frame in dBFS."""
    samples = np.frombuffer(frame, dtype="<i2").astype(np.float64)
    if samples.size == 0:
        return -180.0
    rms = float(np.sqrt(np.mean(samples**2)))
    return 20 * math.log10(rms / 32768 + 1e-9)


def find_device_by_index(
    candidates: List[Dict[str, Any]], index: int
) -> Optional[Dict[str, Any]]:
    for device in candidates:
        if device.get("index") == index:
            return device
    return None


class SoundDeviceSource:
    """Mono 16-bit capture from one PortAudio input device.

    ``initialize`` resolves the device and adopts its native sample rate.
    Frames are produced on the PortAudio thread and handed to the event loop
    that called ``start`` before listeners see them.
    """

    def __init__(
        self,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        sample_rate: int = 16000,
        blocksize: int = 1024,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.device_index = parse_device_index(device_id)
        self.device_name = device_name
        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self.level_interval = 0.2
        self.initialized = False
        self.is_recording = False
        self._last_level_ts = 0.0
        self._loop = loop
        self._stream = None
        self._listeners: List[AudioListener] = []

    def subscribe(self, listener: AudioListener) -> None:
        self._listeners.append(listener)

    def initialize(self) -> None:
        if self.initialized:
            return
        candidates = list_input_devices()

        device = None
        if self.device_index is not None:
            device = find_device_by_index(candidates, self.device_index)
            if device is None:
                logger.warning(
                    "Configured device ID %s is not an input device.", self.device_index
                )
        if device is None:
            device = select_preferred_device(candidates, prefer_name=self.device_name)
        self.device_index = device.get("index")
        logger.info("Selected audio device: %s (ID: %s)", device.get("name"), self.device_index)

        default_rate = device.get("default_samplerate")
        if default_rate:
            logger.info(
                "Updating sample rate from %sHz to device default %sHz",
                self.sample_rate,
                int(default_rate),
            )
            self.sample_rate = int(default_rate)
        self.initialized = True

    def start(self) -> None:
        if self.is_recording:
            return
        if not self.initialized:
            self.initialize()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        logger.info(
            "Starting audio capture with Device ID: %s, Sample Rate: %sHz",
            self.device_index,
            self.sample_rate,
        )
        try:
            self._stream = self._open_stream(self.device_index)
        except Exception as exc:
            fallback = next(iter(list_input_devices()), None)
            if fallback is None or fallback.get("index") == self.device_index:
                raise AudioSourceError(f"Could not open input device: {exc}") from exc
            logger.warning(
                "Opening device %s failed (%s); falling back to %s",
                self.device_index,
                exc,
                fallback.get("name"),
            )
            self.device_index = fallback.get("index")
            self._stream = self._open_stream(self.device_index)

        self.is_recording = True
        self._stream.start()
        logger.info("Audio capture started.")

    def stop(self) -> None:
        if not self.is_recording or self._stream is None:
            return
        self.is_recording = False
        stream, self._stream = self._stream, None
        try:
            stream.stop()
        finally:
            stream.close()
        logger.info("Audio capture stopped.")

    def _open_stream(self, device_index: Optional[int]):
        sd = _sounddevice()
        return sd.RawInputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="int16",
            device=device_index,
            blocksize=self.blocksize,
            callback=self._callback,
            finished_callback=self._finished,
        )

    def _callback(self, indata, _frames, _time, status) -> None:
        if status:
            logger.debug("Capture status: %s", status)
            return
        frame = bytes(indata)
        self._loop.call_soon_threadsafe(self._emit_frame, frame)
        now = time.monotonic()
        if now - self._last_level_ts >= self.level_interval:
            self._last_level_ts = now
            self._loop.call_soon_threadsafe(self._emit_level, frame_level_db(frame))

    def _finished(self) -> None:
        if self.is_recording:
            error = AudioSourceError("Input stream finished unexpectedly.")
            self._loop.call_soon_threadsafe(self._emit_error, error)

    def _emit_frame(self, frame: bytes) -> None:
        if not self.is_recording:
            return
        for listener in list(self._listeners):
            listener.on_frame(frame)

    def _emit_level(self, db: float) -> None:
        for listener in list(self._listeners):
            listener.on_level(db)

    def _emit_error(self, error: Exception) -> None:
        self.is_recording = False
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except Exception:
                logger.exception("Error closing finished input stream")
        for listener in list(self._listeners):
            listener.on_error(error)
