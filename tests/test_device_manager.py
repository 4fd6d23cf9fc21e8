import pytest

from meetingtwin.device_manager import DeviceManager, DeviceState, MeetingDevice
from meetingtwin.errors import AudioSourceError, DuplicateDeviceError, TranscriptionError
from meetingtwin.events import ManagerListener
from meetingtwin.models import DeviceConfig, ReconnectPolicy, TranscriptEvent


class FakeTimer:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    def __init__(self):
        self.timers = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_next(self):
        timer = self.pending()[0]
        timer.fired = True
        timer.callback(*timer.args)
        return timer


class FakeAudioSource:
    def __init__(self, config, native_rate=None):
        self.config = config
        self.sample_rate = config.sample_rate
        self.native_rate = native_rate
        self.listeners = []
        self.initialize_calls = 0
        self.start_calls = 0
        self.stop_calls = 0
        self.is_recording = False
        self.fail_start = False
        self.fail_stop = False

    def subscribe(self, listener):
        self.listeners.append(listener)

    def initialize(self):
        self.initialize_calls += 1
        if self.native_rate:
            self.sample_rate = self.native_rate

    def start(self):
        self.start_calls += 1
        if self.fail_start:
            raise AudioSourceError("device busy")
        self.is_recording = True

    def stop(self):
        self.stop_calls += 1
        if self.fail_stop:
            raise RuntimeError("stop failed")
        self.is_recording = False

    def emit_frame(self, frame):
        for listener in self.listeners:
            listener.on_frame(frame)

    def emit_error(self, error):
        for listener in self.listeners:
            listener.on_error(error)


class FakeSession:
    def __init__(self, config):
        self.config = config
        self.listeners = []
        self.connect_calls = []
        self.sent = []
        self.disconnect_calls = 0
        self.fail_connect = False

    def subscribe(self, listener):
        self.listeners.append(listener)

    def connect(self, sample_rate, label=None):
        if self.fail_connect:
            raise TranscriptionError("handshake refused")
        self.connect_calls.append((sample_rate, label))

    def send_audio(self, frame):
        self.sent.append(frame)

    def disconnect(self):
        self.disconnect_calls += 1

    def emit_connected(self):
        for listener in self.listeners:
            listener.on_connected()

    def emit_disconnected(self):
        for listener in self.listeners:
            listener.on_disconnected()

    def emit_transcript(self, event):
        for listener in self.listeners:
            listener.on_transcript(event)

    def emit_error(self, error):
        for listener in self.listeners:
            listener.on_error(error)


class Rig:
    def __init__(self, native_rate=None):
        self.loop = FakeLoop()
        self.native_rate = native_rate
        self.sources = {}
        self.sessions = {}

    def audio_factory(self, config):
        source = FakeAudioSource(config, native_rate=self.native_rate)
        self.sources[config.label] = source
        return source

    def session_factory(self, config):
        session = FakeSession(config)
        self.sessions[config.label] = session
        return session

    def device(self, device_id="1", label="user", policy=None):
        config = DeviceConfig(device_id=device_id, label=label, credential="key")
        return MeetingDevice(
            config,
            self.audio_factory,
            self.session_factory,
            policy=policy or ReconnectPolicy(),
            loop=self.loop,
        )

    def manager(self, policy=None):
        return DeviceManager(
            self.audio_factory,
            self.session_factory,
            policy=policy or ReconnectPolicy(),
            loop=self.loop,
        )


class Recorder(ManagerListener):
    def __init__(self):
        self.events = []

    def on_transcription(self, device_id, event):
        self.events.append(("transcription", device_id, event))

    def on_device_connected(self, device_id):
        self.events.append(("connected", device_id))

    def on_device_disconnected(self, device_id):
        self.events.append(("disconnected", device_id))

    def on_device_error(self, device_id, error):
        self.events.append(("error", device_id, error))

    def kinds(self):
        return [event[0] for event in self.events]


def _connected_device(rig, **kwargs):
    device = rig.device(**kwargs)
    device.start()
    rig.sessions[device.label].emit_connected()
    return device


def test_initialize_rejects_missing_device_id():
    rig = Rig()
    for device_id in (None, ""):
        device = rig.device(device_id=device_id)
        assert device.initialize() is False
        assert device.capture is None
        assert device.session is None
        assert device.state is DeviceState.UNCONFIGURED
    assert rig.sources == {}


def test_start_with_missing_device_id_never_leaves_unconfigured():
    rig = Rig()
    device = rig.device(device_id="")
    device.start()
    assert device.state is DeviceState.UNCONFIGURED
    assert rig.sessions == {}
    device.stop()
    assert device.state is DeviceState.UNCONFIGURED


def test_initialize_is_idempotent():
    rig = Rig()
    device = rig.device()
    assert device.initialize() is True
    capture, session = device.capture, device.session
    assert device.initialize() is True
    assert device.capture is capture
    assert device.session is session
    assert len(capture.listeners) == 1
    assert device.state is DeviceState.IDLE


def test_capture_starts_only_after_session_connected():
    rig = Rig()
    device = rig.device()
    device.start()
    capture = rig.sources["user"]
    session = rig.sessions["user"]

    assert device.state is DeviceState.CONNECTING
    assert session.connect_calls == [(16000, "user")]
    assert capture.start_calls == 0

    capture.emit_frame(b"early")
    assert session.sent == []

    session.emit_connected()
    assert capture.start_calls == 1
    assert device.state is DeviceState.CONNECTED
    assert device.session_connected is True

    capture.emit_frame(b"live")
    assert session.sent == [b"live"]


def test_connect_uses_sample_rate_reported_by_source():
    rig = Rig(native_rate=48000)
    device = rig.device()
    device.start()
    assert rig.sessions["user"].connect_calls == [(48000, "user")]


def test_start_while_running_is_noop():
    rig = Rig()
    device = _connected_device(rig)
    device.start()
    assert rig.sessions["user"].connect_calls == [(16000, "user")]
    assert rig.sources["user"].start_calls == 1


def test_stop_is_idempotent():
    rig = Rig()
    device = _connected_device(rig)
    device.stop()
    device.stop()
    device.stop()
    assert device.expected_running is False
    assert device.session_connected is False
    assert device.state is DeviceState.STOPPED
    assert rig.sources["user"].is_recording is False


def test_frames_are_dropped_after_stop():
    rig = Rig()
    device = _connected_device(rig)
    device.stop()
    rig.sources["user"].emit_frame(b"late")
    assert rig.sessions["user"].sent == []


def test_backoff_delays_grow_until_capped():
    rig = Rig()
    policy = ReconnectPolicy(base_delay_ms=1000, max_delay_ms=8000)
    device = rig.device(policy=policy)
    device.start()
    session = rig.sessions["user"]

    delays = []
    for _ in range(6):
        session.emit_disconnected()
        timer = rig.loop.fire_next()
        delays.append(timer.delay)

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
    assert device.retry_count == 6
    assert len(session.connect_calls) == 7


def test_retry_count_resets_after_successful_reconnect():
    rig = Rig()
    device = rig.device()
    device.start()
    session = rig.sessions["user"]

    session.emit_disconnected()
    rig.loop.fire_next()
    session.emit_disconnected()
    rig.loop.fire_next()
    assert device.retry_count == 2

    session.emit_connected()
    assert device.retry_count == 0

    session.emit_disconnected()
    assert rig.loop.pending()[0].delay == 1.0


def test_failure_on_one_device_leaves_other_untouched():
    rig = Rig()
    manager = rig.manager()
    a = manager.add_device("mic", DeviceConfig(device_id="1", label="user", credential="k"))
    b = manager.add_device("system", DeviceConfig(device_id="2", label="caller", credential="k"))
    manager.start_all()
    rig.sessions["user"].emit_connected()
    rig.sessions["caller"].emit_connected()

    rig.sessions["user"].emit_disconnected()

    assert a.state is DeviceState.DISCONNECTED
    assert b.state is DeviceState.CONNECTED
    assert b.session_connected is True
    assert b.retry_count == 0
    assert b.reconnect_pending is False
    assert rig.sources["caller"].stop_calls == 0
    assert rig.sessions["caller"].disconnect_calls == 0
    assert len(rig.loop.pending()) == 1

    rig.sources["caller"].emit_frame(b"still flowing")
    assert rig.sessions["caller"].sent == [b"still flowing"]


def test_late_connected_event_after_stop_is_ignored():
    rig = Rig()
    device = rig.device()
    device.start()
    device.stop()

    rig.sessions["user"].emit_connected()

    assert rig.sources["user"].start_calls == 0
    assert device.session_connected is False
    assert device.state is DeviceState.STOPPED


def test_late_connected_event_while_reconnect_pending_is_ignored():
    rig = Rig()
    device = rig.device()
    device.start()
    session = rig.sessions["user"]
    session.emit_disconnected()

    session.emit_connected()

    assert rig.sources["user"].start_calls == 0
    assert device.state is DeviceState.DISCONNECTED
    assert device.reconnect_pending is True


def test_start_all_skips_invalid_devices():
    rig = Rig()
    manager = rig.manager()
    manager.add_device("empty", DeviceConfig(device_id="", label="empty"))
    manager.add_device("missing", DeviceConfig(device_id=None, label="missing"))
    manager.add_device("text", DeviceConfig(device_id="abc", label="text"))
    manager.add_device("mic", DeviceConfig(device_id="1", label="user", credential="k"))

    assert manager.start_all() == 1
    assert list(rig.sessions) == ["user"]
    assert manager.get_device("empty").capture is None
    assert manager.get_device("text").expected_running is False


def test_start_all_with_no_valid_devices_returns_zero():
    rig = Rig()
    manager = rig.manager()
    manager.add_device("mic", DeviceConfig(device_id="", label="user"))
    assert manager.start_all() == 0


def test_overlapping_failures_schedule_one_reconnect():
    rig = Rig()
    device = _connected_device(rig)
    session = rig.sessions["user"]
    capture = rig.sources["user"]

    session.emit_error(TranscriptionError("socket reset"))
    capture.emit_error(AudioSourceError("device unplugged"))
    session.emit_disconnected()

    assert len(rig.loop.timers) == 1
    assert device.reconnect_pending is True
    assert session.disconnect_calls == 1


def test_session_error_alone_does_not_reconnect():
    rig = Rig()
    manager = rig.manager()
    recorder = Recorder()
    manager.subscribe(recorder)
    manager.add_device("mic", DeviceConfig(device_id="1", label="user", credential="k"))
    manager.start_all()
    rig.sessions["user"].emit_connected()

    error = TranscriptionError("bad frame")
    rig.sessions["user"].emit_error(error)

    assert rig.loop.timers == []
    assert recorder.events[-1] == ("error", "mic", error)
    assert manager.get_device("mic").state is DeviceState.CONNECTED


def test_stop_cancels_pending_reconnect():
    rig = Rig()
    device = _connected_device(rig)
    rig.sessions["user"].emit_disconnected()
    timer = rig.loop.pending()[0]

    device.stop()

    assert timer.cancelled is True
    assert device.reconnect_pending is False
    assert rig.loop.pending() == []


def test_capture_start_failure_enters_reconnect():
    rig = Rig()
    device = rig.device()
    device.start()
    rig.sources["user"].fail_start = True

    rig.sessions["user"].emit_connected()

    assert device.state is DeviceState.DISCONNECTED
    assert device.session_connected is False
    assert rig.sessions["user"].disconnect_calls == 1
    assert len(rig.loop.pending()) == 1


def test_repeated_capture_start_failures_keep_backing_off():
    rig = Rig()
    device = rig.device()
    device.start()
    session = rig.sessions["user"]
    rig.sources["user"].fail_start = True

    session.emit_connected()
    rig.loop.fire_next()
    session.emit_connected()

    assert rig.loop.pending()[0].delay == 2.0


def test_synchronous_connect_failure_tears_down_and_retries():
    rig = Rig()
    device = rig.device()
    device.initialize()
    rig.sessions["user"].fail_connect = True

    device.start()

    assert device.state is DeviceState.DISCONNECTED
    assert rig.sources["user"].stop_calls == 1
    assert rig.sessions["user"].disconnect_calls == 1
    assert len(rig.loop.pending()) == 1

    rig.sessions["user"].fail_connect = False
    rig.loop.fire_next()
    assert device.state is DeviceState.CONNECTING
    assert device.retry_count == 1


def test_teardown_errors_are_contained():
    rig = Rig()
    device = _connected_device(rig)
    rig.sources["user"].fail_stop = True

    device.stop()

    assert rig.sessions["user"].disconnect_calls == 1
    assert device.session_connected is False
    assert device.state is DeviceState.STOPPED


def test_reconnect_reuses_handles():
    rig = Rig()
    device = _connected_device(rig)
    capture, session = device.capture, device.session

    session.emit_disconnected()
    rig.loop.fire_next()
    session.emit_connected()

    assert device.capture is capture
    assert device.session is session
    assert capture.initialize_calls == 1
    assert capture.start_calls == 2
    assert len(rig.sources) == 1


def test_max_retries_stops_device():
    rig = Rig()
    device = rig.device(policy=ReconnectPolicy(max_retries=1))
    device.start()
    session = rig.sessions["user"]

    session.emit_disconnected()
    rig.loop.fire_next()
    session.emit_disconnected()

    assert device.state is DeviceState.STOPPED
    assert device.expected_running is False
    assert rig.loop.pending() == []


def test_manager_relays_events_tagged_with_device_id():
    rig = Rig()
    manager = rig.manager()
    recorder = Recorder()
    manager.subscribe(recorder)
    manager.add_device("system", DeviceConfig(device_id="3", label="caller", credential="k"))
    manager.start_all()
    session = rig.sessions["caller"]

    session.emit_connected()
    session.emit_transcript(
        TranscriptEvent(text="Hello world", timestamp=1.0, confidence=0.9, source="mock")
    )
    session.emit_disconnected()

    assert recorder.kinds() == ["connected", "transcription", "disconnected"]
    _, device_id, event = recorder.events[1]
    assert device_id == "system"
    assert event.source == "caller"
    assert event.text == "Hello world"


def test_add_device_rejects_duplicates():
    rig = Rig()
    manager = rig.manager()
    first = manager.add_device("mic", DeviceConfig(device_id="1", label="user"))
    with pytest.raises(DuplicateDeviceError):
        manager.add_device("mic", DeviceConfig(device_id="2", label="user"))
    assert manager.get_device("mic") is first
    assert manager.get_device("nope") is None
    assert len(manager) == 1


def test_stop_all_isolates_failures(monkeypatch):
    rig = Rig()
    manager = rig.manager()
    a = manager.add_device("mic", DeviceConfig(device_id="1", label="user", credential="k"))
    b = manager.add_device("system", DeviceConfig(device_id="2", label="caller", credential="k"))
    manager.start_all()

    def _broken_stop():
        raise RuntimeError("stuck")

    monkeypatch.setattr(a, "stop", _broken_stop)
    manager.stop_all()

    assert b.expected_running is False
    assert b.state is DeviceState.STOPPED


def test_restart_after_stop_connects_again():
    rig = Rig()
    device = _connected_device(rig)
    device.stop()
    device.start()
    assert device.state is DeviceState.CONNECTING
    assert len(rig.sessions["user"].connect_calls) == 2
